from __future__ import annotations

import pytest

from cita_settings import Recipient, Settings


@pytest.fixture
def recipients() -> list[Recipient]:
    return [
        Recipient(telegram_user_id="111", embassy_id="alice-id", embassy_password="alice-pw"),
        Recipient(telegram_user_id="222", embassy_id="bob-id", embassy_password="bob-pw"),
        Recipient(telegram_user_id="333", embassy_id="carol-id", embassy_password="carol-pw"),
    ]


@pytest.fixture
def settings(recipients: list[Recipient]) -> Settings:
    return Settings(
        bot_token="123:SECRET",
        recipients=recipients,
        embassy_url="https://example.test/booking",
        scrape_interval_minutes=10,
        page_timeout_ms=5000,
        headless=True,
        executable_path=None,
        log_file=None,
    )
