from __future__ import annotations

import logging
from typing import Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cita_monitor import (
    AVAILABILITY_MARKER,
    BROWSER_ARGS,
    CAPTCHA_BUTTON_SELECTOR,
    REFERER,
    SERVICES_LIST_SELECTOR,
    USER_AGENTS,
    AppointmentProber,
    OutcomeStatus,
)
from cita_settings import Settings


class FakePage:
    def __init__(self, text: Optional[str], fail_on: Optional[str], error: Exception) -> None:
        self.text = text
        self.fail_on = fail_on
        self.error = error
        self.calls: list[tuple] = []
        self.handlers: dict[str, object] = {}

    def _step(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise self.error

    def set_default_timeout(self, timeout: int) -> None:
        self.calls.append(("set_default_timeout", timeout))

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.calls.append(("set_default_navigation_timeout", timeout))

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def goto(self, url: str, wait_until: str, timeout: int) -> None:
        self._step("goto", url, wait_until)

    async def wait_for_selector(self, selector: str, state: str = "visible") -> None:
        self._step("wait_for_selector", selector, state)

    async def click(self, selector: str) -> None:
        self._step("click", selector)

    async def text_content(self, selector: str) -> Optional[str]:
        self._step("text_content", selector)
        return self.text


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page

    async def new_page(self) -> FakePage:
        return self.page


class FakeBrowser:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.close_count = 0
        self.context_kwargs: dict = {}

    async def new_context(self, **kwargs) -> FakeContext:
        self.context_kwargs = kwargs
        return FakeContext(self.page)

    async def close(self) -> None:
        self.close_count += 1


class FakeChromium:
    def __init__(self, browser: FakeBrowser, launch_error: Optional[Exception]) -> None:
        self.browser = browser
        self.launch_error = launch_error
        self.launch_kwargs: dict = {}

    async def launch(self, **kwargs) -> FakeBrowser:
        self.launch_kwargs = kwargs
        if self.launch_error:
            raise self.launch_error
        return self.browser


class FakePlaywright:
    def __init__(self, chromium: FakeChromium) -> None:
        self.chromium = chromium
        self.stop_count = 0

    async def stop(self) -> None:
        self.stop_count += 1


class FakePlaywrightManager:
    def __init__(
        self,
        text: Optional[str] = "",
        fail_on: Optional[str] = None,
        error: Optional[Exception] = None,
        launch_error: Optional[Exception] = None,
    ) -> None:
        self.page = FakePage(text, fail_on, error or RuntimeError("boom"))
        self.browser = FakeBrowser(self.page)
        self.playwright = FakePlaywright(FakeChromium(self.browser, launch_error))

    def __call__(self) -> "FakePlaywrightManager":
        return self

    async def start(self) -> FakePlaywright:
        return self.playwright


class FakeDialog:
    type = "alert"
    message = "Welcome"

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.accepted = 0
        self.error = error

    async def accept(self) -> None:
        self.accepted += 1
        if self.error:
            raise self.error


@pytest.mark.asyncio
async def test_marker_present_is_found(settings: Settings) -> None:
    manager = FakePlaywrightManager(text=f"CITAS {AVAILABILITY_MARKER} DEMOCRATICA")
    prober = AppointmentProber(settings, playwright_factory=manager)

    outcome = await prober.probe()

    assert outcome.status is OutcomeStatus.FOUND
    assert manager.browser.close_count == 1
    assert manager.playwright.stop_count == 1
    assert manager.page.calls[2:] == [
        ("goto", "https://example.test/booking", "networkidle"),
        ("wait_for_selector", CAPTCHA_BUTTON_SELECTOR, "visible"),
        ("click", CAPTCHA_BUTTON_SELECTOR),
        ("wait_for_selector", SERVICES_LIST_SELECTOR, "attached"),
        ("text_content", SERVICES_LIST_SELECTOR),
    ]


@pytest.mark.asyncio
async def test_marker_absent_is_not_found(settings: Settings) -> None:
    manager = FakePlaywrightManager(text="No hay citas disponibles")
    prober = AppointmentProber(settings, playwright_factory=manager)

    outcome = await prober.probe()

    assert outcome.status is OutcomeStatus.NOT_FOUND
    assert manager.browser.close_count == 1


@pytest.mark.asyncio
async def test_missing_text_is_not_found(settings: Settings) -> None:
    manager = FakePlaywrightManager(text=None)
    prober = AppointmentProber(settings, playwright_factory=manager)

    assert (await prober.probe()).status is OutcomeStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_session_is_configured_for_isolation(settings: Settings) -> None:
    manager = FakePlaywrightManager(text="")
    prober = AppointmentProber(settings, playwright_factory=manager)

    await prober.probe()

    launch = manager.playwright.chromium.launch_kwargs
    assert launch["headless"] is True
    assert launch["args"] == BROWSER_ARGS
    assert "--no-sandbox" in launch["args"] and "--disable-gpu" in launch["args"]
    assert launch["timeout"] == settings.page_timeout_ms
    assert manager.browser.context_kwargs["user_agent"] in USER_AGENTS
    assert manager.browser.context_kwargs["extra_http_headers"] == {"referer": REFERER}
    assert ("set_default_timeout", settings.page_timeout_ms) in manager.page.calls
    assert "dialog" in manager.page.handlers


@pytest.mark.asyncio
@pytest.mark.parametrize("step", ["goto", "wait_for_selector", "click", "text_content"])
async def test_timeout_at_any_step_fails_and_tears_down_once(settings: Settings, step: str) -> None:
    manager = FakePlaywrightManager(fail_on=step, error=PlaywrightTimeoutError("Timeout 5000ms exceeded"))
    prober = AppointmentProber(settings, playwright_factory=manager)

    outcome = await prober.probe()

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.reason == "timeout"
    assert manager.browser.close_count == 1
    assert manager.playwright.stop_count == 1


@pytest.mark.asyncio
async def test_unexpected_error_carries_its_message(settings: Settings) -> None:
    manager = FakePlaywrightManager(fail_on="click", error=RuntimeError("Target closed"))
    prober = AppointmentProber(settings, playwright_factory=manager)

    outcome = await prober.probe()

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.reason == "Target closed"
    assert manager.browser.close_count == 1


@pytest.mark.asyncio
async def test_launch_failure_still_stops_playwright(settings: Settings) -> None:
    manager = FakePlaywrightManager(launch_error=RuntimeError("Executable doesn't exist"))
    prober = AppointmentProber(settings, playwright_factory=manager)

    outcome = await prober.probe()

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.reason == "Executable doesn't exist"
    assert manager.browser.close_count == 0
    assert manager.playwright.stop_count == 1


@pytest.mark.asyncio
async def test_dialog_is_accepted_after_delay(settings: Settings) -> None:
    prober = AppointmentProber(settings, playwright_factory=FakePlaywrightManager(), dialog_delay=0)
    dialog = FakeDialog()

    await prober._handle_dialog(dialog)

    assert dialog.accepted == 1


@pytest.mark.asyncio
async def test_dialog_failure_is_logged_not_raised(settings: Settings, caplog: pytest.LogCaptureFixture) -> None:
    prober = AppointmentProber(settings, playwright_factory=FakePlaywrightManager(), dialog_delay=0)
    dialog = FakeDialog(error=RuntimeError("No dialog is showing"))

    caplog.set_level(logging.ERROR)
    await prober._handle_dialog(dialog)

    assert "No dialog is showing" in caplog.text
