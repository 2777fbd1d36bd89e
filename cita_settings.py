"""
Configuration for the LMD appointment notifier.
Environment variables are validated into immutable pydantic models.
"""

import json
import os
from typing import List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

DEFAULT_EMBASSY_URL = "https://www.citaconsular.es/"
DEFAULT_EXECUTABLE_PATH = "/usr/bin/chromium-browser"
DEFAULT_LOG_FILE = "./logs/cita_monitor.log"


class ConfigError(ValueError):
    """Raised when the environment does not describe a runnable monitor"""


# ============================================================================
# MODELS
# ============================================================================

class Recipient(BaseModel):
    """A Telegram chat to notify plus the booking credentials it should receive"""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, coerce_numbers_to_str=True)

    telegram_user_id: str = Field(min_length=1)
    embassy_id: str = Field(min_length=1)
    embassy_password: str = Field(min_length=1, repr=False)


class Settings(BaseModel):
    """Validated runtime settings"""
    model_config = ConfigDict(frozen=True)

    bot_token: str = Field(min_length=1, repr=False)
    recipients: List[Recipient] = Field(min_length=1)
    embassy_url: str = DEFAULT_EMBASSY_URL
    scrape_interval_minutes: float = Field(default=10, gt=0)
    page_timeout_ms: int = Field(default=60000, gt=0)
    headless: bool = True
    executable_path: Optional[str] = DEFAULT_EXECUTABLE_PATH
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    log_file: Optional[str] = DEFAULT_LOG_FILE


_RECIPIENTS = TypeAdapter(List[Recipient])


# ============================================================================
# LOADING
# ============================================================================

def _first_error(error: ValidationError) -> str:
    details = error.errors()[0]
    location = ".".join(str(part) for part in details.get("loc", ()))
    if location:
        return f"{location}: {details.get('msg')}"
    return str(details.get("msg"))


def parse_recipients(raw: str) -> List[Recipient]:
    """Parse USERS_JSON into a non-empty list of recipients"""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid USERS_JSON format: {e}") from e

    if not isinstance(data, list) or not data:
        raise ConfigError("Invalid USERS_JSON format: USERS_JSON must be a non-empty array")

    try:
        return _RECIPIENTS.validate_python(data)
    except ValidationError as e:
        raise ConfigError(
            "Invalid USERS_JSON format: each user must have telegram_user_id, "
            f"embassy_id, and embassy_password ({_first_error(e)})"
        ) from e


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables, raising ConfigError on any problem"""
    env = os.environ if environ is None else environ

    bot_token = env.get("TELEGRAM_BOT_TOKEN", "").strip()
    users_json = env.get("USERS_JSON", "").strip()
    if not bot_token or not users_json:
        raise ConfigError(
            "Missing required environment variables: TELEGRAM_BOT_TOKEN and USERS_JSON must be set"
        )

    recipients = parse_recipients(users_json)

    values = {
        "bot_token": bot_token,
        "recipients": recipients,
        "embassy_url": env.get("EMBASSY_URL") or DEFAULT_EMBASSY_URL,
        "scrape_interval_minutes": env.get("SCRAPE_INTERVAL_MINUTES") or 10,
        "page_timeout_ms": env.get("PAGE_TIMEOUT_MS") or 60000,
        "headless": env.get("HEADLESS") or True,
        "log_level": (env.get("LOG_LEVEL") or "INFO").upper(),
    }

    # An explicitly empty value switches the feature off
    executable_path = env.get("BROWSER_EXECUTABLE_PATH")
    if executable_path is None:
        values["executable_path"] = DEFAULT_EXECUTABLE_PATH
    else:
        values["executable_path"] = executable_path.strip() or None

    log_file = env.get("LOG_FILE")
    if log_file is None:
        values["log_file"] = DEFAULT_LOG_FILE
    else:
        values["log_file"] = log_file.strip() or None

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_first_error(e)}") from e


def salvage_chat_ids(raw: Optional[str]) -> List[str]:
    """Pull whatever chat ids can be read from a USERS_JSON that failed validation"""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(data, list):
        return []

    chat_ids = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        chat_id = entry.get("telegram_user_id")
        if isinstance(chat_id, (str, int)) and not isinstance(chat_id, bool):
            chat_id = str(chat_id).strip()
            if chat_id and chat_id not in chat_ids:
                chat_ids.append(chat_id)
    return chat_ids
