"""
LMD Notifier - consular appointment monitor with Telegram notifications
Checks the booking page on a jittered interval and alerts every registered user
"""

import asyncio
import html
import logging
import os
import random
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

import httpx
from dotenv import load_dotenv

try:
    from playwright.async_api import async_playwright, Browser, Dialog
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError
except ImportError:
    print("ERROR: playwright not installed. Run: pip install playwright && playwright install chromium")
    sys.exit(1)

from cita_settings import ConfigError, Recipient, Settings, load_settings, salvage_chat_ids

# ============================================================================
# CONSTANTS
# ============================================================================

USER_AGENTS = [
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.3.1 Safari/605.1.15',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36 Edg/122.0.0.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36 OPR/108.0.0.0',
]

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-software-rasterizer",
]

REFERER = "https://www.citaconsular.es/"
CAPTCHA_BUTTON_SELECTOR = "#idCaptchaButton"
SERVICES_LIST_SELECTOR = "#idListServices"
AVAILABILITY_MARKER = "LEY MEMORIA"
BOOKING_URL = "https://tinyurl.com/4jux82ry"

DIALOG_ACCEPT_DELAY_SEC = 1.0
INTERVAL_JITTER = 0.2

# pkill -f patterns for browsers left behind by a crashed cycle
ORPHAN_PROCESS_PATTERNS = ("chromium-browser", "chrome", "google-chrome")

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
TELEGRAM_TIMEOUT_SEC = 15.0

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


# ============================================================================
# DATA MODELS
# ============================================================================

class OutcomeStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleOutcome:
    """Result of a single probe of the booking page"""
    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def found(cls) -> "CycleOutcome":
        return cls(OutcomeStatus.FOUND)

    @classmethod
    def not_found(cls) -> "CycleOutcome":
        return cls(OutcomeStatus.NOT_FOUND)

    @classmethod
    def failed(cls, reason: str) -> "CycleOutcome":
        return cls(OutcomeStatus.FAILED, reason)

    def __str__(self):
        if self.status is OutcomeStatus.FAILED:
            return f"Failed({self.reason})"
        return "Found" if self.status is OutcomeStatus.FOUND else "NotFound"


class MonitorState(Enum):
    STARTING = "starting"
    CHECKING = "checking"
    NOTIFYING = "notifying"
    WAITING = "waiting"
    FATAL = "fatal"


class FatalStartupError(RuntimeError):
    """The monitor could not get through its startup sequence"""


def describe_error(error: BaseException) -> str:
    """Short, user-facing reason for a failed cycle"""
    if isinstance(error, (PlaywrightTimeoutError, asyncio.TimeoutError)):
        return "timeout"
    message = str(error).strip()
    return message or type(error).__name__


# ============================================================================
# MESSAGES
# ============================================================================

def build_startup_message(interval_minutes: float) -> str:
    return "\n\n".join([
        "🤖 LMD Notifier is now running!",
        f"Monitoring appointment slots every {interval_minutes:g} minutes.",
        "You will be notified when LEY MEMORIA DEMOCRATICA appointments become available.",
    ])


def build_availability_message(recipient: Recipient) -> str:
    return "\n\n".join([
        "🚨 Appointment slot available for LEY MEMORIA DEMOCRATICA!",
        f"Username: <code>{html.escape(recipient.embassy_id)}</code>\n"
        f"Password: <code>{html.escape(recipient.embassy_password)}</code>",
        f"URL: {BOOKING_URL}",
    ])


def build_error_message(reason: str) -> str:
    return "\n\n".join([
        "⚠️ LMD Notifier encountered an error",
        f"Error: {html.escape(reason)}",
        "The notifier will continue trying to monitor appointments.",
    ])


# ============================================================================
# LOGGING SETUP
# ============================================================================

class RedactingFormatter(logging.Formatter):
    """Formatter that masks secrets anywhere in the rendered record, tracebacks included"""

    def __init__(self, secrets: Iterable[str], fmt: str = LOG_FORMAT):
        super().__init__(fmt=fmt)
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def setup_logging(settings: Settings):
    """Setup logging configuration"""
    secrets = [settings.bot_token] + [r.embassy_password for r in settings.recipients]
    formatter = RedactingFormatter(secrets)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logger = logging.getLogger()
    logger.setLevel(settings.log_level)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # httpx logs every request URL, and the URL carries the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================================
# NOTIFICATION SERVICE
# ============================================================================

MessageSource = Union[str, Callable[[Recipient], str]]


class NotificationService:
    """Sends Telegram messages through the Bot API, one request per chat"""

    def __init__(self, bot_token: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = TELEGRAM_TIMEOUT_SEC):
        self.logger = logging.getLogger("NotificationService")
        self._bot_token = bot_token
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def _redact(self, text: str) -> str:
        return text.replace(self._bot_token, "<redacted>") if self._bot_token else text

    async def notify(self, chat_id: str, text: str) -> Tuple[bool, Optional[str]]:
        """Deliver one message. Never raises; returns (ok, error_code)."""
        url = TELEGRAM_API_URL.format(token=self._bot_token)
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        try:
            response = await self._client.post(url, json=payload, timeout=self._timeout)
        except httpx.HTTPError as e:
            self.logger.error(f"❌ Failed to send Telegram notification to {chat_id}: "
                              f"{self._redact(f'{type(e).__name__}: {e}')}")
            return False, 'network_error'
        except Exception as e:
            self.logger.error(f"💥 Unexpected error sending Telegram notification to {chat_id}: "
                              f"{self._redact(str(e))}", exc_info=True)
            return False, 'exception'

        if not response.is_success:
            self.logger.error(f"❌ Failed to send Telegram notification to {chat_id}: "
                              f"status {response.status_code}, response: {self._redact(response.text[:200])}")
            return False, 'http_error'

        self.logger.debug(f"✅ Telegram notification sent to {chat_id}")
        return True, None

    async def _fan_out(self, deliveries: Sequence[Tuple[str, str]]) -> int:
        results = await asyncio.gather(
            *(self.notify(chat_id, text) for chat_id, text in deliveries),
            return_exceptions=True,
        )
        delivered = 0
        for (chat_id, _), result in zip(deliveries, results):
            if isinstance(result, BaseException):
                self.logger.error(f"💥 Delivery to {chat_id} crashed: {self._redact(str(result))}")
            elif result[0]:
                delivered += 1
        return delivered

    async def notify_all(self, recipients: Sequence[Recipient], message: MessageSource) -> int:
        """Send to every recipient concurrently and wait for all attempts to settle.

        ``message`` is either shared text or a callable building a personal
        message for each recipient.
        """
        self.logger.info(f"📤 Sending notifications to {len(recipients)} users...")
        deliveries = [
            (r.telegram_user_id, message(r) if callable(message) else message)
            for r in recipients
        ]
        delivered = await self._fan_out(deliveries)
        self.logger.info(f"📬 Notifications delivered to {delivered}/{len(recipients)} users")
        return delivered

    async def notify_chat_ids(self, chat_ids: Sequence[str], text: str) -> int:
        """Same fan-out for bare chat ids, used before recipients could be validated"""
        return await self._fan_out([(chat_id, text) for chat_id in chat_ids])

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


# ============================================================================
# PROCESS HYGIENE
# ============================================================================

class ProcessJanitor:
    """Best-effort reaping of browser processes left running by a crashed cycle.

    Matching is by command line pattern, so any unrelated process with a
    matching name is killed too. Playwright does not expose the browser PID,
    which rules out exact-PID termination.
    """

    def __init__(self, patterns: Sequence[str] = ORPHAN_PROCESS_PATTERNS):
        self.patterns = tuple(patterns)
        self.logger = logging.getLogger("ProcessJanitor")

    async def cleanup_orphans(self) -> int:
        """Kill matching processes; returns how many patterns matched something"""
        self.logger.info("🧹 Checking for dangling Chrome processes...")
        matched = 0

        for pattern in self.patterns:
            try:
                process = await asyncio.create_subprocess_exec(
                    "pkill", "-f", pattern,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                returncode = await process.wait()
            except FileNotFoundError:
                self.logger.warning("⚠️ pkill is not available, skipping process cleanup")
                break
            except OSError as e:
                self.logger.warning(f"⚠️ Could not run pkill for '{pattern}': {e}")
                continue

            # pkill exits 1 when nothing matched
            if returncode == 0:
                matched += 1
                self.logger.info(f"🔪 Killed processes matching '{pattern}'")
            elif returncode != 1:
                self.logger.debug(f"pkill '{pattern}' exited with {returncode}")

        self.logger.info("✅ Chrome process cleanup completed")
        return matched


# ============================================================================
# APPOINTMENT PROBER
# ============================================================================

class AppointmentProber:
    """Runs one check of the booking page in a fresh, single-use browser"""

    def __init__(self, settings: Settings, playwright_factory=async_playwright,
                 dialog_delay: float = DIALOG_ACCEPT_DELAY_SEC):
        self.settings = settings
        self.logger = logging.getLogger("AppointmentProber")
        self._playwright_factory = playwright_factory
        self._dialog_delay = dialog_delay

    async def _handle_dialog(self, dialog: Dialog):
        self.logger.info(f"💬 Dialog type: {dialog.type}")
        self.logger.info(f"💬 Dialog message: {dialog.message}")
        await asyncio.sleep(self._dialog_delay)
        try:
            await dialog.accept()
            self.logger.info("✅ Dialog accepted successfully")
        except Exception as e:
            self.logger.error(f"❌ Error accepting dialog: {e}")

    async def _launch(self, playwright) -> Browser:
        self.logger.info("🔧 Launching browser...")
        browser = await playwright.chromium.launch(
            headless=self.settings.headless,
            executable_path=self.settings.executable_path,
            args=BROWSER_ARGS,
            timeout=self.settings.page_timeout_ms,
        )
        self.logger.info("✅ Browser launched successfully")
        return browser

    async def _read_services(self, browser: Browser) -> str:
        timeout = self.settings.page_timeout_ms

        user_agent = random.choice(USER_AGENTS)
        self.logger.info(f"🕵️ Using User-Agent: {user_agent}")
        # A new context is an isolated, non-persistent profile
        context = await browser.new_context(
            user_agent=user_agent,
            extra_http_headers={"referer": REFERER},
        )
        page = await context.new_page()
        page.set_default_timeout(timeout)
        page.set_default_navigation_timeout(timeout)
        page.on("dialog", self._handle_dialog)

        self.logger.info(f"🌐 Navigating to {self.settings.embassy_url}")
        await page.goto(self.settings.embassy_url, wait_until="networkidle", timeout=timeout)
        self.logger.info("✅ Page navigation completed")

        self.logger.info("⏳ Waiting for captcha button...")
        await page.wait_for_selector(CAPTCHA_BUTTON_SELECTOR, state="visible")
        await page.click(CAPTCHA_BUTTON_SELECTOR)

        self.logger.info("⏳ Waiting for services list...")
        await page.wait_for_selector(SERVICES_LIST_SELECTOR, state="attached")
        return await page.text_content(SERVICES_LIST_SELECTOR) or ""

    async def _close(self, browser: Optional[Browser], playwright):
        if browser is not None:
            try:
                await browser.close()
                self.logger.info("🔒 Browser closed")
            except Exception as e:
                self.logger.error(f"❌ Error closing browser: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                self.logger.error(f"❌ Error stopping playwright: {e}")

    async def probe(self) -> CycleOutcome:
        """Check the page once. Never raises; the browser is always torn down."""
        self.logger.info("🔍 Starting appointment check...")
        playwright = None
        browser = None
        try:
            playwright = await self._playwright_factory().start()
            browser = await self._launch(playwright)
            services_text = await self._read_services(browser)
        except PlaywrightTimeoutError as e:
            self.logger.error(f"⏱️ Timed out during appointment check: {e}")
            return CycleOutcome.failed("timeout")
        except Exception as e:
            stage = "launching browser" if browser is None else "scraping"
            self.logger.error(f"❌ Error while {stage}: {e}", exc_info=True)
            return CycleOutcome.failed(describe_error(e))
        finally:
            await self._close(browser, playwright)

        if AVAILABILITY_MARKER in services_text:
            self.logger.info("🎉 Appointment slots found!")
            return CycleOutcome.found()

        self.logger.info("📭 No appointment slots available.")
        return CycleOutcome.not_found()


# ============================================================================
# MAIN MONITOR SERVICE
# ============================================================================

def randomized_interval(interval_minutes: float, rng: Optional[random.Random] = None) -> float:
    """Seconds to wait: the base interval plus or minus up to 20%"""
    rng = rng or random
    base = interval_minutes * 60
    return base + base * rng.uniform(-INTERVAL_JITTER, INTERVAL_JITTER)


class MonitorService:
    """Main monitoring loop"""

    def __init__(self, settings: Settings, prober: AppointmentProber,
                 notifier: NotificationService, janitor: ProcessJanitor,
                 sleep=asyncio.sleep, rng: Optional[random.Random] = None):
        self.settings = settings
        self.recipients = tuple(settings.recipients)
        self.prober = prober
        self.notifier = notifier
        self.janitor = janitor
        self.logger = logging.getLogger("MonitorService")
        self.state = MonitorState.STARTING
        self.cycle_count = 0
        self._sleep = sleep
        self._rng = rng

    async def start(self):
        """Reap orphaned browsers and announce the monitor to every user"""
        self.state = MonitorState.STARTING
        self.logger.info(f"🚀 Starting monitoring for {len(self.recipients)} users...")
        try:
            await self.janitor.cleanup_orphans()
            await self.notifier.notify_all(
                self.recipients, build_startup_message(self.settings.scrape_interval_minutes)
            )
        except Exception as e:
            self.state = MonitorState.FATAL
            raise FatalStartupError(describe_error(e)) from e

    async def check(self) -> CycleOutcome:
        """Run one probe and react to its outcome"""
        self.state = MonitorState.CHECKING
        self.cycle_count += 1
        self.logger.info(f"🔄 CYCLE {self.cycle_count} STARTING")

        try:
            outcome = await self.prober.probe()
        except Exception as e:
            self.logger.error(f"💥 Error in main loop: {e}", exc_info=True)
            outcome = CycleOutcome.failed(describe_error(e))

        self.logger.info(f"📋 CYCLE {self.cycle_count} outcome: {outcome}")

        try:
            await self._react(outcome)
        except Exception as e:
            self.logger.error(f"💥 Error handling cycle outcome: {e}", exc_info=True)
            if outcome.status is OutcomeStatus.FAILED:
                # The failure recovery itself crashed; no second attempt
                return outcome
            outcome = CycleOutcome.failed(describe_error(e))
            try:
                await self._react(outcome)
            except Exception as nested:
                self.logger.error(f"💥 Error reporting failed cycle: {nested}", exc_info=True)

        return outcome

    async def _react(self, outcome: CycleOutcome):
        if outcome.status is OutcomeStatus.FOUND:
            self.state = MonitorState.NOTIFYING
            await self.notifier.notify_all(self.recipients, build_availability_message)
        elif outcome.status is OutcomeStatus.FAILED:
            await self.janitor.cleanup_orphans()
            await self.notifier.notify_all(self.recipients, build_error_message(outcome.reason))

    async def wait(self) -> float:
        """Sleep for a jittered interval before the next check"""
        self.state = MonitorState.WAITING
        interval = randomized_interval(self.settings.scrape_interval_minutes, self._rng)
        self.logger.info(f"😴 Waiting {round(interval / 60)} minutes before next check...")
        await self._sleep(interval)
        return interval

    async def run(self):
        """Start, then check and wait forever"""
        await self.start()
        while True:
            await self.check()
            await self.wait()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

async def notify_fatal(bot_token: Optional[str], chat_ids: Sequence[str], reason: str):
    """Single best-effort attempt to tell users the monitor is going down"""
    logger = logging.getLogger("MonitorService")
    if not bot_token or not chat_ids:
        logger.warning("⚠️ No bot token or chat ids available, skipping fatal notification")
        return

    notifier = NotificationService(bot_token)
    try:
        await notifier.notify_chat_ids(chat_ids, build_error_message(f"Critical error: {reason}"))
    finally:
        await notifier.aclose()


async def main(environ=None) -> int:
    """Main entry point; returns the process exit status"""
    if environ is None:
        load_dotenv()
        environ = os.environ

    try:
        settings = load_settings(environ)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger("MonitorService").critical(f"💥 Configuration error: {e}")
        await notify_fatal(
            environ.get("TELEGRAM_BOT_TOKEN", "").strip(),
            salvage_chat_ids(environ.get("USERS_JSON")),
            str(e),
        )
        return 1

    logger = logging.getLogger("MonitorService")
    try:
        setup_logging(settings)
    except OSError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.critical(f"💥 Could not open log file {settings.log_file}: {e}")
        await notify_fatal(
            settings.bot_token,
            [r.telegram_user_id for r in settings.recipients],
            f"cannot open log file {settings.log_file}: {e}",
        )
        return 1

    notifier = NotificationService(settings.bot_token)
    service = MonitorService(settings, AppointmentProber(settings), notifier, ProcessJanitor())
    try:
        await service.run()
    except FatalStartupError as e:
        logger.critical(f"💥 Critical error in main function: {e}", exc_info=True)
        await notifier.notify_all(settings.recipients, build_error_message(f"Critical error: {e}"))
        return 1
    finally:
        await notifier.aclose()
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
