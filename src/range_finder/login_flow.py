"""
Browser login flows for the carrier portal.

The portal only hands out a usable token pair to a real browser session:
the CSRF token is read from the search request the page sends, and the
session cookie from the browser context afterwards.
"""

import asyncio
import secrets
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

from .config import SessionConfig, SourceConfig
from .enums import ErrorCode
from .exceptions import ConfigurationError, LoginError
from .event_logger import EventLogger
from .models import TokenPair


@runtime_checkable
class LoginFlow(Protocol):
    """Protocol defining the interface for login flows."""

    @abstractmethod
    async def login(self) -> TokenPair:
        """
        Perform a full login and return the captured token pair.

        Raises:
            LoginError: If no usable token pair could be captured
        """
        ...


class PlaywrightLoginFlow:
    """
    Login flow driving Chromium through Playwright.

    Runs a local headless browser, or attaches over CDP to a Browserless
    endpoint when `use_browserless` is set.
    """

    def __init__(
        self,
        source: SourceConfig,
        session: SessionConfig,
        logger: Optional[EventLogger] = None,
    ) -> None:
        if session.use_browserless and not session.browserless_api_key:
            raise ConfigurationError(
                code=ErrorCode.MISSING_SECRET.value,
                message="BROWSERLESS_API_KEY is required when browserless mode is enabled",
            )
        self._source = source
        self._session = session
        self._logger = logger

    def _url(self, path: str) -> str:
        return f"{self._source.base_url.rstrip('/')}{path}"

    async def login(self) -> TokenPair:
        try:
            from playwright.async_api import Error as PlaywrightError
            from playwright.async_api import async_playwright
        except ImportError as e:
            raise ConfigurationError(
                code=ErrorCode.INVALID_CONFIG.value,
                message="playwright is not installed; install the 'browser' extra",
            ) from e

        timeout_ms = self._session.login_timeout_seconds * 1000
        captured: dict[str, str] = {}
        search_path = self._source.search_path
        cookie_name = self._source.session_cookie_name

        def on_request(request) -> None:
            if search_path in request.url:
                headers = request.headers
                captured["csrf"] = headers.get("x-csrf-token", "")

        if self._logger:
            self._logger.info(
                "LoginFlow",
                "Starting browser login",
                {"browserless": self._session.use_browserless},
            )

        try:
            async with async_playwright() as p:
                if self._session.use_browserless:
                    endpoint = (
                        f"{self._session.browserless_endpoint}"
                        f"?token={self._session.browserless_api_key}"
                    )
                    browser = await p.chromium.connect_over_cdp(endpoint, timeout=timeout_ms)
                else:
                    browser = await p.chromium.launch(headless=self._session.headless)

                try:
                    context = await browser.new_context(
                        user_agent=self._source.user_agent,
                        viewport={"width": 1920, "height": 1080},
                    )
                    page = await context.new_page()
                    page.set_default_timeout(timeout_ms)
                    page.set_default_navigation_timeout(timeout_ms)
                    page.on("request", on_request)

                    await page.goto(self._url(self._source.login_path), wait_until="domcontentloaded")
                    await page.wait_for_selector(f"text={self._source.login_markers[0]}")
                    await page.get_by_role("link", name="Test Account").click()
                    await page.wait_for_load_state("domcontentloaded")

                    await page.goto(self._url(self._source.access_path), wait_until="domcontentloaded")
                    await page.add_style_tag(content=".popup-message { display: none !important; }")
                    await page.locator("#CLI").evaluate(
                        "el => { el.value = '000'; el.dispatchEvent(new Event('input', { bubbles: true })); }"
                    )

                    async with page.expect_response(lambda r: search_path in r.url):
                        await page.locator('button:has-text("Search")').evaluate("el => el.click()")

                    await page.wait_for_selector('th:has-text("Termination")')

                    for cookie in await context.cookies():
                        if cookie.get("name") == cookie_name:
                            captured["session"] = cookie.get("value", "")
                finally:
                    await browser.close()
        except PlaywrightError as e:
            raise LoginError(
                code=ErrorCode.LOGIN_FAILED.value,
                message=f"Browser login failed: {e}",
            ) from e
        except asyncio.TimeoutError as e:
            raise LoginError(
                code=ErrorCode.LOGIN_TIMEOUT.value,
                message="Browser login timed out",
            ) from e

        session_token = captured.get("session", "")
        csrf_token = captured.get("csrf", "")
        if not session_token or not csrf_token:
            raise LoginError(
                code=ErrorCode.TOKEN_NOT_CAPTURED.value,
                message="Login finished without capturing both tokens",
                details={
                    "has_session": bool(session_token),
                    "has_csrf": bool(csrf_token),
                },
            )

        return TokenPair(session_token=session_token, csrf_token=csrf_token)


class SimulatedLoginFlow:
    """Login flow for dry runs: returns random tokens without any network access."""

    def __init__(self, delay_seconds: float = 0.0, fail_times: int = 0) -> None:
        self._delay_seconds = delay_seconds
        self._fail_times = fail_times
        self.call_count = 0

    async def login(self) -> TokenPair:
        self.call_count += 1
        if self._delay_seconds > 0:
            await asyncio.sleep(self._delay_seconds)
        if self.call_count <= self._fail_times:
            raise LoginError(
                code=ErrorCode.LOGIN_FAILED.value,
                message=f"Simulated login failure {self.call_count}",
            )
        return TokenPair(
            session_token=secrets.token_hex(20),
            csrf_token=secrets.token_urlsafe(30),
        )
