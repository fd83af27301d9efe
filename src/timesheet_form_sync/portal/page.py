from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright


logger = logging.getLogger(__name__)


class ElementNotFoundError(LookupError):
    """
    Raised when a locator does not resolve to a visible element within its timeout.
    """

    def __init__(self, locator: str, timeout_ms: int) -> None:
        super().__init__(f"Element not found within {timeout_ms} ms: {locator}")
        self.locator = locator
        self.timeout_ms = timeout_ms


class ElementHandle(Protocol):
    def click(self) -> None: ...

    def fill(self, text: str) -> None: ...

    def focus(self) -> None: ...

    def press(self, key: str) -> None: ...


class PageDriver(Protocol):
    """
    The small slice of browser control the automation relies on. Every call may block until the page
    responds or its timeout elapses.
    """

    def navigate(self, url: str, *, timeout_ms: int) -> None: ...

    def find(self, locator: str, *, timeout_ms: int) -> Optional[ElementHandle]: ...

    def wait_for(self, selector: str, *, timeout_ms: int) -> bool: ...

    def current_url(self) -> str: ...

    def has_text(self, fragment: str) -> bool: ...

    def has_element(self, selector: str) -> bool: ...

    def wait(self, ms: int) -> None: ...

    def wait_for_settle(self, timeout_ms: int) -> None: ...

    def save_debug(self, debug_dir: str, name_prefix: str) -> None: ...


class BrowserSession(Protocol):
    def start(self) -> None: ...

    def new_page(self) -> PageDriver: ...

    def close(self) -> None: ...


def require_element(page: PageDriver, locator: str, *, timeout_ms: int) -> ElementHandle:
    el = page.find(locator, timeout_ms=timeout_ms)
    if el is None:
        raise ElementNotFoundError(locator, timeout_ms)
    return el


class PlaywrightElement:
    def __init__(self, locator: Locator, *, timeout_ms: int) -> None:
        self._locator = locator
        self._timeout_ms = timeout_ms

    def click(self) -> None:
        self._locator.click(timeout=self._timeout_ms)

    def fill(self, text: str) -> None:
        self._locator.fill(text, timeout=self._timeout_ms)

    def focus(self) -> None:
        self._locator.focus(timeout=self._timeout_ms)

    def press(self, key: str) -> None:
        self._locator.press(key, timeout=self._timeout_ms)


class PlaywrightPage:
    def __init__(self, page: Page, *, action_timeout_ms: int = 10_000) -> None:
        self._page = page
        self._action_timeout_ms = action_timeout_ms

    def navigate(self, url: str, *, timeout_ms: int) -> None:
        self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    def find(self, locator: str, *, timeout_ms: int) -> Optional[ElementHandle]:
        loc = self._page.locator(locator).first
        try:
            loc.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return None
        return PlaywrightElement(loc, timeout_ms=self._action_timeout_ms)

    def wait_for(self, selector: str, *, timeout_ms: int) -> bool:
        try:
            self._page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    def current_url(self) -> str:
        return self._page.url

    def has_text(self, fragment: str) -> bool:
        # Rendered text only; the raw HTML carries script bundles that mention every success string.
        try:
            text = self._page.inner_text("body", timeout=self._action_timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return fragment.lower() in text.lower()

    def has_element(self, selector: str) -> bool:
        return self._page.locator(selector).count() > 0

    def wait(self, ms: int) -> None:
        if ms > 0:
            self._page.wait_for_timeout(ms)

    def wait_for_settle(self, timeout_ms: int) -> None:
        """
        Avoid `networkidle`; the vendor form keeps background requests running.
        """
        try:
            self._page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("Page did not reach domcontentloaded within %d ms", timeout_ms)
        self._page.wait_for_timeout(500)

    def save_debug(self, debug_dir: str, name_prefix: str) -> None:
        try:
            out_dir = Path(debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self._page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(self._page.content(), encoding="utf-8")
            # Rendered body text is easier to diff than HTML when the vendor changes markup.
            try:
                (out_dir / f"{name_prefix}.txt").write_text(self._page.inner_text("body"), encoding="utf-8")
            except PlaywrightError:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)


class PlaywrightBrowserSession:
    """
    One Chromium browser + context. `close()` is safe to call at any point, any number of times.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        slow_mo_ms: int = 0,
        channel: str = "",
        action_timeout_ms: int = 10_000,
    ) -> None:
        self.headless = headless
        self.slow_mo_ms = int(slow_mo_ms or 0)
        self.channel = channel
        self.action_timeout_ms = action_timeout_ms

        self._pw = None
        self._browser = None
        self._context = None

    def start(self) -> None:
        if self._context is not None:
            return
        self._pw = sync_playwright().start()
        self._browser = self._launch()
        # Force light color scheme; the vendor's dark theme hides some form controls.
        self._context = self._browser.new_context(color_scheme="light")

    def _launch(self):
        chromium = self._pw.chromium
        if self.channel and self.channel != "chromium":
            return chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel=self.channel)

        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # cache doesn't have Playwright browsers available.
        try:
            return chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms)
        except PlaywrightError as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise

            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
            try:
                return chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="chrome")
            except PlaywrightError:
                return chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="msedge")

    def new_page(self) -> PageDriver:
        if self._context is None:
            raise RuntimeError("Browser session is not started")
        page = self._context.new_page()
        page.set_default_timeout(self.action_timeout_ms)
        return PlaywrightPage(page, action_timeout_ms=self.action_timeout_ms)

    def close(self) -> None:
        ctx, browser, pw = self._context, self._browser, self._pw
        self._context = None
        self._browser = None
        self._pw = None

        for name, closer in (
            ("context", getattr(ctx, "close", None)),
            ("browser", getattr(browser, "close", None)),
            ("playwright", getattr(pw, "stop", None)),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception:
                logger.debug("Failed to close %s cleanly.", name, exc_info=True)
