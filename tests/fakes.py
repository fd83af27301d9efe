from __future__ import annotations

from typing import Callable, Iterable, Optional

from timesheet_form_sync.portal.selectors import FormSelectors


class FakeElement:
    def __init__(self, page: "FakePage", locator: str) -> None:
        self.page = page
        self.locator = locator

    def _maybe_fail(self, action: str) -> None:
        if (action, self.locator) in self.page.failures:
            raise RuntimeError(f"{action} failed on {self.locator}")

    def click(self) -> None:
        self.page.log.append(("click", self.locator))
        self._maybe_fail("click")
        hook = self.page.on_click.get(self.locator)
        if hook is not None:
            hook(self.page)

    def fill(self, text: str) -> None:
        self.page.log.append(("fill", self.locator, text))
        self._maybe_fail("fill")
        if text in self.page.reject_values:
            raise RuntimeError(f"no option matches {text!r}")

    def focus(self) -> None:
        self.page.log.append(("focus", self.locator))

    def press(self, key: str) -> None:
        self.page.log.append(("press", self.locator, key))
        self._maybe_fail("press")


class FakePage:
    """
    In-memory page: `present` locators resolve, everything else is "not found". All waits are recorded.
    """

    def __init__(
        self,
        present: Iterable[str] = (),
        *,
        url: str = "https://app.smartsheet.com/b/form/abc",
        text: str = "",
        nav_failures: int = 0,
    ) -> None:
        self.present = set(present)
        self.url = url
        self.text = text
        self.nav_failures = nav_failures
        self.failures: set[tuple[str, str]] = set()
        self.reject_values: set[str] = set()
        self.on_click: dict[str, Callable[["FakePage"], None]] = {}
        self.log: list[tuple] = []
        self.waits: list[int] = []
        self.navigations: list[str] = []
        self.debug_saved: list[str] = []
        self.verify_error: Optional[Exception] = None

    def navigate(self, url: str, *, timeout_ms: int) -> None:
        self.navigations.append(url)
        if self.nav_failures > 0:
            self.nav_failures -= 1
            raise RuntimeError("net::ERR_CONNECTION_RESET")
        self.url = url

    def find(self, locator: str, *, timeout_ms: int) -> Optional[FakeElement]:
        if locator in self.present:
            return FakeElement(self, locator)
        return None

    def wait_for(self, selector: str, *, timeout_ms: int) -> bool:
        self.log.append(("wait_for", selector))
        return selector in self.present

    def current_url(self) -> str:
        if self.verify_error is not None:
            raise self.verify_error
        return self.url

    def has_text(self, fragment: str) -> bool:
        return fragment.lower() in self.text.lower()

    def has_element(self, selector: str) -> bool:
        return selector in self.present

    def wait(self, ms: int) -> None:
        self.waits.append(ms)

    def wait_for_settle(self, timeout_ms: int) -> None:
        self.log.append(("settle", timeout_ms))

    def save_debug(self, debug_dir: str, name_prefix: str) -> None:
        self.debug_saved.append(name_prefix)

    def actions(self, kind: str) -> list[tuple]:
        return [entry for entry in self.log if entry[0] == kind]


class FakeSession:
    def __init__(self, page: Optional[FakePage] = None, *, fail_start: Optional[Exception] = None) -> None:
        self.page = page or ready_page()
        self.fail_start = fail_start
        self.started = False
        self.close_calls = 0

    def start(self) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self.started = True

    def new_page(self) -> FakePage:
        return self.page

    def close(self) -> None:
        self.close_calls += 1


SUCCESS_TEXT = "Success! We've captured your submission."


def ready_page(*, confirm_on_submit: bool = True) -> FakePage:
    """
    A page where every login step, form field and the primary submit button resolve.
    """
    sel = FormSelectors()
    present = {step.locator for step in sel.login_steps}
    present |= {f.locator for f in sel.fields}
    present.add(sel.submit_fallback_selectors[0])
    page = FakePage(present)
    if confirm_on_submit:
        page.on_click[sel.submit_fallback_selectors[0]] = lambda p: setattr(p, "text", SUCCESS_TEXT)
    return page
