from __future__ import annotations

import logging
from typing import Optional, Union

from ..models import FormTarget, TimesheetRow, VerificationOutcome
from ..util.backoff import BackoffPolicy
from ..util.dates import format_us_date
from ..util.times import span_minutes
from .page import PageDriver, require_element
from .selectors import FieldDefinition, FormSelectors


logger = logging.getLogger(__name__)

_VERIFY_POLL_MS = 500


class FieldFillError(RuntimeError):
    def __init__(self, field_label: str, cause: Union[BaseException, str]) -> None:
        super().__init__(f"Could not fill '{field_label}': {cause}")
        self.field_label = field_label
        self.cause = cause


class SubmitButtonNotFoundError(RuntimeError):
    """
    Raised when none of the submit fallback selectors resolve on the form page.
    """


def compute_hours(time_in: str, time_out: str) -> float:
    """
    Duration between two strict `HH:MM` times, in fractional hours.

    Raises TimeFormatError for malformed input or an end time before the start time.
    """
    return span_minutes(time_in, time_out) / 60.0


def format_hours(hours: float) -> str:
    return f"{hours:.2f}"


def build_field_values(row: TimesheetRow) -> dict[str, Optional[str]]:
    """
    The value for each form field key. Optional fields without a value map to None.
    """
    return {
        "project_code": row.project,
        "date": format_us_date(row.date),
        "hours": format_hours(compute_hours(row.time_in, row.time_out)),
        "tool": row.tool or None,
        "task_description": row.task_description,
        "detail_code": row.charge_code or None,
    }


class WebformFiller:
    def __init__(
        self,
        page: PageDriver,
        *,
        selectors: Optional[FormSelectors] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        self.page = page
        self.selectors = selectors or FormSelectors()
        self.backoff = backoff or BackoffPolicy()
        self._fields = self.selectors.field_by_key()

    def navigate_to_form(self, base_url: str, form_id: str) -> str:
        url = FormTarget(base_url=base_url, form_id=form_id).form_url
        logger.info("Opening form: %s", url)
        self.page.navigate(url, timeout_ms=self.backoff.page_load_timeout_ms)
        self.page.wait(self.backoff.form_settle_ms)
        return url

    def fill_entry(self, row: TimesheetRow, index: int) -> None:
        """
        Fill one row into the form, field by field in `field_order`.

        Raises FieldFillError when a required field has no value or cannot be filled.
        """
        values = build_field_values(row)
        logger.info("Filling row %d (date=%s hours=%s project=%s)", index, values["date"], values["hours"], row.project)

        for key in self.selectors.field_order:
            f = self._fields.get(key)
            if f is None:
                continue

            value = values.get(key)
            if value is None or value == "":
                if f.optional:
                    continue
                raise FieldFillError(f.label, "no value for required field")

            try:
                self._fill_field(f, value)
            except Exception as e:
                if f.optional:
                    logger.warning("Row %d: optional field '%s' not filled (%s)", index, f.label, e)
                else:
                    raise FieldFillError(f.label, e) from e
            finally:
                self.page.wait(self.backoff.inter_field_delay_ms)

    def _fill_field(self, f: FieldDefinition, value: str) -> None:
        el = require_element(self.page, f.locator, timeout_ms=self.backoff.element_timeout_ms)
        el.fill(value)
        if self.selectors.is_dropdown(f):
            delay = self.backoff.dropdown_key_delay_ms
            self.page.wait(delay)
            el.press("ArrowDown")
            self.page.wait(delay)
            el.press("Enter")
            self.page.wait(delay)
        logger.debug("Filled field %s", f.label)

    def submit_form(self) -> str:
        """
        Click the first submit button that resolves and accepts the click, then wait for the page to settle.
        Returns the selector that matched.
        """
        # Only the first selector gets the full element timeout; the rest are quick probes.
        timeout_ms = self.backoff.element_timeout_ms
        last_error: Optional[Exception] = None
        for selector in self.selectors.submit_fallback_selectors:
            el = self.page.find(selector, timeout_ms=timeout_ms)
            timeout_ms = min(timeout_ms, 500)
            if el is None:
                continue
            logger.info("Submitting form via %s", selector)
            try:
                el.click()
            except Exception as e:
                logger.warning("Submit click via %s failed: %s", selector, e)
                last_error = e
                continue
            self.page.wait_for_settle(self.backoff.submit_settle_ms)
            return selector

        raise SubmitButtonNotFoundError(
            f"No submit button matched any of {len(self.selectors.submit_fallback_selectors)} selectors"
        ) from last_error

    def verify_submission(self) -> VerificationOutcome:
        """
        Best-effort confirmation: URL fragments, then page text, then CSS hooks, polled until
        `submit_verify_timeout_ms` runs out.

        UNCONFIRMED means no signal was found, not that the submission failed.
        """
        checks = max(1, self.backoff.submit_verify_timeout_ms // _VERIFY_POLL_MS)
        url = ""
        try:
            for attempt in range(checks):
                url = self.page.current_url() or ""
                signal = self._success_signal(url)
                if signal:
                    logger.info("Submission confirmed (%s)", signal)
                    return VerificationOutcome.CONFIRMED
                if attempt + 1 < checks:
                    self.page.wait(_VERIFY_POLL_MS)
        except Exception as e:
            logger.warning("Submission verification errored: %s", e)
            return VerificationOutcome.ERROR

        logger.warning("Submission could not be verified (url=%s); no success indicator found.", url)
        return VerificationOutcome.UNCONFIRMED

    def _success_signal(self, url: str) -> Optional[str]:
        for fragment in self.selectors.success_url_fragments:
            if fragment.lower() in url.lower():
                return f"url contains {fragment}"
        for fragment in self.selectors.success_text_fragments:
            if self.page.has_text(fragment):
                return f"page text {fragment!r}"
        for selector in self.selectors.success_css_hooks:
            if self.page.has_element(selector):
                return f"element {selector}"
        return None
