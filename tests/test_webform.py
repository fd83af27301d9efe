from __future__ import annotations

import pytest

from fakes import SUCCESS_TEXT, FakePage, ready_page
from timesheet_form_sync.models import TimesheetRow, VerificationOutcome
from timesheet_form_sync.portal.page import PlaywrightPage
from timesheet_form_sync.portal.selectors import DEFAULT_FIELD_ORDER, DEFAULT_FIELDS, FieldDefinition, FormSelectors
from timesheet_form_sync.portal.webform import (
    FieldFillError,
    SubmitButtonNotFoundError,
    WebformFiller,
    build_field_values,
    compute_hours,
    format_hours,
)
from timesheet_form_sync.util.backoff import BackoffPolicy
from timesheet_form_sync.util.times import TimeFormatError


PROJECT = "input[aria-label='Project Task']"
DATE = "input[placeholder='mm/dd/yyyy']"
HOURS = "input[aria-label='Hours']"
TOOL = "input[aria-label*='Tool']"
TASK = "role=textbox[name='Task Description']"
DETAIL = "input[aria-label='Detail Charge Code']"

TIMING = BackoffPolicy(inter_field_delay_ms=3, dropdown_key_delay_ms=5, submit_verify_timeout_ms=1000)


def _row(**kw) -> TimesheetRow:
    data = {
        "id": 1,
        "date": "2025-09-30",
        "time_in": "09:00",
        "time_out": "17:30",
        "project": "FL-Carver Techs",
        "tool": "Oscilloscope",
        "charge_code": "DCC-100",
        "task_description": "Sensor calibration",
    }
    data.update(kw)
    return TimesheetRow(**data)


def test_hours_are_formatted_with_two_decimals() -> None:
    assert format_hours(compute_hours("09:00", "17:30")) == "8.50"
    assert format_hours(compute_hours("08:15", "09:00")) == "0.75"
    with pytest.raises(TimeFormatError):
        compute_hours("17:00", "09:00")


def test_field_values_use_form_formats() -> None:
    values = build_field_values(_row(tool=None, charge_code=None))
    assert values == {
        "project_code": "FL-Carver Techs",
        "date": "09/30/2025",
        "hours": "8.50",
        "tool": None,
        "task_description": "Sensor calibration",
        "detail_code": None,
    }


def test_fill_entry_follows_field_order() -> None:
    page = ready_page()
    WebformFiller(page, backoff=TIMING).fill_entry(_row(), 0)

    assert page.actions("fill") == [
        ("fill", PROJECT, "FL-Carver Techs"),
        ("fill", DATE, "09/30/2025"),
        ("fill", HOURS, "8.50"),
        ("fill", TOOL, "Oscilloscope"),
        ("fill", TASK, "Sensor calibration"),
        ("fill", DETAIL, "DCC-100"),
    ]
    assert page.waits.count(3) == 6


def test_dropdowns_commit_with_arrow_down_then_enter() -> None:
    page = ready_page()
    WebformFiller(page, backoff=TIMING).fill_entry(_row(), 0)

    project_actions = [entry for entry in page.log if len(entry) > 1 and entry[1] == PROJECT]
    assert project_actions == [
        ("fill", PROJECT, "FL-Carver Techs"),
        ("press", PROJECT, "ArrowDown"),
        ("press", PROJECT, "Enter"),
    ]
    pressed = {entry[1] for entry in page.actions("press")}
    assert pressed == {PROJECT, TOOL, DETAIL}
    # Three key settles per dropdown.
    assert page.waits.count(5) == 9


def test_optional_fields_without_values_are_skipped() -> None:
    page = ready_page()
    WebformFiller(page, backoff=TIMING).fill_entry(_row(tool=None, charge_code=None), 0)

    filled = [entry[1] for entry in page.actions("fill")]
    assert filled == [PROJECT, DATE, HOURS, TASK]


def test_optional_field_failure_is_tolerated() -> None:
    page = ready_page()
    page.present.discard(TOOL)

    WebformFiller(page, backoff=TIMING).fill_entry(_row(), 0)

    filled = [entry[1] for entry in page.actions("fill")]
    assert TOOL not in filled
    assert DETAIL in filled


def test_required_field_failure_raises_with_label() -> None:
    page = ready_page()
    page.present.discard(HOURS)

    with pytest.raises(FieldFillError) as exc:
        WebformFiller(page, backoff=TIMING).fill_entry(_row(), 0)

    assert exc.value.field_label == "Hours"
    filled = [entry[1] for entry in page.actions("fill")]
    assert filled == [PROJECT, DATE]


def test_required_field_without_value_raises_before_filling_it() -> None:
    shift = FieldDefinition("shift", "Shift", "#shift")
    order = DEFAULT_FIELD_ORDER[:3] + ("shift",) + DEFAULT_FIELD_ORDER[3:]
    selectors = FormSelectors(fields=DEFAULT_FIELDS + (shift,), field_order=order)
    page = ready_page()
    page.present.add("#shift")

    with pytest.raises(FieldFillError) as exc:
        WebformFiller(page, selectors=selectors, backoff=TIMING).fill_entry(_row(), 0)

    assert exc.value.field_label == "Shift"
    filled = [entry[1] for entry in page.actions("fill")]
    assert filled == [PROJECT, DATE, HOURS]
    assert "#shift" not in filled


def test_navigate_to_form_builds_url_and_settles() -> None:
    page = FakePage()
    url = WebformFiller(page, backoff=TIMING).navigate_to_form("https://app.smartsheet.com/", "abc123")

    assert url == "https://app.smartsheet.com/b/form/abc123"
    assert page.navigations == [url]
    assert TIMING.form_settle_ms in page.waits


def test_submit_uses_first_matching_fallback() -> None:
    page = FakePage({"input[type='submit']", "button[type='submit']"})
    matched = WebformFiller(page, backoff=TIMING).submit_form()

    assert matched == "input[type='submit']"
    assert page.actions("click") == [("click", "input[type='submit']")]
    assert page.actions("settle") == [("settle", TIMING.submit_settle_ms)]


def test_submit_without_any_button_raises() -> None:
    page = FakePage()
    with pytest.raises(SubmitButtonNotFoundError):
        WebformFiller(page, backoff=TIMING).submit_form()
    assert page.actions("click") == []


def test_submit_falls_through_when_a_matched_button_rejects_the_click() -> None:
    primary = "button[data-client-id='form_submit_btn']"
    page = FakePage({primary, "button:has-text('Submit')"})
    page.failures.add(("click", primary))

    matched = WebformFiller(page, backoff=TIMING).submit_form()

    assert matched == "button:has-text('Submit')"
    assert page.actions("click") == [("click", primary), ("click", "button:has-text('Submit')")]
    assert page.actions("settle") == [("settle", TIMING.submit_settle_ms)]


def test_submit_raises_when_every_matched_button_rejects_the_click() -> None:
    primary = "button[data-client-id='form_submit_btn']"
    page = FakePage({primary})
    page.failures.add(("click", primary))

    with pytest.raises(SubmitButtonNotFoundError) as exc:
        WebformFiller(page, backoff=TIMING).submit_form()

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert page.actions("settle") == []


def test_verify_confirmed_by_page_text() -> None:
    page = FakePage(text=f"<h1>{SUCCESS_TEXT}</h1>")
    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.CONFIRMED


def test_verify_confirmed_by_url() -> None:
    page = FakePage(url="https://app.smartsheet.com/b/form/abc/thank-you")
    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.CONFIRMED


def test_verify_confirmed_by_css_hook() -> None:
    page = FakePage({".form-success"})
    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.CONFIRMED


def test_verify_unconfirmed_after_polling() -> None:
    page = FakePage()
    outcome = WebformFiller(page, backoff=TIMING).verify_submission()

    assert outcome is VerificationOutcome.UNCONFIRMED
    assert page.waits == [500]


def test_verify_error_when_page_is_gone() -> None:
    page = FakePage()
    page.verify_error = RuntimeError("Target page, context or browser has been closed")
    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.ERROR


class _StaticPlaywrightPage:
    """
    Stands in for a Playwright Page whose raw HTML differs from its rendered body text.
    """

    url = "https://app.smartsheet.com/b/form/abc"

    def __init__(self, body_text: str) -> None:
        self.body_text = body_text
        self.timeouts: list[int] = []

    def content(self) -> str:
        bundle = "window.__i18n = {'confirmation': 'Success', 'submissionId': null};"
        return f"<html><head><script>{bundle}</script></head><body>{self.body_text}</body></html>"

    def inner_text(self, selector: str, timeout: float = 0) -> str:
        assert selector == "body"
        return self.body_text

    def locator(self, selector: str) -> "_StaticPlaywrightPage":
        return self

    def count(self) -> int:
        return 0

    def wait_for_timeout(self, ms: int) -> None:
        self.timeouts.append(ms)


def test_verify_ignores_success_words_hidden_in_scripts() -> None:
    raw = _StaticPlaywrightPage("Project Task")
    page = PlaywrightPage(raw)

    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.UNCONFIRMED
    assert raw.timeouts == [500]


def test_verify_reads_rendered_body_text() -> None:
    page = PlaywrightPage(_StaticPlaywrightPage(SUCCESS_TEXT))
    assert WebformFiller(page, backoff=TIMING).verify_submission() is VerificationOutcome.CONFIRMED
