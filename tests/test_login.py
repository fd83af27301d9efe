from __future__ import annotations

import logging

import pytest

from fakes import FakePage, ready_page
from timesheet_form_sync.errors import ConfigurationError
from timesheet_form_sync.models import Credentials
from timesheet_form_sync.portal.login import LoginInterpreter, LoginStepError, PageLoadError
from timesheet_form_sync.portal.selectors import DEFAULT_LOGIN_STEPS, LoginStep, StepAction
from timesheet_form_sync.util.backoff import BackoffPolicy


CREDS = Credentials(email="tech@example.com", password="hunter2-secret")
LOGIN_URL = "https://app.smartsheet.com/b/form/abc"
TIMING = BackoffPolicy(inter_step_delay_ms=7, navigation_settle_ms=11, page_load_backoff_ms=13)


def test_full_login_runs_every_step_in_order() -> None:
    page = ready_page()
    LoginInterpreter(backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert page.navigations == [LOGIN_URL]
    fills = page.actions("fill")
    assert fills == [
        ("fill", "#loginEmail", "tech@example.com"),
        ("fill", "#i0116", "tech@example.com"),
        ("fill", "#passwordInput", "hunter2-secret"),
    ]
    # Every step is followed by the inter-step delay.
    assert page.waits.count(7) == len(DEFAULT_LOGIN_STEPS)
    assert page.waits.count(11) == sum(1 for s in DEFAULT_LOGIN_STEPS if s.expects_navigation)


def test_missing_optional_screens_do_not_abort_login() -> None:
    page = ready_page()
    # Returning users skip the company-account chooser and the stay-signed-in prompt.
    page.present -= {"a.clsJspButtonWide", "#idBtn_Back"}

    LoginInterpreter(backoff=TIMING).run(page, CREDS, LOGIN_URL)

    clicked = [entry[1] for entry in page.actions("click")]
    assert "a.clsJspButtonWide" not in clicked
    assert "#submitButton" in clicked


def test_optional_wait_that_never_appears_is_skipped() -> None:
    steps = (
        LoginStep("Banner", StepAction.WAIT, "#banner", optional=True),
        LoginStep("Email", StepAction.INPUT, "#email", value_key="email"),
    )
    page = FakePage({"#email"})

    LoginInterpreter(steps, backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert ("wait_for", "#banner") in page.log
    assert page.actions("fill") == [("fill", "#email", "tech@example.com")]
    assert page.waits.count(7) == 2


def test_required_step_failure_names_the_step() -> None:
    page = ready_page()
    page.present.discard("#i0116")

    with pytest.raises(LoginStepError) as exc:
        LoginInterpreter(backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert exc.value.step_name == "Wait for AAD Email"
    assert "Wait for AAD Email" in str(exc.value)
    # Nothing after the failed step ran.
    assert ("fill", "#passwordInput", "hunter2-secret") not in page.log


def test_failed_required_click_is_reported() -> None:
    steps = (
        LoginStep("Email", StepAction.INPUT, "#email", value_key="email"),
        LoginStep("Sign in", StepAction.CLICK, "#go"),
    )
    page = FakePage({"#email", "#go"})
    page.failures.add(("click", "#go"))

    with pytest.raises(LoginStepError) as exc:
        LoginInterpreter(steps, backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert exc.value.step_name == "Sign in"
    assert isinstance(exc.value.cause, RuntimeError)


def test_sensitive_values_never_reach_the_log(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="timesheet_form_sync")
    LoginInterpreter(backoff=TIMING).run(ready_page(), CREDS, LOGIN_URL)

    assert "hunter2-secret" not in caplog.text
    assert "tech@example.com" not in caplog.text
    assert "Password Input = ***" in caplog.text


def test_page_load_is_retried_then_succeeds() -> None:
    page = ready_page()
    page.nav_failures = 2

    LoginInterpreter(backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert page.navigations == [LOGIN_URL] * 3
    assert page.waits.count(13) == 2


def test_page_load_gives_up_after_retry_budget() -> None:
    page = ready_page()
    page.nav_failures = 5

    with pytest.raises(PageLoadError) as exc:
        LoginInterpreter(backoff=TIMING).run(page, CREDS, LOGIN_URL)

    assert exc.value.attempts == TIMING.page_load_retries
    assert str(exc.value).startswith(f"Could not navigate to {LOGIN_URL} after 3 attempts")
    assert page.actions("fill") == []


def test_unknown_value_key_is_a_configuration_error() -> None:
    steps = (LoginStep("PIN", StepAction.INPUT, "#pin", value_key="pin"),)
    with pytest.raises(ConfigurationError):
        LoginInterpreter(steps)
