from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class StepAction(str, Enum):
    WAIT = "wait"
    INPUT = "input"
    CLICK = "click"


@dataclass(frozen=True)
class LoginStep:
    """
    One hop of the SSO login. `locator` is the element to act on (or, for WAIT, the selector to wait for).
    """

    name: str
    action: StepAction
    locator: str
    value_key: Optional[str] = None
    optional: bool = False
    sensitive: bool = False
    expects_navigation: bool = False


@dataclass(frozen=True)
class FieldDefinition:
    key: str
    label: str
    locator: str
    optional: bool = False


# Vendor login: its own email page, then a "company account" hop into Azure AD, then ADFS password.
# Several screens only appear on first login from a new browser, so those steps are optional.
DEFAULT_LOGIN_STEPS: tuple[LoginStep, ...] = (
    LoginStep("Wait for Login Form", StepAction.WAIT, "#loginEmail", optional=True),
    LoginStep("Email Input", StepAction.INPUT, "#loginEmail", value_key="email", sensitive=True),
    LoginStep("Continue", StepAction.CLICK, "#formControl", optional=True, expects_navigation=True),
    LoginStep("Wait for SSO Choice", StepAction.WAIT, "a.clsJspButtonWide", optional=True),
    LoginStep(
        "Login with company account",
        StepAction.CLICK,
        "a.clsJspButtonWide",
        optional=True,
        expects_navigation=True,
    ),
    LoginStep("Wait for AAD Email", StepAction.WAIT, "#i0116"),
    LoginStep("AAD Email", StepAction.INPUT, "#i0116", value_key="email", sensitive=True),
    LoginStep("AAD Next", StepAction.CLICK, "#idSIButton9", optional=True, expects_navigation=True),
    LoginStep("Wait for Password", StepAction.WAIT, "#passwordInput"),
    LoginStep("Password Input", StepAction.INPUT, "#passwordInput", value_key="password", sensitive=True),
    LoginStep("Password Submit", StepAction.CLICK, "#submitButton", optional=True, expects_navigation=True),
    LoginStep("Stay Signed In Prompt", StepAction.WAIT, "#idBtn_Back", optional=True),
    LoginStep("Stay Signed In (No)", StepAction.CLICK, "#idBtn_Back", optional=True, expects_navigation=True),
    LoginStep("Wait for Form Page Ready", StepAction.WAIT, "input[aria-label='Project Task']"),
)

DEFAULT_FIELDS: tuple[FieldDefinition, ...] = (
    FieldDefinition("project_code", "Project", "input[aria-label='Project Task']"),
    FieldDefinition("date", "Date", "input[placeholder='mm/dd/yyyy']"),
    FieldDefinition("hours", "Hours", "input[aria-label='Hours']"),
    FieldDefinition("task_description", "Task Description", "role=textbox[name='Task Description']"),
    FieldDefinition("tool", "Tool", "input[aria-label*='Tool']", optional=True),
    FieldDefinition("detail_code", "Detail Charge Code", "input[aria-label='Detail Charge Code']", optional=True),
)

DEFAULT_FIELD_ORDER: tuple[str, ...] = (
    "project_code",
    "date",
    "hours",
    "tool",
    "task_description",
    "detail_code",
)


@dataclass(frozen=True)
class FormSelectors:
    """
    Everything the automation needs to know about the vendor's login and form pages.

    The vendor can change its markup at any time; keep every selector and text hook here.
    """

    login_steps: tuple[LoginStep, ...] = DEFAULT_LOGIN_STEPS
    fields: tuple[FieldDefinition, ...] = DEFAULT_FIELDS
    field_order: tuple[str, ...] = DEFAULT_FIELD_ORDER

    # Type-ahead single-selects: typing filters the list, ArrowDown + Enter commits the first match.
    dropdown_labels: frozenset[str] = field(
        default_factory=lambda: frozenset({"Project", "Tool", "Detail Charge Code"})
    )

    submit_fallback_selectors: tuple[str, ...] = (
        "button[data-client-id='form_submit_btn']",
        "button:has-text('Submit')",
        "button:has-text('Save')",
        "button:has-text('Send')",
        "input[type='submit']",
        "button[type='submit']",
        "button.submit",
        "button[aria-label*='submit']",
        "button[aria-label*='save']",
        "button[title*='submit']",
        "button[title*='save']",
    )

    # Post-submit verification, checked in this order.
    success_url_fragments: tuple[str, ...] = (
        "forms.smartsheet.com/api/submit",
        "/confirmation",
        "submissionId=",
        "/thank-you",
    )
    success_text_fragments: tuple[str, ...] = (
        "submissionId",
        "confirmation",
        "success! we've captured your submission",
        "form submitted successfully",
        "thank you for your submission",
    )
    success_css_hooks: tuple[str, ...] = (
        ".submission-success",
        ".form-success",
        "[data-submission-status='success']",
        ".confirmation-message",
        ".success-message",
    )

    def field_by_key(self) -> dict[str, FieldDefinition]:
        return {f.key: f for f in self.fields}

    def is_dropdown(self, f: FieldDefinition) -> bool:
        return f.label in self.dropdown_labels
