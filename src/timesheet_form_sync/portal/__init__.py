from .login import LoginInterpreter, LoginStepError, PageLoadError
from .orchestrator import AutomationStartError, OrchestratorState, SubmissionOrchestrator
from .page import BrowserSession, ElementNotFoundError, PageDriver, PlaywrightBrowserSession
from .selectors import FieldDefinition, FormSelectors, LoginStep, StepAction
from .webform import FieldFillError, SubmitButtonNotFoundError, WebformFiller

__all__ = [
    "AutomationStartError",
    "BrowserSession",
    "ElementNotFoundError",
    "FieldDefinition",
    "FieldFillError",
    "FormSelectors",
    "LoginInterpreter",
    "LoginStep",
    "LoginStepError",
    "OrchestratorState",
    "PageDriver",
    "PageLoadError",
    "PlaywrightBrowserSession",
    "StepAction",
    "SubmissionOrchestrator",
    "SubmitButtonNotFoundError",
    "WebformFiller",
]
