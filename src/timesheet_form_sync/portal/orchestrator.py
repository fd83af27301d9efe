from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Optional, Sequence

from ..models import AutomationResult, Credentials, FailureKind, FormTarget, TimesheetRow, VerificationOutcome
from ..util.backoff import BackoffPolicy
from .login import LoginInterpreter, LoginStepError, PageLoadError
from .page import BrowserSession, PageDriver
from .selectors import FormSelectors
from .webform import WebformFiller


logger = logging.getLogger(__name__)


class AutomationStartError(RuntimeError):
    """
    Raised when the browser or its page could not be started.
    """


class OrchestratorState(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    RUNNING = "running"
    CLOSED = "closed"


def _slug(text: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", text).strip("_")[:60] or "step"


class SubmissionOrchestrator:
    """
    Drives one browser session through login, form navigation, one fill per row and a single submit.

    The session is injected so tests can substitute a fake. `run_automation` always closes it.
    """

    def __init__(
        self,
        session: BrowserSession,
        *,
        selectors: Optional[FormSelectors] = None,
        backoff: Optional[BackoffPolicy] = None,
        treat_unverified_as_failure: bool = False,
        debug_dir: Optional[str] = None,
    ) -> None:
        self.session = session
        self.selectors = selectors or FormSelectors()
        self.backoff = backoff or BackoffPolicy()
        self.treat_unverified_as_failure = treat_unverified_as_failure
        self.debug_dir = debug_dir
        # Bad login step config fails here, before any browser is launched.
        self._login = LoginInterpreter(self.selectors.login_steps, backoff=self.backoff)
        self.state = OrchestratorState.NOT_STARTED
        self._page: Optional[PageDriver] = None

    def start(self) -> PageDriver:
        if self.state != OrchestratorState.NOT_STARTED:
            raise AutomationStartError(f"Orchestrator cannot start from state {self.state.value}")
        try:
            self.session.start()
            self._page = self.session.new_page()
        except Exception as e:
            raise AutomationStartError(f"Browser could not be started: {e}") from e
        self.state = OrchestratorState.STARTED
        return self._page

    def close(self) -> None:
        if self.state == OrchestratorState.CLOSED:
            return
        self.state = OrchestratorState.CLOSED
        self._page = None
        try:
            self.session.close()
        except Exception:
            logger.warning("Browser session did not close cleanly.", exc_info=True)

    def run_automation(
        self,
        rows: Sequence[TimesheetRow],
        credentials: Credentials,
        target: FormTarget,
    ) -> AutomationResult:
        result = AutomationResult(total=len(rows))
        if not rows:
            self.close()
            return result

        try:
            try:
                page = self.start()
            except AutomationStartError as e:
                logger.error("%s", e)
                result.fail_all(f"Automation could not start: {e}", FailureKind.START)
                return result

            self.state = OrchestratorState.RUNNING
            filler = WebformFiller(page, selectors=self.selectors, backoff=self.backoff)

            try:
                self._login.run(page, credentials, target.form_url)
            except (LoginStepError, PageLoadError) as e:
                self._save_debug(page, "login_failed")
                result.fail_all(f"Authentication failed: {e}", FailureKind.LOGIN)
                return result

            try:
                filler.navigate_to_form(target.base_url, target.form_id)
            except Exception as e:
                self._save_debug(page, "form_navigation_failed")
                result.fail_all(f"Could not open form {target.form_url}: {e}", FailureKind.NAVIGATION)
                return result

            for idx, row in enumerate(rows):
                try:
                    filler.fill_entry(row, idx)
                    result.filled_indices.append(idx)
                except Exception as e:
                    logger.warning("Row %d (id=%s) failed: %s", idx, row.id, e)
                    result.errors.append((idx, str(e)))
                    self._save_debug(page, f"row_{idx:02d}_failed")

            if not result.filled_indices:
                logger.error("No rows could be filled; skipping submit.")
                return result

            try:
                filler.submit_form()
            except Exception as e:
                logger.error("Form submit failed; %d filled rows are not saved. (%s)", len(result.filled_indices), e)
                self._save_debug(page, "submit_failed")
                result.fail_all(f"Form submit failed: {e}", FailureKind.SUBMIT)
                return result

            result.verification = filler.verify_submission()
            if result.verification != VerificationOutcome.CONFIRMED:
                if self.treat_unverified_as_failure:
                    self._save_debug(page, "submit_unverified")
                    result.fail_all(
                        f"Submission could not be verified ({result.verification.value})",
                        FailureKind.VERIFICATION,
                    )
                else:
                    logger.warning(
                        "Submission not confirmed (%s); treating %d rows as submitted.",
                        result.verification.value,
                        len(result.filled_indices),
                    )

            logger.info(
                "Automation finished: %d/%d rows submitted",
                result.success_count,
                result.total,
            )
            return result
        finally:
            self.close()

    def _save_debug(self, page: PageDriver, name: str) -> None:
        if not self.debug_dir:
            return
        try:
            page.save_debug(self.debug_dir, _slug(name))
        except Exception:
            logger.debug("Failed to save debug artifacts (name=%s).", name, exc_info=True)
