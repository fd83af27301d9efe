from __future__ import annotations

import logging
from typing import Optional, Sequence

from ..errors import ConfigurationError
from ..logging_config import redact
from ..models import Credentials
from ..util.backoff import BackoffPolicy, retry_call
from .page import PageDriver, require_element
from .selectors import DEFAULT_LOGIN_STEPS, LoginStep, StepAction


logger = logging.getLogger(__name__)


class PageLoadError(RuntimeError):
    """
    Raised when the login page could not be loaded within the retry budget.
    """

    def __init__(self, url: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"Could not navigate to {url} after {attempts} attempts: {cause}")
        self.url = url
        self.attempts = attempts
        self.cause = cause


class LoginStepError(RuntimeError):
    """
    Raised when a required login step fails. Carries the step name and the underlying cause.
    """

    def __init__(self, step_name: str, cause: BaseException) -> None:
        super().__init__(f"Login step '{step_name}' failed: {cause}")
        self.step_name = step_name
        self.cause = cause


class WaitTimeoutError(TimeoutError):
    def __init__(self, selector: str, timeout_ms: int) -> None:
        super().__init__(f"Timed out after {timeout_ms} ms waiting for {selector}")
        self.selector = selector


def credential_value(credentials: Credentials, value_key: Optional[str]) -> str:
    if value_key == "email":
        return credentials.email
    if value_key == "password":
        return credentials.password
    raise ConfigurationError(f"Unknown login value key: {value_key!r}")


class LoginInterpreter:
    """
    Runs the login step sequence front to back against one page.

    Optional steps may fail without stopping the login; a required step failing aborts it.
    """

    def __init__(
        self,
        steps: Sequence[LoginStep] = DEFAULT_LOGIN_STEPS,
        *,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        self.steps = tuple(steps)
        self.backoff = backoff or BackoffPolicy()
        for step in self.steps:
            if step.action == StepAction.INPUT and step.value_key not in {"email", "password"}:
                raise ConfigurationError(f"Login step '{step.name}' has unknown value key {step.value_key!r}")

    def run(self, page: PageDriver, credentials: Credentials, url: str) -> None:
        self._load(page, url)

        total = len(self.steps)
        for idx, step in enumerate(self.steps, start=1):
            try:
                self._execute(page, step, credentials)
                logger.debug("Login step %d/%d ok: %s", idx, total, step.name)
            except ConfigurationError:
                raise
            except Exception as e:
                if step.optional:
                    logger.info("Optional login step %d/%d skipped: %s (%s)", idx, total, step.name, e)
                else:
                    logger.error("Login step %d/%d failed: %s (%s)", idx, total, step.name, e)
                    raise LoginStepError(step.name, e) from e
            finally:
                page.wait(self.backoff.inter_step_delay_ms)

        logger.info("Login complete (%d steps)", total)

    def _load(self, page: PageDriver, url: str) -> None:
        attempts = self.backoff.page_load_retries
        logger.info("Opening login page: %s", url)
        try:
            retry_call(
                lambda: page.navigate(url, timeout_ms=self.backoff.page_load_timeout_ms),
                attempts=attempts,
                pause=page.wait,
                delay_ms=self.backoff.page_load_backoff_ms,
                description=f"Navigation to {url}",
            )
        except Exception as e:
            raise PageLoadError(url, attempts, e) from e

    def _execute(self, page: PageDriver, step: LoginStep, credentials: Credentials) -> None:
        timeout_ms = self.backoff.element_timeout_ms

        if step.action == StepAction.WAIT:
            if not page.wait_for(step.locator, timeout_ms=timeout_ms):
                raise WaitTimeoutError(step.locator, timeout_ms)
            return

        if step.action == StepAction.INPUT:
            value = credential_value(credentials, step.value_key)
            el = require_element(page, step.locator, timeout_ms=timeout_ms)
            el.focus()
            el.fill(value)
            logger.info("Filled %s = %s", step.name, redact(value, sensitive=step.sensitive))
            return

        if step.action == StepAction.CLICK:
            el = require_element(page, step.locator, timeout_ms=timeout_ms)
            el.click()
            if step.expects_navigation:
                page.wait(self.backoff.navigation_settle_ms)
            return

        raise ConfigurationError(f"Login step '{step.name}' has unsupported action {step.action!r}")
