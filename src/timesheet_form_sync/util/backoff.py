from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, model_validator


logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffPolicy(BaseModel):
    """
    Every bounded wait the browser automation uses, in one place.

    The vendor form re-renders asynchronously, so most interactions are followed by a short fixed settle.
    The initial page load is the only step that is retried.
    """

    element_timeout_ms: int = 10_000
    page_load_timeout_ms: int = 30_000
    page_load_retries: int = 3
    page_load_backoff_ms: int = 2_000

    inter_step_delay_ms: int = 250
    navigation_settle_ms: int = 1_500
    form_settle_ms: int = 1_000
    inter_field_delay_ms: int = 200
    dropdown_key_delay_ms: int = 150
    submit_settle_ms: int = 2_000
    submit_verify_timeout_ms: int = 3_000

    @model_validator(mode="after")
    def _validate_bounds(self) -> "BackoffPolicy":
        if self.page_load_retries < 1:
            raise ValueError("timing.page_load_retries must be at least 1")
        for name, value in self.model_dump().items():
            if int(value) < 0:
                raise ValueError(f"timing.{name} must not be negative")
        return self


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    pause: Callable[[int], None],
    delay_ms: int,
    description: str = "operation",
) -> T:
    """
    Call `fn` up to `attempts` times, pausing `delay_ms` between failures.

    `pause` receives milliseconds; callers pass the page's own wait so the delay is observable in tests.
    The last exception is re-raised once attempts are exhausted.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_exc = e
            if attempt >= attempts:
                break
            logger.warning(
                "%s failed (attempt %d/%d); retrying in %d ms. (%s)",
                description,
                attempt,
                attempts,
                delay_ms,
                e,
            )
            pause(delay_ms)
    assert last_exc is not None
    raise last_exc
