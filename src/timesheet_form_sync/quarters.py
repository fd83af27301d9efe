from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence, Union

from .errors import QuarterConfigError
from .models import QuarterDefinition, TimesheetRow
from .util.dates import try_parse_entry_date


logger = logging.getLogger(__name__)

FORM_BASE_URL = "https://app.smartsheet.com"

# Known vendor form instances. Each quarter gets a fresh form; add the next one here (or in config.yaml)
# before its start date.
DEFAULT_QUARTERS: tuple[dict, ...] = (
    {
        "id": "Q3-2025",
        "name": "Q3 2025",
        "start_date": "2025-07-01",
        "end_date": "2025-09-30",
        "form_url": f"{FORM_BASE_URL}/b/form/0197cbae7daf72bdb96b3395b500d414",
    },
    {
        "id": "Q4-2025",
        "name": "Q4 2025",
        "start_date": "2025-10-01",
        "end_date": "2025-12-31",
        "form_url": f"{FORM_BASE_URL}/b/form/0199fabee6497e60abb6030c48d84585",
    },
    {
        "id": "Q1-2026",
        "name": "Q1 2026",
        "start_date": "2026-01-01",
        "end_date": "2026-03-31",
        "form_url": f"{FORM_BASE_URL}/b/form/019b5b17a03a79ac9437e45996f49f4f",
    },
)

MOCK_QUARTER_ID = "MOCK"


def default_quarters() -> list[QuarterDefinition]:
    return [QuarterDefinition.model_validate(q) for q in DEFAULT_QUARTERS]


def validate_quarter_set(quarters: Sequence[QuarterDefinition]) -> None:
    """
    Quarters must be listed in order, back to back: `end[i] + 1 day == start[i + 1]`.

    Overlaps, gaps, and reused ids/form ids are configuration errors.
    """
    if not quarters:
        raise QuarterConfigError("At least one quarter must be configured")

    seen_ids: set[str] = set()
    seen_forms: dict[str, str] = {}
    for q in quarters:
        if q.id in seen_ids:
            raise QuarterConfigError(f"Duplicate quarter id: {q.id}")
        seen_ids.add(q.id)
        if q.form_id in seen_forms:
            raise QuarterConfigError(
                f"Quarters {seen_forms[q.form_id]} and {q.id} share form id {q.form_id}"
            )
        seen_forms[q.form_id] = q.id

    for prev, nxt in zip(quarters, quarters[1:]):
        expected = prev.end_date + timedelta(days=1)
        if nxt.start_date < expected:
            raise QuarterConfigError(
                f"Quarter {nxt.id} starts {nxt.start_date} but {prev.id} runs through {prev.end_date} (overlap)"
            )
        if nxt.start_date > expected:
            raise QuarterConfigError(
                f"Gap between {prev.id} (ends {prev.end_date}) and {nxt.id} (starts {nxt.start_date})"
            )


def resolve_quarter_for_date(
    value: Union[str, date, None],
    quarters: Sequence[QuarterDefinition],
) -> Optional[QuarterDefinition]:
    d = try_parse_entry_date(value)
    if d is None:
        return None
    for q in quarters:
        if q.contains(d):
            return q
    return None


def validate_quarter_availability(
    value: Union[str, date, None],
    quarters: Sequence[QuarterDefinition],
) -> Optional[str]:
    """
    Return None when the date routes to a quarter, otherwise a message listing every available window.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return "Please enter a date"
    if resolve_quarter_for_date(value, quarters) is not None:
        return None
    windows = " or ".join(q.window_label for q in quarters)
    return f"Date must be in {windows}"


def group_rows_by_quarter(
    rows: Iterable[TimesheetRow],
    quarters: Sequence[QuarterDefinition],
) -> tuple[list[tuple[QuarterDefinition, list[TimesheetRow]]], list[TimesheetRow]]:
    """
    Split rows into per-quarter batches (in quarter order, rows keep their input order) plus the
    rows that fall outside every window.
    """
    buckets: dict[str, list[TimesheetRow]] = {}
    unroutable: list[TimesheetRow] = []
    for row in rows:
        q = resolve_quarter_for_date(row.date, quarters)
        if q is None:
            unroutable.append(row)
            continue
        buckets.setdefault(q.id, []).append(row)

    groups = [(q, buckets[q.id]) for q in quarters if q.id in buckets]
    return groups, unroutable


def get_quarter_by_id(quarter_id: str, quarters: Sequence[QuarterDefinition]) -> Optional[QuarterDefinition]:
    for q in quarters:
        if q.id == quarter_id:
            return q
    return None


def current_quarter(
    quarters: Sequence[QuarterDefinition],
    today: Optional[date] = None,
) -> Optional[QuarterDefinition]:
    return resolve_quarter_for_date(today or date.today(), quarters)


def mock_quarter(base_url: str, form_id: str) -> QuarterDefinition:
    """
    A single quarter that accepts any date and points at a local stand-in form.
    """
    logger.warning("Mock mode active: all dates route to %s (form_id=%s)", base_url, form_id)
    return QuarterDefinition(
        id=MOCK_QUARTER_ID,
        name="Mock",
        start_date=date.min,
        end_date=date.max,
        form_url=f"{base_url.rstrip('/')}/b/form/{form_id}",
        form_id=form_id,
    )
