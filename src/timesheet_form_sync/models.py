from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .util.dates import parse_entry_date
from .util.times import TIME_INCREMENT_MINUTES, format_hhmm, parse_hhmm


_FORM_ID_RE = re.compile(r"/b/form/([A-Za-z0-9]+)/?$")


class LifecycleStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTING = "submitting"
    COMPLETE = "complete"
    FAILED = "failed"


class VerificationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    ERROR = "error"


class FailureKind(str, Enum):
    """
    Which stage of an automation run failed for every row at once.
    """

    START = "start"
    LOGIN = "login"
    NAVIGATION = "navigation"
    SUBMIT = "submit"
    VERIFICATION = "verification"


class TimesheetRow(BaseModel):
    id: Optional[int] = None
    date: dt.date
    time_in: str
    time_out: str
    project: str
    tool: Optional[str] = None
    charge_code: Optional[str] = None
    task_description: str

    status: LifecycleStatus = LifecycleStatus.DRAFT
    submitting_started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_entry_date(value)
        return value

    @field_validator("tool", "charge_code", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _validate_span(self) -> "TimesheetRow":
        start = parse_hhmm(self.time_in)
        end = parse_hhmm(self.time_out)
        if start % TIME_INCREMENT_MINUTES or end % TIME_INCREMENT_MINUTES:
            raise ValueError(
                f"Times must be in {TIME_INCREMENT_MINUTES}-minute increments (got {self.time_in}-{self.time_out})"
            )
        if end <= start:
            raise ValueError(f"Time out ({self.time_out}) must be after time in ({self.time_in})")

        project = (self.project or "").strip()
        task = (self.task_description or "").strip()
        if not project:
            raise ValueError("project is required")
        if not task:
            raise ValueError("task_description is required")

        # Normalize "9:00" -> "09:00" so stored and displayed values agree.
        self.time_in = format_hhmm(start)
        self.time_out = format_hhmm(end)
        self.project = project
        self.task_description = task
        if self.tool is not None:
            self.tool = self.tool.strip()
        if self.charge_code is not None:
            self.charge_code = self.charge_code.strip()
        return self

    @property
    def time_in_minutes(self) -> int:
        return parse_hhmm(self.time_in)

    @property
    def time_out_minutes(self) -> int:
        return parse_hhmm(self.time_out)

    @property
    def hours(self) -> float:
        return (self.time_out_minutes - self.time_in_minutes) / 60.0

    def sort_key(self) -> tuple[date, int, int]:
        return (self.date, self.time_in_minutes, self.id or 0)


class QuarterDefinition(BaseModel):
    """
    One calendar window routed to one vendor form instance. `start_date`/`end_date` are inclusive.
    """

    id: str
    name: str
    start_date: date
    end_date: date
    form_url: str
    form_id: str = ""

    @model_validator(mode="after")
    def _fill_form_id(self) -> "QuarterDefinition":
        url = (self.form_url or "").strip().rstrip("/")
        if not url:
            raise ValueError(f"quarter {self.id}: form_url is required")

        form_id = (self.form_id or "").strip()
        if not form_id:
            m = _FORM_ID_RE.search(url)
            if not m:
                raise ValueError(f"quarter {self.id}: could not extract a form id from {url!r}")
            form_id = m.group(1)

        if self.end_date < self.start_date:
            raise ValueError(f"quarter {self.id}: end_date {self.end_date} is before start_date {self.start_date}")

        self.form_url = url
        self.form_id = form_id
        return self

    @property
    def base_url(self) -> str:
        suffix = f"/b/form/{self.form_id}"
        if self.form_url.endswith(suffix):
            return self.form_url[: -len(suffix)]
        return self.form_url

    @property
    def window_label(self) -> str:
        return f"{self.name} ({self.start_date:%m/%d}-{self.end_date:%m/%d})"

    def contains(self, d: date) -> bool:
        return self.start_date <= d <= self.end_date


@dataclass(frozen=True)
class FormTarget:
    base_url: str
    form_id: str
    quarter_id: Optional[str] = None

    @property
    def form_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.endswith(self.form_id):
            return base
        return f"{base}/b/form/{self.form_id}"

    @classmethod
    def for_quarter(cls, quarter: QuarterDefinition) -> "FormTarget":
        return cls(base_url=quarter.base_url, form_id=quarter.form_id, quarter_id=quarter.id)


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str = field(repr=False)


@dataclass
class AutomationResult:
    """
    Outcome of one orchestrator run. Indices refer to positions in the row list handed to the run.
    """

    total: int
    filled_indices: list[int] = field(default_factory=list)
    errors: list[tuple[int, str]] = field(default_factory=list)
    verification: Optional[VerificationOutcome] = None
    failure_kind: Optional[FailureKind] = None

    @property
    def success(self) -> bool:
        return bool(self.filled_indices)

    @property
    def success_count(self) -> int:
        return len(self.filled_indices)

    @property
    def failure_count(self) -> int:
        return self.total - len(self.filled_indices)

    def fail_all(self, message: str, kind: FailureKind) -> None:
        """
        Demote every row (filled or not) to failed with the same root cause.
        """
        already = {idx for idx, _ in self.errors}
        for idx in range(self.total):
            if idx not in already:
                self.errors.append((idx, message))
                already.add(idx)
        self.filled_indices = []
        self.errors.sort(key=lambda e: e[0])
        self.failure_kind = kind

    def error_for(self, index: int) -> Optional[str]:
        for idx, msg in self.errors:
            if idx == index:
                return msg
        return None


class SubmissionSummary(BaseModel):
    submitted_ids: list[int] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    error_summary: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.failure_count == 0 and self.error_summary is None


class ExportResult(BaseModel):
    csv_text: Optional[str] = None
    row_count: int = 0
    suggested_filename: Optional[str] = None
    error: Optional[str] = None
