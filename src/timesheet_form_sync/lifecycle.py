from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Union

from .export import export_completed_csv
from .models import (
    ExportResult,
    FailureKind,
    FormTarget,
    LifecycleStatus,
    QuarterDefinition,
    SubmissionSummary,
    TimesheetRow,
)
from .portal.orchestrator import SubmissionOrchestrator
from .quarters import (
    group_rows_by_quarter,
    resolve_quarter_for_date,
    validate_quarter_availability,
    validate_quarter_set,
)
from .state import StateStore


logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[], SubmissionOrchestrator]
SessionValidator = Callable[[str], Optional[str]]

DEFAULT_STALE_AFTER = timedelta(minutes=30)

NOTHING_TO_SUBMIT_MESSAGE = "No pending timesheet entries to submit"
INVALID_SESSION_MESSAGE = "Session is invalid or expired. Please log in again."


def credentials_missing_message(service_name: str) -> str:
    return (
        f"{service_name.capitalize()} credentials not found. "
        f"Please add your credentials before submitting (set-credentials --service {service_name})."
    )


class SubmissionLifecycleManager:
    """
    Owns the persisted Draft -> Submitting -> Complete/Failed state machine.

    Rows are claimed in the store before any browser work starts, and every claimed row is settled
    (complete or failed) before `submit_pending_timesheet` returns or raises.
    """

    def __init__(
        self,
        store: StateStore,
        orchestrator_factory: OrchestratorFactory,
        *,
        quarters: Sequence[QuarterDefinition],
        service_name: str = "smartsheet",
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        session_validator: Optional[SessionValidator] = None,
    ) -> None:
        validate_quarter_set(quarters)
        self.store = store
        self.orchestrator_factory = orchestrator_factory
        self.quarters = list(quarters)
        self.service_name = service_name
        self.stale_after = stale_after
        self.session_validator = session_validator
        self._recovered = False

    def recover_stale_submissions(self, now: Optional[datetime] = None) -> int:
        """
        Fail rows left in `submitting` longer than the staleness threshold (an interrupted earlier run).
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.stale_after
        repaired = self.store.fail_stale_submissions(cutoff=cutoff)
        self._recovered = True
        if repaired:
            logger.warning(
                "Recovered %d stale submission(s) stuck since before %s; marked failed.",
                repaired,
                cutoff.isoformat(timespec="seconds"),
            )
        return repaired

    def submit_pending_timesheet(
        self,
        service_name: Optional[str] = None,
        base_url: Optional[str] = None,
        form_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SubmissionSummary:
        if bool(base_url) != bool(form_id):
            raise ValueError("base_url and form_id must be given together")
        if not self._recovered:
            self.recover_stale_submissions(now=now)

        service = service_name or self.service_name
        credentials = self.store.get_credentials(service)
        if credentials is None:
            msg = credentials_missing_message(service)
            logger.error("%s", msg)
            return SubmissionSummary(error_summary=msg)

        claim_token, rows = self.store.claim_drafts(now=now)
        if not rows:
            logger.info("%s", NOTHING_TO_SUBMIT_MESSAGE)
            return SubmissionSummary(error_summary=NOTHING_TO_SUBMIT_MESSAGE)

        logger.info("Claimed %d row(s) for submission (claim_token=%s)", len(rows), claim_token)
        run_id = self.store.record_run_start()

        completed_ids: list[int] = []
        errors: dict[int, str] = {}
        kinds: list[FailureKind] = []
        ok = False
        try:
            for target, batch in self._route(rows, base_url, form_id, errors):
                result = self.orchestrator_factory().run_automation(batch, credentials, target)
                for idx in result.filled_indices:
                    completed_ids.append(int(batch[idx].id))
                for idx, msg in result.errors:
                    errors[int(batch[idx].id)] = msg
                if result.failure_kind is not None:
                    kinds.append(result.failure_kind)
            ok = True
        finally:
            completed, failed = self.store.finalize_claim(
                claim_token,
                completed_ids=completed_ids,
                errors=errors,
            )
            self.store.record_run_finish(
                run_id,
                ok=ok and failed == 0,
                message=f"{completed} complete, {failed} failed",
            )

        summary = SubmissionSummary(
            submitted_ids=sorted(completed_ids),
            success_count=completed,
            failure_count=failed,
            error_summary=self._error_summary(rows, errors, kinds, failed),
        )
        if summary.error_summary:
            logger.warning("Submission finished with failures: %s", summary.error_summary)
        else:
            summary.message = f"Submitted {completed} timesheet entr{'y' if completed == 1 else 'ies'}"
            logger.info("%s", summary.message)
        return summary

    def _route(
        self,
        rows: list[TimesheetRow],
        base_url: Optional[str],
        form_id: Optional[str],
        errors: dict[int, str],
    ) -> list[tuple[FormTarget, list[TimesheetRow]]]:
        if base_url and form_id:
            return [(FormTarget(base_url=base_url, form_id=form_id), rows)]

        groups, unroutable = group_rows_by_quarter(rows, self.quarters)
        for row in unroutable:
            errors[int(row.id)] = validate_quarter_availability(row.date, self.quarters) or "No quarter for date"
            logger.warning("Row id=%s (date=%s) is outside every configured quarter", row.id, row.date)
        return [(FormTarget.for_quarter(q), batch) for q, batch in groups]

    def _error_summary(
        self,
        rows: list[TimesheetRow],
        errors: dict[int, str],
        kinds: list[FailureKind],
        failed: int,
    ) -> Optional[str]:
        if not failed:
            return None
        # A whole-run failure explains every row, so surface its message as-is.
        for kind in (FailureKind.START, FailureKind.LOGIN):
            if kind in kinds:
                for row in rows:
                    msg = errors.get(int(row.id))
                    if msg:
                        return msg
        first = next((errors[int(r.id)] for r in rows if int(r.id) in errors), None)
        summary = f"{failed} of {len(rows)} rows failed"
        return f"{summary}: {first}" if first else summary

    def reset_failed_to_draft(self) -> int:
        count = self.store.reset_failed_to_draft()
        logger.info("Reset %d failed row(s) to draft", count)
        return count

    def export_completed_timesheet_csv(
        self,
        token: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> ExportResult:
        if self.session_validator is not None:
            user = self.session_validator(token or "") if token else None
            if not user:
                return ExportResult(error=INVALID_SESSION_MESSAGE)
            logger.info("Exporting completed entries for %s", user)

        # Newest work first.
        rows = sorted(
            self.store.list_rows(LifecycleStatus.COMPLETE),
            key=lambda r: (r.date, r.time_in_minutes),
            reverse=True,
        )
        result = export_completed_csv(rows, today=today)
        if result.error:
            logger.info("%s", result.error)
        else:
            logger.info("Exported %d completed row(s) to %s", result.row_count, result.suggested_filename)
        return result

    def resolve_quarter_for_date(self, value: Union[str, date, None]) -> Optional[QuarterDefinition]:
        return resolve_quarter_for_date(value, self.quarters)
