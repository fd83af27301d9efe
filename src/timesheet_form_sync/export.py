from __future__ import annotations

import csv
import io
import logging
from datetime import date
from typing import Iterable, Optional

from pydantic import ValidationError

from .models import ExportResult, TimesheetRow


logger = logging.getLogger(__name__)

EXPORT_HEADERS: tuple[str, ...] = (
    "Date",
    "Start Time",
    "End Time",
    "Hours",
    "Project",
    "Tool",
    "Charge Code",
    "Task Description",
    "Status",
    "Submitted At",
)

NO_ROWS_MESSAGE = "No submitted timesheet entries found to export"


def export_filename(today: Optional[date] = None) -> str:
    return f"timesheet_export_{(today or date.today()).isoformat()}.csv"


def rows_to_csv(rows: Iterable[TimesheetRow]) -> str:
    """
    Render rows with minimal quoting: only fields containing a comma, quote or newline are quoted,
    and embedded quotes are doubled.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for row in rows:
        writer.writerow(
            [
                row.date.isoformat(),
                row.time_in,
                row.time_out,
                f"{row.hours:.2f}",
                row.project,
                row.tool or "",
                row.charge_code or "",
                row.task_description,
                row.status.value.capitalize(),
                row.submitted_at.isoformat() if row.submitted_at else "",
            ]
        )
    return buf.getvalue()


def export_completed_csv(rows: Iterable[TimesheetRow], *, today: Optional[date] = None) -> ExportResult:
    rows = list(rows)
    if not rows:
        return ExportResult(error=NO_ROWS_MESSAGE)
    return ExportResult(
        csv_text=rows_to_csv(rows),
        row_count=len(rows),
        suggested_filename=export_filename(today),
    )


def parse_draft_csv(text: str) -> tuple[list[TimesheetRow], list[str]]:
    """
    Read draft rows from CSV using the export's column names (Hours/Status/Submitted At are ignored).

    Returns the valid rows plus one message per rejected line.
    """
    reader = csv.DictReader(io.StringIO(text))
    missing = {"Date", "Start Time", "End Time", "Project", "Task Description"} - set(reader.fieldnames or [])
    if missing:
        raise ValueError(f"CSV is missing columns: {', '.join(sorted(missing))}")

    rows: list[TimesheetRow] = []
    problems: list[str] = []
    for line_no, rec in enumerate(reader, start=2):
        try:
            rows.append(
                TimesheetRow(
                    date=(rec.get("Date") or "").strip(),
                    time_in=(rec.get("Start Time") or "").strip(),
                    time_out=(rec.get("End Time") or "").strip(),
                    project=rec.get("Project") or "",
                    tool=rec.get("Tool") or None,
                    charge_code=rec.get("Charge Code") or None,
                    task_description=rec.get("Task Description") or "",
                )
            )
        except (ValidationError, ValueError) as e:
            first = e.errors()[0]["msg"] if isinstance(e, ValidationError) else str(e)
            problems.append(f"line {line_no}: {first}")
    if problems:
        logger.warning("Rejected %d CSV lines", len(problems))
    return rows, problems
