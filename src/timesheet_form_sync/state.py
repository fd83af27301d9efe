from __future__ import annotations

import logging
import shutil
import sqlite3
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Mapping, Optional

from .models import Credentials, LifecycleStatus, TimesheetRow
from .util.times import format_hhmm


logger = logging.getLogger(__name__)

_ROW_COLUMNS = (
    "id, entry_date, time_in, time_out, project, tool, charge_code, task_description, "
    "status, submitting_started_at, submitted_at, last_error"
)

# Rows that violate the quarter-hour/ordering rules are never claimed, even if an older schema let them in.
_VALID_SPAN_SQL = "time_out > time_in AND time_in % 15 = 0 AND time_out % 15 = 0"

INTERRUPTED_MESSAGE = "Submission was interrupted before it finished; reset to draft to retry."
UNREPORTED_MESSAGE = "Submission outcome was not reported for this row."


def _utc_iso(ts: Optional[datetime] = None) -> str:
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="seconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class StateStore:
    """
    Durable store for timesheet rows, service credentials and run history.

    Every lifecycle transition that touches more than one row runs in a single transaction, so a
    concurrent reader sees a claimed batch either entirely or not at all.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # SQLite online backup API gives a consistent snapshot even with WAL.
        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timesheet (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              entry_date TEXT NOT NULL,
              time_in INTEGER NOT NULL,
              time_out INTEGER NOT NULL,
              project TEXT NOT NULL,
              tool TEXT,
              charge_code TEXT,
              task_description TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'draft'
                CHECK (status IN ('draft', 'submitting', 'complete', 'failed')),
              claim_token TEXT,
              submitting_started_at TEXT,
              submitted_at TEXT,
              last_error TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              CHECK (time_out > time_in),
              CHECK (time_in % 15 = 0 AND time_out % 15 = 0)
            );
            """
        )
        self._conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_timesheet_natural_key
              ON timesheet(entry_date, time_in, project, task_description);
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_timesheet_status ON timesheet(status);")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
              service TEXT PRIMARY KEY,
              email TEXT NOT NULL,
              password TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._apply_light_migrations()
        self._conn.commit()

    def _apply_light_migrations(self) -> None:
        # Early databases predate claim tokens and per-row error text.
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(timesheet);").fetchall()}
        if "claim_token" not in cols:
            self._conn.execute("ALTER TABLE timesheet ADD COLUMN claim_token TEXT;")
        if "last_error" not in cols:
            self._conn.execute("ALTER TABLE timesheet ADD COLUMN last_error TEXT;")

    # ---- rows -------------------------------------------------------------------------------

    def _row_from_db(self, r: sqlite3.Row) -> TimesheetRow:
        return TimesheetRow(
            id=int(r["id"]),
            date=date.fromisoformat(r["entry_date"]),
            time_in=format_hhmm(int(r["time_in"])),
            time_out=format_hhmm(int(r["time_out"])),
            project=r["project"],
            tool=r["tool"],
            charge_code=r["charge_code"],
            task_description=r["task_description"],
            status=LifecycleStatus(r["status"]),
            submitting_started_at=_parse_ts(r["submitting_started_at"]),
            submitted_at=_parse_ts(r["submitted_at"]),
            last_error=r["last_error"],
        )

    def _select_rows(self, where: str = "", params: Iterable[object] = ()) -> list[TimesheetRow]:
        sql = f"SELECT {_ROW_COLUMNS} FROM timesheet {where} ORDER BY entry_date, time_in, id;"
        return [self._row_from_db(r) for r in self._conn.execute(sql, tuple(params)).fetchall()]

    def add_row(self, row: TimesheetRow) -> TimesheetRow:
        """
        Insert a new draft. Re-adding the same (date, time in, project, description) returns the stored row.
        """
        now = _utc_iso()
        cur = self._conn.execute(
            """
            INSERT INTO timesheet(
              entry_date, time_in, time_out, project, tool, charge_code, task_description,
              status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?)
            ON CONFLICT(entry_date, time_in, project, task_description) DO NOTHING;
            """,
            (
                row.date.isoformat(),
                row.time_in_minutes,
                row.time_out_minutes,
                row.project,
                row.tool,
                row.charge_code,
                row.task_description,
                now,
                now,
            ),
        )
        self._conn.commit()

        if cur.rowcount:
            stored = self.get_row(int(cur.lastrowid))
        else:
            logger.info(
                "Duplicate timesheet entry ignored (date=%s time_in=%s project=%s)",
                row.date.isoformat(),
                row.time_in,
                row.project,
            )
            found = self._select_rows(
                "WHERE entry_date = ? AND time_in = ? AND project = ? AND task_description = ?",
                (row.date.isoformat(), row.time_in_minutes, row.project, row.task_description),
            )
            stored = found[0] if found else None

        if stored is None:
            raise RuntimeError("Timesheet row vanished right after insert")
        return stored

    def get_row(self, row_id: int) -> Optional[TimesheetRow]:
        rows = self._select_rows("WHERE id = ?", (row_id,))
        return rows[0] if rows else None

    def list_rows(self, status: Optional[LifecycleStatus] = None) -> list[TimesheetRow]:
        if status is None:
            return self._select_rows()
        return self._select_rows("WHERE status = ?", (LifecycleStatus(status).value,))

    def count_by_status(self) -> dict[LifecycleStatus, int]:
        counts = {s: 0 for s in LifecycleStatus}
        for r in self._conn.execute("SELECT status, COUNT(*) AS n FROM timesheet GROUP BY status;").fetchall():
            counts[LifecycleStatus(r["status"])] = int(r["n"])
        return counts

    def delete_draft(self, row_id: int) -> bool:
        """
        Only drafts can be deleted; submitted history is kept.
        """
        cur = self._conn.execute("DELETE FROM timesheet WHERE id = ? AND status = 'draft';", (row_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # ---- lifecycle transitions --------------------------------------------------------------

    def claim_drafts(self, *, now: Optional[datetime] = None) -> tuple[str, list[TimesheetRow]]:
        """
        Atomically move every valid draft to `submitting` under a fresh claim token.

        Returns the token and the claimed rows, re-read from the database in (date, time in) order.
        A second caller racing this one finds no drafts left to claim.
        """
        token = uuid.uuid4().hex
        stamp = _utc_iso(now)
        with self._conn:
            cur = self._conn.execute(
                f"""
                UPDATE timesheet
                SET status = 'submitting',
                    claim_token = ?,
                    submitting_started_at = ?,
                    last_error = NULL,
                    updated_at = ?
                WHERE status = 'draft' AND {_VALID_SPAN_SQL};
                """,
                (token, stamp, stamp),
            )
        logger.debug("Claimed %d draft rows (claim_token=%s)", cur.rowcount, token)
        rows = self._select_rows("WHERE claim_token = ? AND status = 'submitting'", (token,))
        return token, rows

    def finalize_claim(
        self,
        claim_token: str,
        *,
        completed_ids: Iterable[int],
        errors: Optional[Mapping[int, str]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[int, int]:
        """
        Settle every row held by `claim_token`: completed ids become `complete`, everything else
        still `submitting` under the token becomes `failed`. Returns (completed, failed) counts.
        """
        stamp = _utc_iso(now)
        done = sorted({int(i) for i in completed_ids})
        errors = dict(errors or {})
        with self._conn:
            completed = 0
            if done:
                placeholders = ",".join("?" for _ in done)
                cur = self._conn.execute(
                    f"""
                    UPDATE timesheet
                    SET status = 'complete',
                        submitted_at = ?,
                        submitting_started_at = NULL,
                        claim_token = NULL,
                        last_error = NULL,
                        updated_at = ?
                    WHERE claim_token = ? AND status = 'submitting' AND id IN ({placeholders});
                    """,
                    (stamp, stamp, claim_token, *done),
                )
                completed = cur.rowcount

            failed = 0
            for row_id, message in errors.items():
                cur = self._conn.execute(
                    """
                    UPDATE timesheet
                    SET status = 'failed',
                        last_error = ?,
                        submitting_started_at = NULL,
                        claim_token = NULL,
                        updated_at = ?
                    WHERE claim_token = ? AND status = 'submitting' AND id = ?;
                    """,
                    (message, stamp, claim_token, int(row_id)),
                )
                failed += cur.rowcount

            # Nothing held by this claim may stay in `submitting`.
            cur = self._conn.execute(
                """
                UPDATE timesheet
                SET status = 'failed',
                    last_error = COALESCE(last_error, ?),
                    submitting_started_at = NULL,
                    claim_token = NULL,
                    updated_at = ?
                WHERE claim_token = ? AND status = 'submitting';
                """,
                (UNREPORTED_MESSAGE, stamp, claim_token),
            )
            failed += cur.rowcount

        logger.info("Finalized claim %s: %d complete, %d failed", claim_token, completed, failed)
        return completed, failed

    def fail_stale_submissions(self, *, cutoff: datetime) -> int:
        """
        Force rows stuck in `submitting` since before `cutoff` to `failed`. Returns the number repaired.
        """
        stamp = _utc_iso()
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE timesheet
                SET status = 'failed',
                    last_error = ?,
                    submitting_started_at = NULL,
                    claim_token = NULL,
                    updated_at = ?
                WHERE status = 'submitting'
                  AND (submitting_started_at IS NULL OR submitting_started_at < ?);
                """,
                (INTERRUPTED_MESSAGE, stamp, _utc_iso(cutoff)),
            )
        return cur.rowcount

    def reset_failed_to_draft(self) -> int:
        stamp = _utc_iso()
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE timesheet
                SET status = 'draft',
                    submitting_started_at = NULL,
                    submitted_at = NULL,
                    claim_token = NULL,
                    last_error = NULL,
                    updated_at = ?
                WHERE status = 'failed';
                """,
                (stamp,),
            )
        return cur.rowcount

    # ---- credentials ------------------------------------------------------------------------

    def store_credentials(self, service: str, *, email: str, password: str) -> None:
        now = _utc_iso()
        self._conn.execute(
            """
            INSERT INTO credentials(service, email, password, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(service) DO UPDATE SET
              email = excluded.email,
              password = excluded.password,
              updated_at = excluded.updated_at;
            """,
            (service, email, password, now, now),
        )
        self._conn.commit()

    def get_credentials(self, service: str) -> Optional[Credentials]:
        row = self._conn.execute(
            "SELECT email, password FROM credentials WHERE service = ?;",
            (service,),
        ).fetchone()
        if not row:
            return None
        return Credentials(email=row["email"], password=row["password"])

    def delete_credentials(self, service: str) -> bool:
        cur = self._conn.execute("DELETE FROM credentials WHERE service = ?;", (service,))
        self._conn.commit()
        return cur.rowcount > 0

    # ---- runs -------------------------------------------------------------------------------

    def record_run_start(self) -> int:
        now = _utc_iso()
        cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (now,))
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        now = _utc_iso()
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
            (now, 1 if ok else 0, message, run_id),
        )
        self._conn.commit()

        # Only snapshot after a clean run.
        if ok:
            self._maybe_backup(if_missing=False)
