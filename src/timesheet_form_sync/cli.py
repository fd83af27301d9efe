from __future__ import annotations

import argparse
import getpass
import logging
import os
import time
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .config import AppConfig, load_config
from .export import parse_draft_csv
from .lifecycle import SubmissionLifecycleManager
from .logging_config import configure_logging
from .models import LifecycleStatus, TimesheetRow
from .portal.orchestrator import SubmissionOrchestrator
from .portal.page import PlaywrightBrowserSession
from .quarters import current_quarter, validate_quarter_availability
from .rules import entry_problem, normalize_entry
from .state import StateStore
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("timesheet_form_sync")


def _add_config_arg(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="timesheet_form_sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    submit = sub.add_parser("submit", help="Submit every draft row to the vendor form for its quarter")
    _add_config_arg(submit)
    submit.add_argument("--service", default="", help="Credential service name (default: submission.service_name)")
    submit.add_argument("--base-url", default="", help="Override quarter routing: form host, e.g. https://app.smartsheet.com")
    submit.add_argument("--form-id", default="", help="Override quarter routing: form id (requires --base-url)")
    submit.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    submit.add_argument("--slowmo-ms", type=int, default=None, help="Playwright slow motion in milliseconds (debug).")

    add = sub.add_parser("add-entry", help="Add a draft timesheet row")
    _add_config_arg(add)
    add.add_argument("--date", required=True, help="YYYY-MM-DD or MM/DD/YYYY")
    add.add_argument("--time-in", required=True, help="HH:MM, quarter-hour increments")
    add.add_argument("--time-out", required=True, help="HH:MM, quarter-hour increments")
    add.add_argument("--project", required=True)
    add.add_argument("--task", required=True, help="Task description")
    add.add_argument("--tool", default="")
    add.add_argument("--charge-code", default="")

    imp = sub.add_parser("import-csv", help="Add draft rows from a CSV file (same columns as export-csv)")
    _add_config_arg(imp)
    imp.add_argument("path")

    ls = sub.add_parser("list", help="List timesheet rows")
    _add_config_arg(ls)
    ls.add_argument("--status", choices=[s.value for s in LifecycleStatus], default="")

    delete = sub.add_parser("delete-draft", help="Delete a draft row by id")
    _add_config_arg(delete)
    delete.add_argument("row_id", type=int)

    reset = sub.add_parser("reset-failed", help="Move every failed row back to draft so it can be resubmitted")
    _add_config_arg(reset)

    recover = sub.add_parser("recover", help="Fail rows left mid-submission by an interrupted run")
    _add_config_arg(recover)

    export = sub.add_parser("export-csv", help="Export completed rows to CSV")
    _add_config_arg(export)
    export.add_argument("--out-dir", default="data", help="Directory for the CSV (default: data)")

    resolve = sub.add_parser("resolve-quarter", help="Show which quarter/form a date routes to")
    _add_config_arg(resolve)
    resolve.add_argument("date", nargs="?", default="", help="YYYY-MM-DD or MM/DD/YYYY (default: today)")

    quarters = sub.add_parser("list-quarters", help="List configured quarter windows")
    _add_config_arg(quarters)

    creds = sub.add_parser("set-credentials", help="Store login credentials for the vendor form")
    _add_config_arg(creds)
    creds.add_argument("--service", default="", help="Service name (default: submission.service_name)")
    creds.add_argument("--email", required=True)

    del_creds = sub.add_parser("delete-credentials", help="Remove stored credentials")
    _add_config_arg(del_creds)
    del_creds.add_argument("--service", default="", help="Service name (default: submission.service_name)")

    bundle = sub.add_parser("debug-bundle", help="Zip logs + debug screenshots for sharing")
    _add_config_arg(bundle)
    bundle.add_argument("--out-dir", default="data")

    return p


def _build_manager(
    cfg: AppConfig,
    store: StateStore,
    *,
    headless: Optional[bool] = None,
    slow_mo_ms: Optional[int] = None,
) -> SubmissionLifecycleManager:
    def orchestrator_factory() -> SubmissionOrchestrator:
        session = PlaywrightBrowserSession(
            headless=cfg.browser.headless if headless is None else headless,
            slow_mo_ms=cfg.browser.slow_mo_ms if slow_mo_ms is None else slow_mo_ms,
            channel=cfg.browser.channel,
            action_timeout_ms=cfg.timing.element_timeout_ms,
        )
        return SubmissionOrchestrator(
            session,
            backoff=cfg.timing,
            treat_unverified_as_failure=cfg.submission.treat_unverified_as_failure,
            debug_dir=cfg.browser.debug_dir,
        )

    return SubmissionLifecycleManager(
        store,
        orchestrator_factory,
        quarters=cfg.active_quarters(),
        service_name=cfg.submission.service_name,
        stale_after=timedelta(minutes=cfg.submission.stale_after_minutes),
    )


def _today() -> date:
    return date.today()


def _entry_problem(cfg: AppConfig, row: TimesheetRow) -> Optional[str]:
    return validate_quarter_availability(row.date, cfg.active_quarters()) or entry_problem(row, cfg.entry_rules)


def _print_rows(rows: list[TimesheetRow]) -> None:
    if not rows:
        print("No timesheet rows.")
        return
    for r in rows:
        extra = f"\t{r.last_error}" if r.last_error else ""
        print(
            f"{r.id}\t{r.date.isoformat()}\t{r.time_in}-{r.time_out}\t{r.hours:.2f}h\t"
            f"{r.status.value}\t{r.project}\t{r.task_description}{extra}"
        )


def _write_bundle(cfg: AppConfig, out_dir: str = "data") -> Optional[Path]:
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path or "data/timesheet.log",
            out_dir=out_dir,
            label=cfg.submission.service_name,
        )
        logger.error("Wrote debug bundle: %s", bundle)
        return bundle
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)
        return None


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "list-quarters":
        quarters = cfg.active_quarters()
        current = current_quarter(quarters, today=_today())
        for q in quarters:
            mark = "\t(current)" if current is not None and q.id == current.id else ""
            print(f"{q.id}\t{q.start_date.isoformat()}..{q.end_date.isoformat()}\t{q.form_url}{mark}")
        return 0

    if args.cmd == "debug-bundle":
        bundle = _write_bundle(cfg, out_dir=args.out_dir)
        if bundle is None:
            raise SystemExit("Could not write debug bundle (see log).")
        print(f"Debug bundle written: {bundle}")
        return 0

    store = StateStore(cfg.state.db_path)
    try:
        return _run_store_command(args, cfg, store)
    finally:
        store.close()


def _run_store_command(args: argparse.Namespace, cfg: AppConfig, store: StateStore) -> int:
    service = (getattr(args, "service", "") or cfg.submission.service_name).strip().lower()

    if args.cmd == "submit":
        manager = _build_manager(
            cfg,
            store,
            headless=False if args.headful else None,
            slow_mo_ms=args.slowmo_ms,
        )
        t0 = time.time()
        logger.info("Starting submission (service=%s)", service)
        try:
            summary = manager.submit_pending_timesheet(
                service,
                base_url=args.base_url or None,
                form_id=args.form_id or None,
            )
        except Exception:
            logger.error("Submission crashed (seconds=%.2f)", time.time() - t0)
            _write_bundle(cfg)
            raise

        logger.info("Submission finished (seconds=%.2f)", time.time() - t0)
        if summary.error_summary:
            if summary.success_count or summary.failure_count:
                _write_bundle(cfg)
                print(f"Submitted {summary.success_count}, failed {summary.failure_count}: {summary.error_summary}")
            else:
                # Nothing was attempted (no credentials or no drafts).
                print(summary.error_summary)
            return 1
        print(summary.message)
        return 0

    if args.cmd == "add-entry":
        try:
            row = TimesheetRow(
                date=args.date,
                time_in=args.time_in,
                time_out=args.time_out,
                project=args.project,
                tool=args.tool or None,
                charge_code=args.charge_code or None,
                task_description=args.task,
            )
        except ValidationError as e:
            raise SystemExit(f"Invalid entry: {e.errors()[0]['msg']}")

        row = normalize_entry(row, cfg.entry_rules)
        problem = _entry_problem(cfg, row)
        if problem:
            raise SystemExit(problem)

        stored = store.add_row(row)
        print(f"Draft {stored.id}: {stored.date.isoformat()} {stored.time_in}-{stored.time_out} ({stored.hours:.2f}h)")
        return 0

    if args.cmd == "import-csv":
        path = Path(args.path)
        if not path.exists():
            raise SystemExit(f"CSV not found: {path}")
        rows, problems = parse_draft_csv(path.read_text(encoding="utf-8"))
        for msg in problems:
            print(f"Skipped {msg}")
        added = 0
        for row in rows:
            row = normalize_entry(row, cfg.entry_rules)
            problem = _entry_problem(cfg, row)
            if problem:
                print(f"Skipped {row.date.isoformat()}: {problem}")
                continue
            store.add_row(row)
            added += 1
        print(f"Imported {added} draft row(s)")
        return 0 if not problems else 1

    if args.cmd == "list":
        status = LifecycleStatus(args.status) if args.status else None
        _print_rows(store.list_rows(status))
        counts = store.count_by_status()
        print(", ".join(f"{s.value}={n}" for s, n in counts.items()))
        return 0

    if args.cmd == "delete-draft":
        if not store.delete_draft(args.row_id):
            raise SystemExit(f"No draft with id {args.row_id} (only drafts can be deleted)")
        print(f"Deleted draft {args.row_id}")
        return 0

    if args.cmd == "reset-failed":
        count = _build_manager(cfg, store).reset_failed_to_draft()
        print(f"Reset {count} failed row(s) to draft")
        return 0

    if args.cmd == "recover":
        count = _build_manager(cfg, store).recover_stale_submissions()
        print(f"Recovered {count} stale submission(s)")
        return 0

    if args.cmd == "export-csv":
        result = _build_manager(cfg, store).export_completed_timesheet_csv()
        if result.error:
            raise SystemExit(result.error)
        out_dir = Path(args.out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / (result.suggested_filename or "timesheet_export.csv")
        out_path.write_text(result.csv_text or "", encoding="utf-8", newline="")
        print(f"Exported {result.row_count} row(s) to {out_path}")
        return 0

    if args.cmd == "resolve-quarter":
        value = args.date or _today().isoformat()
        q = _build_manager(cfg, store).resolve_quarter_for_date(value)
        if q is None:
            raise SystemExit(f"No quarter for {value!r}")
        print(f"{q.id}\t{q.name}\t{q.form_url}")
        return 0

    if args.cmd == "set-credentials":
        password = os.getenv("TIMESHEET_PASSWORD") or getpass.getpass(f"{service} password: ")
        if not password:
            raise SystemExit("A password is required.")
        store.store_credentials(service, email=args.email.strip(), password=password)
        print(f"Stored credentials for {service}")
        return 0

    if args.cmd == "delete-credentials":
        if store.delete_credentials(service):
            print(f"Deleted credentials for {service}")
        else:
            print(f"No credentials stored for {service}")
        return 0

    raise AssertionError("Unhandled command")
