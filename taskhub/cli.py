"""
Admin command line.

    taskhub recover-timers [--commit] [--json]
    taskhub backfill-cancelled [--commit] [--json]
    taskhub recurrence-sweep [--date YYYY-MM-DD] [--commit]
    taskhub serve [--host HOST] [--port PORT]

All sweeps default to a dry run; pass --commit to write.
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from .config import configure_logging, load_settings
from .errors import ReconciliationInProgressError, StoreError
from .task_service import build_task_service
from .timer_ledger import format_duration

logger = logging.getLogger("cli")


def _print_recovery_report(report) -> None:
    mode = "DRY RUN" if report.dry_run else "COMMIT"
    print("=" * 70)
    print(f"Timer recovery ({mode})")
    print("=" * 70)
    for entry in report.entries:
        flags = []
        if entry.capped:
            flags.append("capped")
        if entry.skewed:
            flags.append("skewed")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {entry.task_id}  {entry.title}")
        print(f"      {entry.status}, end from {entry.end_source}: +{format_duration(entry.recovered_seconds)}{suffix}")

    print("-" * 70)
    print(f"Tasks scanned:     {report.total_scanned}")
    print(f"Candidates found:  {report.candidates_found}")
    print(f"Time recovered:    {format_duration(report.recovered_seconds)}")
    print(f"Errors:            {len(report.errors)}")
    for error in report.errors:
        print(f"  ! {error}")
    if report.cancelled:
        print("Sweep was cancelled before scanning every task.")
    if report.dry_run and report.candidates_found:
        print("\nRe-run with --commit to apply these corrections.")


def cmd_recover_timers(args) -> int:
    service = build_task_service(args.settings)
    reconciler = service.timer_reconciler()

    try:
        report = reconciler.commit() if args.commit else reconciler.preview()
    except ReconciliationInProgressError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_recovery_report(report)
    return 0 if report.success else 1


def cmd_backfill_cancelled(args) -> int:
    service = build_task_service(args.settings)
    backfill = service.cancelled_backfill()

    try:
        report = backfill.commit() if args.commit else backfill.preview()
    except ReconciliationInProgressError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.success else 1

    print(f"Cancelled-at backfill ({'DRY RUN' if report.dry_run else 'COMMIT'})")
    for entry in report.entries:
        print(f"  {entry.task_id}  {entry.title}: cancelled_at = {entry.cancelled_at.isoformat()} (from {entry.source})")
    print(f"Tasks scanned: {report.total_scanned}, to backfill: {report.candidates_found}, errors: {len(report.errors)}")
    for error in report.errors:
        print(f"  ! {error}")
    return 0 if report.success else 1


def cmd_recurrence_sweep(args) -> int:
    service = build_task_service(args.settings)
    tasks = service.run_recurrence_sweep(args.date, commit=args.commit)
    verb = "Created" if args.commit else "Would create"
    print(f"{verb} {len(tasks)} task(s)")
    for task in tasks:
        due = task.due_date.isoformat() if task.due_date else "-"
        print(f"  {task.task_id}  {task.title}  (due {due}, from {task.source_definition_id})")
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(args.settings), host=args.host, port=args.port)
    return 0


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskhub", description="Task Hub admin commands")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("recover-timers", help="Fold timers left running on approved/cancelled tasks")
    p.add_argument("--commit", action="store_true", help="Write the corrections (default: preview only)")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.set_defaults(func=cmd_recover_timers)

    p = sub.add_parser("backfill-cancelled", help="Set cancelled_at on cancelled tasks that lack it")
    p.add_argument("--commit", action="store_true", help="Write the changes (default: preview only)")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.set_defaults(func=cmd_backfill_cancelled)

    p = sub.add_parser("recurrence-sweep", help="Materialize recurring tasks due on a date")
    p.add_argument("--date", default=None, type=_parse_date, help="Target date (YYYY-MM-DD), default today")
    p.add_argument("--commit", action="store_true", help="Save the tasks (default: preview only)")
    p.set_defaults(func=cmd_recurrence_sweep)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    args.settings = load_settings(args.config)
    configure_logging(args.settings.log_level)

    try:
        return args.func(args)
    except StoreError as e:
        logger.error(f"{e.code}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
