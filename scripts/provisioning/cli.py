"""CLI entry point: init-db, register, run, sweep, resolve, status, runs, export, scheduler."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from contextlib import contextmanager
from typing import Generator, Optional

from scripts.provisioning.acquirer import ledger_did
from scripts.provisioning.config import load_config
from scripts.provisioning.errors import ClaimConflictError
from scripts.provisioning.logging_config import configure_logging
from scripts.provisioning.models import RecordStatus
from scripts.provisioning.runtime import Runtime, build_runtime

logger = logging.getLogger("provisioning.cli")


@contextmanager
def _runtime() -> Generator[Runtime, None, None]:
    runtime = build_runtime(load_config())
    try:
        yield runtime
    finally:
        runtime.close()


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create provisioning tables if missing."""
    with _runtime() as runtime:
        if runtime.db is None:
            logger.error("No database configured")
            return 1
        runtime.db.apply_schema()
    return 0


def cmd_register(args: argparse.Namespace) -> int:
    """Register subjects that still need a ledger account."""
    subjects = list(args.subjects)
    if args.file:
        with open(args.file, encoding="utf-8") as fh:
            subjects.extend(line.strip() for line in fh if line.strip())
    if not subjects:
        logger.error("No subjects given")
        return 2

    created = 0
    with _runtime() as runtime:
        for subject_id in subjects:
            record, is_new = runtime.store.register(subject_id)
            if is_new:
                created += 1
            else:
                logger.info(
                    "Subject already registered",
                    extra={"subject_id": subject_id, "record_id": record.record_id},
                )
    print(json.dumps({"registered": created, "existing": len(subjects) - created}))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run one batch, or drain every eligible record with --drain."""
    with _runtime() as runtime:
        summary = runtime.run_tracked(
            "cli",
            batch_size=args.batch_size,
            cursor=args.cursor,
            drain=args.drain,
            deadline_s=args.deadline,
        )
    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.aborted else 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Queue orphaned IN_PROGRESS records for reconciliation."""
    with _runtime() as runtime:
        results = runtime.sweeper.sweep()
        queue = runtime.store.reconciliation_queue()
    print(json.dumps({**results, "open": queue}, indent=2, default=str))
    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    """Close an orphan: mark it ACTIVE with a known account, or release it."""
    with _runtime() as runtime:
        try:
            record = runtime.sweeper.resolve(args.record_id, args.account_id)
        except ClaimConflictError:
            logger.error("Record %s is not IN_PROGRESS", args.record_id)
            return 1
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show record counts per status."""
    with _runtime() as runtime:
        counts = runtime.store.counts_by_status()
        failed = runtime.store.list_records(status=RecordStatus.FAILED, limit=args.limit)

    fmt = "{:<12}  {:>8}"
    print(fmt.format("STATUS", "COUNT"))
    print("-" * 22)
    for status in RecordStatus:
        print(fmt.format(status.value, counts.get(status.value, 0)))

    if failed:
        print()
        row_fmt = "{:<36}  {:<24}  {:>8}  {:<9}  {}"
        print(row_fmt.format("RECORD ID", "SUBJECT", "ATTEMPTS", "RETRIABLE", "LAST ERROR"))
        print("-" * 120)
        for rec in failed:
            print(row_fmt.format(
                rec.record_id,
                rec.subject_id[:24],
                rec.attempts,
                "yes" if rec.retriable else "no",
                (rec.last_error or "")[:40],
            ))
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    """Show recent provisioning runs."""
    with _runtime() as runtime:
        if runtime.db is None:
            print("Run tracking requires a database.")
            return 1
        runs = runtime.db.get_recent_runs(limit=args.limit)

    if not runs:
        print("No provisioning runs found.")
        return 0

    fmt = "{:<36}  {:<10}  {:<8}  {:<20}  {:<20}  {:>9}  {:>9}  {:>6}  {}"
    print(fmt.format(
        "RUN ID", "TRIGGER", "STATUS", "STARTED", "FINISHED",
        "PROCESSED", "SUCCEEDED", "FAILED", "ERROR",
    ))
    print("-" * 160)
    for r in runs:
        started = str(r["started_at"])[:19] if r["started_at"] else ""
        finished = str(r["finished_at"])[:19] if r["finished_at"] else ""
        print(fmt.format(
            str(r["id"])[:36],
            r["trigger"],
            r["status"],
            started,
            finished,
            r.get("processed", 0),
            r.get("succeeded", 0),
            r.get("failed", 0),
            (r.get("error_message") or "")[:40],
        ))
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export records as JSON, with DIDs for provisioned accounts."""
    status = RecordStatus(args.status) if args.status else None
    with _runtime() as runtime:
        network = runtime.config.account_service.network
        records = runtime.store.list_records(status=status, limit=args.limit)

    exported = []
    for rec in records:
        entry = rec.to_dict()
        if rec.external_account_id:
            entry["did"] = ledger_did(network, rec.external_account_id)
            entry["network"] = network
        exported.append(entry)

    payload = json.dumps({"count": len(exported), "records": exported}, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            fh.write(payload)
        logger.info("Exported %d records to %s", len(exported), args.output)
    else:
        print(payload)
    return 0


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Start the APScheduler-based provisioning loop."""
    from scripts.provisioning.scheduler import start_scheduler

    with _runtime() as runtime:
        start_scheduler(runtime)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioning",
        description="Ledger account provisioning pipeline",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    reg_parser = subparsers.add_parser("register", help="Register subjects as PENDING")
    reg_parser.add_argument("subjects", nargs="*", help="Subject ids")
    reg_parser.add_argument("--file", "-f", help="File with one subject id per line")
    reg_parser.set_defaults(func=cmd_register)

    run_parser = subparsers.add_parser("run", help="Provision a batch of records")
    run_parser.add_argument("--batch-size", "-b", type=int, default=None,
                            help="Records per batch (default: PROVISIONING_BATCH_SIZE)")
    run_parser.add_argument("--cursor", "-c", default=None,
                            help="Resume after the cursor of a previous run")
    run_parser.add_argument("--drain", action="store_true",
                            help="Keep running batches until nothing is left")
    run_parser.add_argument("--deadline", type=float, default=None,
                            help="Stop cleanly after this many seconds")
    run_parser.set_defaults(func=cmd_run)

    sweep_parser = subparsers.add_parser("sweep", help="Queue orphaned IN_PROGRESS records")
    sweep_parser.set_defaults(func=cmd_sweep)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve an orphaned record")
    resolve_parser.add_argument("record_id")
    resolve_parser.add_argument("--account-id", default=None,
                                help="Ledger account found for this record; omit to release it")
    resolve_parser.set_defaults(func=cmd_resolve)

    status_parser = subparsers.add_parser("status", help="Show record counts")
    status_parser.add_argument("--limit", "-l", type=int, default=20,
                               help="Failed records to list (default: 20)")
    status_parser.set_defaults(func=cmd_status)

    runs_parser = subparsers.add_parser("runs", help="Show recent provisioning runs")
    runs_parser.add_argument("--limit", "-l", type=int, default=10,
                             help="Number of runs to show (default: 10)")
    runs_parser.set_defaults(func=cmd_runs)

    export_parser = subparsers.add_parser("export", help="Export records as JSON")
    export_parser.add_argument("--status", "-s", choices=[s.value for s in RecordStatus],
                               default=None)
    export_parser.add_argument("--limit", "-l", type=int, default=1000)
    export_parser.add_argument("--output", "-o", default=None, help="Write to file")
    export_parser.set_defaults(func=cmd_export)

    sched_parser = subparsers.add_parser("scheduler", help="Start scheduled provisioning loop")
    sched_parser.set_defaults(func=cmd_scheduler)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    configure_logging()
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
