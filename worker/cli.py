"""
Operator CLI for saved-search alerts.

Usage:
  python -m worker.cli                         # match saved searches, then send due alerts (default)
  python -m worker.cli --emails --limit 50     # send one batch from the email queue
  python -m worker.cli --emails --loop --max-runtime 300
  python -m worker.cli --cleanup --days 30     # delete old sent/failed queue rows
  python -m worker.cli --stats
  python -m worker.cli --retry-failed 42       # put a failed item back to pending
  python -m worker.cli --alerts --dry-run      # report only, change nothing

Exit codes: 0 on completion (individual delivery failures included),
1 when the store is unreachable, 2 on usage errors.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from typing import Optional, Sequence, TextIO

from dotenv import load_dotenv

from core.cancel import CancellationToken
from core.clock import to_db, utcnow
from core.config import Settings
from core.db import Database, init_db
from core.db.alerts import (
    cleanup_old_items,
    count_due_items,
    count_old_items,
    get_alert_stats,
    get_item,
    retry_failed_item,
)
from core.errors import StoreUnavailable
from worker.main import build_pipeline

log = logging.getLogger("worker.cli")

EXIT_OK = 0
EXIT_SYSTEMIC = 1
EXIT_USAGE = 2

DEFAULT_CLEANUP_DAYS = 30


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m worker.cli", description="Bazar search alerts processor")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--alerts", action="store_const", const="alerts", dest="action",
                        help="process pending search alerts (default)")
    action.add_argument("--emails", action="store_const", const="emails", dest="action",
                        help="process the email queue only")
    action.add_argument("--cleanup", action="store_const", const="cleanup", dest="action",
                        help="delete old sent/failed queue records")
    action.add_argument("--stats", action="store_const", const="stats", dest="action",
                        help="show alert statistics")
    action.add_argument("--retry-failed", type=int, metavar="ID",
                        help="move one failed queue item back to pending")
    parser.add_argument("--days", type=int, default=None, help=f"cleanup age in days (default {DEFAULT_CLEANUP_DAYS})")
    parser.add_argument("--limit", type=int, default=None, help="limit processing to N items")
    parser.add_argument("--loop", action="store_true", help="keep running until interrupted")
    parser.add_argument("--max-runtime", type=float, default=None, metavar="S", help="stop looping after S seconds")
    parser.add_argument("--dry-run", action="store_true", help="show what would be processed without changing anything")
    parser.set_defaults(action="alerts")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.retry_failed is not None:
        args.action = "retry"
    if args.days is not None and args.action != "cleanup":
        parser.error("--days only applies to --cleanup")
    if args.days is not None and args.days < 1:
        parser.error("--days must be at least 1")
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be at least 1")
    if (args.loop or args.max_runtime is not None) and args.action not in ("alerts", "emails"):
        parser.error("--loop and --max-runtime only apply to --alerts and --emails")
    if args.loop and args.dry_run:
        parser.error("--loop cannot be combined with --dry-run")
    return args


def _print_stats(stats: dict, out: TextIO) -> None:
    print("Search Alert Statistics", file=out)
    print("=======================", file=out)
    print(f"Active searches with alerts: {stats['active_alert_searches']}", file=out)
    print(f"Pending alerts in queue: {stats['queue']['pending']}", file=out)
    print(f"Failed alerts (last 7 days): {stats['failed_last_7d']}", file=out)
    print("", file=out)
    print("Queue by status:", file=out)
    for status, count in stats["queue"].items():
        print(f"  {status}: {count}", file=out)
    print("Alert processing (last 24 hours):", file=out)
    for status, count in stats["last_24h"].items():
        print(f"  {status}: {count}", file=out)
    if stats["top_searches"]:
        print("Most active searches (last 30 days):", file=out)
        for row in stats["top_searches"]:
            owner = row.get("username") or row.get("email")
            print(f"  \"{row['name']}\" by {owner}: {row['notifications']} alerts", file=out)


def _print_drain(report, out: TextIO) -> None:
    print(
        f"Emails processed: {report.processed} (sent {report.sent}, retried {report.retried}, "
        f"failed {report.failed}, skipped {report.skipped})",
        file=out,
    )


def run(
    args: argparse.Namespace,
    settings: Settings,
    *,
    transport=None,
    token: Optional[CancellationToken] = None,
    out: TextIO = sys.stdout,
) -> int:
    db = Database(settings.database_url)
    init_db(db)
    matcher, dispatcher = build_pipeline(settings, db, transport)
    token = token or CancellationToken()

    if args.dry_run:
        print("DRY RUN MODE - No changes will be made", file=out)

    if args.action == "stats":
        _print_stats(get_alert_stats(db, now=utcnow()), out)
        return EXIT_OK

    if args.action == "retry":
        item = get_item(db, args.retry_failed)
        if item is None:
            print(f"Queue item {args.retry_failed} not found", file=out)
            return EXIT_USAGE
        if args.dry_run:
            print(f"Would retry queue item {item.id} (status {item.status})", file=out)
            return EXIT_OK
        if not retry_failed_item(db, item.id, now=utcnow()):
            print(
                f"Queue item {item.id} not retried: status is {item.status} "
                "or another live item exists for the same listing",
                file=out,
            )
            return EXIT_USAGE
        print(f"Queue item {item.id} moved back to pending", file=out)
        return EXIT_OK

    if args.action == "cleanup":
        days = args.days or DEFAULT_CLEANUP_DAYS
        if args.dry_run:
            print(f"Would delete {count_old_items(db, older_than_days=days, now=utcnow())} old alert records", file=out)
        else:
            deleted = cleanup_old_items(db, older_than_days=days, now=utcnow())
            print(f"Deleted {deleted} alert records older than {days} days", file=out)
        return EXIT_OK

    if args.action == "emails":
        batch = args.limit or settings.alert_batch_size
        if args.dry_run:
            due = count_due_items(db, now=utcnow())
            print(f"Would process {min(due, batch)} emails", file=out)
            return EXIT_OK
        if args.loop or args.max_runtime is not None:
            report = dispatcher.run_loop(batch, max_runtime=args.max_runtime, token=token)
        else:
            report = dispatcher.drain(batch, token=token)
        _print_drain(report, out)
        return EXIT_OK

    # alerts
    if args.dry_run:
        report = matcher.run(token=token, limit=args.limit, dry_run=True)
        print(f"Would process {report.evaluated} saved searches", file=out)
        for plan in report.planned:
            print(
                f"  #{plan['saved_search_id']} \"{plan['name']}\": {len(plan['listing_ids'])} new listing(s)",
                file=out,
            )
        return EXIT_OK

    if args.loop or args.max_runtime is not None:
        totals = {"matched": 0, "enqueued": 0}

        def match_pass() -> None:
            r = matcher.run(token=token, limit=args.limit)
            totals["matched"] += r.matched
            totals["enqueued"] += r.enqueued

        drained = dispatcher.run_loop(max_runtime=args.max_runtime, token=token, before_drain=match_pass)
        print(
            f"Matched {totals['matched']}, enqueued {totals['enqueued']}, "
            f"emails sent {drained.sent}, failed {drained.failed}",
            file=out,
        )
        return EXIT_OK

    report = matcher.run(token=token, limit=args.limit)
    print(
        f"Saved searches evaluated: {report.evaluated} (skipped {report.skipped}, errors {report.errors}); "
        f"matched {report.matched}, enqueued {report.enqueued}",
        file=out,
    )
    if not token.cancelled:
        _print_drain(dispatcher.drain(args.limit or settings.alert_batch_size, token=token), out)
    return EXIT_OK


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    settings: Optional[Settings] = None,
    transport=None,
    token: Optional[CancellationToken] = None,
    out: TextIO = sys.stdout,
) -> int:
    args = parse_args(argv)
    started = time.perf_counter()
    print("Bazar Search Alerts Processor", file=out)
    print(f"Started at: {to_db(utcnow())}", file=out)

    try:
        settings = settings or Settings.from_env()
        code = run(args, settings, transport=transport, token=token, out=out)
    except StoreUnavailable as e:
        log.error("Alert processing failed: store unavailable", extra={"error": str(e)})
        print(f"Error: {e}", file=out)
        return EXIT_SYSTEMIC

    duration = round((time.perf_counter() - started) * 1000, 2)
    print(f"Duration: {duration}ms", file=out)
    return code


def install_signal_handlers(token: CancellationToken) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, _frame: token.cancel(signal.Signals(signum).name))


if __name__ == "__main__":
    load_dotenv(override=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    cli_token = CancellationToken()
    install_signal_handlers(cli_token)
    sys.exit(main(token=cli_token))
