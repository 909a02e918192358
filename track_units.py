"""CLI entrypoint for the vacancywatch unit tracker."""

from __future__ import annotations

import argparse
import datetime as dt
import functools
import logging
import os
import sys
from pathlib import Path

from vacancywatch.adapters import build_adapter
from vacancywatch.config import load_property_targets
from vacancywatch.db import Database, as_date_text, resolve_sqlite_path
from vacancywatch.models import BatchSummary, ConfigurationError
from vacancywatch.notifications import build_notifier_from_env, deliver, format_notifications
from vacancywatch.retry import RetryPolicy
from vacancywatch.runner import VacancyRunner

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _env_list(name: str) -> list[str]:
    return [item.strip() for item in (os.getenv(name) or "").split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Daily apartment unit snapshot tracker")
    parser.add_argument("--init", action="store_true", help="initialize storage and exit")
    parser.add_argument("--run", action="store_true", help="extract, snapshot, and diff properties")
    parser.add_argument(
        "--rediff",
        action="store_true",
        help="recompute events from stored snapshots without extracting",
    )
    parser.add_argument("--export", metavar="PATH", help="write latest snapshots to an xlsx file")
    parser.add_argument(
        "--properties",
        default=os.getenv("PROPERTIES_FILE", "properties.json"),
        help="JSON file listing managed properties (overrides PROPERTIES_FILE)",
    )
    parser.add_argument(
        "--property-id",
        action="append",
        default=_env_list("PROPERTY_ID"),
        help="restrict to this property id (repeatable)",
    )
    parser.add_argument(
        "--platform",
        default=os.getenv("PLATFORM") or None,
        help="restrict to properties on this platform",
    )
    parser.add_argument(
        "--date",
        default=os.getenv("SNAPSHOT_DATE") or None,
        help="snapshot date YYYY-MM-DD (defaults to today, local time)",
    )
    parser.add_argument(
        "--source",
        default=os.getenv("EVENT_SOURCE", "snapshot"),
        help="source label stored with events",
    )
    parser.add_argument("--workers", type=int, default=int(os.getenv("MAX_WORKERS", "1")))
    parser.add_argument("--attempts", type=int, default=int(os.getenv("FETCH_ATTEMPTS", "3")))
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.getenv("FETCH_TIMEOUT", "90")),
        help="per-attempt fetch timeout in seconds",
    )
    parser.add_argument(
        "--property-max-seconds",
        type=float,
        default=float(os.getenv("PROPERTY_MAX_SECONDS", "240")),
        help="abandon a property's fetch after this many seconds (0 disables)",
    )
    parser.add_argument(
        "--debug-dir",
        default=os.getenv("DEBUG_DIR") or None,
        help="save failing pages here for triage",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def log_summary(summary: BatchSummary) -> None:
    for result in summary.results:
        logger.info(
            "%s | %s | units=%d +%d -%d | %s",
            result.property_id,
            result.status.value,
            result.unit_count,
            len(result.appeared),
            len(result.disappeared),
            result.reason or "",
        )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    database_url = os.getenv("DATABASE_URL", "sqlite:///vacancywatch.db")
    database = Database(path=resolve_sqlite_path(database_url))
    debug_dir = Path(args.debug_dir) if args.debug_dir else None
    runner = VacancyRunner(
        database=database,
        source=args.source,
        adapter_factory=functools.partial(build_adapter, debug_dir=debug_dir),
        retry_policy=RetryPolicy(attempts=args.attempts, timeout=args.timeout),
        property_max_seconds=args.property_max_seconds or None,
        max_workers=max(args.workers, 1),
    )

    try:
        snapshot_date = as_date_text(args.date or dt.date.today())
    except ValueError:
        parser.error(f"invalid --date {args.date!r}; expected YYYY-MM-DD")

    if args.init:
        runner.init()
        return 0

    if not (args.run or args.rediff or args.export):
        parser.print_help()
        return 1

    runner.init()

    summary = None
    if args.run:
        try:
            targets = load_property_targets(
                Path(args.properties),
                property_ids=args.property_id,
                platform=args.platform,
            )
        except ConfigurationError as exc:
            logger.error("%s", exc)
            return 2
        if not targets:
            logger.warning("No properties matched in %s", args.properties)
            return 0
        summary = runner.run_batch(targets, snapshot_date)
    elif args.rediff:
        summary = runner.rediff_batch(args.property_id or None, snapshot_date)

    if summary is not None:
        log_summary(summary)
        notifier = build_notifier_from_env()
        if notifier:
            messages = format_notifications(summary)
            sent = deliver(notifier, messages)
            logger.info("Delivered %d/%d notification(s)", sent, len(messages))

    if args.export:
        rows = database.export_snapshot_to_xlsx(
            Path(args.export),
            snapshot_date=args.date or None,
        )
        logger.info("Exported %d unit rows to %s", rows, args.export)
    return 0


if __name__ == "__main__":
    sys.exit(main())
