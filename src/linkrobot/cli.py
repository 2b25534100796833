"""
Command-line interface for the link robot.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, is_dataclass
from typing import Any, List, Optional

from linkrobot.cleanup import run_cleanup
from linkrobot.core import run_tick
from linkrobot.reports import REPORTS, get_status, get_summary
from linkrobot.store import StorageError, Store

logger = logging.getLogger("linkrobot")


def print_summary(config, status) -> None:
    """Print tick summary to stderr."""
    sys.stderr.write("=" * 50 + "\n")
    sys.stderr.write("CRAWL SUMMARY\n")
    sys.stderr.write("=" * 50 + "\n\n")
    sys.stderr.write(f"Cycle running:          {'yes' if config.running else 'no'}\n")
    sys.stderr.write(f"URLs still queued:      {status.queued}\n")
    if status.history is not None:
        h = status.history
        sys.stderr.write(f"URLs crawled:           {h.urls}\n")
        sys.stderr.write(f"Links found:            {h.links}\n")
        sys.stderr.write(f"Broken URLs:            {h.broken}\n")
        sys.stderr.write(f"Oversize URLs:          {h.oversize}\n")
    sys.stderr.write("\n")


def to_jsonable(value: Any) -> Any:
    """Convert results to plain JSON-serializable values."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(
        prog="linkrobot",
        description="Crawl a site in bounded ticks and report broken and oversized links.",
    )
    parser.add_argument("--db", required=True, help="Path to the sqlite database")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    tick = sub.add_parser("tick", help="Run one bounded crawl invocation")
    tick.add_argument("-v", "--verbose", action="store_true", help="Show progress and summary")

    cleanup = sub.add_parser("cleanup", help="Delete URLs past the retention period")
    cleanup.add_argument("--at", type=int, help="Reference time (epoch seconds)")

    summary = sub.add_parser("summary", help="Link health for one course")
    summary.add_argument("scope", type=int, help="Course id")

    sub.add_parser("status", help="Queue and cycle status")

    report = sub.add_parser("report", help="List URLs")
    report.add_argument("kind", choices=sorted(REPORTS))
    report.add_argument("--course", type=int, help="Only URLs linked from this course")
    report.add_argument("--limit", type=int, default=100, help="Maximum rows (default: 100)")

    config = sub.add_parser("config", help="Show or change settings")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show", help="Print all settings and state")
    config_set = config_sub.add_parser("set", help="Change one setting")
    config_set.add_argument("key")
    config_set.add_argument("value")

    ignore = sub.add_parser("ignore", help="Suppress alerts for a broken URL")
    ignore.add_argument("url_id", type=int)
    ignore.add_argument("--user", type=int, required=True, help="Id of the user ignoring it")

    unignore = sub.add_parser("unignore", help="Restore alerts for a URL")
    unignore.add_argument("url_id", type=int)

    return parser


def dispatch(store: Store, args: argparse.Namespace) -> Any:
    """Run the selected subcommand and return its result."""
    if args.command == "tick":
        config = run_tick(store, verbose=args.verbose)
        status = get_status(store)
        if args.verbose:
            print_summary(config, status)
        return status
    if args.command == "cleanup":
        return {"deleted": run_cleanup(store, reference_time=args.at)}
    if args.command == "summary":
        return get_summary(store, args.scope)
    if args.command == "status":
        return get_status(store)
    if args.command == "report":
        kwargs = {"courseid": args.course, "limit": args.limit}
        return REPORTS[args.kind](store, **kwargs)
    if args.command == "config":
        if args.action == "set":
            store.config.set_value(args.key, args.value)
        return store.config.load().to_mapping()
    if args.command == "ignore":
        if not store.urls.ignore(args.url_id, args.user, int(time.time())):
            raise LookupError(f"No URL with id {args.url_id}")
        return store.urls.get(args.url_id)
    if args.command == "unignore":
        if not store.urls.unignore(args.url_id):
            raise LookupError(f"No URL with id {args.url_id}")
        return store.urls.get(args.url_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the link robot CLI."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        with Store.open(args.db) as store:
            result = dispatch(store, args)
    except (StorageError, ValueError, LookupError) as e:
        logger.error("%s", e)
        return 1

    json_text = json.dumps(to_jsonable(result), ensure_ascii=False, indent=2 if args.pretty else None)
    print(json_text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
