"""
CLI entry point for the Donor Sync service.

Usage:
    python -m services.donor_sync init-db
    python -m services.donor_sync sync 1234
    python -m services.donor_sync backfill --dry-run --batch-size 50
    python -m services.donor_sync backfill --all
    python -m services.donor_sync stats
"""

import argparse
import json
import signal
import sys
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .backfill import CancellationToken
from .db import create_schema, get_engine
from .errors import DonorSyncError
from .log_config import configure_logging, get_logger
from .service import SyncService, build_service
from .settings import settings

logger = get_logger(__name__)

ServiceFactory = Callable[[], SyncService]


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="donor_sync",
        description="Donor Sync - reconcile donations into DonorPerfect",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the sync tables
  python -m services.donor_sync init-db

  # Preview the first 50 unsynced donations
  python -m services.donor_sync backfill --dry-run

  # Sync every unsynced donation, 10 at a time (Ctrl-C stops cleanly)
  python -m services.donor_sync backfill --all --batch-size 10

  # Sync one donation
  python -m services.donor_sync sync 1234
        """
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Donor Sync {__version__}"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the sync log, pledge map and donation tables")

    sync = commands.add_parser("sync", help="Sync one donation")
    sync.add_argument("donation_id", type=int, help="Donation id")

    backfill = commands.add_parser("backfill", help="Sync historical donations")
    backfill.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview only: donor lookups, nothing created or logged"
    )
    backfill.add_argument(
        "--batch-size",
        type=int,
        help="Donations per page (defaults from configuration)"
    )
    backfill.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Offset into the unsynced donations"
    )
    backfill.add_argument(
        "--all",
        action="store_true",
        help="Keep paging until no unsynced donations remain"
    )

    commands.add_parser("stats", help="Show sync statistics")

    log = commands.add_parser("log", help="Show sync log entries, newest first")
    log.add_argument("--limit", type=int, default=100)
    log.add_argument("--offset", type=int, default=0)
    log.add_argument("--status", choices=["success", "error", "skipped"])

    commands.add_parser("match-report", help="Match source donors to DonorPerfect by email")
    commands.add_parser("test-connection", help="Check DonorPerfect API connectivity")
    codes = commands.add_parser("check-codes", help="Check GL, campaign and sub-solicit codes exist")
    codes.add_argument(
        "--create",
        action="store_true",
        help="Create missing ONETIME / RECURRING sub-solicit codes"
    )

    return parser


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def run_backfill(service: SyncService, args: argparse.Namespace) -> Dict[str, Any]:
    """
    Run one backfill page, or every page with --all.

    SIGINT cancels at the next item boundary; already synced items stay synced.
    """
    if args.batch_size is not None and args.batch_size < 1:
        raise ValueError("--batch-size must be at least 1")
    if args.offset < 0:
        raise ValueError("--offset must not be negative")

    token = CancellationToken()
    run_page = service.backfill_preview if args.dry_run else service.backfill_run

    def on_interrupt(signum, frame):
        logger.warning("Interrupt received, stopping after current donation")
        token.cancel()

    previous_handler = signal.signal(signal.SIGINT, on_interrupt)
    try:
        offset = args.offset
        pages: List[Dict[str, Any]] = []
        while True:
            page = run_page(batch_size=args.batch_size, offset=offset, token=token)
            pages.append(page)

            if not args.all or not page["has_more"] or page["cancelled"] or page["processed"] == 0:
                break
            offset = page["next_offset"]
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if not args.all:
        return pages[0]

    items = [item for page in pages for item in page["items"]]
    return {
        "items": items,
        "pages": len(pages),
        "processed": len(items),
        "failed": sum(1 for item in items if item["status"] == "error"),
        "total_unsynced": pages[0]["total_unsynced"],
        "next_offset": pages[-1]["next_offset"],
        "has_more": pages[-1]["has_more"],
        "dry_run": args.dry_run,
        "cancelled": pages[-1]["cancelled"],
    }


def init_db() -> Dict[str, Any]:
    config = settings()
    if not config.database_url:
        raise ValueError("DATABASE_URL not set")
    engine = get_engine(config.database_url)
    create_schema(engine)
    return {"status": "ok", "message": "Database schema ready"}


def dispatch(service: SyncService, args: argparse.Namespace) -> Dict[str, Any]:
    if args.command == "sync":
        return service.sync_single(args.donation_id)
    if args.command == "backfill":
        return run_backfill(service, args)
    if args.command == "stats":
        return service.stats()
    if args.command == "log":
        return service.log(limit=args.limit, offset=args.offset, status=args.status)
    if args.command == "match-report":
        return service.match_report()
    if args.command == "test-connection":
        return service.test_connection()
    if args.command == "check-codes":
        if args.create:
            return service.create_missing_codes()
        return service.check_codes()
    raise ValueError(f"Unknown command: {args.command}")


def is_failure(command: str, result: Dict[str, Any]) -> bool:
    """Exit status for a finished command."""
    if result.get("status") == "error":
        return True
    if command == "backfill":
        return any(item["status"] == "error" for item in result.get("items", []))
    if command == "check-codes":
        checks = result.get("codes", result)
        return not all(check["valid"] for check in checks.values())
    return False


def main(argv: Optional[List[str]] = None, service_factory: ServiceFactory = build_service) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.log_level or args.log_format:
        configure_logging(args.log_level, args.log_format)

    config = settings()
    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        command=args.command
    )

    service: Optional[SyncService] = None
    try:
        if args.command == "init-db":
            result = init_db()
        else:
            service = service_factory()
            result = dispatch(service, args)

    except (DonorSyncError, ValueError) as e:
        logger.error(
            "Command failed",
            command=args.command,
            error=str(e),
            error_type=type(e).__name__
        )
        print_json({"status": "error", "error": str(e)})
        return 1
    finally:
        if service is not None:
            service.close()

    print_json(result)
    return 1 if is_failure(args.command, result) else 0


def cli_main():
    """Synchronous entry point for setuptools console scripts."""
    return main()


if __name__ == "__main__":
    sys.exit(main())
