"""Command-line interface for Hitcastor Snapshotter.

Manual runs, backfills, schema provisioning and the long-running service.

Usage:
    snapshotter once
    snapshotter once --date 2024-01-15 --region global --force
    snapshotter backfill --from 2024-01-01 --to 2024-01-31
    snapshotter migrate
    snapshotter status --format json
    snapshotter run
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from snapshotter.config import Settings, get_settings
from snapshotter.dates import date_range, validate_date_format, yesterday_utc
from snapshotter.models import SnapshotJob
from snapshotter.pipeline import SnapshotPipeline
from snapshotter.scheduler import run_service
from snapshotter.store import create_ledger

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Configure logging to stderr (stdout carries command output) and, optionally, a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser.

    Returns:
        Configured ArgumentParser with all commands and arguments.
    """
    parser = argparse.ArgumentParser(
        prog="snapshotter",
        description="Hitcastor Snapshotter — daily tamper-evident chart snapshots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  snapshotter once --date 2024-01-15
  snapshotter once --date 2024-01-15 --region global --force
  snapshotter backfill --from 2024-01-01 --to 2024-01-31 --delay 5000
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    once_parser = subparsers.add_parser(
        "once",
        help="Snapshot a single date",
        description="Run the snapshot pipeline once for one (date, region)",
    )
    once_parser.add_argument(
        "--date", "-d", type=str, default=None,
        help="Date in YYYY-MM-DD format (default: yesterday UTC)",
    )
    once_parser.add_argument("--region", "-r", type=str, default=None, help="Region (default: from settings)")
    once_parser.add_argument("--force", "-f", action="store_true", help="Re-snapshot even if one exists")
    once_parser.add_argument(
        "--format", type=str, choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )

    backfill_parser = subparsers.add_parser(
        "backfill",
        help="Snapshot a range of dates",
        description="Run the snapshot pipeline for every date in an inclusive range",
    )
    backfill_parser.add_argument("--from", "-f", dest="date_from", required=True, help="Start date (inclusive)")
    backfill_parser.add_argument("--to", "-t", dest="date_to", required=True, help="End date (inclusive)")
    backfill_parser.add_argument("--region", "-r", type=str, default=None, help="Region (default: from settings)")
    backfill_parser.add_argument("--force", action="store_true", help="Re-snapshot even if one exists")
    backfill_parser.add_argument(
        "--delay", "-d", type=int, default=5000,
        help="Delay between snapshots in ms (default: 5000)",
    )

    subparsers.add_parser("migrate", help="Create the snapshots table")

    status_parser = subparsers.add_parser("status", help="Show the latest snapshot")
    status_parser.add_argument("--region", "-r", type=str, default=None, help="Region (default: from settings)")
    status_parser.add_argument(
        "--format", type=str, choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )

    subparsers.add_parser("run", help="Run the daily scheduler and worker")
    subparsers.add_parser("version", help="Show version information")

    return parser


async def _once(settings: Settings, job: SnapshotJob) -> dict:
    pipeline = SnapshotPipeline.from_settings(settings)
    try:
        await pipeline.ledger.migrate()
        result = await pipeline.run(job)
    finally:
        pipeline.ledger.close()
    return result.to_dict()


def cmd_once(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the once command.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    date_utc = args.date or yesterday_utc()
    if not validate_date_format(date_utc):
        print("Error: Invalid date format. Use YYYY-MM-DD", file=sys.stderr)
        return 2

    job = SnapshotJob(date_utc=date_utc, region=args.region or settings.region, force=args.force)
    try:
        result = asyncio.run(_once(settings, job))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Snapshot failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps(result, indent=2))
    else:
        snapshot = result["snapshot"] or {}
        status = "skipped (exists)" if result["skipped"] else "committed"
        print(f"{job.date_utc}/{job.region}: {status}")
        print(f"  csv:  {snapshot.get('csv_url')} {snapshot.get('csv_sha256')}")
        print(f"  json: {snapshot.get('json_url')} {snapshot.get('json_sha256')}")
        print(f"  ipfs: {snapshot.get('ipfs_cid') or '-'}")
    return 0


async def _backfill(settings: Settings, dates: list[str], region: str, force: bool, delay_ms: int) -> int:
    pipeline = SnapshotPipeline.from_settings(settings)
    successful = 0
    failed = 0
    try:
        await pipeline.ledger.migrate()
        for i, date_utc in enumerate(dates):
            logger.info("Processing snapshot %d/%d: %s/%s", i + 1, len(dates), date_utc, region)
            try:
                await pipeline.run(SnapshotJob(date_utc=date_utc, region=region, force=force))
                successful += 1
            except Exception as e:
                failed += 1
                logger.error("Snapshot %s failed: %s", date_utc, e)

            if i < len(dates) - 1 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)
    finally:
        pipeline.ledger.close()

    logger.info(
        "Backfill completed: %d dates, %d successful, %d failed (%.1f%% success)",
        len(dates), successful, failed, successful / len(dates) * 100,
    )
    return failed


def cmd_backfill(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the backfill command. Continues past failed dates."""
    try:
        dates = date_range(args.date_from, args.date_to)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    if args.delay < 0:
        print("Error: Delay must be non-negative", file=sys.stderr)
        return 2

    region = (args.region or settings.region).lower()
    logger.info(
        "Starting backfill %s to %s (%d dates, region=%s, force=%s, delay=%dms)",
        args.date_from, args.date_to, len(dates), region, args.force, args.delay,
    )
    try:
        failed = asyncio.run(_backfill(settings, dates, region, args.force, args.delay))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    return 1 if failed else 0


def cmd_migrate(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the migrate command."""
    ledger = create_ledger(settings)
    try:
        asyncio.run(ledger.migrate())
    except Exception as e:
        logger.error("Database migration failed: %s", e)
        return 1
    finally:
        ledger.close()
    logger.info("Database migration completed successfully")
    return 0


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the status command: print the latest snapshot for a region."""
    region = (args.region or settings.region).lower()
    ledger = create_ledger(settings)
    try:
        snapshot = asyncio.run(ledger.get_latest(region))
    except Exception as e:
        logger.error("Status query failed: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        ledger.close()

    payload = {"region": region, "last_snapshot": snapshot.to_dict() if snapshot else None}
    if args.format == "json":
        print(json.dumps(payload, indent=2))
    elif snapshot is None:
        print(f"No snapshots for region '{region}'")
    else:
        print(f"Latest snapshot for {region}: {snapshot.date_utc}")
        print(f"  created_at: {snapshot.created_at.isoformat()}")
        print(f"  csv_sha256: {snapshot.csv_sha256}")
        print(f"  json_sha256: {snapshot.json_sha256}")
        print(f"  ipfs_cid: {snapshot.ipfs_cid or '-'}")
    return 0


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the run command (blocks until SIGINT/SIGTERM)."""
    try:
        asyncio.run(run_service(settings))
    except Exception as e:
        logger.error("Service failed: %s", e, exc_info=True)
        return 1
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Execute the version command."""
    print(f"Hitcastor Snapshotter v{VERSION}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "version":
        return cmd_version(args)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Configuration error:\n{e}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level, settings.log_file)

    handlers = {
        "once": cmd_once,
        "backfill": cmd_backfill,
        "migrate": cmd_migrate,
        "status": cmd_status,
        "run": cmd_run,
    }
    return handlers[args.command](args, settings)


def cli_entry() -> None:
    """Console script entry point for setuptools."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
