#!/usr/bin/env python3
"""CLI runner for the public health transmission worker.

Usage:
    python -m interop_src.runner --once
    python -m interop_src.runner --once --dry-run
    python -m interop_src.runner  # Continuous mode
"""

import argparse
import logging
import sys

from .config import Config
from .ledger import RetryPolicy, TransmissionLedger, TransmissionStatus
from .ledger.models import TransmissionRecord
from .worker import TransmissionWorker


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from HTTP libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def build_ledger(db_path: str | None = None) -> TransmissionLedger:
    """Ledger with the configured database and retry policy."""
    return TransmissionLedger(
        db_path=db_path or Config.INTEROP_DB_PATH,
        retry_policy=RetryPolicy.from_config(Config),
    )


def show_stats(ledger: TransmissionLedger) -> None:
    """Display current statistics."""
    stats = ledger.get_stats()

    print("\n=== Transmission Statistics ===")
    print(f"Total transmissions:      {stats['total']}")
    print(f"Queued today:             {stats['today']}")
    print(f"Pending:                  {stats['pending']}")
    print(f"Sent (awaiting ack):      {stats['sent']}")
    print(f"Acknowledged:             {stats['acknowledged']}")
    print(f"Rejected:                 {stats['rejected']}")
    print(f"Error (retry scheduled):  {stats['error']}")
    print(f"Due for retry:            {stats['due_for_retry']}")
    print(f"Failed (needs operator):  {stats['failed']}")
    print()


def _print_records(title: str, records: list[TransmissionRecord]) -> None:
    print(f"\n=== {title} ===")
    print("-" * 80)

    if not records:
        print("No transmissions found.")
        return

    for r in records:
        created = r.created_at.strftime("%Y-%m-%d %H:%M") if r.created_at else "?"
        print(
            f"{r.id[:8]} | "
            f"{r.message_type:9s} | "
            f"{r.message_control_id[:20]:20s} | "
            f"{r.destination[:22]:22s} | "
            f"{r.status.value:12s} | "
            f"{created}"
        )
        if r.last_error and r.status in (
            TransmissionStatus.ERROR, TransmissionStatus.FAILED, TransmissionStatus.REJECTED
        ):
            print(f"         retries: {r.retry_count}  last error: {r.last_error}")

    print("-" * 80)


def show_recent(ledger: TransmissionLedger, limit: int = 10) -> None:
    """Display recent transmissions."""
    _print_records(f"Recent Transmissions (last {limit})", ledger.list_by_status(limit=limit))


def show_failed(ledger: TransmissionLedger, limit: int = 50) -> None:
    """Display transmissions that need operator attention."""
    records = ledger.list_by_status(
        [TransmissionStatus.FAILED, TransmissionStatus.REJECTED], limit=limit
    )
    _print_records("Failed and Rejected Transmissions", records)


def show_stale(ledger: TransmissionLedger, older_than_minutes: int) -> None:
    """Display transmissions sent but never acknowledged."""
    records = ledger.get_stale_in_flight(older_than_minutes=older_than_minutes)
    _print_records(f"Unacknowledged for over {older_than_minutes} minutes", records)


def show_audit(ledger: TransmissionLedger, record_id: str) -> bool:
    """Display the audit trail for one transmission."""
    record = ledger.get(record_id)
    if record is None:
        print(f"Transmission {record_id} not found.")
        return False

    print(f"\n=== Audit Trail: {record.message_type} {record.message_control_id} ===")
    print(f"Destination: {record.destination}  Status: {record.status.value}")
    print("-" * 80)
    for entry in ledger.get_audit_trail(record_id):
        from_status = entry.from_status.value if entry.from_status else "-"
        print(
            f"{entry.performed_at.strftime('%Y-%m-%d %H:%M:%S')} | "
            f"{entry.action.value:12s} | "
            f"{from_status:>12s} -> {entry.to_status.value:12s} | "
            f"{entry.actor or ''}"
        )
        if entry.details:
            print(f"    {entry.details}")
    print("-" * 80)
    return True


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Deliver queued public health messages and report on the transmission ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Single delivery cycle
    python -m interop_src.runner --once

    # Show what would be sent
    python -m interop_src.runner --once --dry-run

    # Continuous delivery every 30 seconds
    python -m interop_src.runner --interval 30

    # Reporting
    python -m interop_src.runner --stats
    python -m interop_src.runner --recent 20
    python -m interop_src.runner --failed
    python -m interop_src.runner --audit <transmission-id>
        """,
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one delivery cycle and exit",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help=f"Polling interval in seconds (default: {Config.POLL_INTERVAL})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Don't send anything, just log what would be sent",
    )
    parser.add_argument(
        "--requeue",
        action="store_true",
        help="Requeue errored transmissions that are due for retry and exit",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show current statistics and exit",
    )
    parser.add_argument(
        "--recent",
        type=int,
        nargs="?",
        const=10,
        default=None,
        help="Show recent transmissions (default: 10)",
    )
    parser.add_argument(
        "--failed",
        action="store_true",
        help="Show failed and rejected transmissions",
    )
    parser.add_argument(
        "--stale",
        type=int,
        nargs="?",
        const=Config.STALE_IN_FLIGHT_MINUTES,
        default=None,
        help=f"Show transmissions unacknowledged for N minutes (default: {Config.STALE_IN_FLIGHT_MINUTES})",
    )
    parser.add_argument(
        "--audit",
        metavar="ID",
        default=None,
        help="Show the audit trail for a transmission",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help=f"Path to interop database (default: {Config.INTEROP_DB_PATH})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    logger = logging.getLogger(__name__)

    try:
        ledger = build_ledger(args.db_path)
    except Exception as e:
        logger.error(f"Failed to open transmission ledger: {e}")
        return 1

    # Reporting commands
    if args.stats:
        show_stats(ledger)
        return 0

    if args.recent is not None:
        show_recent(ledger, args.recent)
        return 0

    if args.failed:
        show_failed(ledger)
        return 0

    if args.stale is not None:
        show_stale(ledger, args.stale)
        return 0

    if args.audit:
        return 0 if show_audit(ledger, args.audit) else 1

    if args.requeue:
        requeued = ledger.requeue_due(actor="cli")
        logger.info(f"Requeued {len(requeued)} transmission(s)")
        return 0

    destinations = Config.get_destinations()
    logger.info("Public Health Transmission Worker")
    logger.info(f"  Database: {ledger.db_path}")
    logger.info(f"  Destinations: {', '.join(destinations) or 'none configured'}")
    logger.info(
        f"  Retry: every {Config.RETRY_DELAY_MINUTES} min, "
        f"max {Config.RETRY_MAX_ATTEMPTS} attempts"
    )

    worker = TransmissionWorker(
        ledger,
        destinations,
        batch_size=Config.WORKER_BATCH_SIZE,
        max_threads=Config.WORKER_MAX_THREADS,
    )

    if args.once or args.dry_run:
        try:
            result = worker.run_once(dry_run=args.dry_run)
        except Exception as e:
            logger.error(f"Delivery cycle failed: {e}", exc_info=True)
            return 1
        if args.dry_run:
            logger.info(f"[DRY RUN] {len(result.record_ids)} transmission(s) pending")
        return 0

    try:
        worker.run_continuous(interval=args.interval or Config.POLL_INTERVAL)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
