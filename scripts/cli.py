"""CLI entry point for running and administering the Booking Ingestor."""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from booking_ingestor.config.settings import BookingIngestorSettings
from booking_ingestor.core.auth import authenticate
from booking_ingestor.core.models import CycleProgress, ImportRecord, ImportStatus
from booking_ingestor.pipeline.ingestor import BookingIngestor


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def format_progress(progress: CycleProgress) -> str:
    text = (
        f"messages={progress.messages_seen} "
        f"skipped={progress.messages_skipped} "
        f"new_artifacts={progress.artifacts_created} "
        f"dispatched={progress.artifacts_dispatched} "
        f"retries={progress.retries_dispatched}"
    )
    if progress.error:
        text += f" error={progress.error}"
    return text


def format_record(record: ImportRecord) -> str:
    refs = ", ".join(record.result_refs) or "-"
    return (
        f"  {record.status.value:14s} {record.retry_count}  "
        f"{record.discriminator}  [{record.artifact_kind.value}] refs={refs}"
    )


def _validate_pagination_args(args: argparse.Namespace) -> None:
    """Reject negative pagination values."""
    if args.limit <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)
    if args.offset < 0:
        print("Error: --offset must be non-negative", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Booking Ingestor - Import bookings from mailbox notifications"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("authorize", help="Run the OAuth consent flow and cache the token")

    poll_parser = subparsers.add_parser("poll", help="Run a single poll cycle")
    poll_parser.add_argument(
        "--wait", action="store_true", help="Wait for dispatched imports to finish"
    )

    subparsers.add_parser("serve", help="Poll on a schedule until interrupted")

    imports_parser = subparsers.add_parser("imports", help="List import records")
    imports_parser.add_argument(
        "--status",
        choices=[s.value for s in ImportStatus],
        help="Only show records with this status",
    )
    imports_parser.add_argument("--limit", type=int, default=50, help="Maximum rows")
    imports_parser.add_argument("--offset", type=int, default=0, help="Skip the first N rows")

    show_parser = subparsers.add_parser("show", help="Show one import record")
    show_parser.add_argument("discriminator")

    subparsers.add_parser("status", help="Show import counts by status")

    retry_parser = subparsers.add_parser(
        "retry", help="Reset a failed or manual-review import and process it again"
    )
    retry_parser.add_argument("discriminator")

    allowlist_parser = subparsers.add_parser("allowlist", help="Show or replace the sender allowlist")
    allowlist_parser.add_argument(
        "--set", nargs="+", metavar="ENTRY", dest="entries",
        help="Exact addresses or @domain entries",
    )

    tour_parser = subparsers.add_parser("add-tour-type", help="Register a tour type code")
    tour_parser.add_argument("code")
    tour_parser.add_argument("name", nargs="?", default="")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "imports":
        _validate_pagination_args(args)

    settings = BookingIngestorSettings()
    setup_logging(settings.log_level)

    if args.command == "authorize":
        try:
            settings.ensure_directories()
            authenticate(settings.credentials_path, settings.token_path, interactive=True)
        except Exception as e:
            print(f"\nError: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"\nToken saved to {settings.token_path}")
        return

    ingestor = BookingIngestor(settings=settings)

    try:
        if args.command == "poll":
            progress = ingestor.run_poll_cycle(wait=args.wait)
            print(f"\nComplete: {format_progress(progress)}")
            if progress.error:
                sys.exit(1)

        elif args.command == "serve":
            signal.signal(signal.SIGTERM, lambda *_: ingestor.shutdown())
            if not settings.poll_enabled:
                print("\nPolling is disabled (BOOKING_INGEST_POLL_ENABLED=false)")
            ingestor.serve()

        elif args.command == "imports":
            status = ImportStatus(args.status) if args.status else None
            records = ingestor.list_imports(status, limit=args.limit, offset=args.offset)
            print(f"\n{len(records)} import(s):")
            for record in records:
                print(format_record(record))

        elif args.command == "show":
            record = ingestor.get_import(args.discriminator)
            if record is None:
                print(f"\nNo import {args.discriminator}", file=sys.stderr)
                sys.exit(1)
            print(f"\nDiscriminator: {record.discriminator}")
            print(f"Status:        {record.status.value} (retries: {record.retry_count})")
            print(f"From:          {record.source_sender}")
            print(f"Subject:       {record.source_subject}")
            print(f"Date:          {record.source_date.isoformat()}")
            print(f"Artifact:      {record.artifact_name} [{record.artifact_kind.value}]")
            print(f"Candidates:    {record.candidate_count}")
            print(f"Bookings:      {', '.join(record.result_refs) or '-'}")
            for skipped in record.skipped:
                print(f"Skipped:       {skipped.key} ({skipped.reason.value})")
            if record.error_message:
                print(f"Error:         {record.error_message}")

        elif args.command == "status":
            counts = ingestor.get_status()
            print("\nImport counts by status:")
            for status, count in sorted(counts.items()):
                print(f"  {status}: {count}")
            last = ingestor.last_run()
            if last:
                print(f"\nLast poll: {last['started_at']} ({last['messages_seen']} messages)")

        elif args.command == "retry":
            outcome = ingestor.retry_import(args.discriminator)
            if outcome is None:
                print(
                    f"\nImport {args.discriminator} not found or not in FAILED/MANUAL_REVIEW",
                    file=sys.stderr,
                )
                sys.exit(1)
            print(f"\nImport {args.discriminator}: {outcome.status.value}")

        elif args.command == "allowlist":
            entries = (
                ingestor.set_allowlist(args.entries) if args.entries else ingestor.get_allowlist()
            )
            print("\nAllowed senders:")
            for entry in entries:
                print(f"  {entry}")

        elif args.command == "add-tour-type":
            tour_type_id = ingestor.add_tour_type(args.code, args.name)
            print(f"\nTour type {args.code.upper()} registered (id {tour_type_id})")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        ingestor.close()


if __name__ == "__main__":
    main()
