"""Command-line interface for Mail Archiver.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sqlite3
import sys
from datetime import date

import structlog

from mail_archiver import __version__
from mail_archiver.config import Settings, get_settings
from mail_archiver.exceptions import AuthenticationError, ConfigurationError, MailArchiverError
from mail_archiver.imap.client import ImapClient
from mail_archiver.index import ArchiveIndexRepository, ChangeSignatureStore
from mail_archiver.indexing.manager import IndexManager
from mail_archiver.indexing.parser import EmailParser
from mail_archiver.indexing.scanner import IncrementalScanner
from mail_archiver.sync.service import MailboxSyncService, SyncReport
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_CANCELLED = 130


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mail-archiver", description="Mail Archiver")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Archive new messages from the IMAP server")
    sync_parser.add_argument(
        "--folder",
        dest="folders",
        action="append",
        default=None,
        help="Folder to sync; repeat for several (default: settings folders)",
    )
    sync_parser.add_argument(
        "--all-folders",
        action="store_true",
        help="Sync every selectable folder on the server",
    )
    sync_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Messages per fetch batch (default: settings batch_size)",
    )
    sync_parser.add_argument(
        "--since",
        type=_iso_date,
        default=None,
        metavar="YYYY-MM-DD",
        help="Only archive messages received on or after this date; the cursor is left untouched",
    )
    sync_parser.add_argument(
        "--before",
        type=_iso_date,
        default=None,
        metavar="YYYY-MM-DD",
        help="Only archive messages received before this date; the cursor is left untouched",
    )

    index_parser = subparsers.add_parser("index", help="Index new and changed archive files for search")
    index_parser.add_argument("--force", action="store_true", help="Re-parse every file")
    index_parser.add_argument(
        "--include-body",
        action="store_true",
        help="Store full message bodies in the search index",
    )

    subparsers.add_parser(
        "rebuild",
        help="Quarantine the index and rebuild it from the archive on disk",
    )

    search_parser = subparsers.add_parser("search", help="Full-text search of the archive")
    search_parser.add_argument("query", help="FTS5 query")
    search_parser.add_argument("--limit", type=int, default=25, help="Max results")

    subparsers.add_parser("status", help="Show archive and sync status")

    return parser


def _stderr_logger(*args: object) -> structlog.PrintLogger:
    # Resolved per logger so a replaced sys.stderr is picked up. Logs go to
    # stderr so command output on stdout stays clean.
    return structlog.PrintLogger(file=sys.stderr)


def _configure_logging(settings: Settings) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format.lower() == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        logger_factory=_stderr_logger,
    )


def _open_repository(settings: Settings, telemetry: SyncTelemetry) -> ArchiveIndexRepository:
    settings.archive_root.mkdir(parents=True, exist_ok=True)
    repository = ArchiveIndexRepository(settings.resolved_index_db_path, settings.archive_root, telemetry)
    repository.open()
    return repository


def _index_manager(
    settings: Settings,
    repository: ArchiveIndexRepository,
    telemetry: SyncTelemetry,
) -> IndexManager:
    signatures = ChangeSignatureStore(repository)
    scanner = IncrementalScanner(
        signatures,
        trust_directory_watermarks=settings.trust_directory_watermarks,
        digest_bytes=settings.signature_digest_bytes,
        telemetry=telemetry,
    )
    return IndexManager(
        repository,
        signatures,
        scanner,
        EmailParser(include_body=settings.index_include_body),
        batch_size=settings.index_batch_size,
        telemetry=telemetry,
    )


def _install_signal_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def request_cancel(signame: str) -> None:
        if not cancel.is_set():
            logger.warning("cancellation_requested", signal=signame)
            cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_cancel, sig.name)
        except (NotImplementedError, RuntimeError):
            # Platforms without loop signal support fall back to KeyboardInterrupt.
            logger.debug("signal_handler_unavailable", signal=sig.name)


def _print_report(report: SyncReport) -> None:
    for result in report.folders.values():
        line = (
            f"{result.folder}: {result.new} new, {result.skipped} skipped, "
            f"{len(result.failed_uids)} failed, cursor {result.cursor}"
        )
        if result.abandoned_uids:
            line += f", {len(result.abandoned_uids)} abandoned"
        if result.rescan:
            line += " (full rescan: UIDVALIDITY changed)"
        print(line)
    print(f"Total: {report.total_new} new, {report.total_skipped} skipped, {report.total_failed} failed")


async def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    overrides: dict[str, object] = {}
    if args.all_folders:
        overrides["all_folders"] = True
    if args.batch_size:
        overrides["batch_size"] = args.batch_size
    if args.since:
        overrides["since"] = args.since
    if args.before:
        overrides["before"] = args.before
    if overrides:
        settings = settings.model_copy(update=overrides)

    settings.require_imap()
    settings.require_date_range()
    telemetry = SyncTelemetry()
    repository = _open_repository(settings, telemetry)
    client = ImapClient(settings)
    service = MailboxSyncService(settings, repository, client.connect, telemetry=telemetry)

    cancel = asyncio.Event()
    _install_signal_handlers(cancel)

    report = await service.run(folders=args.folders, cancel=cancel)
    _print_report(report)
    if report.cancelled:
        print("Sync cancelled; the next run resumes from the last committed batch.")
        return EXIT_CANCELLED
    return EXIT_OK


def _cmd_index(args: argparse.Namespace, settings: Settings) -> int:
    if args.include_body:
        settings = settings.model_copy(update={"index_include_body": True})

    telemetry = SyncTelemetry()
    repository = _open_repository(settings, telemetry)
    manager = _index_manager(settings, repository, telemetry)
    result = manager.index(settings.archive_root, force=args.force)
    print(
        f"Indexed {result.indexed} messages, skipped {result.skipped} unchanged, "
        f"{result.errors} errors in {result.duration_seconds:.1f}s"
    )
    return EXIT_OK if result.errors == 0 else EXIT_FAILURE


def _cmd_rebuild(args: argparse.Namespace, settings: Settings) -> int:
    telemetry = SyncTelemetry()
    settings.archive_root.mkdir(parents=True, exist_ok=True)
    repository = ArchiveIndexRepository(settings.resolved_index_db_path, settings.archive_root, telemetry)
    restored = repository.recover()
    result = _index_manager(settings, repository, telemetry).rebuild(settings.archive_root)
    print(f"Restored {restored} archive records and indexed {result.indexed} messages")
    return EXIT_OK if result.errors == 0 else EXIT_FAILURE


def _cmd_search(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, SyncTelemetry())
    try:
        results = repository.search(args.query, limit=args.limit)
    except sqlite3.OperationalError as exc:
        print(f"Invalid search query: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    for doc in results:
        date_part = doc.date_sent.isoformat() if doc.date_sent else "(no date)"
        from_part = doc.from_address or doc.from_name or "(unknown sender)"
        print(f"{date_part}\t{doc.folder or '-'}\t{from_part}\t{doc.subject or ''}\t{doc.file_path}")
    return EXIT_OK


def _cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, SyncTelemetry())
    stats = repository.stats()
    print(f"Archive root: {settings.archive_root}")
    print(f"Index: {repository.db_path}")
    print(f"Archived messages: {stats.total_messages} in {stats.folders} folders")
    print(f"Search documents: {stats.indexed_documents}")
    print(f"Tracked files: {stats.tracked_signatures}")
    print(f"Abandoned messages: {stats.abandoned_items}")
    print(f"Last indexed: {stats.last_indexed_at or 'never'}")
    if stats.cursors:
        print("\nFolder cursors:")
        for cursor in stats.cursors:
            print(
                f"- {cursor.folder_id}: UID {cursor.last_acknowledged_position} "
                f"(UIDVALIDITY {cursor.validity_epoch}, {cursor.updated_at.isoformat()})"
            )
    return EXIT_OK


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Mail Archiver CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        settings = get_settings()
    except ValueError as exc:
        # pydantic's ValidationError is a ValueError.
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    _configure_logging(settings)
    logger.info("mail_archiver_started", version=__version__, command=parsed.command, debug=settings.debug)

    try:
        if parsed.command == "sync":
            return asyncio.run(_cmd_sync(parsed, settings))
        if parsed.command == "index":
            return _cmd_index(parsed, settings)
        if parsed.command == "rebuild":
            return _cmd_rebuild(parsed, settings)
        if parsed.command == "search":
            return _cmd_search(parsed, settings)
        if parsed.command == "status":
            return _cmd_status(parsed, settings)
    except ConfigurationError as exc:
        logger.error("configuration_error", error=str(exc))
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except AuthenticationError as exc:
        logger.error("authentication_failed", error=str(exc))
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return EXIT_AUTH
    except KeyboardInterrupt:
        logger.warning("interrupted")
        return EXIT_CANCELLED
    except (MailArchiverError, OSError, sqlite3.Error) as exc:
        logger.exception("command_failed", command=parsed.command, error=str(exc))
        return EXIT_FAILURE

    logger.error("unknown_command", command=parsed.command)
    return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
