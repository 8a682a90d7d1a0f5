"""Mailbox sync orchestration.

Wires the connection controller, cursor manager, batch pipeline and durable
writer together and runs them over the configured folders.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from mail_archiver.config import Settings
from mail_archiver.exceptions import SyncCancelledError
from mail_archiver.imap.base import MailboxSession, SessionFactory
from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.models import utc_now
from mail_archiver.storage.writer import DurableWriter
from mail_archiver.sync.cursor import ContiguousProgress, SyncCursorManager
from mail_archiver.sync.failures import ItemFailurePolicy
from mail_archiver.sync.pipeline import BatchFetchPipeline, BatchResult
from mail_archiver.sync.resilience import (
    BackoffPolicy,
    CircuitBreaker,
    ConnectionController,
    raise_if_cancelled,
)
from mail_archiver.telemetry import SyncTelemetry
from mail_archiver.utils import chunked

logger = structlog.get_logger()


@dataclass
class FolderSyncResult:
    """Counts for one folder, accumulated across connection retries."""

    folder: str
    uid_validity: int | None = None
    new: int = 0
    skipped: int = 0
    vanished: int = 0
    failed_uids: set[int] = field(default_factory=set)
    abandoned_uids: set[int] = field(default_factory=set)
    cursor: int = 0
    rescan: bool = False
    completed: bool = False

    def absorb(self, batch: BatchResult) -> None:
        self.new += batch.new_count
        self.skipped += batch.skipped_count
        self.vanished += len(batch.vanished_uids)
        self.failed_uids.update(batch.failed_uids)
        self.abandoned_uids.update(batch.abandoned_uids)
        # A later attempt may have succeeded where an earlier one failed.
        self.failed_uids.difference_update(
            uid for uid, outcome in batch.outcomes.items() if outcome.processed
        )


@dataclass
class SyncReport:
    """Summary of one sync run."""

    run_id: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    cancelled: bool = False
    folders: dict[str, FolderSyncResult] = field(default_factory=dict)
    telemetry: dict[str, Any] = field(default_factory=dict)

    def folder(self, name: str) -> FolderSyncResult:
        return self.folders.setdefault(name, FolderSyncResult(folder=name))

    @property
    def total_new(self) -> int:
        return sum(result.new for result in self.folders.values())

    @property
    def total_skipped(self) -> int:
        return sum(result.skipped for result in self.folders.values())

    @property
    def total_failed(self) -> int:
        return sum(len(result.failed_uids) for result in self.folders.values())


class MailboxSyncService:
    """Archives the configured remote folders into the local archive."""

    def __init__(
        self,
        settings: Settings,
        repository: ArchiveIndexRepository,
        session_factory: SessionFactory,
        *,
        telemetry: SyncTelemetry | None = None,
        controller: ConnectionController | None = None,
    ) -> None:
        """Create the service.

        Args:
            settings: Application settings.
            repository: Opened index repository for the archive root.
            session_factory: Coroutine function returning a connected session.
            telemetry: Run-scoped observability context.
            controller: Pre-built connection controller, mainly for tests.
        """

        self.settings = settings
        self._repository = repository
        self._telemetry = telemetry or SyncTelemetry()
        self._writer = DurableWriter(settings.archive_root, repository, self._telemetry)
        self._cursors = SyncCursorManager(repository, self._telemetry)
        self._pipeline = BatchFetchPipeline(
            repository,
            self._writer,
            ItemFailurePolicy(repository, settings.max_item_attempts, self._telemetry),
            self._telemetry,
        )
        self._controller = controller or ConnectionController(
            session_factory,
            backoff=BackoffPolicy(settings.backoff_base, settings.backoff_cap_seconds),
            breaker=CircuitBreaker(
                settings.breaker_failure_threshold,
                settings.breaker_cooldown_seconds,
                telemetry=self._telemetry,
            ),
            telemetry=self._telemetry,
        )

    async def run(
        self,
        folders: list[str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Sync every requested folder, resuming from the stored cursors.

        Args:
            folders: Folder names to sync. Defaults to the configured scope.
            cancel: Set to stop after the batch in flight.

        Returns:
            The run report. ``cancelled`` is set if the run was interrupted.
        """

        report = SyncReport(run_id=self._telemetry.run_id)
        completed: set[str] = set()
        self._writer.purge_stale_staging(self.settings.staging_max_age_seconds)

        async def work(session: MailboxSession) -> None:
            with self._telemetry.span("session"):
                targets = await self._resolve_folders(session, folders)
                for name in targets:
                    if name in completed:
                        continue
                    raise_if_cancelled(cancel)
                    await self._sync_folder(session, name, report.folder(name), cancel)
                    completed.add(name)

        logger.info("sync_started", run_id=report.run_id, archive_root=str(self.settings.archive_root))
        try:
            await self._controller.run_resilient(work, cancel)
        except SyncCancelledError:
            report.cancelled = True
            logger.warning("sync_cancelled", run_id=report.run_id)
        finally:
            report.finished_at = utc_now()
            report.telemetry = self._telemetry.snapshot()

        logger.info(
            "sync_completed",
            run_id=report.run_id,
            new=report.total_new,
            skipped=report.total_skipped,
            failed=report.total_failed,
            cancelled=report.cancelled,
        )
        return report

    async def _resolve_folders(self, session: MailboxSession, requested: list[str] | None) -> list[str]:
        if requested:
            return list(requested)
        if not self.settings.all_folders:
            return list(self.settings.folders)

        available = await session.list_folders()
        inbox = [name for name in available if name.upper() == "INBOX"]
        return inbox + [name for name in available if name.upper() != "INBOX"]

    async def _sync_folder(
        self,
        session: MailboxSession,
        folder: str,
        result: FolderSyncResult,
        cancel: asyncio.Event | None,
    ) -> None:
        with self._telemetry.span("folder_sync", folder=folder):
            status = await session.select_folder(folder)
            resume = self._cursors.get_resume_point(folder, status.uid_validity)
            result.uid_validity = status.uid_validity
            result.rescan = result.rescan or resume.is_rescan

            pending = await session.search_uids(
                resume.last_acknowledged, since=self.settings.since, before=self.settings.before
            )
            logger.info(
                "folder_sync_started",
                folder=folder,
                uid_validity=status.uid_validity,
                resume_from=resume.start,
                pending=len(pending),
                since=self.settings.since,
                before=self.settings.before,
            )

            # A date window skips UIDs that were never looked at, so the
            # contiguous cursor cannot move during such a run.
            commit_cursor = not self.settings.date_filtered
            progress = ContiguousProgress(resume.last_acknowledged)
            for batch in chunked(pending, self.settings.batch_size):
                raise_if_cancelled(cancel)
                batch_result = await self._pipeline.fetch_batch(
                    session, folder, status.uid_validity, batch
                )
                for uid in sorted(batch_result.outcomes):
                    progress.record(uid, batch_result.outcomes[uid].processed)
                result.absorb(batch_result)
                if commit_cursor:
                    self._cursors.commit(folder, progress.highest_contiguous, status.uid_validity)

            if commit_cursor:
                # Records the epoch even when there was nothing to fetch.
                self._cursors.commit(folder, progress.highest_contiguous, status.uid_validity)
                result.cursor = progress.highest_contiguous
            else:
                logger.info(
                    "cursor_commit_skipped",
                    folder=folder,
                    reason="date_filter",
                    cursor=resume.last_acknowledged,
                )
                result.cursor = resume.last_acknowledged
            result.completed = True

        logger.info(
            "folder_sync_completed",
            folder=folder,
            new=result.new,
            skipped=result.skipped,
            failed=len(result.failed_uids),
            cursor=result.cursor,
        )
