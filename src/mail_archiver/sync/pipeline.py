"""Two-phase batch fetch: one envelope peek, then bodies for unknown messages."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from mail_archiver.imap.base import MailboxSession
from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.models import EnvelopeSummary
from mail_archiver.storage import layout
from mail_archiver.storage.writer import DurableWriter
from mail_archiver.sync.cursor import ContiguousProgress
from mail_archiver.sync.failures import ItemFailurePolicy
from mail_archiver.sync.resilience import is_item_failure
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()


class ItemOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    VANISHED = "vanished"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def processed(self) -> bool:
        """Whether the cursor may move past an item with this outcome."""
        return self is not ItemOutcome.FAILED


@dataclass
class BatchResult:
    """Outcome of one batch, in UID order."""

    highest_contiguous: int = 0
    new_count: int = 0
    skipped_count: int = 0
    failed_uids: list[int] = field(default_factory=list)
    abandoned_uids: list[int] = field(default_factory=list)
    vanished_uids: list[int] = field(default_factory=list)
    outcomes: dict[int, ItemOutcome] = field(default_factory=dict)

    def record(self, uid: int, outcome: ItemOutcome) -> None:
        self.outcomes[uid] = outcome
        if outcome is ItemOutcome.STORED:
            self.new_count += 1
        elif outcome is ItemOutcome.DUPLICATE:
            self.skipped_count += 1
        elif outcome is ItemOutcome.VANISHED:
            self.vanished_uids.append(uid)
        elif outcome is ItemOutcome.FAILED:
            self.failed_uids.append(uid)
        elif outcome is ItemOutcome.ABANDONED:
            self.abandoned_uids.append(uid)


class BatchFetchPipeline:
    """Fetches one batch of UIDs from the selected folder into the archive."""

    def __init__(
        self,
        index: ArchiveIndexRepository,
        writer: DurableWriter,
        failure_policy: ItemFailurePolicy | None = None,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        self._index = index
        self._writer = writer
        self._telemetry = telemetry or SyncTelemetry()
        self._failures = failure_policy or ItemFailurePolicy(index, telemetry=self._telemetry)

    async def fetch_batch(
        self,
        session: MailboxSession,
        folder: str,
        epoch: int,
        uids: Sequence[int],
    ) -> BatchResult:
        """Archive every message in ``uids`` that is not archived yet.

        Failures of a single message are recorded and reported in the result;
        anything that affects the whole session propagates to the caller with
        the batch left uncommitted.

        Returns:
            Per-item outcomes and the highest UID up to which every item of the
            batch was processed.
        """

        ordered = sorted(set(uids))
        if not ordered:
            return BatchResult()

        envelopes = {envelope.uid: envelope for envelope in await session.fetch_envelopes(ordered)}
        previously_failing = self._failures.known_failures(folder, epoch, ordered)

        result = BatchResult()
        progress = ContiguousProgress(ordered[0] - 1)

        for uid in ordered:
            envelope = envelopes.get(uid)
            if envelope is None:
                # Expunged between SEARCH and FETCH: nothing left to archive.
                self._telemetry.event("message_vanished", folder=folder, uid=uid)
                outcome = ItemOutcome.VANISHED
            else:
                try:
                    outcome = await self._archive(session, folder, envelope)
                except Exception as exc:
                    if not is_item_failure(exc):
                        raise
                    abandoned = self._failures.record_failure(folder, epoch, uid, exc)
                    outcome = ItemOutcome.ABANDONED if abandoned else ItemOutcome.FAILED
                else:
                    if uid in previously_failing:
                        self._failures.clear(folder, epoch, uid)

            result.record(uid, outcome)
            progress.record(uid, outcome.processed)

        result.highest_contiguous = progress.highest_contiguous
        self._telemetry.increment("sync.messages.new", result.new_count)
        self._telemetry.increment("sync.messages.skipped", result.skipped_count)
        logger.info(
            "batch_processed",
            folder=folder,
            first_uid=ordered[0],
            last_uid=ordered[-1],
            new=result.new_count,
            skipped=result.skipped_count,
            failed=len(result.failed_uids),
            highest_contiguous=result.highest_contiguous,
        )
        return result

    async def _archive(
        self,
        session: MailboxSession,
        folder: str,
        envelope: EnvelopeSummary,
    ) -> ItemOutcome:
        identity = layout.normalize_message_id(envelope.message_id)
        if identity and self._index.exists_by_identity(identity):
            return ItemOutcome.DUPLICATE

        stored = await self._writer.store(
            session.stream_body(envelope.uid),
            envelope.message_id,
            envelope.internal_date,
            folder,
        )
        return ItemOutcome.STORED if stored else ItemOutcome.DUPLICATE
