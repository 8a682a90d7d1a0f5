"""Per-folder resume points and checkpoint commits."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.models import MailboxCursor
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()


@dataclass(frozen=True)
class ResumePoint:
    """Where a folder sync picks up.

    ``last_acknowledged`` is the highest UID known to be fully processed; the
    next request covers ``start`` onwards. ``is_rescan`` is set when a stored
    cursor was discarded because the folder's epoch changed.
    """

    last_acknowledged: int
    epoch: int
    is_rescan: bool = False

    @property
    def start(self) -> int:
        return self.last_acknowledged + 1


class SyncCursorManager:
    """Reads and advances folder cursors in the index store."""

    def __init__(self, repository: ArchiveIndexRepository, telemetry: SyncTelemetry | None = None) -> None:
        self._repository = repository
        self._telemetry = telemetry or SyncTelemetry()

    def get_resume_point(self, folder: str, current_epoch: int) -> ResumePoint:
        """Resume point for ``folder`` given the epoch the server reports now.

        A cursor stored under a different epoch is ignored: the server has
        renumbered the folder, so the run starts over and relies on dedup.
        """

        cursor = self._repository.get_cursor(folder)
        if cursor is None:
            logger.info("cursor_missing", folder=folder, epoch=current_epoch)
            return ResumePoint(last_acknowledged=0, epoch=current_epoch)

        if cursor.validity_epoch != current_epoch:
            self._telemetry.event(
                "cursor_reset",
                level="warning",
                folder=folder,
                stored_epoch=cursor.validity_epoch,
                current_epoch=current_epoch,
                stored_position=cursor.last_acknowledged_position,
            )
            return ResumePoint(last_acknowledged=0, epoch=current_epoch, is_rescan=True)

        return ResumePoint(last_acknowledged=cursor.last_acknowledged_position, epoch=current_epoch)

    def commit(self, folder: str, position: int, epoch: int) -> bool:
        """Persist ``position`` as processed once its batch is durably stored.

        Returns:
            True if the stored cursor moved.
        """

        if position < 0:
            return False

        current = self._repository.get_cursor(folder)
        if current is None and position == 0:
            return False
        if (
            current is not None
            and current.validity_epoch == epoch
            and current.last_acknowledged_position >= position
        ):
            return False

        self._repository.set_cursor(
            MailboxCursor(folder_id=folder, validity_epoch=epoch, last_acknowledged_position=position)
        )
        logger.info("cursor_committed", folder=folder, epoch=epoch, position=position)
        return True


class ContiguousProgress:
    """Tracks the highest position up to which every item succeeded.

    Positions are offered in ascending order. The first failure freezes the
    watermark: later successes are remembered but never counted past the gap.
    """

    def __init__(self, last_acknowledged: int = 0) -> None:
        self._highest = last_acknowledged
        self._blocked = False

    @property
    def highest_contiguous(self) -> int:
        return self._highest

    @property
    def blocked(self) -> bool:
        return self._blocked

    def record(self, position: int, succeeded: bool) -> None:
        if position <= self._highest:
            return
        if not succeeded:
            self._blocked = True
            return
        if not self._blocked:
            self._highest = position
