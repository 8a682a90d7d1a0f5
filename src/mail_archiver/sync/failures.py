"""Give-up policy for messages that keep failing to fetch."""

from __future__ import annotations

from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.telemetry import SyncTelemetry


class ItemFailurePolicy:
    """Counts failed attempts per message across runs.

    A message that has failed ``max_attempts`` times is abandoned: it stops
    holding the folder cursor back. Its failure record stays in the index so
    operators can find it. ``max_attempts=0`` never abandons anything.
    """

    def __init__(
        self,
        repository: ArchiveIndexRepository,
        max_attempts: int = 5,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self._repository = repository
        self._max_attempts = max_attempts
        self._telemetry = telemetry or SyncTelemetry()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def record_failure(self, folder: str, epoch: int, uid: int, error: BaseException) -> bool:
        """Record a failed attempt.

        Returns:
            True if the message is now abandoned and counts as processed.
        """

        attempts = self._repository.record_item_failure(
            folder, epoch, uid, f"{type(error).__name__}: {error}"
        )
        self._telemetry.event(
            "item_fetch_failed",
            level="warning",
            folder=folder,
            uid=uid,
            attempts=attempts,
            error_type=type(error).__name__,
            error=str(error),
        )

        if self._max_attempts == 0 or attempts < self._max_attempts:
            return False

        self._repository.mark_item_abandoned(folder, epoch, uid)
        self._telemetry.event(
            "item_abandoned",
            level="error",
            folder=folder,
            uid=uid,
            attempts=attempts,
        )
        return True

    def known_failures(self, folder: str, epoch: int, uids: list[int]) -> set[int]:
        return self._repository.failing_uids(folder, epoch, uids)

    def clear(self, folder: str, epoch: int, uid: int) -> None:
        self._repository.clear_item_failure(folder, epoch, uid)
