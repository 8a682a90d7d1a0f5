"""Unit tests for the sync cursor manager and contiguous progress tracking."""

from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.models import MailboxCursor
from mail_archiver.sync.cursor import ContiguousProgress, SyncCursorManager
from mail_archiver.telemetry import SyncTelemetry


class TestSyncCursorManager:
    """Test suite for SyncCursorManager."""

    def test_missing_cursor_starts_at_beginning(self, repository: ArchiveIndexRepository) -> None:
        """Test the resume point of a never-synced folder."""
        resume = SyncCursorManager(repository).get_resume_point("INBOX", 1000)

        assert resume.last_acknowledged == 0
        assert resume.start == 1
        assert resume.epoch == 1000
        assert resume.is_rescan is False

    def test_matching_epoch_resumes_after_cursor(self, repository: ArchiveIndexRepository) -> None:
        """Test that a trusted cursor is resumed from the next UID."""
        manager = SyncCursorManager(repository)
        manager.commit("INBOX", 203, 1000)

        resume = manager.get_resume_point("INBOX", 1000)

        assert resume.last_acknowledged == 203
        assert resume.start == 204

    def test_epoch_mismatch_resets_to_start(self, repository: ArchiveIndexRepository) -> None:
        """Test that a renumbered folder is rescanned from the beginning."""
        telemetry = SyncTelemetry()
        manager = SyncCursorManager(repository, telemetry)
        repository.set_cursor(MailboxCursor(folder_id="INBOX", validity_epoch=1000, last_acknowledged_position=500))

        resume = manager.get_resume_point("INBOX", 2000)

        assert resume.last_acknowledged == 0
        assert resume.epoch == 2000
        assert resume.is_rescan is True
        assert telemetry.events["cursor_reset"] == 1

    def test_commit_only_moves_forward(self, repository: ArchiveIndexRepository) -> None:
        """Test that commits never rewind a cursor within an epoch."""
        manager = SyncCursorManager(repository)

        assert manager.commit("INBOX", 100, 1000) is True
        assert manager.commit("INBOX", 100, 1000) is False
        assert manager.commit("INBOX", 90, 1000) is False
        assert repository.get_cursor("INBOX").last_acknowledged_position == 100

    def test_commit_records_new_epoch_even_at_zero(self, repository: ArchiveIndexRepository) -> None:
        """Test that an empty rescan still replaces a stale epoch."""
        manager = SyncCursorManager(repository)
        manager.commit("INBOX", 100, 1000)

        assert manager.commit("INBOX", 0, 2000) is True
        cursor = repository.get_cursor("INBOX")
        assert cursor.validity_epoch == 2000
        assert cursor.last_acknowledged_position == 0

    def test_nothing_to_commit_for_new_folder(self, repository: ArchiveIndexRepository) -> None:
        assert SyncCursorManager(repository).commit("INBOX", 0, 1000) is False
        assert repository.get_cursor("INBOX") is None


class TestContiguousProgress:
    """Test suite for ContiguousProgress."""

    def test_mid_batch_failure_holds_cursor(self) -> None:
        """Test that 100 ok, 101 failed, 102 ok yields 100."""
        progress = ContiguousProgress(99)

        progress.record(100, True)
        progress.record(101, False)
        progress.record(102, True)

        assert progress.highest_contiguous == 100
        assert progress.blocked is True

    def test_sparse_uids_advance(self) -> None:
        """Test that gaps in the UID space are not failures."""
        progress = ContiguousProgress(10)

        for uid in (15, 40, 41):
            progress.record(uid, True)

        assert progress.highest_contiguous == 41

    def test_first_item_failure_keeps_starting_point(self) -> None:
        progress = ContiguousProgress(200)

        progress.record(201, False)
        progress.record(202, True)

        assert progress.highest_contiguous == 200
