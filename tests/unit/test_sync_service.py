"""Unit tests for MailboxSyncService against an in-memory IMAP server."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from mail_archiver.config import Settings
from mail_archiver.exceptions import AuthenticationError
from mail_archiver.index import ArchiveIndexRepository
from mail_archiver.storage import layout
from mail_archiver.sync.service import MailboxSyncService
from mail_archiver.telemetry import SyncTelemetry


def _archived_files(archive_root: Path) -> list[Path]:
    return sorted(path for path in archive_root.rglob("*") if layout.is_message_file(path))


def _service(
    settings: Settings,
    repository: ArchiveIndexRepository,
    fake_mailbox,
    telemetry: SyncTelemetry | None = None,
) -> MailboxSyncService:
    return MailboxSyncService(settings, repository, fake_mailbox.connect, telemetry=telemetry)


class TestMailboxSyncService:
    """Test suite for end-to-end sync runs."""

    @pytest.mark.asyncio
    async def test_first_run_archives_and_commits_cursor(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that four new messages land on disk and the cursor reaches the last UID."""
        for uid in (200, 201, 202, 203):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))

        report = await _service(test_settings, repository, fake_mailbox).run()

        result = report.folder("INBOX")
        assert result.new == 4
        assert result.cursor == 203
        assert result.completed is True
        assert report.cancelled is False
        cursor = repository.get_cursor("INBOX")
        assert cursor.validity_epoch == 1000
        assert cursor.last_acknowledged_position == 203
        assert len(_archived_files(test_settings.archive_root)) == 4
        assert repository.message_count() == 4

    @pytest.mark.asyncio
    async def test_second_run_fetches_nothing(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that an unchanged mailbox costs no body fetches on the next run."""
        for uid in (200, 201, 202, 203):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        service = _service(test_settings, repository, fake_mailbox)

        await service.run()
        fetched = len(fake_mailbox.body_fetches)
        envelope_rounds = len(fake_mailbox.envelope_requests)
        report = await service.run()

        assert report.total_new == 0
        assert len(fake_mailbox.body_fetches) == fetched
        assert len(fake_mailbox.envelope_requests) == envelope_rounds
        assert repository.message_count() == 4

    @pytest.mark.asyncio
    async def test_failed_message_holds_cursor_and_is_reoffered(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a failure at 101 keeps the cursor at 100 until it succeeds."""
        for uid in (100, 101, 102):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        fake_mailbox.failing_uids = {101}
        service = _service(test_settings, repository, fake_mailbox)

        first = await service.run()

        assert first.folder("INBOX").failed_uids == {101}
        assert first.folder("INBOX").cursor == 100
        assert repository.get_cursor("INBOX").last_acknowledged_position == 100
        assert repository.exists_by_identity("m102@example.com")

        fake_mailbox.failing_uids = set()
        fake_mailbox.envelope_requests.clear()
        second = await service.run()

        assert fake_mailbox.envelope_requests[0] == [101, 102]
        assert second.folder("INBOX").new == 1
        assert second.folder("INBOX").skipped == 1
        assert repository.get_cursor("INBOX").last_acknowledged_position == 102
        assert len(_archived_files(test_settings.archive_root)) == 3

    @pytest.mark.asyncio
    async def test_persistent_failure_is_abandoned(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that the cursor moves past a message once it exhausts its attempts."""
        for uid in (1, 2):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        fake_mailbox.failing_uids = {1}
        settings = test_settings.model_copy(update={"max_item_attempts": 2})
        service = _service(settings, repository, fake_mailbox)

        await service.run()
        assert repository.get_cursor("INBOX") is None

        report = await service.run()

        assert report.folder("INBOX").abandoned_uids == {1}
        assert repository.get_cursor("INBOX").last_acknowledged_position == 2
        assert repository.get_item_failure("INBOX", 1000, 1).abandoned is True

    @pytest.mark.asyncio
    async def test_date_filtered_run_leaves_cursor_unset(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a date window archives matching mail without committing a cursor."""
        february = datetime(2024, 2, 10, tzinfo=timezone.utc)
        for uid in (200, 201, 202, 203):
            received = february if uid in (201, 202) else None
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"), received=received)
        filtered = test_settings.model_copy(update={"since": date(2024, 2, 1), "before": date(2024, 3, 1)})

        report = await _service(filtered, repository, fake_mailbox).run()

        assert fake_mailbox.searches[-1] == (0, date(2024, 2, 1), date(2024, 3, 1))
        assert report.folder("INBOX").new == 2
        assert report.folder("INBOX").cursor == 0
        assert repository.get_cursor("INBOX") is None
        assert sorted(fake_mailbox.body_fetches) == [201, 202]

        # The unfiltered run still sees the messages outside the window.
        report = await _service(test_settings, repository, fake_mailbox).run()

        assert report.folder("INBOX").new == 2
        assert repository.get_cursor("INBOX").last_acknowledged_position == 203
        assert repository.message_count() == 4

    @pytest.mark.asyncio
    async def test_date_filtered_run_keeps_existing_cursor(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a filtered run neither advances nor rewinds a committed cursor."""
        for uid in (200, 201):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        await _service(test_settings, repository, fake_mailbox).run()
        fake_mailbox.add("INBOX", 202, make_message("<m202@example.com>"))
        fake_mailbox.add(
            "INBOX", 203, make_message("<m203@example.com>"), received=datetime(2024, 3, 5, tzinfo=timezone.utc)
        )
        filtered = test_settings.model_copy(update={"since": date(2024, 3, 1)})

        report = await _service(filtered, repository, fake_mailbox).run()

        assert report.folder("INBOX").new == 1
        assert report.folder("INBOX").cursor == 201
        assert repository.get_cursor("INBOX").last_acknowledged_position == 201

        report = await _service(test_settings, repository, fake_mailbox).run()

        assert report.folder("INBOX").new == 1
        assert repository.get_cursor("INBOX").last_acknowledged_position == 203
        assert len(_archived_files(test_settings.archive_root)) == 4

    @pytest.mark.asyncio
    async def test_connection_drop_is_retried_without_duplicates(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a dropped connection mid-batch reconnects and resumes."""
        for uid in (200, 201, 202, 203):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        fake_mailbox.drop_after_bodies = 1
        telemetry = SyncTelemetry()

        report = await _service(test_settings, repository, fake_mailbox, telemetry).run()

        assert fake_mailbox.connections == 2
        assert telemetry.events["connection_retry"] == 1
        assert report.cancelled is False
        assert repository.get_cursor("INBOX").last_acknowledged_position == 203
        assert len(_archived_files(test_settings.archive_root)) == 4
        assert repository.message_count() == 4
        assert not list(test_settings.archive_root.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_connect_failures_are_retried(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that refused connections back off and eventually succeed."""
        fake_mailbox.add("INBOX", 1, make_message("<only@example.com>"))
        fake_mailbox.connect_failures = 2

        report = await _service(test_settings, repository, fake_mailbox).run()

        assert fake_mailbox.connections == 3
        assert report.total_new == 1

    @pytest.mark.asyncio
    async def test_epoch_change_rescans_without_duplicates(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a renumbered folder is rescanned and nothing is archived twice."""
        for uid in (200, 201):
            fake_mailbox.add("INBOX", uid, make_message(f"<m{uid}@example.com>"))
        service = _service(test_settings, repository, fake_mailbox)
        await service.run()

        fake_mailbox.folders["INBOX"] = {
            1: make_message("<m200@example.com>"),
            2: make_message("<m201@example.com>"),
        }
        fake_mailbox.uid_validity["INBOX"] = 2000
        fetched = len(fake_mailbox.body_fetches)
        telemetry = SyncTelemetry()
        report = await _service(test_settings, repository, fake_mailbox, telemetry).run()

        result = report.folder("INBOX")
        assert result.rescan is True
        assert result.new == 0
        assert result.skipped == 2
        assert telemetry.events["cursor_reset"] == 1
        assert len(fake_mailbox.body_fetches) == fetched
        cursor = repository.get_cursor("INBOX")
        assert (cursor.validity_epoch, cursor.last_acknowledged_position) == (2000, 2)
        assert len(_archived_files(test_settings.archive_root)) == 2

    @pytest.mark.asyncio
    async def test_emptied_folder_records_new_epoch(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a renumbered empty folder does not rescan on every run."""
        fake_mailbox.add("INBOX", 5, make_message("<m5@example.com>"))
        await _service(test_settings, repository, fake_mailbox).run()

        fake_mailbox.folders["INBOX"] = {}
        fake_mailbox.uid_validity["INBOX"] = 2000
        await _service(test_settings, repository, fake_mailbox).run()
        telemetry = SyncTelemetry()
        report = await _service(test_settings, repository, fake_mailbox, telemetry).run()

        cursor = repository.get_cursor("INBOX")
        assert (cursor.validity_epoch, cursor.last_acknowledged_position) == (2000, 0)
        assert report.folder("INBOX").rescan is False
        assert telemetry.events["cursor_reset"] == 0

    @pytest.mark.asyncio
    async def test_empty_mailbox_leaves_no_cursor(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
    ) -> None:
        report = await _service(test_settings, repository, fake_mailbox).run()

        assert report.folder("INBOX").completed is True
        assert repository.get_cursor("INBOX") is None

    @pytest.mark.asyncio
    async def test_authentication_failure_is_raised(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
    ) -> None:
        """Test that rejected credentials stop the run instead of retrying."""
        fake_mailbox.reject_login = True

        with pytest.raises(AuthenticationError):
            await _service(test_settings, repository, fake_mailbox).run()

        assert fake_mailbox.connections == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test that a pre-set cancel event yields a cancelled report."""
        fake_mailbox.add("INBOX", 1, make_message("<m1@example.com>"))
        cancel = asyncio.Event()
        cancel.set()

        report = await _service(test_settings, repository, fake_mailbox).run(cancel=cancel)

        assert report.cancelled is True
        assert report.finished_at is not None
        assert fake_mailbox.connections == 0
        assert repository.get_cursor("INBOX") is None

    @pytest.mark.asyncio
    async def test_all_folders_puts_inbox_first(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        """Test folder discovery when every folder is requested."""
        fake_mailbox.folders = {"Archive": {}, "INBOX": {}}
        fake_mailbox.add("Archive", 7, make_message("<old@example.com>"))
        fake_mailbox.add("INBOX", 1, make_message("<new@example.com>"))
        settings = test_settings.model_copy(update={"all_folders": True})

        report = await _service(settings, repository, fake_mailbox).run()

        assert list(report.folders) == ["INBOX", "Archive"]
        assert report.total_new == 2
        assert (test_settings.archive_root / "Archive" / "cur").is_dir()

    @pytest.mark.asyncio
    async def test_explicit_folders_override_settings(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        fake_mailbox.add("Sent", 3, make_message("<sent@example.com>"))

        report = await _service(test_settings, repository, fake_mailbox).run(folders=["Sent"])

        assert list(report.folders) == ["Sent"]
        assert repository.get_cursor("INBOX") is None
        assert repository.get_cursor("Sent").last_acknowledged_position == 3

    @pytest.mark.asyncio
    async def test_report_carries_telemetry_snapshot(
        self,
        test_settings: Settings,
        repository: ArchiveIndexRepository,
        fake_mailbox,
        make_message: Callable[..., bytes],
    ) -> None:
        fake_mailbox.add("INBOX", 1, make_message("<m1@example.com>"))

        report = await _service(test_settings, repository, fake_mailbox).run()

        assert report.telemetry["counters"]["sync.messages.new"] == 1
        assert report.telemetry["run_id"] == report.run_id
