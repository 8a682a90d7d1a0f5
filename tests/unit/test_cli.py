"""Unit tests for the command-line interface."""

from __future__ import annotations

import io
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog

from mail_archiver.cli import EXIT_CONFIG, EXIT_FAILURE, EXIT_OK, main
from mail_archiver.config import get_settings


@pytest.fixture
def cli_env(archive_root: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    for name in ("IMAP_HOST", "IMAP_USERNAME", "IMAP_PASSWORD", "INDEX_DB_PATH"):
        monkeypatch.delenv(f"MAIL_ARCHIVER_{name}", raising=False)
    monkeypatch.setenv("MAIL_ARCHIVER_ARCHIVE_ROOT", str(archive_root))
    monkeypatch.setenv("MAIL_ARCHIVER_LOG_LEVEL", "WARNING")
    monkeypatch.chdir(archive_root)
    get_settings.cache_clear()
    yield archive_root
    get_settings.cache_clear()
    structlog.reset_defaults()


class TestCli:
    """Test suite for the mail-archiver CLI."""

    def test_sync_without_imap_settings_is_config_error(self, cli_env: Path) -> None:
        assert main(["sync"]) == EXIT_CONFIG

    def test_invalid_setting_is_config_error(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAIL_ARCHIVER_BATCH_SIZE", "0")
        get_settings.cache_clear()

        assert main(["status"]) == EXIT_CONFIG

    def test_status_on_empty_archive(self, cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["status"]) == EXIT_OK

        out = capsys.readouterr().out
        assert "Archived messages: 0" in out
        assert "Last indexed: never" in out

    def test_index_then_search(
        self,
        cli_env: Path,
        make_message: Callable[..., bytes],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test indexing an archive and finding a message by subject."""
        cur = cli_env / "INBOX" / "cur"
        cur.mkdir(parents=True)
        (cur / "1.eml").write_bytes(make_message("<m1@example.com>", subject="Budget approval"))

        assert main(["index"]) == EXIT_OK
        assert main(["search", "budget"]) == EXIT_OK

        out = capsys.readouterr().out
        assert "Indexed 1 messages" in out
        assert "Budget approval" in out

    def test_malformed_search_query(self, cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["search", '"unterminated']) == EXIT_FAILURE
        assert "Invalid search query" in capsys.readouterr().err

    def test_rebuild_restores_records(
        self,
        cli_env: Path,
        make_message: Callable[..., bytes],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        cur = cli_env / "INBOX" / "cur"
        cur.mkdir(parents=True)
        (cur / "1.eml").write_bytes(make_message("<m1@example.com>"))

        assert main(["rebuild"]) == EXIT_OK
        assert "indexed 1 messages" in capsys.readouterr().out

    def test_logging_follows_replaced_stderr(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that loggers created after main() write to the current sys.stderr."""
        assert main(["status"]) == EXIT_OK
        replacement = io.StringIO()
        monkeypatch.setattr(sys, "stderr", replacement)

        structlog.get_logger().warning("after_cli_run", step=1)

        assert "after_cli_run" in replacement.getvalue()

    def test_sync_rejects_empty_date_window(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAIL_ARCHIVER_IMAP_HOST", "imap.invalid")
        monkeypatch.setenv("MAIL_ARCHIVER_IMAP_USERNAME", "user@example.com")
        monkeypatch.setenv("MAIL_ARCHIVER_IMAP_PASSWORD", "secret")
        get_settings.cache_clear()

        assert main(["sync", "--since", "2024-03-01", "--before", "2024-02-01"]) == EXIT_CONFIG

    def test_sync_date_flags_must_be_iso_dates(self, cli_env: Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["sync", "--since", "01/02/2024"])

        assert excinfo.value.code == 2
