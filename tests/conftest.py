"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from datetime import date, datetime, timedelta, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesHeaderParser
from pathlib import Path

import pytest

from mail_archiver.exceptions import AuthenticationError, ImapConnectionError, ItemFetchError
from mail_archiver.models import EnvelopeSummary, FolderStatus


def build_message(
    message_id: str | None,
    subject: str = "Quarterly report",
    body: str = "Please find the numbers below.",
    *,
    sender: str = "Alice Example <alice@example.com>",
    to: str = "bob@example.com",
    attachment: str | None = None,
    html: str | None = None,
) -> bytes:
    message = EmailMessage()
    if message_id is not None:
        message["Message-ID"] = message_id
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = to
    message["Date"] = "Mon, 01 Jan 2024 10:00:00 +0000"
    message.set_content(body)
    if html is not None:
        message.add_alternative(html, subtype="html")
    if attachment is not None:
        message.add_attachment(
            b"%PDF-1.4 fake",
            maintype="application",
            subtype="pdf",
            filename=attachment,
        )
    return message.as_bytes()


class FakeMailbox:
    """In-memory IMAP server shared by every session it hands out."""

    def __init__(self) -> None:
        self.folders: dict[str, dict[int, bytes]] = {"INBOX": {}}
        self.uid_validity: dict[str, int] = {"INBOX": 1000}
        self.failing_uids: set[int] = set()
        self.vanishing_uids: set[int] = set()
        self.connect_failures = 0
        self.drop_after_bodies: int | None = None
        self.reject_login = False
        self.connections = 0
        self.body_fetches: list[int] = []
        self.envelope_requests: list[list[int]] = []
        self.internal_dates: dict[int, datetime] = {}
        self.searches: list[tuple[int, date | None, date | None]] = []

    def add(self, folder: str, uid: int, raw: bytes, received: datetime | None = None) -> None:
        self.folders.setdefault(folder, {})[uid] = raw
        self.uid_validity.setdefault(folder, 1000)
        if received is not None:
            self.internal_dates[uid] = received

    def internal_date(self, uid: int) -> datetime:
        default = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=uid)
        return self.internal_dates.get(uid, default)

    async def connect(self) -> FakeMailboxSession:
        self.connections += 1
        if self.reject_login:
            raise AuthenticationError("LOGIN rejected: [AUTHENTICATIONFAILED] Invalid credentials")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ImapConnectionError("connection refused")
        return FakeMailboxSession(self)


class FakeMailboxSession:
    """``MailboxSession`` backed by a ``FakeMailbox``."""

    def __init__(self, mailbox: FakeMailbox) -> None:
        self.mailbox = mailbox
        self.selected: str | None = None
        self.closed = False

    async def list_folders(self) -> list[str]:
        return list(self.mailbox.folders)

    async def select_folder(self, name: str) -> FolderStatus:
        self.selected = name
        return FolderStatus(
            name=name,
            uid_validity=self.mailbox.uid_validity[name],
            exists=len(self.mailbox.folders[name]),
        )

    async def search_uids(
        self, after: int, since: date | None = None, before: date | None = None
    ) -> list[int]:
        self.mailbox.searches.append((after, since, before))
        matches = []
        for uid in self.mailbox.folders[self.selected]:
            if uid <= after:
                continue
            received = self.mailbox.internal_date(uid).date()
            if since is not None and received < since:
                continue
            if before is not None and received >= before:
                continue
            matches.append(uid)
        return sorted(matches)

    async def fetch_envelopes(self, uids: Sequence[int]) -> list[EnvelopeSummary]:
        self.mailbox.envelope_requests.append(list(uids))
        messages = self.mailbox.folders[self.selected]
        envelopes = []
        for uid in uids:
            if uid not in messages or uid in self.mailbox.vanishing_uids:
                continue
            headers = BytesHeaderParser(policy=policy.default).parsebytes(messages[uid])
            message_id = headers.get("Message-ID")
            envelopes.append(
                EnvelopeSummary(
                    uid=uid,
                    message_id=str(message_id) if message_id else None,
                    subject=str(headers.get("Subject") or ""),
                    internal_date=self.mailbox.internal_date(uid),
                    size=len(messages[uid]),
                )
            )
        return envelopes

    async def stream_body(self, uid: int) -> AsyncIterator[bytes]:
        mailbox = self.mailbox
        if mailbox.drop_after_bodies is not None and len(mailbox.body_fetches) >= mailbox.drop_after_bodies:
            mailbox.drop_after_bodies = None
            raise ImapConnectionError("connection reset by peer")
        mailbox.body_fetches.append(uid)
        if uid in mailbox.failing_uids:
            raise ItemFetchError(f"UID {uid} returned no content")
        raw = mailbox.folders[self.selected][uid]
        for offset in range(0, len(raw), 64):
            yield raw[offset : offset + 64]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_message() -> Callable[..., bytes]:
    """Provide a builder for RFC 822 messages."""
    return build_message


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    """Provide an in-memory IMAP server."""
    return FakeMailbox()


@pytest.fixture
def archive_root(tmp_path: Path) -> Path:
    root = tmp_path / "archive"
    root.mkdir()
    return root


@pytest.fixture
def test_settings(archive_root: Path):
    """Provide settings pointing at a temporary archive."""
    from mail_archiver.config import Settings

    return Settings(
        _env_file=None,
        imap_host="imap.test",
        imap_username="user@example.com",
        imap_password="secret",
        archive_root=archive_root,
        batch_size=2,
        backoff_cap_seconds=0.01,
        breaker_cooldown_seconds=0,
        staging_max_age_seconds=3600,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def repository(archive_root: Path):
    """Provide an opened index repository for the temporary archive."""
    from mail_archiver.index import ArchiveIndexRepository

    repo = ArchiveIndexRepository(archive_root / "index.v1.db", archive_root)
    repo.open()
    return repo
