"""The remote mailbox contract the sync core is written against."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from datetime import date
from typing import Protocol

from mail_archiver.models import EnvelopeSummary, FolderStatus


class MailboxSession(Protocol):
    """One authenticated, stateful connection to the remote mailbox."""

    async def list_folders(self) -> list[str]:
        """Names of all selectable folders."""
        ...

    async def select_folder(self, name: str) -> FolderStatus:
        """Open a folder read-only and report its validity epoch."""
        ...

    async def search_uids(
        self, after: int, since: date | None = None, before: date | None = None
    ) -> list[int]:
        """Ascending UIDs strictly greater than ``after``.

        ``since`` and ``before`` narrow the match by internal date; ``before``
        is exclusive.
        """
        ...

    async def fetch_envelopes(self, uids: Sequence[int]) -> list[EnvelopeSummary]:
        """Cheap metadata for a set of UIDs in a single round trip."""
        ...

    def stream_body(self, uid: int) -> AsyncIterator[bytes]:
        """Full message content, delivered in chunks."""
        ...

    async def close(self) -> None:
        ...


SessionFactory = Callable[[], Awaitable[MailboxSession]]
