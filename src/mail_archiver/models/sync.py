"""Sync-state models: folder cursors, folder status and change signatures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from mail_archiver.models.message import utc_now


class MailboxCursor(BaseModel):
    """Last fully processed position of a remote folder.

    A cursor is only meaningful while ``validity_epoch`` matches the epoch the
    server currently reports for the folder.
    """

    folder_id: str = Field(min_length=1)
    validity_epoch: int = Field(ge=0)
    last_acknowledged_position: int = Field(ge=0)
    updated_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class FolderStatus:
    """State of a remote folder right after selecting it."""

    name: str
    uid_validity: int
    exists: int = 0


@dataclass(frozen=True)
class ChangeSignature:
    """Cheap fingerprint used to decide whether a unit needs re-processing.

    ``unit_key`` is a file path for the scanner. ``parent_key`` groups file
    signatures under their directory so untouched directories can be answered
    from the store without touching the filesystem.
    """

    unit_key: str
    size: int
    modification_time_ns: int
    content_digest: str | None = None
    parent_key: str | None = None
    is_directory: bool = False

    def matches(self, other: ChangeSignature | None) -> bool:
        if other is None:
            return False
        return (
            self.size == other.size
            and self.modification_time_ns == other.modification_time_ns
        )
