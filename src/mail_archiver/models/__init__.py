"""Data models for Mail Archiver.

Pydantic models are used where data crosses a persistence boundary (sidecars,
index rows); small frozen dataclasses are used for hot-path value objects.
"""

from mail_archiver.models.message import (
    EmailDocument,
    EnvelopeSummary,
    MessageRecord,
    SidecarMetadata,
    utc_now,
)
from mail_archiver.models.sync import ChangeSignature, FolderStatus, MailboxCursor

__all__ = [
    "ChangeSignature",
    "EmailDocument",
    "EnvelopeSummary",
    "FolderStatus",
    "MailboxCursor",
    "MessageRecord",
    "SidecarMetadata",
    "utc_now",
]
