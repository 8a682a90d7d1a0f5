"""Message-level models: archive records, sidecar metadata and search documents.

``SidecarMetadata`` is the durable ground truth written next to every archived
message. ``MessageRecord`` rows in the index are a cache derived from it.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SidecarMetadata(BaseModel):
    """Metadata persisted as ``<message>.meta.json`` beside the raw content."""

    model_config = ConfigDict(populate_by_name=True)

    message_identity: str = Field(alias="messageIdentity", min_length=1)
    subject: str | None = Field(default=None)
    from_: str | None = Field(default=None, alias="from")
    to: str | None = Field(default=None)
    date: datetime | None = Field(default=None, description="Date header of the message")
    folder: str = Field(min_length=1, description="Remote folder the message came from")
    archived_at: datetime = Field(default_factory=utc_now, alias="archivedAt")
    has_attachments: bool = Field(default=False, alias="hasAttachments")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class MessageRecord(BaseModel):
    """Index row stating that a message identity is already archived."""

    message_identity: str = Field(min_length=1)
    folder: str
    imported_at: datetime = Field(default_factory=utc_now)


class EnvelopeSummary(BaseModel):
    """Cheap per-message metadata returned by the batch peek."""

    uid: int = Field(ge=1, description="Position in the folder's UID space")
    message_id: str | None = Field(default=None, description="Raw Message-ID header")
    subject: str | None = None
    from_raw: str | None = None
    internal_date: datetime | None = Field(
        default=None, description="Server-side arrival time (INTERNALDATE)"
    )
    size: int | None = Field(default=None, description="RFC822.SIZE reported by the server")


class EmailDocument(BaseModel):
    """Searchable fields extracted from an archived ``.eml`` file."""

    message_id: str
    file_path: str
    folder: str | None = None
    account: str | None = None

    from_address: str | None = None
    from_name: str | None = None
    to_addresses: list[str] = Field(default_factory=list)
    cc_addresses: list[str] = Field(default_factory=list)
    bcc_addresses: list[str] = Field(default_factory=list)

    subject: str | None = None
    date_sent: datetime | None = None

    has_attachments: bool = False
    attachment_names: list[str] = Field(default_factory=list)

    body_preview: str | None = None
    body_text: str | None = None
