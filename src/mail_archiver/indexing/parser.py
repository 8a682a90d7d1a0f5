"""Parse archived ``.eml`` files into search documents."""

from __future__ import annotations

import re
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path

import structlog
from bs4 import BeautifulSoup
from pydantic import ValidationError

from mail_archiver.models import EmailDocument, SidecarMetadata
from mail_archiver.storage import layout

logger = structlog.get_logger()

BODY_PREVIEW_LENGTH = 500

_WHITESPACE = re.compile(r"\s+")


def _header_text(message: EmailMessage, name: str) -> str | None:
    try:
        value = message.get(name)
    except (ValueError, IndexError, TypeError):
        return None
    if value is None:
        return None
    return str(value).strip() or None


def _parse_address_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr for _, addr in getaddresses([value]) if addr]


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def strip_html(markup: str) -> str:
    """Visible text of an HTML body; comments and attribute values are dropped."""

    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style", "head", "template"]):
        element.decompose()
    return soup.get_text(" ")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length] + "..."


class EmailParser:
    """Extracts searchable fields from one archived message.

    The whole MIME tree is parsed, unlike the header-only parse done while
    archiving, so this runs only for files the scanner reports as new or
    modified.
    """

    def __init__(self, include_body: bool = False) -> None:
        self.include_body = include_body

    def parse(self, path: Path, archive_root: Path) -> EmailDocument:
        """Parse ``path`` into an ``EmailDocument``.

        Raises:
            OSError: If the file cannot be read.
        """

        with open(path, "rb") as fh:
            message = BytesParser(policy=policy.default).parse(fh)

        from_name, from_address = None, None
        from_pairs = getaddresses([_header_text(message, "From") or ""])
        if from_pairs and (from_pairs[0][0] or from_pairs[0][1]):
            from_name = from_pairs[0][0] or None
            from_address = from_pairs[0][1] or None

        body = self._body_text(message, path)
        attachment_names = self._attachment_names(message)
        folder, account = self._location(path, archive_root)
        sidecar = self._sidecar(path)
        if sidecar is not None:
            # The directory name may carry a digest suffix; the sidecar keeps the remote name.
            folder = sidecar.folder

        return EmailDocument(
            message_id=self._identity(message, path, sidecar),
            file_path=str(path),
            folder=folder,
            account=account,
            from_address=from_address,
            from_name=from_name,
            to_addresses=_parse_address_list(_header_text(message, "To")),
            cc_addresses=_parse_address_list(_header_text(message, "Cc")),
            bcc_addresses=_parse_address_list(_header_text(message, "Bcc")),
            subject=_header_text(message, "Subject"),
            date_sent=_parse_date(_header_text(message, "Date")),
            has_attachments=bool(attachment_names),
            attachment_names=attachment_names,
            body_preview=truncate(body, BODY_PREVIEW_LENGTH) if body else None,
            body_text=body if self.include_body and body else None,
        )

    @staticmethod
    def _sidecar(path: Path) -> SidecarMetadata | None:
        sidecar = layout.sidecar_path(path)
        try:
            return SidecarMetadata.model_validate_json(sidecar.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as exc:
            logger.debug("sidecar_unreadable", path=str(sidecar), error=str(exc))
            return None

    @staticmethod
    def _identity(message: EmailMessage, path: Path, sidecar: SidecarMetadata | None) -> str:
        # The sidecar holds the identity the message was archived under,
        # including the digest fallback for messages without a Message-ID.
        if sidecar is not None:
            return sidecar.message_identity

        return layout.normalize_message_id(_header_text(message, "Message-ID")) or f"file:{path.name}"

    @staticmethod
    def _body_text(message: EmailMessage, path: Path) -> str | None:
        for preference, is_html in ((("plain",), False), (("html",), True)):
            part = message.get_body(preferencelist=preference)
            if part is None:
                continue
            try:
                content = part.get_content()
            except (LookupError, UnicodeError, ValueError, AttributeError) as exc:
                logger.debug("email_body_undecodable", path=str(path), error=str(exc))
                continue
            if not isinstance(content, str):
                continue
            text = normalize_whitespace(strip_html(content) if is_html else content)
            if text:
                return text
        return None

    @staticmethod
    def _attachment_names(message: EmailMessage) -> list[str]:
        names: list[str] = []
        if not message.is_multipart():
            return names
        for part in message.iter_attachments():
            try:
                filename = part.get_filename()
            except (ValueError, IndexError, TypeError):
                filename = None
            if filename:
                names.append(filename)
        return names

    @staticmethod
    def _location(path: Path, archive_root: Path) -> tuple[str | None, str | None]:
        """Folder and account for a path laid out as ``[account/]folder/cur/file``."""

        try:
            parts = path.relative_to(archive_root).parts
        except ValueError:
            return None, None

        folder = parts[-3] if len(parts) >= 3 else None
        account = parts[0] if len(parts) >= 4 else None
        return folder, account
