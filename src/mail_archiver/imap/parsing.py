"""Helpers for turning raw imaplib responses into internal models."""

from __future__ import annotations

import re
from datetime import date, datetime
from email import policy
from email.parser import BytesHeaderParser
from typing import Any

from mail_archiver.models import EnvelopeSummary

ENVELOPE_FETCH_ITEMS = (
    "(UID INTERNALDATE RFC822.SIZE "
    "BODY.PEEK[HEADER.FIELDS (MESSAGE-ID SUBJECT FROM DATE)])"
)

_LIST_LINE = re.compile(
    rb'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$',
    re.IGNORECASE,
)
_FETCH_START = re.compile(rb"^\d+ \(")
_UID = re.compile(rb"\bUID (\d+)", re.IGNORECASE)
_INTERNALDATE = re.compile(rb'\bINTERNALDATE "([^"]+)"', re.IGNORECASE)
_SIZE = re.compile(rb"\bRFC822\.SIZE (\d+)", re.IGNORECASE)
_UNSELECTABLE = (b"\\noselect", b"\\nonexistent")


def _unquote(value: bytes) -> str:
    text = value.strip()
    if text.startswith(b'"') and text.endswith(b'"') and len(text) >= 2:
        text = text[1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")
    return text.decode("utf-8", errors="replace")


def quote_mailbox(name: str) -> str:
    """Quote a folder name for use as a command argument."""

    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def parse_list_response(data: list[Any]) -> list[str]:
    """Extract selectable folder names from a ``LIST`` response."""

    folders: list[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            # Folder name sent as a literal: (b'(\\HasNoChildren) "/" {5}', b'Hello')
            line, literal = item[0], item[1]
        else:
            line, literal = item, None

        match = _LIST_LINE.match(line)
        if match is None:
            continue
        flags = match.group("flags").lower().split()
        if any(flag in flags for flag in _UNSELECTABLE):
            continue

        name = literal.decode("utf-8", errors="replace") if literal is not None else _unquote(
            match.group("name")
        )
        if name:
            folders.append(name)
    return folders


_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_search_date(value: date) -> str:
    """RFC 3501 ``date`` such as ``1-Feb-2024``, independent of the locale."""

    return f"{value.day}-{_MONTHS[value.month - 1]}-{value.year}"


def build_search_criteria(after: int, since: date | None = None, before: date | None = None) -> str:
    """``UID SEARCH`` criteria for UIDs above ``after`` within an optional date window.

    ``SINCE`` and ``BEFORE`` compare against the server's internal date and
    ignore the time of day; ``BEFORE`` is exclusive.
    """

    criteria = [f"UID {after + 1}:*"]
    if since is not None:
        criteria.append(f"SINCE {format_search_date(since)}")
    if before is not None:
        criteria.append(f"BEFORE {format_search_date(before)}")
    return " ".join(criteria)


def parse_search_response(data: list[Any], after: int) -> list[int]:
    """UIDs from a ``UID SEARCH`` reply, keeping only those above ``after``.

    ``UID SEARCH UID n:*`` always matches the highest UID in the folder even
    when it is below ``n``; the filter hides that quirk from callers.
    """

    uids: set[int] = set()
    for item in data:
        if not item:
            continue
        for token in item.split():
            if token.isdigit() and int(token) > after:
                uids.add(int(token))
    return sorted(uids)


def parse_internaldate(value: str | None) -> datetime | None:
    """Parse an IMAP INTERNALDATE such as ``17-Jul-1996 02:44:25 -0700``."""

    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


def _group_fetch_records(data: list[Any]) -> list[tuple[bytes, bytes | None]]:
    records: list[list[Any]] = []
    for item in data:
        if isinstance(item, tuple):
            records.append([item[0], item[1]])
        elif isinstance(item, bytes):
            if _FETCH_START.match(item):
                records.append([item, None])
            elif records:
                # Attributes that follow a literal, e.g. b' UID 200)'.
                records[-1][0] += b" " + item
    return [(text, literal) for text, literal in records]


def parse_fetch_envelopes(data: list[Any]) -> list[EnvelopeSummary]:
    """Convert a batch ``UID FETCH`` of envelope items into summaries."""

    summaries: list[EnvelopeSummary] = []
    for text, literal in _group_fetch_records(data):
        uid_match = _UID.search(text)
        if uid_match is None:
            continue

        headers = BytesHeaderParser(policy=policy.default).parsebytes(literal or b"")
        date_match = _INTERNALDATE.search(text)
        size_match = _SIZE.search(text)

        summaries.append(
            EnvelopeSummary(
                uid=int(uid_match.group(1)),
                message_id=_safe_header(headers, "Message-ID"),
                subject=_safe_header(headers, "Subject"),
                from_raw=_safe_header(headers, "From"),
                internal_date=parse_internaldate(
                    date_match.group(1).decode("ascii", errors="replace") if date_match else None
                ),
                size=int(size_match.group(1)) if size_match else None,
            )
        )
    return summaries


def extract_literal(data: list[Any]) -> bytes | None:
    """First literal payload of a FETCH response, or None if there is none."""

    for item in data:
        if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
            return item[1]
    return None


def _safe_header(headers: Any, name: str) -> str | None:
    try:
        value = headers.get(name)
    except (ValueError, IndexError, TypeError):
        return None
    if value is None:
        return None
    return str(value).strip() or None
