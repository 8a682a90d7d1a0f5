"""IMAP client implementation.

This module provides the production ``MailboxSession`` on top of the standard
library ``imaplib``.

Notes:
    ``imaplib`` is synchronous and a connection is not safe for concurrent use.
    Every command is wrapped with ``asyncio.to_thread`` and issued one at a time
    so the rest of the codebase can remain async-friendly.
"""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import date
from typing import Any

import structlog

from mail_archiver.config import Settings
from mail_archiver.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ImapConnectionError,
    ImapProtocolError,
    ItemFetchError,
)
from mail_archiver.imap.parsing import (
    ENVELOPE_FETCH_ITEMS,
    build_search_criteria,
    extract_literal,
    parse_fetch_envelopes,
    parse_list_response,
    parse_search_response,
    quote_mailbox,
)
from mail_archiver.models import EnvelopeSummary, FolderStatus

logger = structlog.get_logger()

# RFC 5530 response codes.
_AUTH_CODES = ("[AUTHENTICATIONFAILED]", "[EXPIRED]", "[PRIVACYREQUIRED]")
_AUTHZ_CODES = ("[AUTHORIZATIONFAILED]", "[NOPERM]")
_TRANSIENT_CODES = ("[UNAVAILABLE]", "[INUSE]", "[LIMIT]")


def _response_text(data: Any) -> str:
    parts: list[str] = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            parts.append(str(item))
    return " ".join(parts)


def _rejection(command: str, text: str) -> Exception:
    """Map a NO/BAD reply to the exception that matches its failure kind."""

    upper = text.upper()
    message = f"{command} rejected: {text}".strip()
    if any(code in upper for code in _TRANSIENT_CODES):
        return ImapConnectionError(message)
    if any(code in upper for code in _AUTHZ_CODES):
        return AuthorizationError(message)
    if any(code in upper for code in _AUTH_CODES):
        return AuthenticationError(message)
    return ImapProtocolError(message)


class ImapClient:
    """Factory for authenticated IMAP sessions.

    One client may open any number of sessions over its lifetime; the
    connection controller asks for a fresh one after every dropped connection.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize IMAP client.

        Args:
            settings: Application settings. If None, uses default settings.
        """
        from mail_archiver.config import get_settings

        self.settings = settings or get_settings()
        logger.info("imap_client_initialized", host=self.settings.imap_host)

    async def connect(self) -> ImapMailboxSession:
        """Open and authenticate a new session.

        Raises:
            ConfigurationError: If connection settings are incomplete.
            AuthenticationError: If the server rejects the credentials.
            ImapConnectionError: If the server cannot be reached.
        """

        self.settings.require_imap()
        logger.info(
            "imap_connecting",
            host=self.settings.imap_host,
            port=self.settings.imap_port,
            username=self.settings.imap_username,
        )

        conn = await asyncio.to_thread(self._open_sync)
        logger.info("imap_connected", host=self.settings.imap_host)
        return ImapMailboxSession(conn, chunk_size=self.settings.body_chunk_size)

    def _open_sync(self) -> imaplib.IMAP4:
        try:
            conn = imaplib.IMAP4_SSL(
                self.settings.imap_host,
                self.settings.imap_port,
                timeout=self.settings.imap_timeout,
            )
        except (OSError, EOFError, imaplib.IMAP4.error) as exc:
            raise ImapConnectionError(f"Cannot connect to {self.settings.imap_host}: {exc}") from exc

        try:
            conn.login(
                self.settings.imap_username,
                self.settings.imap_password.get_secret_value(),
            )
        except imaplib.IMAP4.abort as exc:
            conn.shutdown()
            raise ImapConnectionError(f"Connection dropped during login: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            conn.shutdown()
            error = _rejection("LOGIN", str(exc))
            if isinstance(error, ImapProtocolError):
                error = AuthenticationError(str(error))
            raise error from exc
        except (OSError, EOFError) as exc:
            conn.shutdown()
            raise ImapConnectionError(f"Connection dropped during login: {exc}") from exc
        return conn


class ImapMailboxSession:
    """A single authenticated IMAP connection."""

    def __init__(self, conn: imaplib.IMAP4, *, chunk_size: int = 1024 * 1024) -> None:
        self._conn = conn
        self._chunk_size = chunk_size
        self._selected: str | None = None

    async def list_folders(self) -> list[str]:
        data = await self._call("LIST", self._conn.list)
        folders = parse_list_response(data)
        logger.info("imap_folders_listed", count=len(folders))
        return folders

    async def select_folder(self, name: str) -> FolderStatus:
        status = await self._translate("EXAMINE", lambda: self._select_sync(name))
        self._selected = name
        logger.info(
            "imap_folder_selected",
            folder=name,
            uid_validity=status.uid_validity,
            exists=status.exists,
        )
        return status

    def _select_sync(self, name: str) -> FolderStatus:
        typ, data = self._conn.select(quote_mailbox(name), readonly=True)
        if typ != "OK":
            raise _rejection(f"EXAMINE {name}", _response_text(data))

        _, validity = self._conn.response("UIDVALIDITY")
        if not validity or validity[0] is None:
            raise ImapProtocolError(f"Server did not report UIDVALIDITY for {name}")

        try:
            exists = int(data[0]) if data and data[0] else 0
        except ValueError:
            exists = 0
        return FolderStatus(name=name, uid_validity=int(validity[0]), exists=exists)

    async def search_uids(
        self, after: int, since: date | None = None, before: date | None = None
    ) -> list[int]:
        criteria = build_search_criteria(after, since, before)
        data = await self._call("UID SEARCH", self._conn.uid, "SEARCH", None, criteria)
        return parse_search_response(data, after)

    async def fetch_envelopes(self, uids: Sequence[int]) -> list[EnvelopeSummary]:
        if not uids:
            return []
        uid_set = ",".join(str(uid) for uid in uids)
        data = await self._call("UID FETCH", self._conn.uid, "FETCH", uid_set, ENVELOPE_FETCH_ITEMS)
        return parse_fetch_envelopes(data)

    async def stream_body(self, uid: int) -> AsyncIterator[bytes]:
        """Yield the raw message in ``chunk_size`` pieces using partial fetches."""

        offset = 0
        while True:
            section = f"(BODY.PEEK[]<{offset}.{self._chunk_size}>)"
            data = await self._call("UID FETCH", self._conn.uid, "FETCH", str(uid), section)
            chunk = extract_literal(data)
            if chunk is None:
                if offset == 0:
                    raise ItemFetchError(f"UID {uid} returned no content")
                return
            if chunk:
                yield chunk
            if len(chunk) < self._chunk_size:
                return
            offset += len(chunk)

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self._conn.logout)
        except (imaplib.IMAP4.error, OSError, EOFError) as exc:
            logger.debug("imap_logout_failed", error=str(exc))

    async def _call(self, command: str, func: Callable[..., Any], *args: Any) -> list[Any]:
        def run() -> list[Any]:
            typ, data = func(*args)
            if typ != "OK":
                raise _rejection(command, _response_text(data))
            return data

        return await self._translate(command, run)

    async def _translate(self, command: str, func: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(func)
        except imaplib.IMAP4.abort as exc:
            raise ImapConnectionError(f"{command}: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise _rejection(command, str(exc)) from exc
        except (OSError, EOFError) as exc:
            raise ImapConnectionError(f"{command}: {exc}") from exc
