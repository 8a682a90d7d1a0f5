"""Atomic, deduplicating write path from a network stream to the archive.

A message is streamed into the folder's ``tmp/`` staging area, its identity is
confirmed from the staged headers, and only then is it published into ``cur/``
with a no-overwrite hard link. The sidecar is written the same way and the
index record last, so a crash at any point leaves either nothing visible or a
complete message that the next run recognises.
"""

from __future__ import annotations

import hashlib
import os
import time
import uuid
from collections.abc import AsyncIterable
from datetime import datetime
from email import policy
from email.message import Message
from email.parser import BytesHeaderParser
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from mail_archiver.models import MessageRecord, SidecarMetadata, utc_now
from mail_archiver.storage import layout
from mail_archiver.telemetry import SyncTelemetry

if TYPE_CHECKING:
    from mail_archiver.index import ArchiveIndexRepository

logger = structlog.get_logger()


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _header(headers: Message, name: str) -> str | None:
    try:
        value = headers.get(name)
    except (ValueError, IndexError, TypeError):
        logger.debug("header_unparsable", header=name)
        return None
    if value is None:
        return None
    return str(value).strip() or None


def _has_attachments(headers: Message) -> bool:
    # Header-only heuristic; the body is not parsed while archiving.
    content_type = (headers.get_content_type() or "").lower()
    disposition = (_header(headers, "Content-Disposition") or "").lower()
    return content_type == "multipart/mixed" or disposition.startswith("attachment")


class DurableWriter:
    """Publishes streamed messages into the maildir archive exactly once."""

    def __init__(
        self,
        archive_root: Path,
        index: ArchiveIndexRepository,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        self._archive_root = archive_root
        self._index = index
        self._telemetry = telemetry or SyncTelemetry()

    async def store(
        self,
        chunks: AsyncIterable[bytes],
        identity_hint: str | None,
        received_at: datetime | None,
        folder: str,
    ) -> bool:
        """Stream one message into the archive.

        Args:
            chunks: Message content as it arrives from the server.
            identity_hint: Message-ID reported by the server, if any.
            received_at: Server arrival time; used for the file name.
            folder: Remote folder name.

        Returns:
            True if the message was newly stored, False if it was a duplicate.
        """

        started = time.perf_counter()
        received_at = received_at or utc_now()
        hinted = layout.normalize_message_id(identity_hint)

        if hinted and self._index.exists_by_identity(hinted):
            return False

        maildir = layout.folder_path(self._archive_root, folder)
        layout.ensure_maildir(maildir)
        staging = maildir / "tmp" / f"{int(received_at.timestamp())}.{uuid.uuid4().hex}{layout.STAGING_SUFFIX}"

        with self._telemetry.span("write", folder=folder):
            try:
                size, digest = await self._stage(chunks, staging)
                headers = self._read_headers(staging)

                identity = (
                    hinted
                    or layout.normalize_message_id(_header(headers, "Message-ID"))
                    or layout.digest_identity(digest)
                )
                # Another writer may have stored it while this copy was streaming.
                if self._index.exists_by_identity(identity):
                    staging.unlink()
                    return False

                metadata = SidecarMetadata(
                    message_identity=identity,
                    subject=_header(headers, "Subject"),
                    from_=_header(headers, "From"),
                    to=_header(headers, "To"),
                    date=_parse_date(_header(headers, "Date")),
                    folder=folder,
                    has_attachments=_has_attachments(headers),
                )
                final = maildir / "cur" / layout.final_filename(received_at, identity)

                if not self._publish(staging, final):
                    # Already on disk: a dedup race or an earlier crash after publish.
                    staging.unlink()
                    self._write_sidecar(maildir, final, metadata)
                    self._index.insert_if_absent(
                        MessageRecord(message_identity=identity, folder=folder)
                    )
                    logger.debug("message_already_on_disk", identity=identity, path=str(final))
                    return False

                self._write_sidecar(maildir, final, metadata)
                self._index.insert_if_absent(MessageRecord(message_identity=identity, folder=folder))
            except BaseException:
                self._discard(staging)
                raise

        self._telemetry.increment("storage.files.written")
        self._telemetry.increment("storage.bytes.written", size)
        self._telemetry.observe("storage.write.latency_ms", (time.perf_counter() - started) * 1000)
        logger.info("message_archived", identity=identity, folder=folder, bytes=size)
        return True

    def purge_stale_staging(self, max_age_seconds: float) -> int:
        """Remove orphaned staging files left behind by interrupted runs.

        Only ``*.tmp`` files inside maildir ``tmp/`` directories are touched.
        """

        if not self._archive_root.is_dir():
            return 0

        cutoff = time.time() - max_age_seconds
        removed = 0
        for staging_dir in self._archive_root.glob("*/tmp"):
            for candidate in staging_dir.glob(f"*{layout.STAGING_SUFFIX}"):
                try:
                    if candidate.stat().st_mtime < cutoff:
                        candidate.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue

        if removed:
            logger.info("stale_staging_purged", removed=removed)
        return removed

    async def _stage(self, chunks: AsyncIterable[bytes], staging: Path) -> tuple[int, str]:
        hasher = hashlib.sha256()
        size = 0
        with open(staging, "xb") as fh:
            async for chunk in chunks:
                fh.write(chunk)
                hasher.update(chunk)
                size += len(chunk)
            fh.flush()
            os.fsync(fh.fileno())
        return size, hasher.hexdigest()

    @staticmethod
    def _read_headers(path: Path) -> Message:
        with open(path, "rb") as fh:
            return BytesHeaderParser(policy=policy.default).parse(fh)

    @staticmethod
    def _publish(source: Path, target: Path) -> bool:
        """Make ``source`` visible at ``target`` without ever replacing a file.

        Returns:
            False if ``target`` already exists.
        """

        try:
            os.link(source, target)
        except FileExistsError:
            return False
        except OSError:
            # Filesystems without hard links: check-then-rename on the same volume.
            if target.exists():
                return False
            os.rename(source, target)
            _fsync_directory(target.parent)
            return True

        source.unlink()
        _fsync_directory(target.parent)
        return True

    def _write_sidecar(self, maildir: Path, message_path: Path, metadata: SidecarMetadata) -> None:
        sidecar = layout.sidecar_path(message_path)
        if sidecar.exists():
            return

        staging = maildir / "tmp" / f"{uuid.uuid4().hex}.meta{layout.STAGING_SUFFIX}"
        try:
            with open(staging, "x", encoding="utf-8") as fh:
                fh.write(metadata.to_json())
                fh.flush()
                os.fsync(fh.fileno())
            self._publish(staging, sidecar)
        finally:
            self._discard(staging)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("staging_cleanup_failed", path=str(path), error=str(exc))


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        logger.debug("directory_fsync_unsupported", path=str(path), error=str(exc))
    finally:
        os.close(fd)
