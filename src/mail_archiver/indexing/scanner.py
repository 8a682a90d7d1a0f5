"""Incremental scan of the archive tree.

Each pass classifies every message file as new, modified or unchanged by
comparing a cheap ``stat()`` signature against the one stored after the
previous pass. Directories whose modification time has not moved since the
last pass are answered from the stored signatures without stating their files.
Archived files are never rewritten in place, so a directory whose entry list
is unchanged holds unchanged files.
"""

from __future__ import annotations

import hashlib
import os
import time
from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import structlog

from mail_archiver.index import ChangeSignatureStore
from mail_archiver.models import ChangeSignature
from mail_archiver.storage import layout
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()

# Directory timestamps this close to "now" may still change within the same
# timestamp tick, so they are not trusted as watermarks.
DEFAULT_RACY_WINDOW_NS = 2_000_000_000

_SKIPPED_DIRECTORIES = frozenset({"tmp"})


class UnitState(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ScannedUnit:
    """One message file and how it compares to the previous pass."""

    path: Path
    state: UnitState
    signature: ChangeSignature
    directory: Path
    signature_refreshed: bool = False


@dataclass
class ScanStats:
    directories: int = 0
    trusted_directories: int = 0
    stat_calls: int = 0
    new: int = 0
    modified: int = 0
    unchanged: int = 0


class IncrementalScanner:
    """Produces a lazy sequence of classified units under an archive root."""

    def __init__(
        self,
        signatures: ChangeSignatureStore,
        *,
        trust_directory_watermarks: bool = True,
        digest_bytes: int = 0,
        racy_window_ns: int = DEFAULT_RACY_WINDOW_NS,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        self._signatures = signatures
        self._trust_watermarks = trust_directory_watermarks
        self._digest_bytes = digest_bytes
        self._racy_window_ns = racy_window_ns
        self._telemetry = telemetry or SyncTelemetry()
        self.stats = ScanStats()
        # Directory watermarks seen during the last scan, keyed by path.
        self.visited_directories: dict[str, ChangeSignature] = {}

    def scan(self, archive_root: Path, force: bool = False) -> Iterator[ScannedUnit]:
        """Walk ``archive_root`` and classify every message file.

        Args:
            archive_root: Root of the maildir archive.
            force: Ignore watermarks and report every file as new or modified.

        Yields:
            One ``ScannedUnit`` per message file, directory by directory.
        """

        self.stats = ScanStats()
        self.visited_directories = {}

        if not archive_root.is_dir():
            logger.warning("archive_root_missing", archive_root=str(archive_root))
            return

        stack = [archive_root]
        while stack:
            directory = stack.pop()
            try:
                dir_stat = directory.stat()
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda entry: entry.name)
            except OSError as exc:
                logger.warning("archive_directory_unreadable", path=str(directory), error=str(exc))
                continue

            self.stats.directories += 1
            watermark = ChangeSignature(
                unit_key=str(directory),
                size=0,
                modification_time_ns=dir_stat.st_mtime_ns,
                parent_key=str(directory.parent),
                is_directory=True,
            )
            trusted = not force and self._trust_watermarks and watermark.matches(
                self._signatures.get(watermark.unit_key)
            )
            if not self._is_racy(dir_stat.st_mtime_ns):
                self.visited_directories[watermark.unit_key] = watermark

            subdirectories: list[Path] = []
            files: list[os.DirEntry[str]] = []
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if entry.name not in _SKIPPED_DIRECTORIES:
                            subdirectories.append(Path(entry.path))
                    elif entry.is_file(follow_symlinks=False) and layout.is_message_file(Path(entry.name)):
                        files.append(entry)
                except OSError as exc:
                    logger.debug("archive_entry_unreadable", path=entry.path, error=str(exc))

            # Reversed so the stack pops subdirectories in name order.
            stack.extend(reversed(subdirectories))

            if not files:
                continue

            stored = self._signatures.children(str(directory))
            if trusted:
                self.stats.trusted_directories += 1
            yield from self._classify(directory, files, stored, trusted, force)

        self._telemetry.increment("scan.units.new", self.stats.new)
        self._telemetry.increment("scan.units.modified", self.stats.modified)
        self._telemetry.increment("scan.units.unchanged", self.stats.unchanged)
        logger.info(
            "archive_scan_completed",
            archive_root=str(archive_root),
            directories=self.stats.directories,
            trusted_directories=self.stats.trusted_directories,
            stat_calls=self.stats.stat_calls,
            new=self.stats.new,
            modified=self.stats.modified,
            unchanged=self.stats.unchanged,
        )

    def _classify(
        self,
        directory: Path,
        files: list[os.DirEntry[str]],
        stored: dict[str, ChangeSignature],
        trusted: bool,
        force: bool,
    ) -> Iterator[ScannedUnit]:
        for entry in files:
            path = Path(entry.path)
            previous = stored.get(entry.path)

            if trusted and previous is not None:
                self.stats.unchanged += 1
                yield ScannedUnit(path, UnitState.UNCHANGED, previous, directory)
                continue

            try:
                st = entry.stat(follow_symlinks=False)
            except OSError as exc:
                logger.debug("archive_entry_vanished", path=entry.path, error=str(exc))
                continue
            self.stats.stat_calls += 1

            refreshed = False
            current = ChangeSignature(
                unit_key=entry.path,
                size=st.st_size,
                modification_time_ns=st.st_mtime_ns,
                parent_key=str(directory),
            )

            if previous is None:
                state = UnitState.NEW
            elif force:
                state = UnitState.MODIFIED
            elif current.matches(previous):
                state = UnitState.UNCHANGED
                current = previous
            elif self._content_unchanged(path, current, previous):
                # Touched but identical: the new timestamp is stored so the
                # next pass takes the cheap path again.
                state = UnitState.UNCHANGED
                current = replace(current, content_digest=previous.content_digest)
                refreshed = True
            else:
                state = UnitState.MODIFIED

            if state is not UnitState.UNCHANGED and self._digest_bytes:
                current = self._with_digest(path, current)

            if state is UnitState.NEW:
                self.stats.new += 1
            elif state is UnitState.MODIFIED:
                self.stats.modified += 1
            else:
                self.stats.unchanged += 1
            yield ScannedUnit(path, state, current, directory, signature_refreshed=refreshed)

    def _content_unchanged(self, path: Path, current: ChangeSignature, previous: ChangeSignature) -> bool:
        if not self._digest_bytes or previous.content_digest is None or current.size != previous.size:
            return False
        digest = self._partial_digest(path)
        return digest is not None and digest == previous.content_digest

    def _with_digest(self, path: Path, signature: ChangeSignature) -> ChangeSignature:
        return replace(signature, content_digest=self._partial_digest(path))

    def _partial_digest(self, path: Path) -> str | None:
        try:
            with open(path, "rb") as fh:
                head = fh.read(self._digest_bytes)
        except OSError:
            return None
        return hashlib.sha256(head).hexdigest()

    def _is_racy(self, mtime_ns: int) -> bool:
        return time.time_ns() - mtime_ns < self._racy_window_ns
