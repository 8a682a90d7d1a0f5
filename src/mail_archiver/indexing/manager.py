"""Keeps the full-text search documents in step with the archive on disk."""

from __future__ import annotations

import time
from dataclasses import dataclass
from email.errors import MessageError
from pathlib import Path

import structlog

from mail_archiver.index import ArchiveIndexRepository, ChangeSignatureStore
from mail_archiver.indexing.parser import EmailParser
from mail_archiver.indexing.scanner import IncrementalScanner, ScannedUnit, UnitState
from mail_archiver.models import ChangeSignature, EmailDocument, utc_now
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()

LAST_INDEXED_AT_KEY = "last_indexed_at"


@dataclass
class IndexingResult:
    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class IndexManager:
    """Indexes new and modified archive files for search."""

    def __init__(
        self,
        repository: ArchiveIndexRepository,
        signatures: ChangeSignatureStore,
        scanner: IncrementalScanner,
        parser: EmailParser,
        *,
        batch_size: int = 100,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        self._repository = repository
        self._signatures = signatures
        self._scanner = scanner
        self._parser = parser
        self._batch_size = batch_size
        self._telemetry = telemetry or SyncTelemetry()

    def index(self, archive_root: Path, force: bool = False) -> IndexingResult:
        """Parse and store every new or modified message under ``archive_root``.

        A file's signature is stored only after its document is, and a
        directory's watermark only once every file in it was indexed, so an
        interrupted or failed pass is picked up again by the next one.

        Args:
            archive_root: Root of the maildir archive.
            force: Re-parse every file regardless of stored signatures.

        Returns:
            Counts of indexed, skipped and failed files.
        """

        started = time.perf_counter()
        result = IndexingResult()
        failed_directories: set[str] = set()
        documents: list[EmailDocument] = []
        signatures: list[ChangeSignature] = []

        logger.info("indexing_started", archive_root=str(archive_root), force=force)
        with self._telemetry.span("index_scan", archive_root=str(archive_root)):
            for unit in self._scanner.scan(archive_root, force=force):
                if unit.state is UnitState.UNCHANGED:
                    result.skipped += 1
                    if unit.signature_refreshed:
                        signatures.append(unit.signature)
                    continue

                document = self._parse(unit, archive_root)
                if document is None:
                    result.errors += 1
                    failed_directories.add(str(unit.directory))
                    continue

                documents.append(document)
                signatures.append(unit.signature)
                if len(documents) >= self._batch_size:
                    result.indexed += self._flush(documents, signatures)

            result.indexed += self._flush(documents, signatures)

            watermarks = [
                watermark
                for key, watermark in self._scanner.visited_directories.items()
                if key not in failed_directories
            ]
            self._signatures.put_many(watermarks)

        self._repository.set_metadata(LAST_INDEXED_AT_KEY, utc_now().isoformat())
        result.duration_seconds = time.perf_counter() - started
        logger.info(
            "indexing_completed",
            indexed=result.indexed,
            skipped=result.skipped,
            errors=result.errors,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    def rebuild(self, archive_root: Path) -> IndexingResult:
        """Drop all search documents and signatures, then index from scratch."""

        logger.warning("index_documents_rebuild_started", archive_root=str(archive_root))
        self._repository.clear_documents()
        self._signatures.clear()
        return self.index(archive_root, force=True)

    def _parse(self, unit: ScannedUnit, archive_root: Path) -> EmailDocument | None:
        try:
            return self._parser.parse(unit.path, archive_root)
        except (OSError, ValueError, LookupError, MessageError) as exc:
            logger.warning("email_parse_failed", path=str(unit.path), error=str(exc))
            return None

    def _flush(self, documents: list[EmailDocument], signatures: list[ChangeSignature]) -> int:
        count = len(documents)
        if documents:
            self._repository.upsert_documents(documents)
        if signatures:
            self._signatures.put_many(signatures)
        documents.clear()
        signatures.clear()
        return count
