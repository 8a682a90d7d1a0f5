"""Persistent change signatures for incremental passes.

A signature is only a hint for "did this change"; it never decides whether a
message exists in the archive.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timezone

from mail_archiver.index.repository import ArchiveIndexRepository
from mail_archiver.models import ChangeSignature


class ChangeSignatureStore:
    """Reads and writes ``ChangeSignature`` rows in the index database."""

    def __init__(self, repository: ArchiveIndexRepository) -> None:
        self._repository = repository

    def get(self, unit_key: str) -> ChangeSignature | None:
        with self._repository.connect() as conn:
            row = conn.execute(
                "SELECT * FROM change_signatures WHERE unit_key = ?",
                (unit_key,),
            ).fetchone()
        return self._row_to_signature(row) if row is not None else None

    def children(self, parent_key: str) -> dict[str, ChangeSignature]:
        """Stored file signatures whose parent directory is ``parent_key``."""

        with self._repository.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM change_signatures WHERE parent_key = ? AND is_directory = 0",
                (parent_key,),
            ).fetchall()
        return {row["unit_key"]: self._row_to_signature(row) for row in rows}

    def put_many(self, signatures: Iterable[ChangeSignature]) -> None:
        now_iso = datetime.now(timezone.utc).isoformat()
        rows = [
            {
                "unit_key": s.unit_key,
                "parent_key": s.parent_key,
                "is_directory": 1 if s.is_directory else 0,
                "size": s.size,
                "mtime_ns": s.modification_time_ns,
                "content_digest": s.content_digest,
                "recorded_at": now_iso,
            }
            for s in signatures
        ]
        if not rows:
            return

        with self._repository.connect() as conn:
            conn.executemany(
                """
                INSERT INTO change_signatures (
                    unit_key, parent_key, is_directory, size, mtime_ns, content_digest, recorded_at
                )
                VALUES (
                    :unit_key, :parent_key, :is_directory, :size, :mtime_ns, :content_digest,
                    :recorded_at
                )
                ON CONFLICT(unit_key) DO UPDATE SET
                    parent_key=excluded.parent_key,
                    is_directory=excluded.is_directory,
                    size=excluded.size,
                    mtime_ns=excluded.mtime_ns,
                    content_digest=excluded.content_digest,
                    recorded_at=excluded.recorded_at
                """,
                rows,
            )
            conn.commit()

    def put(self, signature: ChangeSignature) -> None:
        self.put_many([signature])

    def clear(self) -> None:
        with self._repository.connect() as conn:
            conn.execute("DELETE FROM change_signatures")
            conn.commit()

    @staticmethod
    def _row_to_signature(row: sqlite3.Row) -> ChangeSignature:
        return ChangeSignature(
            unit_key=row["unit_key"],
            parent_key=row["parent_key"],
            is_directory=bool(row["is_directory"]),
            size=row["size"],
            modification_time_ns=row["mtime_ns"],
            content_digest=row["content_digest"],
        )
