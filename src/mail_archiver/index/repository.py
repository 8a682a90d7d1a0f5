"""SQLite-backed index over the mail archive.

The index holds which message identities are archived, the per-folder sync
cursors, per-message fetch failures and the full-text search documents. All
of it is a cache: the ``.meta.json`` sidecars on disk are the ground truth and
``recover()`` can rebuild the archive records from them at any time.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mail_archiver.exceptions import IndexCorruptionError
from mail_archiver.index.rebuild import iter_sidecars
from mail_archiver.models import EmailDocument, MailboxCursor, MessageRecord
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()


_SCHEMA_VERSION = 1
_REBUILD_STATE_KEY = "rebuild_state"
_REBUILD_COMMIT_EVERY = 500


@dataclass(frozen=True)
class ArchiveIndexStats:
    """High-level summary stats for the index."""

    total_messages: int
    indexed_documents: int
    folders: int
    tracked_signatures: int
    abandoned_items: int
    cursors: list[MailboxCursor]
    last_indexed_at: str | None


@dataclass(frozen=True)
class ItemFailure:
    """Failure history of one remote message."""

    folder: str
    validity_epoch: int
    uid: int
    attempts: int
    last_error: str
    abandoned: bool


def _is_corruption(exc: Exception) -> bool:
    if isinstance(exc, IndexCorruptionError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        # Locked/busy databases and permission problems are not corruption.
        message = str(exc).lower()
        return "malformed" in message or "not a database" in message
    return isinstance(exc, sqlite3.DatabaseError)


class ArchiveIndexRepository:
    """Repository for archive records, sync cursors and search documents."""

    def __init__(
        self,
        db_path: Path,
        archive_root: Path,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
            archive_root: Root of the maildir archive the index describes.
            telemetry: Run-scoped observability context.
        """

        self._db_path = db_path
        self._archive_root = archive_root
        self._telemetry = telemetry or SyncTelemetry()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def archive_root(self) -> Path:
        return self._archive_root

    def open(self) -> None:
        """Open the index, creating or upgrading the schema.

        A database that fails to open, fails its integrity check or carries an
        unknown schema version is quarantined and rebuilt from the sidecars.
        An interrupted rebuild from an earlier run is resumed.
        """

        try:
            created = self._open_and_migrate()
        except (sqlite3.DatabaseError, IndexCorruptionError) as exc:
            if not _is_corruption(exc):
                raise
            logger.error(
                "index_corruption_detected",
                db_path=str(self._db_path),
                error=str(exc),
            )
            self.recover()
            return

        if created:
            # A missing index is rebuilt like a corrupt one, minus the quarantine.
            self._rebuild_from_sidecars()
        elif self.get_metadata(_REBUILD_STATE_KEY) == "in_progress":
            logger.warning("index_rebuild_resuming", db_path=str(self._db_path))
            self._rebuild_from_sidecars()

    def recover(self) -> int:
        """Quarantine the current database file and rebuild from sidecars.

        The old file (and its WAL/SHM companions) is renamed aside, never
        deleted. Cursors start empty, which forces a full, deduplicated rescan
        on the next sync.

        Returns:
            Number of message records restored.
        """

        with self._telemetry.span("recovery_rebuild", db_path=str(self._db_path)):
            quarantined = self._quarantine()
            self._open_and_migrate()
            restored = self._rebuild_from_sidecars()

        self._telemetry.event(
            "index_recovered",
            level="warning",
            quarantined=str(quarantined) if quarantined else None,
            restored=restored,
        )
        return restored

    # -- archive records ---------------------------------------------------

    def exists_by_identity(self, identity: str | None) -> bool:
        if not identity:
            return False
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM messages WHERE message_id = ? LIMIT 1",
                (identity,),
            ).fetchone()
        return row is not None

    def insert_if_absent(self, record: MessageRecord) -> bool:
        """Insert a record unless the identity is already present.

        Returns:
            True if a new row was written.
        """

        with self.connect() as conn:
            inserted = self._insert_record(conn, record)
            conn.commit()
        return inserted

    def message_count(self) -> int:
        with self.connect() as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        return int(count)

    def identities(self) -> set[str]:
        with self.connect() as conn:
            rows = conn.execute("SELECT message_id FROM messages").fetchall()
        return {row[0] for row in rows}

    # -- cursors -----------------------------------------------------------

    def get_cursor(self, folder: str) -> MailboxCursor | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT folder, last_uid, uid_validity, updated_at FROM sync_state WHERE folder = ?",
                (folder,),
            ).fetchone()
        if row is None:
            return None
        return MailboxCursor(
            folder_id=row["folder"],
            validity_epoch=row["uid_validity"],
            last_acknowledged_position=row["last_uid"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def set_cursor(self, cursor: MailboxCursor) -> None:
        """Persist a cursor. Within one epoch a cursor never moves backwards."""

        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (folder, last_uid, uid_validity, updated_at)
                VALUES (:folder, :last_uid, :uid_validity, :updated_at)
                ON CONFLICT(folder) DO UPDATE SET
                    last_uid = excluded.last_uid,
                    uid_validity = excluded.uid_validity,
                    updated_at = excluded.updated_at
                WHERE sync_state.last_uid < excluded.last_uid
                   OR sync_state.uid_validity != excluded.uid_validity
                """,
                {
                    "folder": cursor.folder_id,
                    "last_uid": cursor.last_acknowledged_position,
                    "uid_validity": cursor.validity_epoch,
                    "updated_at": cursor.updated_at.isoformat(),
                },
            )
            conn.commit()

    def list_cursors(self) -> list[MailboxCursor]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT folder, last_uid, uid_validity, updated_at FROM sync_state ORDER BY folder"
            ).fetchall()
        return [
            MailboxCursor(
                folder_id=row["folder"],
                validity_epoch=row["uid_validity"],
                last_acknowledged_position=row["last_uid"],
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    # -- per-item failures -------------------------------------------------

    def record_item_failure(self, folder: str, epoch: int, uid: int, error: str) -> int:
        """Count one more failed attempt for a message and return the total."""

        now_iso = datetime.now(timezone.utc).isoformat()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO item_failures (
                    folder, uid_validity, uid, attempts, last_error,
                    first_failed_at, last_failed_at, abandoned
                )
                VALUES (?, ?, ?, 1, ?, ?, ?, 0)
                ON CONFLICT(folder, uid_validity, uid) DO UPDATE SET
                    attempts = item_failures.attempts + 1,
                    last_error = excluded.last_error,
                    last_failed_at = excluded.last_failed_at
                """,
                (folder, epoch, uid, error, now_iso, now_iso),
            )
            (attempts,) = conn.execute(
                "SELECT attempts FROM item_failures WHERE folder = ? AND uid_validity = ? AND uid = ?",
                (folder, epoch, uid),
            ).fetchone()
            conn.commit()
        return int(attempts)

    def mark_item_abandoned(self, folder: str, epoch: int, uid: int) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE item_failures SET abandoned = 1 WHERE folder = ? AND uid_validity = ? AND uid = ?",
                (folder, epoch, uid),
            )
            conn.commit()

    def clear_item_failure(self, folder: str, epoch: int, uid: int) -> None:
        with self.connect() as conn:
            conn.execute(
                "DELETE FROM item_failures WHERE folder = ? AND uid_validity = ? AND uid = ?",
                (folder, epoch, uid),
            )
            conn.commit()

    def get_item_failure(self, folder: str, epoch: int, uid: int) -> ItemFailure | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT folder, uid_validity, uid, attempts, last_error, abandoned
                FROM item_failures
                WHERE folder = ? AND uid_validity = ? AND uid = ?
                """,
                (folder, epoch, uid),
            ).fetchone()
        if row is None:
            return None
        return ItemFailure(
            folder=row["folder"],
            validity_epoch=row["uid_validity"],
            uid=row["uid"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            abandoned=bool(row["abandoned"]),
        )

    def failing_uids(self, folder: str, epoch: int, uids: list[int]) -> set[int]:
        """Subset of ``uids`` that have a recorded failure in this epoch."""

        if not uids:
            return set()
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT uid FROM item_failures WHERE folder = ? AND uid_validity = ? AND uid BETWEEN ? AND ?",
                (folder, epoch, min(uids), max(uids)),
            ).fetchall()
        wanted = set(uids)
        return {row["uid"] for row in rows if row["uid"] in wanted}

    # -- search documents --------------------------------------------------

    def upsert_documents(self, documents: list[EmailDocument]) -> None:
        """Insert or refresh search documents keyed by file path."""

        if not documents:
            return

        now_iso = datetime.now(timezone.utc).isoformat()

        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO emails (
                    message_id,
                    file_path,
                    folder,
                    account,
                    from_address,
                    from_name,
                    to_addrs_json,
                    cc_addrs_json,
                    bcc_addrs_json,
                    subject,
                    date_sent_unix,
                    has_attachments,
                    attachment_names_json,
                    body_preview,
                    body_text,
                    indexed_at_iso
                )
                VALUES (
                    :message_id,
                    :file_path,
                    :folder,
                    :account,
                    :from_address,
                    :from_name,
                    :to_addrs_json,
                    :cc_addrs_json,
                    :bcc_addrs_json,
                    :subject,
                    :date_sent_unix,
                    :has_attachments,
                    :attachment_names_json,
                    :body_preview,
                    :body_text,
                    :indexed_at_iso
                )
                ON CONFLICT(file_path) DO UPDATE SET
                    message_id=excluded.message_id,
                    folder=excluded.folder,
                    account=excluded.account,
                    from_address=excluded.from_address,
                    from_name=excluded.from_name,
                    to_addrs_json=excluded.to_addrs_json,
                    cc_addrs_json=excluded.cc_addrs_json,
                    bcc_addrs_json=excluded.bcc_addrs_json,
                    subject=excluded.subject,
                    date_sent_unix=excluded.date_sent_unix,
                    has_attachments=excluded.has_attachments,
                    attachment_names_json=excluded.attachment_names_json,
                    body_preview=excluded.body_preview,
                    body_text=excluded.body_text,
                    indexed_at_iso=excluded.indexed_at_iso
                """,
                [
                    {
                        "message_id": d.message_id,
                        "file_path": d.file_path,
                        "folder": d.folder,
                        "account": d.account,
                        "from_address": d.from_address,
                        "from_name": d.from_name,
                        "to_addrs_json": json.dumps(d.to_addresses),
                        "cc_addrs_json": json.dumps(d.cc_addresses),
                        "bcc_addrs_json": json.dumps(d.bcc_addresses),
                        "subject": d.subject,
                        "date_sent_unix": int(d.date_sent.timestamp()) if d.date_sent else None,
                        "has_attachments": 1 if d.has_attachments else 0,
                        "attachment_names_json": json.dumps(d.attachment_names),
                        "body_preview": d.body_preview,
                        "body_text": d.body_text,
                        "indexed_at_iso": now_iso,
                    }
                    for d in documents
                ],
            )
            conn.commit()

    def search(self, query: str, limit: int = 50, offset: int = 0) -> list[EmailDocument]:
        """Search the index using SQLite FTS5.

        Args:
            query: FTS query.
            limit: Max results.
            offset: Offset.

        Returns:
            Matching documents, best match first.
        """

        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT e.*
                FROM emails_fts
                JOIN emails e ON e.rowid = emails_fts.rowid
                WHERE emails_fts MATCH ?
                ORDER BY bm25(emails_fts)
                LIMIT ? OFFSET ?;
                """,
                (query, limit, offset),
            ).fetchall()

        return [self._row_to_document(row) for row in rows]

    def get_document_by_path(self, file_path: str) -> EmailDocument | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM emails WHERE file_path = ?", (file_path,)).fetchone()
        return self._row_to_document(row) if row is not None else None

    def document_count(self) -> int:
        with self.connect() as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM emails").fetchone()
        return int(count)

    def clear_documents(self) -> None:
        """Drop every search document; archive records and cursors are kept."""

        with self.connect() as conn:
            conn.execute("DELETE FROM emails")
            conn.commit()

    # -- metadata / stats --------------------------------------------------

    def get_metadata(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM index_metadata WHERE key = ?", (key,)).fetchone()
        return row[0] if row is not None else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO index_metadata(key, value) VALUES(?, ?)",
                (key, value),
            )
            conn.commit()

    def stats(self) -> ArchiveIndexStats:
        """Compute high-level index stats."""

        with self.connect() as conn:
            (total,) = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            (folders,) = conn.execute("SELECT COUNT(DISTINCT folder) FROM messages").fetchone()
            (documents,) = conn.execute("SELECT COUNT(*) FROM emails").fetchone()
            (signatures,) = conn.execute(
                "SELECT COUNT(*) FROM change_signatures WHERE is_directory = 0"
            ).fetchone()
            (abandoned,) = conn.execute(
                "SELECT COUNT(*) FROM item_failures WHERE abandoned = 1"
            ).fetchone()

        return ArchiveIndexStats(
            total_messages=int(total or 0),
            indexed_documents=int(documents or 0),
            folders=int(folders or 0),
            tracked_signatures=int(signatures or 0),
            abandoned_items=int(abandoned or 0),
            cursors=self.list_cursors(),
            last_indexed_at=self.get_metadata("last_indexed_at"),
        )

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with the index's durability settings."""

        conn = sqlite3.connect(self._db_path, timeout=30.0)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA busy_timeout=30000;")
            yield conn
        finally:
            conn.close()

    # -- internals ---------------------------------------------------------

    def _open_and_migrate(self) -> bool:
        """Open the database and apply the schema.

        Returns:
            True if the schema was created from scratch.
        """

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            (check,) = conn.execute("PRAGMA quick_check;").fetchone()
            if check != "ok":
                raise IndexCorruptionError(f"Integrity check failed: {check}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("archive_index_schema_created", version=_SCHEMA_VERSION)
                return True

            if current_version != _SCHEMA_VERSION:
                raise IndexCorruptionError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

        return False

    def _quarantine(self) -> Path | None:
        if not self._db_path.exists():
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self._db_path.with_name(f"{self._db_path.name}.corrupt.{stamp}")
        for companion in ("", "-wal", "-shm"):
            source = Path(f"{self._db_path}{companion}")
            if source.exists():
                source.rename(Path(f"{target}{companion}"))

        logger.warning("index_quarantined", db_path=str(self._db_path), moved_to=str(target))
        return target

    def _rebuild_from_sidecars(self) -> int:
        self.set_metadata(_REBUILD_STATE_KEY, "in_progress")
        logger.info("index_rebuild_started", archive_root=str(self._archive_root))

        restored = 0
        skipped = 0
        with self.connect() as conn:
            for path, metadata in iter_sidecars(self._archive_root):
                if metadata is None:
                    skipped += 1
                    continue
                record = MessageRecord(
                    message_identity=metadata.message_identity,
                    folder=metadata.folder,
                    imported_at=metadata.archived_at,
                )
                if self._insert_record(conn, record):
                    restored += 1
                if restored and restored % _REBUILD_COMMIT_EVERY == 0:
                    conn.commit()
            conn.commit()

        self.set_metadata(_REBUILD_STATE_KEY, "complete")
        logger.info("index_rebuild_completed", restored=restored, malformed=skipped)
        return restored

    def _insert_record(self, conn: sqlite3.Connection, record: MessageRecord) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO messages (message_id, folder, imported_at) VALUES (?, ?, ?)",
            (record.message_identity, record.folder, record.imported_at.isoformat()),
        )
        return cursor.rowcount == 1

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                folder TEXT NOT NULL,
                imported_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder);

            CREATE TABLE IF NOT EXISTS sync_state (
                folder TEXT PRIMARY KEY,
                last_uid INTEGER NOT NULL,
                uid_validity INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS item_failures (
                folder TEXT NOT NULL,
                uid_validity INTEGER NOT NULL,
                uid INTEGER NOT NULL,
                attempts INTEGER NOT NULL,
                last_error TEXT NOT NULL,
                first_failed_at TEXT NOT NULL,
                last_failed_at TEXT NOT NULL,
                abandoned INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (folder, uid_validity, uid)
            );

            CREATE TABLE IF NOT EXISTS change_signatures (
                unit_key TEXT PRIMARY KEY,
                parent_key TEXT,
                is_directory INTEGER NOT NULL DEFAULT 0,
                size INTEGER NOT NULL,
                mtime_ns INTEGER NOT NULL,
                content_digest TEXT,
                recorded_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_change_signatures_parent
                ON change_signatures(parent_key);

            CREATE TABLE IF NOT EXISTS index_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS emails (
                rowid INTEGER PRIMARY KEY,
                message_id TEXT NOT NULL,
                file_path TEXT NOT NULL UNIQUE,
                folder TEXT,
                account TEXT,
                from_address TEXT,
                from_name TEXT,
                to_addrs_json TEXT NOT NULL,
                cc_addrs_json TEXT NOT NULL,
                bcc_addrs_json TEXT NOT NULL,
                subject TEXT,
                date_sent_unix INTEGER,
                has_attachments INTEGER NOT NULL,
                attachment_names_json TEXT NOT NULL,
                body_preview TEXT,
                body_text TEXT,
                indexed_at_iso TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_emails_message_id ON emails(message_id);
            CREATE INDEX IF NOT EXISTS idx_emails_from_address ON emails(from_address);
            CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date_sent_unix);
            CREATE INDEX IF NOT EXISTS idx_emails_folder ON emails(folder);

            CREATE VIRTUAL TABLE IF NOT EXISTS emails_fts USING fts5(
                subject,
                from_address,
                from_name,
                to_addrs_json,
                cc_addrs_json,
                attachment_names_json,
                body_preview,
                body_text,
                content='emails',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS emails_ai
            AFTER INSERT ON emails
            BEGIN
                INSERT INTO emails_fts(
                    rowid, subject, from_address, from_name, to_addrs_json, cc_addrs_json,
                    attachment_names_json, body_preview, body_text
                ) VALUES (
                    new.rowid, new.subject, new.from_address, new.from_name, new.to_addrs_json,
                    new.cc_addrs_json, new.attachment_names_json, new.body_preview, new.body_text
                );
            END;

            CREATE TRIGGER IF NOT EXISTS emails_ad
            AFTER DELETE ON emails
            BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, from_address, from_name,
                    to_addrs_json, cc_addrs_json, attachment_names_json, body_preview, body_text)
                VALUES('delete', old.rowid, old.subject, old.from_address, old.from_name,
                    old.to_addrs_json, old.cc_addrs_json, old.attachment_names_json,
                    old.body_preview, old.body_text);
            END;

            CREATE TRIGGER IF NOT EXISTS emails_au
            AFTER UPDATE ON emails
            BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, from_address, from_name,
                    to_addrs_json, cc_addrs_json, attachment_names_json, body_preview, body_text)
                VALUES('delete', old.rowid, old.subject, old.from_address, old.from_name,
                    old.to_addrs_json, old.cc_addrs_json, old.attachment_names_json,
                    old.body_preview, old.body_text);

                INSERT INTO emails_fts(
                    rowid, subject, from_address, from_name, to_addrs_json, cc_addrs_json,
                    attachment_names_json, body_preview, body_text
                ) VALUES (
                    new.rowid, new.subject, new.from_address, new.from_name, new.to_addrs_json,
                    new.cc_addrs_json, new.attachment_names_json, new.body_preview, new.body_text
                );
            END;
            """
        )

    def _row_to_document(self, row: sqlite3.Row) -> EmailDocument:
        date_unix = row["date_sent_unix"]

        return EmailDocument(
            message_id=row["message_id"],
            file_path=row["file_path"],
            folder=row["folder"],
            account=row["account"],
            from_address=row["from_address"],
            from_name=row["from_name"],
            to_addresses=json.loads(row["to_addrs_json"]),
            cc_addresses=json.loads(row["cc_addrs_json"]),
            bcc_addresses=json.loads(row["bcc_addrs_json"]),
            subject=row["subject"],
            date_sent=(
                datetime.fromtimestamp(date_unix, tz=timezone.utc) if date_unix is not None else None
            ),
            has_attachments=bool(row["has_attachments"]),
            attachment_names=json.loads(row["attachment_names_json"]),
            body_preview=row["body_preview"],
            body_text=row["body_text"],
        )
