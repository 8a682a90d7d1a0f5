"""Local index of the mail archive.

This package contains the SQLite repository holding archive records, sync
cursors and search documents, plus the change-signature store used by
incremental passes. Everything here can be rebuilt from the archive on disk.
"""

from .repository import ArchiveIndexRepository, ArchiveIndexStats, ItemFailure
from .signatures import ChangeSignatureStore

__all__ = ["ArchiveIndexRepository", "ArchiveIndexStats", "ChangeSignatureStore", "ItemFailure"]
