"""Mail Archiver - durable, deduplicated IMAP mailbox mirroring.

This package keeps a local maildir copy of a remote mailbox together with a
SQLite index that can always be rebuilt from the archived files.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mail_archiver.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
