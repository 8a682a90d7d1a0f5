"""On-disk layout of the archive.

Each remote folder becomes a maildir under the archive root::

    <root>/<folder>/tmp/   staging area (same volume as cur/)
    <root>/<folder>/cur/   published messages and their .meta.json sidecars
    <root>/<folder>/new/   unused, kept so standard maildir readers accept it
"""

from __future__ import annotations

import hashlib
import re
import socket
from datetime import datetime
from pathlib import Path

from mail_archiver.utils import sanitize_for_filename

SIDECAR_SUFFIX = ".meta.json"
MESSAGE_SUFFIX = ".eml"
STAGING_SUFFIX = ".tmp"
MAILDIR_SUBDIRS = ("cur", "new", "tmp")

_MAX_NAME_IDENTITY = 120

# Path separators, NUL/control characters and ':' (maildir info separator).
_IDENTITY_UNSAFE = re.compile(r"[/\\:\x00-\x1f\x7f]")


def normalize_message_id(message_id: str | None) -> str | None:
    """Turn a Message-ID header into the archive's identity key.

    Returns None when nothing usable remains, so callers can fall back to a
    content digest.
    """

    if message_id is None:
        return None
    cleaned = _IDENTITY_UNSAFE.sub("_", message_id.strip()).strip().strip("<>").strip()
    cleaned = cleaned.lower().strip("_ ")
    return cleaned or None


def digest_identity(hex_digest: str) -> str:
    """Identity for messages without a usable Message-ID."""

    return f"sha256-{hex_digest[:32]}"


def folder_path(archive_root: Path, folder: str) -> Path:
    """Maildir for a remote folder.

    Names that sanitizing altered carry a digest of the original name, so
    ``Work/2024`` and ``Work_2024`` land in different directories.
    """

    name = sanitize_for_filename(folder, 100)
    if name != folder or name.startswith("."):
        digest = hashlib.sha256(folder.encode("utf-8")).hexdigest()[:8]
        name = f"{name}_{digest}"
    return archive_root / name


def ensure_maildir(path: Path) -> None:
    for sub in MAILDIR_SUBDIRS:
        (path / sub).mkdir(parents=True, exist_ok=True)


def _hostname() -> str:
    return sanitize_for_filename(socket.gethostname(), 20)


def name_component(identity: str) -> str:
    """Identity as it appears in a file name, shortened when very long."""

    if len(identity) <= _MAX_NAME_IDENTITY:
        return identity
    suffix = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]
    return f"{identity[:100]}_{suffix}"


def final_filename(received_at: datetime, identity: str) -> str:
    """Maildir file name for a published message, marked as seen."""

    return f"{int(received_at.timestamp())}.{name_component(identity)}.{_hostname()}:2,S{MESSAGE_SUFFIX}"


def sidecar_path(message_path: Path) -> Path:
    return message_path.with_name(message_path.name + SIDECAR_SUFFIX)


def is_message_file(path: Path) -> bool:
    return path.name.lower().endswith(MESSAGE_SUFFIX)
