"""Discovery of sidecar metadata files under the archive root."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import structlog
from pydantic import ValidationError

from mail_archiver.models import SidecarMetadata
from mail_archiver.storage.layout import SIDECAR_SUFFIX

logger = structlog.get_logger()


def iter_sidecars(archive_root: Path) -> Iterator[tuple[Path, SidecarMetadata | None]]:
    """Yield every sidecar below ``archive_root`` with its parsed content.

    Malformed sidecars are logged and yielded with ``None`` so callers can
    count them. The walk uses an explicit stack and never follows symlinks.
    """

    if not archive_root.is_dir():
        logger.warning("archive_root_missing", archive_root=str(archive_root))
        return

    pending: list[Path] = [archive_root]
    while pending:
        directory = pending.pop()
        try:
            entries = list(os.scandir(directory))
        except OSError as exc:
            logger.warning("archive_directory_unreadable", path=str(directory), error=str(exc))
            continue

        for entry in sorted(entries, key=lambda e: e.name):
            if entry.is_dir(follow_symlinks=False):
                pending.append(Path(entry.path))
            elif entry.name.endswith(SIDECAR_SUFFIX):
                path = Path(entry.path)
                yield path, _load_sidecar(path)


def _load_sidecar(path: Path) -> SidecarMetadata | None:
    try:
        return SidecarMetadata.model_validate_json(path.read_bytes())
    except (OSError, ValidationError) as exc:
        logger.warning("sidecar_malformed", path=str(path), error=str(exc))
        return None
