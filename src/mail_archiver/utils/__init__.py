"""Utility functions for Mail Archiver."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import TypeVar

T = TypeVar("T")

APP_NAME = "mail-archiver"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def xdg_data_home(app_name: str = APP_NAME) -> Path:
    """Return the per-user data directory for the application.

    Honours ``XDG_DATA_HOME`` and falls back to ``~/.local/share``.
    """

    base = os.environ.get("XDG_DATA_HOME", "").strip()
    if base:
        return Path(base) / app_name.lower()
    return Path.home() / ".local" / "share" / app_name.lower()


def sanitize_for_filename(value: str | None, max_length: int) -> str:
    """Collapse anything outside ``[A-Za-z0-9._-]`` into single underscores."""

    if not value or not value.strip():
        return "unknown"
    cleaned = _UNSAFE_CHARS.sub("_", value)[:max_length].strip("_")
    return cleaned or "unknown"


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield successive lists of at most ``size`` items."""

    if size < 1:
        raise ValueError("size must be >= 1")

    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
