"""Configuration management for Mail Archiver.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from datetime import date
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from mail_archiver.exceptions import ConfigurationError
from mail_archiver.utils import xdg_data_home


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAIL_ARCHIVER_ prefix (e.g., MAIL_ARCHIVER_IMAP_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAIL_ARCHIVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # IMAP Configuration
    imap_host: str = Field(default="", description="IMAP server host name")
    imap_port: int = Field(default=993, description="IMAP server port (implicit TLS)")
    imap_username: str = Field(default="", description="IMAP login name")
    imap_password: SecretStr = Field(default=SecretStr(""), description="IMAP password")
    imap_timeout: float = Field(
        default=180.0,
        gt=0,
        description="Socket timeout for IMAP operations in seconds",
    )

    # Archive Configuration
    archive_root: Path = Field(
        default_factory=lambda: xdg_data_home() / "archive",
        description="Root directory of the maildir archive",
    )
    index_db_path: Path | None = Field(
        default=None,
        description="Path to the SQLite index (default: <archive_root>/index.v1.db)",
    )
    folders: list[str] = Field(
        default_factory=lambda: ["INBOX"],
        description="Remote folders to archive when all_folders is false",
    )
    all_folders: bool = Field(
        default=False,
        description="Archive every selectable folder on the server",
    )

    # Sync Configuration
    batch_size: int = Field(
        default=50,
        ge=1,
        description=(
            "Messages per fetch batch. Larger batches save round trips; smaller "
            "batches re-do less work after a crash."
        ),
    )
    body_chunk_size: int = Field(
        default=1024 * 1024,
        ge=4096,
        description="Bytes requested per partial body fetch",
    )
    backoff_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    backoff_cap_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound for a single retry delay in seconds",
    )
    breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive transient failures before the circuit opens",
    )
    breaker_cooldown_seconds: float = Field(
        default=120.0,
        ge=0,
        description="How long the circuit stays open before a trial attempt",
    )
    max_item_attempts: int = Field(
        default=5,
        ge=0,
        description=(
            "Failed fetch attempts allowed per message before it is abandoned and the cursor "
            "moves past it (0 = retry forever)"
        ),
    )
    staging_max_age_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="Orphaned staging files older than this are removed before a sync",
    )
    since: date | None = Field(
        default=None,
        description=(
            "Only archive messages received on or after this date. Filtered runs never "
            "advance the per-folder cursor."
        ),
    )
    before: date | None = Field(
        default=None,
        description="Only archive messages received before this date (exclusive)",
    )

    # Local Index Configuration
    index_batch_size: int = Field(
        default=100,
        ge=1,
        description="Documents upserted per transaction while indexing",
    )
    index_include_body: bool = Field(
        default=False,
        description="Store the full plain-text body in the search index",
    )
    trust_directory_watermarks: bool = Field(
        default=True,
        description="Skip stat() of files in directories whose mtime is unchanged",
    )
    signature_digest_bytes: int = Field(
        default=0,
        ge=0,
        description="Bytes hashed into change signatures when size/mtime differ (0 = off)",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="console",
        description="Log renderer: 'console' or 'json'",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @property
    def resolved_index_db_path(self) -> Path:
        """Location of the index database file."""

        return self.index_db_path or self.archive_root / "index.v1.db"

    def require_imap(self) -> None:
        """Fail fast when the IMAP connection settings are incomplete.

        Raises:
            ConfigurationError: If host, username or password is missing.
        """

        missing = [
            name
            for name, value in (
                ("imap_host", self.imap_host),
                ("imap_username", self.imap_username),
                ("imap_password", self.imap_password.get_secret_value()),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Missing IMAP settings: "
                + ", ".join(f"MAIL_ARCHIVER_{name.upper()}" for name in missing)
            )

    @property
    def date_filtered(self) -> bool:
        """Whether ``since`` or ``before`` narrows the server-side search."""

        return self.since is not None or self.before is not None

    def require_date_range(self) -> None:
        """Reject a ``since``/``before`` pair that can match nothing.

        Raises:
            ConfigurationError: If ``since`` is not earlier than ``before``.
        """

        if self.since is not None and self.before is not None and self.since >= self.before:
            raise ConfigurationError(
                f"MAIL_ARCHIVER_SINCE ({self.since}) must be earlier than "
                f"MAIL_ARCHIVER_BEFORE ({self.before})"
            )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
