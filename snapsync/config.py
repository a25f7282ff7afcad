"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import sys

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Snapsync settings."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/snapsync.db"
    insert_batch_size: int = Field(default=500, ge=1)

    # Streaming
    entries_channel_size: int = Field(default=100, ge=0)
    chunk_channel_size: int = Field(default=100, ge=0)
    hash_buffer_size: int = Field(default=2_097_152, ge=1)
    transfer_chunk_size: int = Field(default=1_048_576, ge=1)

    def sqlite_path(self) -> str | None:
        """Return the on-disk path of a SQLite database URL, or None."""
        if not self.database_url.startswith("sqlite") or "///" not in self.database_url:
            return None
        path = self.database_url.split("///", 1)[-1]
        if not path or path == ":memory:":
            return None
        return path


def configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
