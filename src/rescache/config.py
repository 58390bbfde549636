"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        CACHE_DIR: Directory holding the cache snapshot
        SNAPSHOT_FILENAME: File name of the snapshot inside CACHE_DIR
        RESTORE_ON_STARTUP: Restore the snapshot when the cache lifespan starts
        PERSIST_ON_SHUTDOWN: Write the snapshot when the cache lifespan ends
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Snapshot location
    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")
    SNAPSHOT_FILENAME: str = Field(
        default="cache-snapshot.json",
        description="Snapshot file name inside CACHE_DIR",
    )

    # Lifecycle
    RESTORE_ON_STARTUP: bool = Field(
        default=True, description="Restore the snapshot on startup"
    )
    PERSIST_ON_SHUTDOWN: bool = Field(
        default=True, description="Write the snapshot on shutdown"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("SNAPSHOT_FILENAME")
    @classmethod
    def validate_snapshot_filename(cls, v: str) -> str:
        """Validate that SNAPSHOT_FILENAME is a bare file name."""
        name = v.strip()
        if not name or name in (".", ".."):
            raise ValueError("SNAPSHOT_FILENAME must not be empty")
        if "/" in name or "\\" in name:
            raise ValueError(
                "SNAPSHOT_FILENAME must be a file name, not a path (use CACHE_DIR)"
            )
        return name

    @property
    def snapshot_path(self) -> Path:
        """Get the full path of the snapshot file."""
        return self.CACHE_DIR / self.SNAPSHOT_FILENAME

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | bool | None]:
        """Return settings as strings for display."""
        return {
            "CACHE_DIR": str(self.CACHE_DIR),
            "SNAPSHOT_FILENAME": self.SNAPSHOT_FILENAME,
            "RESTORE_ON_STARTUP": self.RESTORE_ON_STARTUP,
            "PERSIST_ON_SHUTDOWN": self.PERSIST_ON_SHUTDOWN,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
