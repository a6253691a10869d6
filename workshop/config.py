"""Configuration settings for the workshop client and its sync engine."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Client settings loaded from ``WORKSHOP_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WORKSHOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote
    backend_url: Optional[str] = None
    request_timeout: float = 10.0

    # Scheduling (seconds)
    debounce_seconds: float = Field(default=2.0, ge=0)
    periodic_interval_seconds: float = Field(default=30.0, gt=0)
    backoff_base_seconds: float = Field(default=60.0, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)

    # Queue drain
    batch_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=1)

    # Pull
    pull_page_size: int = Field(default=1000, ge=1)

    # Local store
    db_path: Optional[Path] = None


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
