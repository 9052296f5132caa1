"""
Configuration settings for the playsync client.

Uses environment variables (prefix ``PLAYSYNC_``) with sensible defaults
for development.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLAYSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote endpoints
    content_base_url: str = "https://istafoundation.github.io/kids-content"
    rpc_base_url: str = "http://127.0.0.1:3210"
    request_timeout: float = 30.0

    # Sync scheduling (seconds)
    sync_interval: float = 3600.0  # Full sync every hour
    throttle_interval: float = 300.0  # 5 min between non-forced syncs

    # Content fetch
    content_batch_size: int = 5

    # Local cache
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".playsync")
    cache_db_name: str = "playsync.db"

    # Offline queue
    max_queue_size: int = 1000
    max_mutation_attempts: int = 5

    # Retry settings
    max_retries: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0

    # Status reporting
    max_error_records: int = 20

    # Gating
    free_level_count: int = 3

    @field_validator(
        "request_timeout",
        "sync_interval",
        "throttle_interval",
        "base_retry_delay",
        "max_retry_delay",
    )
    @classmethod
    def check_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator(
        "content_batch_size",
        "max_queue_size",
        "max_mutation_attempts",
        "max_retries",
        "max_error_records",
    )
    @classmethod
    def check_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("content_base_url", "rpc_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def cache_db_path(self) -> Path:
        """Full path to the cache database, creating the directory if needed."""
        cache_dir = Path(self.cache_dir).expanduser()
        cache_dir.mkdir(parents=True, exist_ok=True)
        return cache_dir / self.cache_db_name


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
