"""Application settings loaded from environment variables and .env files.

All tunables for matching, recovery scheduling, locking, and the metadata
provider live here so that workers in different processes agree on them.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
VALID_LOG_FORMATS = {"json", "console"}


class Settings(BaseSettings):
    """mangatrack runtime settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    log_format: str = "console"

    # Metadata provider
    mangadex_base_url: str = "https://api.mangadex.org"
    mangadex_requests_per_second: float = Field(default=5.0, gt=0)
    mangadex_timeout_seconds: float = Field(default=30.0, gt=0)
    metadata_cache_ttl_seconds: float = Field(default=300.0, ge=0)
    metadata_cache_max_entries: int = Field(default=1000, ge=1)

    # MangaUpdates id enrichment
    mangaupdates_base_url: str = "https://api.mangaupdates.com/v1"
    mangaupdates_requests_per_second: float = Field(default=1.0, gt=0)
    mangaupdates_match_floor: float = Field(default=0.70, ge=0, le=1)

    # Matching policy
    high_confidence_threshold: float = Field(default=0.85, ge=0, le=1)
    confirmed_confidence_floor: float = Field(default=0.70, ge=0, le=1)
    year_drift_tolerance: int = Field(default=2, ge=0)
    creator_match_boost: float = Field(default=0.05, ge=0, le=1)
    language_match_boost: float = Field(default=0.02, ge=0, le=1)
    language_mismatch_penalty: float = Field(default=0.15, ge=0, le=1)

    # Resolution lifecycle
    permanent_failure_after: int = Field(default=10, ge=1)
    recovery_base_delay_hours: float = Field(default=24.0, gt=0)
    recovery_max_delay_hours: float = Field(default=168.0, gt=0)
    blocked_content_ratings: list[str] = Field(default_factory=lambda: ["pornographic"])

    # Concurrency
    title_lock_ttl_seconds: float = Field(default=60.0, gt=0)
    transaction_max_attempts: int = Field(default=3, ge=1)
    worker_poll_interval_seconds: float = Field(default=1.0, gt=0)
    worker_concurrency: int = Field(default=4, ge=1)

    mangadex_api_key: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(VALID_LOG_LEVELS)}, got {v!r}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        lower = v.lower()
        if lower not in VALID_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {sorted(VALID_LOG_FORMATS)}, got {v!r}")
        return lower

    @field_validator("blocked_content_ratings")
    @classmethod
    def normalize_ratings(cls, v: list[str]) -> list[str]:
        return [r.strip().lower() for r in v if r.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance (cached)."""
    return Settings()
