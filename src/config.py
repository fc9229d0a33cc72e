"""Configuration management for the issue grouping service."""

from enum import Enum
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageBackend(str, Enum):
    """Supported storage backends."""
    MEMORY = "memory"  # In-process store, used for tests and local runs
    POSTGREST = "postgrest"  # PostgREST / Supabase REST API


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Grouping
    fingerprint_frame_depth: int = Field(
        5, ge=1, description="Number of top stack frames that make up a fingerprint"
    )

    # Pagination
    pagination_default_limit: int = Field(10, ge=1, description="Page size when the caller omits a limit")
    pagination_max_limit: int = Field(1000, ge=1, description="Hard cap on any page size")

    # Filters
    default_time_range_days: int = Field(7, ge=1, description="Lookback window when no time range is given")

    # Storage
    storage_backend: StorageBackend = Field(StorageBackend.MEMORY, description="Which storage backend to use")
    storage_timeout_seconds: float = Field(30.0, gt=0, description="Upper bound for a single storage call")
    postgrest_url: Optional[str] = Field(None, description="PostgREST base URL (without /rest/v1)")
    postgrest_service_key: Optional[SecretStr] = Field(None, description="PostgREST service role key")

    # Logging
    log_level: str = Field("INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_json: bool = Field(False, description="Render logs as JSON")


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
