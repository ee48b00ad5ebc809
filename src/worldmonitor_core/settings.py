from __future__ import annotations

from typing import Literal

import structlog
from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from worldmonitor_core.logging import (
    LogFormat,
    configure_structlog,
    get_log_level_value,
)

CacheStoreKind = Literal["memory", "file", "redis"]

DEFAULT_CACHE_TTL_MS = 10 * 60 * 1000
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_OPEN_DURATION_MS = 30_000


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class GuardedFetchSettings(BaseSettings):
    """Breaker defaults and persistent cache wiring, read from the environment."""

    model_config = prefixed_settings_config("GUARDED_FETCH_")

    default_cache_ttl_ms: float = DEFAULT_CACHE_TTL_MS
    default_persist_cache: bool = False
    default_failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    default_open_duration_ms: float = DEFAULT_OPEN_DURATION_MS

    cache_store: CacheStoreKind = "memory"
    cache_dir: str | None = None
    redis_url: str | None = None
    redis_key_prefix: str = "guarded-fetch:"
    redis_ttl_seconds: int | None = None

    log_level: str = "INFO"
    log_format: LogFormat = "auto"

    @field_validator("cache_store", "log_format", mode="before")
    @classmethod
    def _normalize_choice(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cache_dir", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str, info: ValidationInfo) -> str:
        try:
            get_log_level_value(value)
        except ValueError as error:
            raise ValueError(f"{info.field_name}: {error}") from error
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_guarded_fetch_settings(self) -> GuardedFetchSettings:
        if self.default_cache_ttl_ms < 0:
            raise ValueError("default_cache_ttl_ms must be >= 0")
        if self.default_failure_threshold < 1:
            raise ValueError("default_failure_threshold must be >= 1")
        if self.default_open_duration_ms <= 0:
            raise ValueError("default_open_duration_ms must be > 0")
        if self.redis_ttl_seconds is not None and self.redis_ttl_seconds <= 0:
            raise ValueError("redis_ttl_seconds must be > 0 when provided")

        if self.cache_store == "file" and self.cache_dir is None:
            raise ValueError("cache_dir is required when cache_store is file")
        if self.cache_store == "redis" and self.redis_url is None:
            raise ValueError("redis_url is required when cache_store is redis")
        return self

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Install structlog with this configuration's level and format."""
        return configure_structlog(
            log_level=self.log_level,
            log_format=self.log_format,
        )
