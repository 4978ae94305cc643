from __future__ import annotations

from typing import Literal

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdx_resilience.circuit_breaker.config import CircuitBreakerConfig
from sdx_resilience.circuit_breaker.storage import (
    KeyValueClient,
    SharedBreakerStorage,
)
from sdx_resilience.logging import configure_structlog

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BreakerSettings(BaseSettings):
    """Environment-driven circuit breaker settings (``CIRCUIT_BREAKER_*``)."""

    model_config = prefixed_settings_config("CIRCUIT_BREAKER_")

    success_threshold: int = 5
    failure_threshold: int = 10
    break_duration_seconds: float = 5.0
    sampling_duration_seconds: float = 10.0
    failure_ratio: float = 0.5
    storage_key_prefix: str = "circuit_breaker:"
    log_level: LogLevel = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("storage_key_prefix", mode="before")
    @classmethod
    def _validate_storage_key_prefix(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            raise ValueError("storage_key_prefix must be non-empty")
        return value

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> BreakerSettings:
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.break_duration_seconds < 0:
            raise ValueError("break_duration_seconds must be >= 0")
        if self.sampling_duration_seconds <= 0:
            raise ValueError("sampling_duration_seconds must be > 0")
        if not 0.0 <= self.failure_ratio <= 1.0:
            raise ValueError("failure_ratio must be within [0, 1]")
        return self

    def to_config(self) -> CircuitBreakerConfig:
        """Build a ``CircuitBreakerConfig`` from these settings."""
        return CircuitBreakerConfig(
            success_threshold=self.success_threshold,
            failure_threshold=self.failure_threshold,
            break_duration=self.break_duration_seconds,
            sampling_duration=self.sampling_duration_seconds,
            failure_ratio=self.failure_ratio,
        )

    def to_shared_storage(self, client: KeyValueClient) -> SharedBreakerStorage:
        """Build shared storage over ``client`` using ``storage_key_prefix``."""
        return SharedBreakerStorage(client, key_prefix=self.storage_key_prefix)

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Configure structlog at ``log_level``."""
        return configure_structlog(log_level=self.log_level)
