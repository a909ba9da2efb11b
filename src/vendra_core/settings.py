from __future__ import annotations

from typing import Annotated

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from vendra_core.circuit_breaker import CircuitBreakerConfig
from vendra_core.errors import normalize_error_code
from vendra_core.logging import configure_structlog, get_log_level_value
from vendra_core.retry import RetryPolicy

DEFAULT_NON_RETRYABLE_CODES: tuple[str, ...] = ("401", "403", "42501", "PGRST301")


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Breaker, retry and logging settings for backend calls.

    Values are read from ``VENDRA_*`` environment variables. Durations are in
    seconds.
    """

    model_config = prefixed_settings_config("VENDRA_")

    breaker_failure_threshold: int = 3
    breaker_recovery_timeout_seconds: float = 15.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_backoff_factor: float = 2.0
    retry_jitter: bool = True
    non_retryable_codes: Annotated[tuple[str, ...], NoDecode] = (
        DEFAULT_NON_RETRYABLE_CODES
    )
    log_level: str = "INFO"

    @field_validator("non_retryable_codes", mode="before")
    @classmethod
    def _split_non_retryable_codes(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            codes = (normalize_error_code(item) for item in value)
            return tuple(code for code in codes if code is not None)
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            get_log_level_value(value)
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_recovery_timeout_seconds < 0:
            raise ValueError("breaker_recovery_timeout_seconds must be >= 0")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.retry_base_delay_seconds < 0:
            raise ValueError("retry_base_delay_seconds must be >= 0")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds"
            )
        if self.retry_backoff_factor <= 1:
            raise ValueError("retry_backoff_factor must be > 1")
        return self

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Configure structlog at ``log_level`` and return the root logger."""
        return configure_structlog(log_level=self.log_level)

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration for the backend dependency."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            recovery_timeout=self.breaker_recovery_timeout_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the base retry policy for backend calls."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_factor=self.retry_backoff_factor,
            jitter=self.retry_jitter,
        )
