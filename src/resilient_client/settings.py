from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilient_client.circuit_breaker import CircuitBreakerConfig
from resilient_client.logging import get_log_level_value
from resilient_client.retry import RetryPolicy
from resilient_client.url import normalize_base_url


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False, frozen=True)


class ClientSettings(BaseSettings):
    """Settings for one dependency client, loaded from the environment.

    Subclass per dependency with ``model_config = prefixed_settings_config(...)``
    to read e.g. ``PAYMENTS_BASE_URL``.
    """

    model_config = SettingsConfigDict(case_sensitive=False, frozen=True)

    service_name: str
    base_url: str
    timeout_seconds: float = 10.0
    retry_max_retries: int = 3
    retry_backoff_factor: float = 2.0
    retry_min_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_jitter: bool = True
    breaker_enabled: bool = False
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 30.0
    breaker_half_open_request_limit: int = 1
    auth_enabled: bool = True
    health_check_path: str = "/health"
    health_check_fallback_path: str | None = None
    health_check_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    @field_validator("service_name", "base_url", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        return normalize_base_url(value)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            get_log_level_value(value)
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_client_settings(self) -> ClientSettings:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.health_check_timeout_seconds <= 0:
            raise ValueError("health_check_timeout_seconds must be > 0")
        if self.retry_max_retries < 0:
            raise ValueError("retry_max_retries must be >= 0")
        if self.retry_backoff_factor < 1:
            raise ValueError("retry_backoff_factor must be >= 1")
        if self.retry_min_delay_seconds < 0:
            raise ValueError("retry_min_delay_seconds must be >= 0")
        if self.retry_max_delay_seconds < self.retry_min_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_min_delay_seconds"
            )
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_reset_timeout_seconds < 0:
            raise ValueError("breaker_reset_timeout_seconds must be >= 0")
        if self.breaker_half_open_request_limit < 1:
            raise ValueError("breaker_half_open_request_limit must be >= 1")
        return self

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy described by these settings."""
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            backoff_factor=self.retry_backoff_factor,
            min_delay=self.retry_min_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            jitter=self.retry_jitter,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration described by these settings."""
        return CircuitBreakerConfig(
            enabled=self.breaker_enabled,
            failure_threshold=self.breaker_failure_threshold,
            reset_timeout=self.breaker_reset_timeout_seconds,
            half_open_request_limit=self.breaker_half_open_request_limit,
        )
