from __future__ import annotations

import pytest
from pydantic import ValidationError

from resilient_client.circuit_breaker import CircuitBreakerConfig
from resilient_client.retry import RetryPolicy
from resilient_client.settings import ClientSettings, prefixed_settings_config


class _PaymentsSettings(ClientSettings):
    model_config = prefixed_settings_config("PAYMENTS_")


def _build_settings(**overrides: object) -> ClientSettings:
    values: dict[str, object] = {
        "service_name": "payments",
        "base_url": "https://payments.example.test",
    }
    values.update(overrides)
    return ClientSettings(**values)  # type: ignore[arg-type]


def test_defaults_match_documented_values() -> None:
    settings = _build_settings()

    assert settings.timeout_seconds == 10.0
    assert settings.retry_policy() == RetryPolicy()
    assert settings.breaker_config() == CircuitBreakerConfig()
    assert settings.auth_enabled is True
    assert settings.health_check_path == "/health"
    assert settings.health_check_fallback_path is None
    assert settings.health_check_timeout_seconds == 5.0
    assert settings.log_level == "INFO"


def test_required_strings_are_stripped_and_base_url_normalized() -> None:
    settings = _build_settings(
        service_name="  payments ",
        base_url=" https://payments.example.test/v1/ ",
    )

    assert settings.service_name == "payments"
    assert settings.base_url == "https://payments.example.test/v1"


@pytest.mark.parametrize("field", ["service_name", "base_url"])
def test_required_strings_must_be_non_empty(field: str) -> None:
    with pytest.raises(ValidationError, match=f"{field} must be non-empty"):
        _build_settings(**{field: "   "})


def test_relative_base_url_is_rejected() -> None:
    with pytest.raises(ValidationError, match="absolute URL"):
        _build_settings(base_url="/payments")


def test_log_level_is_validated_and_normalized() -> None:
    assert _build_settings(log_level=" debug ").log_level == "DEBUG"
    with pytest.raises(ValidationError, match="log_level must be one of"):
        _build_settings(log_level="chatty")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"timeout_seconds": 0}, "timeout_seconds must be > 0"),
        ({"health_check_timeout_seconds": 0}, "health_check_timeout_seconds"),
        ({"retry_max_retries": -1}, "retry_max_retries must be >= 0"),
        ({"retry_backoff_factor": 0.5}, "retry_backoff_factor must be >= 1"),
        ({"retry_min_delay_seconds": -1}, "retry_min_delay_seconds must be >= 0"),
        (
            {"retry_min_delay_seconds": 5, "retry_max_delay_seconds": 1},
            "retry_max_delay_seconds must be >= retry_min_delay_seconds",
        ),
        ({"breaker_failure_threshold": 0}, "breaker_failure_threshold"),
        ({"breaker_reset_timeout_seconds": -1}, "breaker_reset_timeout_seconds"),
        ({"breaker_half_open_request_limit": 0}, "breaker_half_open_request_limit"),
    ],
)
def test_invalid_bounds_are_rejected(
    overrides: dict[str, object], message: str
) -> None:
    with pytest.raises(ValidationError, match=message):
        _build_settings(**overrides)


def test_retry_and_breaker_configs_are_built_from_fields() -> None:
    settings = _build_settings(
        retry_max_retries=5,
        retry_backoff_factor=3.0,
        retry_min_delay_seconds=0.2,
        retry_max_delay_seconds=4.0,
        retry_jitter=False,
        breaker_enabled=True,
        breaker_failure_threshold=2,
        breaker_reset_timeout_seconds=15.0,
        breaker_half_open_request_limit=3,
    )

    assert settings.retry_policy() == RetryPolicy(
        max_retries=5,
        backoff_factor=3.0,
        min_delay=0.2,
        max_delay=4.0,
        jitter=False,
    )
    assert settings.breaker_config() == CircuitBreakerConfig(
        enabled=True,
        failure_threshold=2,
        reset_timeout=15.0,
        half_open_request_limit=3,
    )


def test_prefixed_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAYMENTS_SERVICE_NAME", "payments")
    monkeypatch.setenv("PAYMENTS_BASE_URL", "https://payments.internal/")
    monkeypatch.setenv("PAYMENTS_BREAKER_ENABLED", "true")
    monkeypatch.setenv("PAYMENTS_RETRY_MAX_RETRIES", "1")
    monkeypatch.setenv("PAYMENTS_HEALTH_CHECK_FALLBACK_PATH", "/")

    settings = _PaymentsSettings()  # type: ignore[call-arg]

    assert settings.base_url == "https://payments.internal"
    assert settings.breaker_enabled is True
    assert settings.retry_max_retries == 1
    assert settings.health_check_fallback_path == "/"


def test_settings_are_frozen() -> None:
    settings = _build_settings()

    with pytest.raises(ValidationError):
        settings.timeout_seconds = 1.0  # type: ignore[misc]
