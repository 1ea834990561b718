from __future__ import annotations

import pytest

from resilient_client.circuit_breaker import CircuitOpenError
from resilient_client.errors import (
    AttemptTimeoutError,
    AuthError,
    RequestCancelledError,
    ResilientClientError,
    ResponseParseError,
    RetriesExhaustedError,
    RetryableError,
    TerminalFailure,
    TransportFailure,
)


@pytest.mark.parametrize(
    "error",
    [
        AuthError("no token"),
        RetryableError("busy", http_status=503),
        AttemptTimeoutError(1.5),
        TerminalFailure("bad request", status_code=400),
        ResponseParseError("Failed to parse JSON response"),
        TransportFailure("refused"),
        RequestCancelledError("cancelled"),
        RetriesExhaustedError(RetryableError("busy"), attempts=4),
        CircuitOpenError("svc", retry_after=1.0),
    ],
)
def test_all_client_errors_share_one_base(error: ResilientClientError) -> None:
    assert isinstance(error, ResilientClientError)
    assert isinstance(error, RuntimeError)


def test_attempt_timeout_is_retryable() -> None:
    error = AttemptTimeoutError(2.0)

    assert isinstance(error, RetryableError)
    assert error.timeout_seconds == 2.0
    assert str(error) == "attempt_timeout_seconds=2"


def test_retries_exhausted_keeps_last_cause() -> None:
    cause = RetryableError("busy", http_status=503, response_body="try later")

    error = RetriesExhaustedError(cause, attempts=4)

    assert error.cause is cause
    assert error.attempts == 4
    assert "attempts=4" in str(error)
    assert "busy" in str(error)


def test_annotate_attaches_diagnostics() -> None:
    error = TerminalFailure("bad request", status_code=400)
    assert error.attempts is None
    assert error.elapsed is None

    error.annotate(attempts=1, elapsed=0.25)

    assert error.attempts == 1
    assert error.elapsed == 0.25
