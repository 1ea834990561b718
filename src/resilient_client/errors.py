"""Error taxonomy surfaced by resilient_client."""

from __future__ import annotations


class ResilientClientError(RuntimeError):
    """Base class for every failure raised to callers of the client.

    Attributes:
        attempts: Transport attempts made before the error surfaced, when known.
        elapsed: Seconds spent in the call before the error surfaced, when known.
    """

    attempts: int | None = None
    elapsed: float | None = None

    def annotate(self, *, attempts: int, elapsed: float) -> None:
        """Attach call diagnostics to the error before it reaches the caller."""
        self.attempts = attempts
        self.elapsed = elapsed


class AuthError(ResilientClientError):
    """Raised when credentials cannot be attached to an outgoing request."""


class RetryableError(ResilientClientError):
    """Transient dependency failure that is worth another attempt."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize retryable failure metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status returned by the dependency.
            response_body: Optional response payload text.
        """
        super().__init__(message)
        self.http_status = http_status
        self.response_body = response_body


class AttemptTimeoutError(RetryableError):
    """Raised when one attempt exceeds its timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"attempt_timeout_seconds={timeout_seconds:g}")


class TerminalFailure(ResilientClientError):
    """Failure that retrying cannot fix."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        """Initialize terminal failure metadata.

        Args:
            message: Human-readable error message.
            status_code: Optional HTTP status returned by the dependency.
            body: Optional response payload text.
        """
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ResponseParseError(TerminalFailure):
    """Raised when a successful response carries an undecodable body."""


class TransportFailure(TerminalFailure):
    """Raised when the transport cannot reach the dependency at all."""


class RequestCancelledError(TerminalFailure):
    """Raised when the caller cancels the whole call."""


class RetriesExhaustedError(ResilientClientError):
    """Raised once every allowed attempt ended in a retryable failure."""

    def __init__(self, cause: RetryableError, *, attempts: int) -> None:
        """Wrap the final retryable failure.

        Args:
            cause: Last retryable failure observed.
            attempts: Number of attempts made.
        """
        self.cause = cause
        super().__init__(f"retries_exhausted attempts={attempts} last_error={cause}")
        self.attempts = attempts
