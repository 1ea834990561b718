"""Core circuit breaker implementation."""

import asyncio
import sys
import threading
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager, nullcontext
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from resilient_client.circuit_breaker.exceptions import CircuitOpenError
from resilient_client.circuit_breaker.metrics import BreakerListener
from resilient_client.circuit_breaker.state import Admission, BreakerStats, CircuitState
from resilient_client.logging import (
    StructuredLogger,
    log_debug,
    log_exception,
    log_info,
    log_warning,
)

_Transition = tuple[CircuitState, CircuitState]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _gil_enabled() -> bool:
    is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
    return True if is_gil_enabled is None else bool(is_gil_enabled())


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        enabled: When false every call is admitted and nothing is counted.
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        reset_timeout: Seconds ``OPEN`` is held before trial calls are allowed.
        half_open_request_limit: Concurrent trial calls allowed while ``HALF_OPEN``.
    """

    enabled: bool = False
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    half_open_request_limit: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.half_open_request_limit < 1:
            raise ValueError("half_open_request_limit must be >= 1")


@dataclass(slots=True)
class _BreakerRuntime:
    """Mutable breaker counters. Only touched while the breaker lock is held."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: datetime | None = None
    half_open_in_flight: int = 0
    generation: int = 0

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at = None
        self.half_open_in_flight = 0


class CircuitBreaker:
    """Admission control and failure-trend tracking for one dependency."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used in errors, logs and listener events.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            clock: Timezone-aware "now" source. Defaults to UTC wall clock.
            logger: Structured logger. Defaults to this module's logger.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._clock = _utcnow if clock is None else clock
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._runtime = _BreakerRuntime()
        self._async_lock = asyncio.Lock()
        self._thread_lock: threading.Lock | None = None
        if not _gil_enabled():
            self._thread_lock = threading.Lock()

    def add_listener(self, listener: BreakerListener) -> None:
        """Register another listener for breaker events."""
        self._listeners = (*self._listeners, listener)

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[_BreakerRuntime]:
        if self._thread_lock is None:
            async with self._async_lock:
                yield self._runtime
            return

        # Async lock first so coroutines queue without blocking the loop.
        async with self._async_lock:
            with self._thread_lock:
                yield self._runtime

    @contextmanager
    def _read_locked(self) -> Iterator[_BreakerRuntime]:
        guard = nullcontext() if self._thread_lock is None else self._thread_lock
        with guard:
            yield self._runtime

    def _retry_after(self, runtime: _BreakerRuntime, now: datetime) -> float:
        opened_at = runtime.last_failure_at or now
        elapsed = (now - opened_at).total_seconds()
        return max(self.config.reset_timeout - elapsed, 0.0)

    @staticmethod
    def _transition(
        runtime: _BreakerRuntime,
        new: CircuitState,
        transitions: list[_Transition],
    ) -> None:
        transitions.append((runtime.state, new))
        runtime.state = new

    async def admit(self) -> Admission:
        """Admit one call or reject it because the circuit is open.

        Returns:
            An ``Admission`` that must be passed to ``release`` once the
            admitted attempt concludes.

        Raises:
            CircuitOpenError: When the circuit is open, or half-open with all
                trial slots in use.
        """
        if not self.config.enabled:
            return Admission()

        transitions: list[_Transition] = []
        rejection: CircuitOpenError | None = None
        admission = Admission()
        async with self._locked() as runtime:
            if runtime.state == CircuitState.OPEN:
                retry_after = self._retry_after(runtime, self._clock())
                if retry_after > 0:
                    rejection = CircuitOpenError(self.name, retry_after=retry_after)
                else:
                    self._transition(runtime, CircuitState.HALF_OPEN, transitions)
                    runtime.half_open_in_flight = 0
                    runtime.generation += 1

            if rejection is None and runtime.state == CircuitState.HALF_OPEN:
                limit = self.config.half_open_request_limit
                if runtime.half_open_in_flight >= limit:
                    rejection = CircuitOpenError(self.name, retry_after=0.0)
                else:
                    runtime.half_open_in_flight += 1
                    admission = Admission(trial=True, generation=runtime.generation)
                    log_debug(
                        self._logger,
                        "circuit_breaker_trial_admitted",
                        breaker=self.name,
                        in_flight=runtime.half_open_in_flight,
                        limit=limit,
                    )
            rejected_state = runtime.state

        await self._emit_state_changes(transitions)
        if rejection is not None:
            log_warning(
                self._logger,
                "circuit_breaker_rejected",
                breaker=self.name,
                state=str(rejected_state),
                retry_after=rejection.retry_after,
            )
            await self._emit_call_rejected(rejected_state)
            raise rejection
        return admission

    async def record_success(self) -> None:
        """Record a successful call, closing a half-open circuit."""
        if not self.config.enabled:
            return

        transitions: list[_Transition] = []
        async with self._locked() as runtime:
            if runtime.state == CircuitState.HALF_OPEN:
                self._transition(runtime, CircuitState.CLOSED, transitions)
                runtime.reset()
            elif runtime.state == CircuitState.CLOSED and runtime.failure_count:
                log_debug(
                    self._logger,
                    "circuit_breaker_failures_reset",
                    breaker=self.name,
                    failure_count=runtime.failure_count,
                )
                runtime.failure_count = 0
        await self._emit_state_changes(transitions)

    async def record_failure(self) -> None:
        """Record a failed call, opening the circuit when warranted."""
        if not self.config.enabled:
            return

        transitions: list[_Transition] = []
        async with self._locked() as runtime:
            runtime.last_failure_at = self._clock()
            if runtime.state == CircuitState.HALF_OPEN:
                self._transition(runtime, CircuitState.OPEN, transitions)
                runtime.half_open_in_flight = 0
            elif runtime.state == CircuitState.CLOSED:
                runtime.failure_count += 1
                log_debug(
                    self._logger,
                    "circuit_breaker_failure_recorded",
                    breaker=self.name,
                    failure_count=runtime.failure_count,
                    threshold=self.config.failure_threshold,
                )
                if runtime.failure_count >= self.config.failure_threshold:
                    self._transition(runtime, CircuitState.OPEN, transitions)
        await self._emit_state_changes(transitions)

    async def release(self, admission: Admission) -> None:
        """Free the half-open trial slot held by ``admission``, if still held."""
        if not admission.trial:
            return
        async with self._locked() as runtime:
            if (
                runtime.state == CircuitState.HALF_OPEN
                and runtime.generation == admission.generation
                and runtime.half_open_in_flight > 0
            ):
                runtime.half_open_in_flight -= 1

    def stats(self) -> BreakerStats:
        """Return breaker state without triggering any transition."""
        with self._read_locked() as runtime:
            return BreakerStats(
                enabled=self.config.enabled,
                state=runtime.state,
                failure_count=runtime.failure_count,
                last_failure_time=runtime.last_failure_at,
            )

    async def _emit_state_changes(self, transitions: list[_Transition]) -> None:
        for old, new in transitions:
            log = log_warning if new == CircuitState.OPEN else log_info
            log(
                self._logger,
                "circuit_breaker_state_changed",
                breaker=self.name,
                old_state=str(old),
                new_state=str(new),
            )
            for listener in self._listeners:
                try:
                    await listener.on_state_change(self.name, old, new)
                except Exception:
                    log_exception(
                        self._logger,
                        "circuit_breaker_listener_failed",
                        breaker=self.name,
                        hook="on_state_change",
                    )

    async def _emit_call_rejected(self, state: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name, state)
            except Exception:
                log_exception(
                    self._logger,
                    "circuit_breaker_listener_failed",
                    breaker=self.name,
                    hook="on_call_rejected",
                )
