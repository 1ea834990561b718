"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerStats:
    """Read-only view of breaker internals for introspection and logging.

    Attributes:
        enabled: Whether the breaker gates calls at all.
        state: Current breaker state.
        failure_count: Consecutive failures counted while ``CLOSED``.
        last_failure_time: Timestamp of the last recorded failure, if any.
    """

    enabled: bool
    state: CircuitState
    failure_count: int
    last_failure_time: datetime | None


@dataclass(frozen=True)
class Admission:
    """Ticket handed out by ``CircuitBreaker.admit``.

    Attributes:
        trial: True when the admission took a half-open trial slot.
        generation: Half-open phase the trial slot belongs to.
    """

    trial: bool = False
    generation: int = 0
