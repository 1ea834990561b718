"""Async circuit breaker for one logical dependency.

Key behavior notes:
  - State lives in the breaker instance only; every process owns its own
    breaker per dependency.
  - ``admit``/``record_success``/``record_failure``/``release`` are linearized
    by one lock that is never held across I/O or sleeps.
  - Any failure while ``HALF_OPEN`` re-opens the circuit regardless of
    ``failure_threshold``. A trial whose outcome is never recorded (for example
    a cancelled call) must hand its slot back through ``release``.
"""

from resilient_client.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilient_client.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilient_client.circuit_breaker.metrics import BreakerListener
from resilient_client.circuit_breaker.state import Admission, BreakerStats, CircuitState

__all__ = [
    "Admission",
    "BreakerListener",
    "BreakerStats",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
]
