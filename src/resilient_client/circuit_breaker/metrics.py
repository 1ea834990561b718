"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilient_client.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Hooks run after the breaker lock is released, in transition order.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str, state: CircuitState) -> None:
        """Handle an admission rejected by an open or saturated circuit."""
