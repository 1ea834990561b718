"""Per-dependency readiness driven by health checks and breaker events.

A ``ReadinessTracker`` caches one ``DependencyStatus`` per tracked client.
``refresh`` checks every dependency concurrently; between refreshes the
tracker follows breaker transitions, so an opening circuit marks its
dependency unready without waiting for the next refresh.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

import structlog

from resilient_client.circuit_breaker import CircuitState
from resilient_client.client import ResilientClient
from resilient_client.logging import StructuredLogger, log_info, log_warning

DETAIL_NOT_CHECKED = "not checked yet"
DETAIL_CIRCUIT_OPEN = "circuit open"


@dataclass(frozen=True)
class DependencyStatus:
    """Last known readiness of one dependency.

    Attributes:
        name: Dependency service name.
        ready: Whether callers should expect the dependency to answer.
        circuit_state: Breaker state, or ``None`` when the breaker is disabled.
        failure_count: Consecutive failures counted by the breaker.
        detail: Why the dependency is not ready; empty when it is.
    """

    name: str
    ready: bool
    circuit_state: CircuitState | None
    failure_count: int = 0
    detail: str = ""


@dataclass(frozen=True)
class ReadinessSnapshot:
    """Readiness of every tracked dependency at ``checked_at``."""

    ready: bool
    checked_at: float
    dependencies: tuple[DependencyStatus, ...]

    def get(self, name: str) -> DependencyStatus | None:
        return next((dep for dep in self.dependencies if dep.name == name), None)


async def check_dependency(
    client: ResilientClient,
    *,
    path: str | None = None,
    timeout: float | None = None,
) -> DependencyStatus:
    """Health-check ``client`` once and combine the result with its breaker stats."""
    healthy = await client.health_check(path, timeout)
    stats = client.get_breaker_stats()
    return DependencyStatus(
        name=client.service_name,
        ready=healthy,
        circuit_state=stats.state if stats.enabled else None,
        failure_count=stats.failure_count,
        detail="" if healthy else f"health check failed for {client.service_name}",
    )


class ReadinessTracker:
    """Cache dependency readiness; also a ``BreakerListener`` for tracked clients."""

    def __init__(
        self,
        *,
        now_fn: Callable[[], float] = time.time,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._now = now_fn
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._clients: dict[str, ResilientClient] = {}
        self._statuses: dict[str, DependencyStatus] = {}
        self._checked_at = now_fn()

    def track(self, client: ResilientClient) -> None:
        """Start tracking ``client`` and listening to its breaker.

        Raises:
            ValueError: If a client with the same service name is tracked.
        """
        name = client.service_name
        if name in self._clients:
            raise ValueError(f"dependency {name!r} is already tracked")
        self._clients[name] = client
        stats = client.get_breaker_stats()
        self._statuses[name] = DependencyStatus(
            name=name,
            ready=False,
            circuit_state=stats.state if stats.enabled else None,
            detail=DETAIL_NOT_CHECKED,
        )
        client.breaker.add_listener(self)

    def snapshot(self) -> ReadinessSnapshot:
        """Return cached readiness without probing anything."""
        dependencies = tuple(self._statuses.values())
        return ReadinessSnapshot(
            ready=bool(dependencies) and all(dep.ready for dep in dependencies),
            checked_at=self._checked_at,
            dependencies=dependencies,
        )

    async def refresh(self) -> ReadinessSnapshot:
        """Check every tracked dependency concurrently and cache the results."""
        if not self._clients:
            raise ValueError("no dependencies are tracked")
        previous = self.snapshot()
        results = await asyncio.gather(
            *(check_dependency(client) for client in self._clients.values())
        )
        for status in results:
            self._statuses[status.name] = status
        self._checked_at = self._now()
        current = self.snapshot()
        if current.ready != previous.ready:
            log = log_info if current.ready else log_warning
            log(
                self._logger,
                "readiness_changed",
                ready=current.ready,
                unready=[dep.name for dep in current.dependencies if not dep.ready],
            )
        return current

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        status = self._statuses.get(name)
        if status is None:
            return
        if new == CircuitState.OPEN:
            status = replace(status, ready=False, detail=DETAIL_CIRCUIT_OPEN)
        elif new == CircuitState.CLOSED:
            # Closing needs a successful trial call.
            status = replace(status, ready=True, failure_count=0, detail="")
        self._statuses[name] = replace(status, circuit_state=new)
        log_info(
            self._logger,
            "readiness_dependency_updated",
            dependency=name,
            old_state=str(old),
            new_state=str(new),
            ready=self._statuses[name].ready,
        )

    async def on_call_rejected(self, name: str, state: CircuitState) -> None:
        del name, state
