from __future__ import annotations

import httpx
import pytest

from resilient_client.circuit_breaker import CircuitBreakerConfig, CircuitState
from resilient_client.client import ResilientClient
from resilient_client.errors import RetriesExhaustedError
from resilient_client.readiness import (
    DETAIL_CIRCUIT_OPEN,
    DETAIL_NOT_CHECKED,
    ReadinessTracker,
    check_dependency,
)
from resilient_client.retry import RetryPolicy
from tests.resilient_client.support.fakes import FakeClock, FakeLogger, FakeTransport

pytestmark = pytest.mark.asyncio


def _build_client(
    name: str,
    transport: FakeTransport,
    logger: FakeLogger,
    *,
    clock: FakeClock | None = None,
    breaker_enabled: bool = True,
) -> ResilientClient:
    return ResilientClient(
        transport=transport,
        base_url=f"https://{name}.example.test",
        service_name=name,
        retry_policy=RetryPolicy(max_retries=0),
        breaker_config=CircuitBreakerConfig(
            enabled=breaker_enabled, failure_threshold=1, reset_timeout=30.0
        ),
        clock=None if clock is None else clock.now,
        logger=logger,
    )


async def test_check_dependency_reports_health_and_breaker_state(
    fake_logger: FakeLogger,
) -> None:
    client = _build_client("ledger", FakeTransport(httpx.Response(200)), fake_logger)

    status = await check_dependency(client)

    assert status.name == "ledger"
    assert status.ready is True
    assert status.circuit_state == CircuitState.CLOSED
    assert status.failure_count == 0
    assert status.detail == ""


async def test_check_dependency_reports_unreachable(fake_logger: FakeLogger) -> None:
    transport = FakeTransport(httpx.ConnectError("refused"))
    client = _build_client("ledger", transport, fake_logger, breaker_enabled=False)

    status = await check_dependency(client, path="/ready", timeout=0.5)

    assert status.ready is False
    assert status.circuit_state is None
    assert "ledger" in status.detail
    assert transport.calls[0].url == "https://ledger.example.test/ready"
    assert transport.calls[0].timeout == 0.5


async def test_tracked_dependencies_start_unready(fake_logger: FakeLogger) -> None:
    tracker = ReadinessTracker(now_fn=lambda: 10.0, logger=fake_logger)
    tracker.track(
        _build_client("ledger", FakeTransport(httpx.Response(200)), fake_logger)
    )

    snapshot = tracker.snapshot()

    assert snapshot.ready is False
    assert snapshot.checked_at == 10.0
    status = snapshot.get("ledger")
    assert status is not None
    assert status.detail == DETAIL_NOT_CHECKED
    assert snapshot.get("missing") is None


async def test_empty_tracker_is_not_ready_and_cannot_refresh() -> None:
    tracker = ReadinessTracker(logger=FakeLogger())

    assert tracker.snapshot().ready is False
    with pytest.raises(ValueError, match="no dependencies are tracked"):
        await tracker.refresh()


async def test_tracking_the_same_dependency_twice_is_rejected(
    fake_logger: FakeLogger,
) -> None:
    tracker = ReadinessTracker(logger=fake_logger)
    client = _build_client("ledger", FakeTransport(httpx.Response(200)), fake_logger)
    tracker.track(client)

    with pytest.raises(ValueError, match="already tracked"):
        tracker.track(client)


async def test_refresh_checks_all_dependencies(fake_logger: FakeLogger) -> None:
    times = iter([1.0, 2.0])
    tracker = ReadinessTracker(now_fn=lambda: next(times), logger=fake_logger)
    tracker.track(
        _build_client("ledger", FakeTransport(httpx.Response(200)), fake_logger)
    )
    tracker.track(
        _build_client("cache", FakeTransport(httpx.Response(503)), fake_logger)
    )

    snapshot = await tracker.refresh()

    assert snapshot.ready is False
    assert snapshot.checked_at == 2.0
    assert [(dep.name, dep.ready) for dep in snapshot.dependencies] == [
        ("ledger", True),
        ("cache", False),
    ]


async def test_refresh_logs_readiness_changes(fake_logger: FakeLogger) -> None:
    tracker = ReadinessTracker(logger=fake_logger)
    tracker.track(
        _build_client("ledger", FakeTransport(httpx.Response(200)), fake_logger)
    )

    await tracker.refresh()
    await tracker.refresh()

    assert fake_logger.fields_for("readiness_changed") == [
        {"ready": True, "unready": []}
    ]


async def test_breaker_transitions_update_cached_readiness(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    transport = FakeTransport(
        httpx.Response(200),
        httpx.Response(500),
        httpx.Response(200, json={}),
    )
    client = _build_client("ledger", transport, fake_logger, clock=fake_clock)
    tracker = ReadinessTracker(logger=fake_logger)
    tracker.track(client)
    assert (await tracker.refresh()).ready is True

    with pytest.raises(RetriesExhaustedError):
        await client.get("/entries")

    opened = tracker.snapshot().get("ledger")
    assert opened is not None
    assert opened.ready is False
    assert opened.circuit_state == CircuitState.OPEN
    assert opened.detail == DETAIL_CIRCUIT_OPEN

    fake_clock.advance(30)
    assert await client.get("/entries") == {}

    closed = tracker.snapshot().get("ledger")
    assert closed is not None
    assert closed.ready is True
    assert closed.circuit_state == CircuitState.CLOSED
    assert tracker.snapshot().ready is True
    assert len(transport.calls) == 3


async def test_events_for_untracked_breakers_are_ignored(
    fake_logger: FakeLogger,
) -> None:
    tracker = ReadinessTracker(logger=fake_logger)

    await tracker.on_state_change("other", CircuitState.CLOSED, CircuitState.OPEN)
    await tracker.on_call_rejected("other", CircuitState.OPEN)

    assert tracker.snapshot().dependencies == ()
