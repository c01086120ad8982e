from __future__ import annotations

import asyncio

import pytest

from portfolio_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from portfolio_core.health import (
    STATUS_DEGRADED,
    STATUS_ERROR,
    STATUS_FALLBACK,
    STATUS_HEALTHY,
    STATUS_UNHEALTHY,
    STATUS_UNKNOWN,
    GuardedService,
    HealthMonitor,
    ServiceHealth,
    classify_overall,
)
from tests.portfolio_core.support.fakes import FakeLogger

pytestmark = pytest.mark.asyncio


def _breaker(name: str, logger: FakeLogger) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=60.0),
        logger=logger,
    )


def _static_check(breaker: CircuitBreaker, status: str, detail: str = ""):
    async def _check() -> ServiceHealth:
        return ServiceHealth(
            name=breaker.name,
            status=status,
            detail=detail,
            breaker=breaker.get_state(),
        )

    return _check


def _results(*statuses: str) -> dict[str, ServiceHealth]:
    return {
        f"svc{index}": ServiceHealth(name=f"svc{index}", status=status)
        for index, status in enumerate(statuses)
    }


async def test_classify_overall_statuses() -> None:
    assert classify_overall({}) == STATUS_UNKNOWN
    assert classify_overall(_results(STATUS_HEALTHY, STATUS_FALLBACK)) == (
        STATUS_HEALTHY
    )
    assert (
        classify_overall(_results(STATUS_HEALTHY, STATUS_FALLBACK, STATUS_ERROR))
        == STATUS_DEGRADED
    )
    assert classify_overall(_results(STATUS_HEALTHY, STATUS_UNHEALTHY)) == (
        STATUS_UNHEALTHY
    )


async def test_monitor_requires_services() -> None:
    with pytest.raises(ValueError):
        HealthMonitor({})


async def test_check_all_caches_results_and_logs_unhealthy(
    fake_logger: FakeLogger,
) -> None:
    github = _breaker("github", fake_logger)
    ai = _breaker("ai", fake_logger)

    async def _broken() -> ServiceHealth:
        raise RuntimeError("check crashed")

    monitor = HealthMonitor(
        {
            "github": GuardedService(github, _static_check(github, STATUS_HEALTHY)),
            "ai": GuardedService(ai, _broken),
        },
        now_fn=lambda: 42.0,
        logger=fake_logger,
    )

    results = await monitor.check_all()

    assert {result.name: result.status for result in results} == {
        "github": STATUS_HEALTHY,
        "ai": STATUS_ERROR,
    }
    ai_health = monitor.service_health("ai")
    assert ai_health.detail == "RuntimeError: check crashed"
    assert ai_health.last_checked_at == 42.0
    assert ai_health.breaker is not None
    assert monitor.service_health("sandbox").status == STATUS_UNKNOWN
    warnings = fake_logger.calls_for("health.service_unhealthy")
    assert warnings == [
        {"service": "ai", "status": STATUS_ERROR, "detail": "RuntimeError: check crashed"}
    ]


async def test_all_health_is_read_only_copy_of_latest_results(
    fake_logger: FakeLogger,
) -> None:
    github = _breaker("github", fake_logger)
    monitor = HealthMonitor(
        {"github": GuardedService(github, _static_check(github, STATUS_HEALTHY))},
        logger=fake_logger,
    )
    assert dict(monitor.all_health()) == {}

    await monitor.check_all()
    snapshot = monitor.all_health()

    assert list(snapshot) == ["github"]
    assert snapshot["github"].status == STATUS_HEALTHY
    with pytest.raises(TypeError):
        snapshot["sandbox"] = ServiceHealth(  # type: ignore[index]
            name="sandbox", status=STATUS_HEALTHY
        )


async def test_overall_health_counts_services(fake_logger: FakeLogger) -> None:
    breakers = {name: _breaker(name, fake_logger) for name in ("a", "b", "c")}
    monitor = HealthMonitor(
        {
            "a": GuardedService(breakers["a"], _static_check(breakers["a"], "healthy")),
            "b": GuardedService(
                breakers["b"], _static_check(breakers["b"], "fallback")
            ),
            "c": GuardedService(
                breakers["c"], _static_check(breakers["c"], "unhealthy", "down")
            ),
        },
        logger=fake_logger,
    )
    assert monitor.overall_health().status == STATUS_UNKNOWN

    await monitor.check_all()
    overall = monitor.overall_health()

    assert overall.status == STATUS_DEGRADED
    assert overall.total_services == 3
    assert overall.healthy_services == 2
    assert overall.unhealthy_services == 1
    assert set(overall.services) == {"a", "b", "c"}


async def test_emergency_fallback_and_recovery(fake_logger: FakeLogger) -> None:
    github = _breaker("github", fake_logger)
    sandbox = _breaker("sandbox", fake_logger)
    cleared: list[str] = []
    monitor = HealthMonitor(
        {
            "github": GuardedService(
                github,
                _static_check(github, STATUS_HEALTHY),
                clear_cache=lambda: cleared.append("github"),
            ),
            "sandbox": GuardedService(sandbox, _static_check(sandbox, STATUS_HEALTHY)),
        },
        logger=fake_logger,
    )

    monitor.emergency_fallback()
    assert github.state == CircuitState.OPEN
    assert sandbox.state == CircuitState.OPEN

    results = await monitor.recover_services()

    assert github.state == CircuitState.CLOSED
    assert sandbox.state == CircuitState.CLOSED
    assert github.get_stats().total_requests == 0
    assert cleared == ["github"]
    assert all(result.status == STATUS_HEALTHY for result in results)


async def test_background_loop_runs_checks_until_stopped(
    fake_logger: FakeLogger,
) -> None:
    breaker = _breaker("github", fake_logger)
    checked = asyncio.Event()
    calls = 0

    async def _check() -> ServiceHealth:
        nonlocal calls
        calls += 1
        checked.set()
        return ServiceHealth(name="github", status=STATUS_HEALTHY)

    monitor = HealthMonitor(
        {"github": GuardedService(breaker, _check)},
        interval_seconds=0.01,
        logger=fake_logger,
    )

    await monitor.start_background()
    await monitor.start_background()
    await asyncio.wait_for(checked.wait(), timeout=1.0)
    await monitor.stop_background()

    assert calls >= 1
    assert monitor.service_health("github").status == STATUS_HEALTHY
