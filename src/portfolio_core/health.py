from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from types import MappingProxyType

from portfolio_core.circuit_breaker import BreakerSnapshot, CircuitBreaker
from portfolio_core.logging import (
    AnyLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)

STATUS_HEALTHY = "healthy"
STATUS_FALLBACK = "fallback"
STATUS_UNHEALTHY = "unhealthy"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown"
STATUS_DEGRADED = "degraded"

_OK_STATUSES = frozenset({STATUS_HEALTHY, STATUS_FALLBACK})
_BAD_STATUSES = frozenset({STATUS_UNHEALTHY, STATUS_ERROR})


@dataclass(frozen=True)
class ServiceHealth:
    """Result of one guarded dependency health check."""

    name: str
    status: str
    detail: str = ""
    breaker: BreakerSnapshot | None = None
    last_checked_at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in _OK_STATUSES


@dataclass(frozen=True)
class OverallHealth:
    """Aggregate of the latest per-service health results."""

    status: str
    total_services: int
    healthy_services: int
    unhealthy_services: int
    services: Mapping[str, ServiceHealth] = field(default_factory=dict)
    last_updated: float = 0.0

    def __post_init__(self) -> None:
        """Freeze the per-service mapping to keep snapshots read-only."""
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))


HealthCheck = Callable[[], Awaitable[ServiceHealth]]


@dataclass(frozen=True)
class GuardedService:
    """A dependency guarded by a breaker, with its health check.

    Attributes:
        breaker: Breaker protecting every outbound call of the service.
        check: Coroutine function reporting the service health.
        clear_cache: Optional hook dropping cached responses on recovery.
    """

    breaker: CircuitBreaker
    check: HealthCheck
    clear_cache: Callable[[], None] | None = None


def classify_overall(results: Mapping[str, ServiceHealth]) -> str:
    """Return ``healthy``, ``degraded``, ``unhealthy`` or ``unknown``."""
    if not results:
        return STATUS_UNKNOWN
    healthy = sum(1 for result in results.values() if result.status in _OK_STATUSES)
    unhealthy = sum(
        1 for result in results.values() if result.status in _BAD_STATUSES
    )
    if unhealthy == 0:
        return STATUS_HEALTHY
    if healthy > unhealthy:
        return STATUS_DEGRADED
    return STATUS_UNHEALTHY


class HealthMonitor:
    """Track the health of several breaker-guarded services."""

    def __init__(
        self,
        services: Mapping[str, GuardedService],
        *,
        interval_seconds: float = 300.0,
        now_fn: Callable[[], float] = time.time,
        logger: AnyLogger | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            services: Guarded services keyed by service name.
            interval_seconds: Background polling interval in seconds.
            now_fn: Wall clock used for ``last_checked_at`` stamps.
            logger: Structured logger. Defaults to this module's logger.

        Raises:
            ValueError: If no services are provided.
        """
        if not services:
            raise ValueError("At least one guarded service is required.")
        self._services = dict(services)
        self._interval_seconds = max(interval_seconds, 0.01)
        self._now_fn = now_fn
        self._logger = get_logger(__name__) if logger is None else logger
        self._results: dict[str, ServiceHealth] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def _check_one(self, name: str, service: GuardedService) -> ServiceHealth:
        try:
            result = await service.check()
        except Exception as exc:
            result = ServiceHealth(
                name=name,
                status=STATUS_ERROR,
                detail=f"{exc.__class__.__name__}: {exc}",
                breaker=service.breaker.get_state(),
            )
        return ServiceHealth(
            name=name,
            status=result.status,
            detail=result.detail,
            breaker=result.breaker,
            last_checked_at=self._now_fn(),
        )

    async def check_all(self) -> list[ServiceHealth]:
        """Run every health check concurrently and cache the results."""
        results = await asyncio.gather(
            *(self._check_one(name, svc) for name, svc in self._services.items())
        )
        for result in results:
            self._results[result.name] = result
            if not result.ok:
                log_warning(
                    self._logger,
                    "health.service_unhealthy",
                    service=result.name,
                    status=result.status,
                    detail=result.detail or "Unknown error",
                )
        return list(results)

    def service_health(self, name: str) -> ServiceHealth:
        """Return the cached result for ``name`` or an ``unknown`` entry."""
        result = self._results.get(name)
        if result is None:
            return ServiceHealth(name=name, status=STATUS_UNKNOWN)
        return result

    def all_health(self) -> Mapping[str, ServiceHealth]:
        """Return a read-only copy of the latest result per service."""
        return MappingProxyType(dict(self._results))

    def overall_health(self) -> OverallHealth:
        results = dict(self._results)
        return OverallHealth(
            status=classify_overall(results),
            total_services=len(results),
            healthy_services=sum(1 for r in results.values() if r.ok),
            unhealthy_services=sum(
                1 for r in results.values() if r.status in _BAD_STATUSES
            ),
            services=results,
            last_updated=self._now_fn(),
        )

    def emergency_fallback(self) -> None:
        """Force every breaker open so callers serve fallback content."""
        log_info(
            self._logger,
            "health.emergency_fallback",
            services=sorted(self._services),
        )
        for service in self._services.values():
            service.breaker.force_open()

    async def recover_services(self) -> list[ServiceHealth]:
        """Reset every breaker, drop caches and re-check all services."""
        log_info(
            self._logger,
            "health.recover_services",
            services=sorted(self._services),
        )
        for service in self._services.values():
            service.breaker.reset()
            if service.clear_cache is not None:
                service.clear_cache()
        return await self.check_all()

    async def _background_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check_all()
            except Exception:
                log_exception(self._logger, "health.check_cycle_failed")
            with suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._interval_seconds
                )

    async def start_background(self) -> None:
        """Start periodic health checks if not already running."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._background_loop(),
            name="health-monitor",
        )

    async def stop_background(self) -> None:
        """Stop periodic health checks and await task completion."""
        self._stop_event.set()
        task = self._task
        if task is None:
            return
        grace_seconds = self._interval_seconds + 5.0
        try:
            await asyncio.wait_for(task, timeout=grace_seconds)
        except TimeoutError:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
