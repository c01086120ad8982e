"""Core circuit breaker implementation."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import NoReturn, TypeVar

from portfolio_core.circuit_breaker.events import (
    BreakerCallback,
    BreakerEvent,
    BreakerEventBus,
)
from portfolio_core.circuit_breaker.exceptions import (
    CircuitOpenError,
    OperationTimeoutError,
)
from portfolio_core.circuit_breaker.state import (
    BreakerSnapshot,
    BreakerStats,
    CircuitState,
    StatsReport,
)
from portfolio_core.logging import AnyLogger, get_logger, log_warning

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _discard_outcome(task: asyncio.Future[object]) -> None:
    with suppress(asyncio.CancelledError, Exception):
        task.exception()


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        reset_timeout: Seconds to stay ``OPEN`` before allowing a trial call.
        timeout: Seconds an operation may run before it counts as failed.
        monitoring_period: Seconds of the monitoring window. Stored for
            callers that report on it; the breaker trips on consecutive
            failures only.
        cancel_on_timeout: Cancel the operation when it times out. When
            ``False`` the operation keeps running and its outcome is dropped.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    timeout: float = 10.0
    monitoring_period: float = 10.0
    cancel_on_timeout: bool = True

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.monitoring_period <= 0:
            raise ValueError("monitoring_period must be > 0")


class CircuitBreaker:
    """Stateful guard around one failing-prone async dependency.

    The breaker is not thread-safe. It is meant to be owned by a single event
    loop; concurrent ``execute`` calls on that loop interleave only while
    awaiting the protected operation.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a circuit breaker in the ``CLOSED`` state.

        Args:
            name: Breaker name used in errors, logs and snapshots.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            logger: Structured logger. Defaults to this module's structlog
                logger.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._logger = get_logger(__name__) if logger is None else logger
        self._events = BreakerEventBus(name, self._logger)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._next_attempt = _utcnow()
        self._stats = BreakerStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def on(self, event: BreakerEvent | str, callback: BreakerCallback) -> None:
        """Register ``callback`` for ``open``, ``half_open`` or ``close``.

        ``"halfOpen"`` is accepted as an alias of ``half_open``.

        Raises:
            ValueError: If ``event`` is not a known breaker event.
        """
        self._events.subscribe(event, callback)

    def off(self, event: BreakerEvent | str, callback: BreakerCallback) -> bool:
        """Unregister ``callback``; return ``False`` if it was not registered."""
        return self._events.unsubscribe(event, callback)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under circuit breaker protection.

        Args:
            operation: Zero-argument callable returning an awaitable.

        Returns:
            The result of ``operation`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            OperationTimeoutError: When ``operation`` exceeds ``config.timeout``.
            Exception: The original exception raised by ``operation``.
        """
        self._stats.total_requests += 1
        is_trial = False

        if self._state == CircuitState.OPEN:
            now = _utcnow()
            if now < self._next_attempt:
                self._reject((self._next_attempt - now).total_seconds())
            is_trial = True
            self._transition(CircuitState.HALF_OPEN, BreakerEvent.HALF_OPEN)
        elif self._state == CircuitState.HALF_OPEN:
            self._reject(0.0)

        start = time.monotonic()
        try:
            result = await self._call_with_timeout(operation)
        except asyncio.CancelledError:
            self._stats.cancelled_requests += 1
            if is_trial and self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
            raise
        except Exception as exc:
            self._on_failure(
                exc, elapsed=max(time.monotonic() - start, 0.0), is_trial=is_trial
            )
            raise
        self._on_success(is_trial=is_trial)
        return result

    async def _call_with_timeout(self, operation: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=self.config.timeout)
        except asyncio.CancelledError:
            task.cancel()
            task.add_done_callback(_discard_outcome)
            raise
        if task in done:
            return task.result()

        self._stats.timeouts += 1
        if self.config.cancel_on_timeout:
            task.cancel()
        task.add_done_callback(_discard_outcome)
        raise OperationTimeoutError(self.name, self.config.timeout)

    def _reject(self, retry_after: float) -> NoReturn:
        self._stats.rejected_requests += 1
        raise CircuitOpenError(self.name, retry_after=max(retry_after, 0.0))

    def _on_success(self, *, is_trial: bool) -> None:
        self._stats.successful_requests += 1
        self._failure_count = 0
        if is_trial and self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED, BreakerEvent.CLOSE)

    def _on_failure(self, exc: Exception, *, elapsed: float, is_trial: bool) -> None:
        self._stats.failed_requests += 1
        self._failure_count += 1
        self._last_failure_at = _utcnow()
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=self.name,
            error=exc.__class__.__name__,
            failure_count=self._failure_count,
            elapsed=elapsed,
        )

        # Calls that started before a trip never reopen or refresh the window.
        if (is_trial and self._state == CircuitState.HALF_OPEN) or (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._stats.circuit_open_count += 1
            self._open()

    def _open(self) -> None:
        self._next_attempt = _utcnow() + timedelta(seconds=self.config.reset_timeout)
        self._transition(CircuitState.OPEN, BreakerEvent.OPEN)

    def _transition(self, state: CircuitState, event: BreakerEvent) -> None:
        self._state = state
        self._events.emit(event, self.get_state())

    def force_open(self) -> None:
        """Open the circuit now and restart the reset timeout window."""
        self._open()

    def force_close(self) -> None:
        """Close the circuit now and clear the consecutive failure count."""
        self._failure_count = 0
        self._transition(CircuitState.CLOSED, BreakerEvent.CLOSE)

    def reset(self) -> None:
        """Return to the initial ``CLOSED`` state with zeroed stats.

        No events are emitted.
        """
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._next_attempt = _utcnow()
        self._stats = BreakerStats()

    def get_state(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            next_attempt=self._next_attempt,
            stats=self._stats.copy(),
        )

    def get_stats(self) -> StatsReport:
        return StatsReport.from_stats(self._stats, self._state)
