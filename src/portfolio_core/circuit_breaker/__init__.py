"""Per-process async circuit breaker for outbound dependency calls.

Key behavior notes:
  - The breaker trips after ``failure_threshold`` consecutive failures. Any
    success resets the streak. Timeouts count as failures.
  - While ``OPEN`` calls are rejected with ``CircuitOpenError`` without running
    the operation. After ``reset_timeout`` the next call becomes the single
    ``HALF_OPEN`` trial; concurrent calls during the trial are rejected.
  - State lives in the breaker instance only. Nothing is shared between
    breakers or processes.
"""

from portfolio_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from portfolio_core.circuit_breaker.events import (
    BreakerCallback,
    BreakerEvent,
    BreakerEventBus,
)
from portfolio_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    OperationTimeoutError,
)
from portfolio_core.circuit_breaker.state import (
    BreakerSnapshot,
    BreakerStats,
    CircuitState,
    StatsReport,
)

__all__ = [
    "BreakerCallback",
    "BreakerEvent",
    "BreakerEventBus",
    "BreakerSnapshot",
    "BreakerStats",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "OperationTimeoutError",
    "StatsReport",
]
