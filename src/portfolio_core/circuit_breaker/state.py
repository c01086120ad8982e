"""Circuit breaker state primitives."""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class BreakerStats:
    """Cumulative call counters for one breaker.

    Attributes:
        total_requests: Calls passed to ``execute``. Once calls settle this is
            the sum of the successful, failed, rejected and cancelled counts.
        successful_requests: Calls whose operation completed successfully.
        failed_requests: Calls whose operation raised or timed out.
        timeouts: Failed calls that timed out.
        circuit_open_count: Times the failure threshold tripped the circuit.
        rejected_requests: Calls rejected without running the operation.
        cancelled_requests: Calls cancelled before their operation settled.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeouts: int = 0
    circuit_open_count: int = 0
    rejected_requests: int = 0
    cancelled_requests: int = 0

    def copy(self) -> "BreakerStats":
        return replace(self)


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Consecutive failures since the last success.
        last_failure_at: Timestamp of the last failure, if any.
        next_attempt: Earliest time an ``OPEN`` breaker admits a trial call.
        stats: Copy of the cumulative counters.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    next_attempt: datetime
    stats: BreakerStats

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED


@dataclass(frozen=True)
class StatsReport:
    """Cumulative counters plus derived success and failure percentages."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    timeouts: int
    circuit_open_count: int
    rejected_requests: int
    cancelled_requests: int
    success_rate: float
    failure_rate: float
    current_state: CircuitState

    @classmethod
    def from_stats(cls, stats: BreakerStats, state: CircuitState) -> "StatsReport":
        """Build a report, using 0% for both rates when nothing was requested."""
        if stats.total_requests > 0:
            success_rate = stats.successful_requests / stats.total_requests * 100
            failure_rate = 100 - success_rate
        else:
            success_rate = 0.0
            failure_rate = 0.0
        return cls(
            total_requests=stats.total_requests,
            successful_requests=stats.successful_requests,
            failed_requests=stats.failed_requests,
            timeouts=stats.timeouts,
            circuit_open_count=stats.circuit_open_count,
            rejected_requests=stats.rejected_requests,
            cancelled_requests=stats.cancelled_requests,
            success_rate=round(success_rate, 2),
            failure_rate=round(failure_rate, 2),
            current_state=state,
        )
