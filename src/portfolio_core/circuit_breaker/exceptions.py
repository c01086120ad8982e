"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A call that ran but did not settle within the configured timeout.

Any other exception raised by a protected operation is propagated unchanged.
"""


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open trial call may be attempted.
        circuit_breaker_open: Always ``True``; marks fail-fast rejections.
    """

    circuit_breaker_open = True

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after: Seconds until the next trial window opens.
        """
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")


class OperationTimeoutError(CircuitBreakerError, TimeoutError):
    """Raised when a protected operation exceeds the breaker timeout.

    Attributes:
        breaker_name: Name of the breaker that timed the call out.
        timeout: Configured timeout in seconds.
    """

    def __init__(self, breaker_name: str, timeout: float) -> None:
        self.breaker_name = breaker_name
        self.timeout = timeout
        super().__init__(f"operation timed out after {timeout:g}s ({breaker_name})")
