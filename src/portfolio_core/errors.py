"""Shared error types for portfolio_core."""


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class UpstreamUnavailableError(TransientError):
    """An upstream API was unreachable or answered with a server error."""

    def __init__(self, service: str, detail: str, status_code: int | None = None):
        self.service = service
        self.detail = detail
        self.status_code = status_code
        suffix = "" if status_code is None else f" status={status_code}"
        super().__init__(f"{service} unavailable:{suffix} {detail}")
