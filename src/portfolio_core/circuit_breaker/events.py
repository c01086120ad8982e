"""Lifecycle event hooks for circuit breakers."""

from collections.abc import Callable
from enum import StrEnum

from portfolio_core.circuit_breaker.state import BreakerSnapshot
from portfolio_core.logging import AnyLogger, log_exception, log_info

BreakerCallback = Callable[[BreakerSnapshot], object]


class BreakerEvent(StrEnum):
    """Named lifecycle channels a breaker publishes to."""

    OPEN = "open"
    HALF_OPEN = "half_open"
    CLOSE = "close"

    @classmethod
    def _missing_(cls, value: object) -> "BreakerEvent | None":
        # camelCase channel name used by the portfolio frontend
        if value == "halfOpen":
            return cls.HALF_OPEN
        return None


class BreakerEventBus:
    """Synchronous publish/subscribe over the three breaker channels.

    Callbacks receive the snapshot taken right after the transition. They run
    in registration order and a failing callback is logged and skipped.
    """

    def __init__(self, name: str, logger: AnyLogger) -> None:
        self._name = name
        self._logger = logger
        self._callbacks: dict[BreakerEvent, list[BreakerCallback]] = {
            event: [] for event in BreakerEvent
        }

    def subscribe(self, event: BreakerEvent | str, callback: BreakerCallback) -> None:
        self._callbacks[BreakerEvent(event)].append(callback)

    def unsubscribe(
        self, event: BreakerEvent | str, callback: BreakerCallback
    ) -> bool:
        """Remove the first registration of ``callback``; return whether found."""
        callbacks = self._callbacks[BreakerEvent(event)]
        try:
            callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def emit(self, event: BreakerEvent, snapshot: BreakerSnapshot) -> None:
        for callback in tuple(self._callbacks[event]):
            try:
                callback(snapshot)
            except Exception:
                callback_name = getattr(
                    callback, "__name__", callback.__class__.__name__
                )
                log_exception(
                    self._logger,
                    "circuit_breaker.listener_failed",
                    breaker=self._name,
                    breaker_event=event.value,
                    callback=callback_name,
                )
        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=self._name,
            breaker_event=event.value,
            state=snapshot.state.value,
        )
