"""Observability hooks for circuit breakers."""

from typing import Protocol

import structlog

from vendra_core.circuit_breaker.state import CircuitState
from vendra_core.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        A trial call emits ``OPEN → HALF_OPEN`` before it runs and
        ``HALF_OPEN → CLOSED`` or ``HALF_OPEN → OPEN`` after it.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener(BreakerListener):
    """Write breaker transitions, rejections and failures to a structured log."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger: StructuredLogger = (
            structlog.get_logger(__name__) if logger is None else logger
        )

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        log = log_warning if new == CircuitState.OPEN else log_info
        log(
            self._logger,
            "circuit_breaker.state_change",
            breaker=name,
            old_state=str(old),
            new_state=str(new),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_breaker.rejected", breaker=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        _ = (name, elapsed)

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            error_type=type(exc).__name__,
            error=str(exc),
            elapsed_seconds=round(elapsed, 6),
        )
