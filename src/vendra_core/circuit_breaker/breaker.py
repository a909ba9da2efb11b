"""Core circuit breaker implementation."""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ParamSpec, TypeVar

from vendra_core.circuit_breaker.exceptions import CircuitOpenError
from vendra_core.circuit_breaker.metrics import BreakerListener
from vendra_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from vendra_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

T = TypeVar("T")
P = ParamSpec("P")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        recovery_timeout: Seconds since the last failure that must pass while
            ``OPEN`` before a trial call is let through.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that propagate without affecting state.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    expected_exceptions: tuple[type[Exception], ...] = (Exception,)
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")


class CircuitBreaker:
    """Gate calls to one downstream dependency.

    One instance guards one logical dependency and is shared by every caller
    of that dependency. At most one half-open trial call is in flight per
    instance; concurrent calls during the trial call are rejected.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used for storage keys and log events.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._trial_in_flight = False

    async def snapshot(self) -> BreakerSnapshot:
        """Return the current state of this breaker."""
        return await self._storage.get_state(self.name)

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    def _retry_after(self, snapshot: BreakerSnapshot, now: datetime) -> float | None:
        """Return seconds left in the open window, or ``None`` once it elapsed."""
        if snapshot.last_failure_at is None:
            return None
        elapsed = (now - snapshot.last_failure_at).total_seconds()
        if elapsed > self.config.recovery_timeout:
            return None
        return max(self.config.recovery_timeout - elapsed, 0.0)

    async def _abandon_trial(self) -> None:
        """Return an abandoned trial call's circuit to ``OPEN``."""
        snapshot = await self._storage.reopen(self.name)
        if snapshot.state == CircuitState.OPEN:
            await self._emit_state_change(CircuitState.HALF_OPEN, CircuitState.OPEN)

    async def _reject(self, retry_after: float) -> CircuitOpenError:
        await self._emit_call_rejected()
        return CircuitOpenError(self.name, retry_after=retry_after)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a zero-argument async operation under breaker protection."""
        return await self.call(operation)

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Async callable guarded by this breaker.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func``, unchanged.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
                ``func`` is not invoked.
            Exception: The original exception from ``func`` after breaker state
                has been updated.
        """
        snapshot = await self._storage.get_state(self.name)
        is_trial = False

        if snapshot.state != CircuitState.CLOSED:
            if snapshot.state == CircuitState.OPEN:
                retry_after = self._retry_after(snapshot, _utcnow())
                if retry_after is not None:
                    raise await self._reject(retry_after)

            if self._trial_in_flight:
                raise await self._reject(0.0)
            self._trial_in_flight = True
            is_trial = True

        try:
            if is_trial and snapshot.state == CircuitState.OPEN:
                await self._storage.mark_half_open(self.name)
                await self._emit_state_change(CircuitState.OPEN, CircuitState.HALF_OPEN)
            return await self._invoke(is_trial, func, *args, **kwargs)
        finally:
            if is_trial:
                self._trial_in_flight = False

    async def _invoke(
        self,
        is_trial: bool,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            if is_trial:
                await self._abandon_trial()
            raise
        except self.config.expected_exceptions as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit_call_failed(exc, elapsed)

            failure = await self._storage.record_failure(self.name)
            if is_trial and failure.state == CircuitState.HALF_OPEN:
                await self._storage.force_open(self.name)
                await self._emit_state_change(CircuitState.HALF_OPEN, CircuitState.OPEN)
            elif (
                failure.state == CircuitState.CLOSED
                and failure.failure_count >= self.config.failure_threshold
            ):
                await self._storage.force_open(self.name)
                await self._emit_state_change(CircuitState.CLOSED, CircuitState.OPEN)
            raise
        except BaseException:
            if is_trial:
                await self._abandon_trial()
            raise

        elapsed = max(time.monotonic() - start, 0.0)
        if is_trial:
            await self._storage.reset(self.name)
            await self._emit_state_change(CircuitState.HALF_OPEN, CircuitState.CLOSED)
        else:
            await self._storage.record_success(self.name)
        await self._emit_call_succeeded(elapsed)
        return result
