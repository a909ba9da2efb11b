"""State storage for circuit breakers.

Storage is decoupled from breaker logic so state can live outside the process
(for example in Redis) when several workers guard the same dependency. Each
operation is atomic per breaker name and returns the updated snapshot.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import UTC, datetime

from vendra_core.circuit_breaker.state import BreakerSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call: ``CLOSED`` with a zero failure count."""

    @abstractmethod
    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Increment the failure count and stamp ``last_failure_at``."""

    @abstractmethod
    async def mark_half_open(self, name: str) -> BreakerSnapshot:
        """Move breaker ``name`` into ``HALF_OPEN`` for a trial call."""

    @abstractmethod
    async def force_open(self, name: str) -> BreakerSnapshot:
        """Move breaker ``name`` into ``OPEN`` and stamp ``opened_at``."""

    @abstractmethod
    async def reopen(self, name: str) -> BreakerSnapshot:
        """Return a ``HALF_OPEN`` breaker to ``OPEN`` without touching timestamps.

        Any other state is returned unchanged.
        """

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """Process-local storage serialising updates with one asyncio lock per name."""

    def __init__(self) -> None:
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _current(self, name: str) -> BreakerSnapshot:
        snapshot = self._snapshots.get(name)
        if snapshot is None:
            snapshot = BreakerSnapshot.healthy(name)
            self._snapshots[name] = snapshot
        return snapshot

    def _store(self, snapshot: BreakerSnapshot) -> BreakerSnapshot:
        self._snapshots[snapshot.name] = snapshot
        return snapshot

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a healthy one if missing."""
        async with self._locks[name]:
            return self._current(name)

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        Already-healthy snapshots are returned as-is to keep the hot path free
        of writes.
        """
        async with self._locks[name]:
            snapshot = self._current(name)
            if snapshot.is_healthy:
                return snapshot
            return self._store(BreakerSnapshot.healthy(name))

    async def record_failure(self, name: str) -> BreakerSnapshot:
        async with self._locks[name]:
            snapshot = self._current(name)
            return self._store(
                replace(
                    snapshot,
                    failure_count=snapshot.failure_count + 1,
                    last_failure_at=_utcnow(),
                )
            )

    async def mark_half_open(self, name: str) -> BreakerSnapshot:
        async with self._locks[name]:
            return self._store(self._current(name).with_state(CircuitState.HALF_OPEN))

    async def force_open(self, name: str) -> BreakerSnapshot:
        async with self._locks[name]:
            snapshot = self._current(name)
            return self._store(
                replace(snapshot, state=CircuitState.OPEN, opened_at=_utcnow())
            )

    async def reopen(self, name: str) -> BreakerSnapshot:
        async with self._locks[name]:
            snapshot = self._current(name)
            if snapshot.state != CircuitState.HALF_OPEN:
                return snapshot
            return self._store(snapshot.with_state(CircuitState.OPEN))

    async def reset(self, name: str) -> BreakerSnapshot:
        async with self._locks[name]:
            return self._store(BreakerSnapshot.healthy(name))
