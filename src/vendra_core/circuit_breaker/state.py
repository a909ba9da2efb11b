"""Circuit breaker state primitives."""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of one breaker's health.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Failures counted since the last success.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker last entered ``OPEN``, if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None

    @classmethod
    def healthy(cls, name: str) -> "BreakerSnapshot":
        """Return the initial ``CLOSED`` snapshot for ``name``."""
        return cls(
            name=name,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
            opened_at=None,
        )

    @property
    def is_healthy(self) -> bool:
        return self == BreakerSnapshot.healthy(self.name)

    def with_state(self, state: CircuitState) -> "BreakerSnapshot":
        return replace(self, state=state)
