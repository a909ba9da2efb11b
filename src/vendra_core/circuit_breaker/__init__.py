"""Async circuit breaker guarding one downstream dependency.

Key behavior notes:
  - ``CLOSED`` counts failures; reaching ``failure_threshold`` opens the circuit.
  - ``OPEN`` rejects calls with ``CircuitOpenError`` until more than
    ``recovery_timeout`` seconds have passed since the last failure.
  - The first call after that window runs as a ``HALF_OPEN`` trial call.
    Success closes the circuit; a counted failure reopens it and restarts the
    window.
  - Excluded exceptions never change the failure count. One raised by a trial
    call, like any other abandoned trial call, returns the circuit to ``OPEN``
    so a later call may try again.
"""

from vendra_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from vendra_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from vendra_core.circuit_breaker.metrics import BreakerListener, LoggingBreakerListener
from vendra_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from vendra_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "LoggingBreakerListener",
]
