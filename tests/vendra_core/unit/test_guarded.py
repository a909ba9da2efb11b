from __future__ import annotations

import asyncio

import pytest

from tests.vendra_core.support.fakes import (
    FakeClock,
    FakeLogger,
    RecordingSleep,
    ScriptedOperation,
)
from vendra_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    LoggingBreakerListener,
)
from vendra_core.errors import BackendAuthError, BackendNetworkError
from vendra_core.guarded import (
    GuardedCaller,
    build_backend_breaker,
    guarded_policy,
    with_guarded_call,
)
from vendra_core.retry import RetryCancelledError, RetryPolicy
from vendra_core.settings import ResilienceSettings

pytestmark = pytest.mark.asyncio


class _BackendClientError(Exception):
    def __init__(self, code: object) -> None:
        super().__init__(f"backend error {code}")
        self.code = code


def _breaker(failure_threshold: int = 3, recovery_timeout: float = 15.0):
    return CircuitBreaker(
        "backend",
        config=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        ),
    )


async def test_retries_transient_errors_and_logs_context(
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    breaker = _breaker()
    operation = ScriptedOperation(
        [BackendNetworkError("reset"), TimeoutError("slow"), ["listing-1"]]
    )

    result = await with_guarded_call(
        operation,
        "Fetch properties",
        breaker=breaker,
        policy=RetryPolicy(jitter=False),
        logger=fake_logger,
        sleep=recording_sleep,
    )

    assert result == ["listing-1"]
    assert operation.calls == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert fake_logger.calls == [
        (
            "warning",
            "backend.call.retry",
            {
                "context": "Fetch properties",
                "attempt": 1,
                "error_type": "BackendNetworkError",
                "error": "reset",
            },
        ),
        (
            "warning",
            "backend.call.retry",
            {
                "context": "Fetch properties",
                "attempt": 2,
                "error_type": "TimeoutError",
                "error": "slow",
            },
        ),
    ]
    snapshot = await breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_breaker_counts_one_failure_per_logical_call(
    fake_clock: FakeClock,
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    breaker = _breaker(failure_threshold=2, recovery_timeout=15.0)
    operation = ScriptedOperation([ConnectionError("down")])

    async def _call() -> object:
        return await with_guarded_call(
            operation,
            "Create property",
            breaker=breaker,
            logger=fake_logger,
            sleep=recording_sleep,
        )

    with pytest.raises(ConnectionError):
        await _call()
    snapshot = await breaker.snapshot()
    assert operation.calls == 3
    assert (snapshot.state, snapshot.failure_count) == (CircuitState.CLOSED, 1)

    with pytest.raises(ConnectionError):
        await _call()
    assert operation.calls == 6
    assert (await breaker.snapshot()).state == CircuitState.OPEN

    fake_clock.advance(1.0)
    with pytest.raises(CircuitOpenError):
        await _call()
    assert operation.calls == 6


@pytest.mark.parametrize(
    "error",
    [
        _BackendClientError("42501"),
        _BackendClientError("PGRST301"),
        _BackendClientError(401),
        _BackendClientError("403"),
        BackendAuthError("session expired"),
    ],
)
async def test_permanent_errors_are_not_retried(
    error: Exception,
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    breaker = _breaker()
    operation = ScriptedOperation([error, "unused"])

    with pytest.raises(type(error)) as excinfo:
        await with_guarded_call(
            operation,
            breaker=breaker,
            logger=fake_logger,
            sleep=recording_sleep,
        )

    assert excinfo.value is error
    assert operation.calls == 1
    assert fake_logger.calls == []
    assert (await breaker.snapshot()).failure_count == 1


async def test_custom_non_retryable_codes(
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    operation = ScriptedOperation([_BackendClientError("23505"), "unused"])

    with pytest.raises(_BackendClientError):
        await with_guarded_call(
            operation,
            breaker=_breaker(),
            non_retryable_codes=["23505"],
            logger=fake_logger,
            sleep=recording_sleep,
        )

    assert operation.calls == 1


async def test_base_policy_hooks_still_apply(
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    seen: list[int] = []
    base = RetryPolicy(
        max_attempts=5,
        should_retry=lambda exc: not isinstance(exc, KeyError),
        on_retry=lambda attempt, exc: seen.append(attempt),
    )
    operation = ScriptedOperation([ConnectionError("down"), KeyError("missing")])

    with pytest.raises(KeyError):
        await with_guarded_call(
            operation,
            breaker=_breaker(),
            policy=base,
            logger=fake_logger,
            sleep=recording_sleep,
        )

    assert operation.calls == 2
    assert seen == [1]
    assert fake_logger.events("warning") == ["backend.call.retry"]


async def test_guarded_policy_leaves_base_policy_untouched(
    fake_logger: FakeLogger,
) -> None:
    base = RetryPolicy(max_attempts=4)

    specialised = guarded_policy(base, context="Load profile", logger=fake_logger)

    assert specialised.max_attempts == 4
    assert specialised.should_retry is not base.should_retry
    assert base.on_retry is None
    assert specialised.should_retry(ConnectionError("down")) is True
    assert specialised.should_retry(_BackendClientError("PGRST301")) is False


async def test_build_backend_breaker_uses_settings_and_logging_listener() -> None:
    breaker = build_backend_breaker(
        ResilienceSettings(
            breaker_failure_threshold=4,
            breaker_recovery_timeout_seconds=20.0,
        ),
        name="listings",
    )

    assert breaker.name == "listings"
    assert breaker.config.failure_threshold == 4
    assert breaker.config.recovery_timeout == 20.0
    assert any(isinstance(item, LoggingBreakerListener) for item in breaker._listeners)


async def test_guarded_caller_from_settings_defaults() -> None:
    caller = GuardedCaller.from_settings(ResilienceSettings(), listeners=())

    assert caller.breaker.name == "backend"
    assert caller.breaker.config.failure_threshold == 3
    assert caller.breaker.config.recovery_timeout == 15.0
    assert caller.policy.max_attempts == 3
    assert caller.non_retryable_codes == ("401", "403", "42501", "PGRST301")

    async def _fetch() -> dict[str, str]:
        return {"id": "p-1"}

    assert await caller.call(_fetch, "Fetch property") == {"id": "p-1"}


async def test_guarded_caller_shares_breaker_across_calls(
    fake_clock: FakeClock,
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    caller = GuardedCaller(
        _breaker(failure_threshold=1, recovery_timeout=5.0),
        policy=RetryPolicy(max_attempts=2, jitter=False),
        logger=fake_logger,
        sleep=recording_sleep,
    )
    failing = ScriptedOperation([ConnectionError("down")])
    healthy = ScriptedOperation(["ok"])

    with pytest.raises(ConnectionError):
        await caller.call(failing, "Fetch favorites")
    with pytest.raises(CircuitOpenError):
        await caller.call(healthy, "Fetch messages")
    assert healthy.calls == 0

    fake_clock.advance(6.0)
    assert await caller.call(healthy, "Fetch messages") == "ok"
    assert (await caller.breaker.snapshot()).state == CircuitState.CLOSED


async def test_guarded_caller_cancel_event_stops_retries(
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
) -> None:
    caller = GuardedCaller(_breaker(), logger=fake_logger, sleep=recording_sleep)
    operation = ScriptedOperation([ConnectionError("down")])
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(RetryCancelledError):
        await caller.call(operation, "Send message", cancel_event=cancel_event)

    assert operation.calls == 1
