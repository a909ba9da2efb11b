"""Breaker-gated, retried calls to the marketplace backend.

The breaker wraps the whole retry sequence, so one logical call counts as one
breaker success or failure however many attempts it took.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import replace
from typing import TypeVar

import structlog

from vendra_core.circuit_breaker import (
    BreakerListener,
    CircuitBreaker,
    LoggingBreakerListener,
)
from vendra_core.errors import BackendError, ErrorKind, error_code_of
from vendra_core.logging import StructuredLogger, log_warning
from vendra_core.retry import RetryPolicy, with_retry
from vendra_core.settings import DEFAULT_NON_RETRYABLE_CODES, ResilienceSettings

T = TypeVar("T")

DEFAULT_CONTEXT = "backend operation"
_NON_RETRYABLE_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.PERMISSION})

_logger: StructuredLogger = structlog.get_logger(__name__)


def build_backend_breaker(
    settings: ResilienceSettings | None = None,
    *,
    name: str = "backend",
    listeners: Sequence[BreakerListener] | None = None,
) -> CircuitBreaker:
    """Build the breaker guarding the backend dependency.

    Defaults to three failures and a fifteen second recovery window. Without
    explicit ``listeners`` the breaker logs its transitions.
    """
    settings = ResilienceSettings() if settings is None else settings
    return CircuitBreaker(
        name,
        config=settings.breaker_config(),
        listeners=(LoggingBreakerListener(),) if listeners is None else listeners,
    )


def guarded_policy(
    policy: RetryPolicy,
    *,
    context: str,
    non_retryable_codes: Iterable[str] = DEFAULT_NON_RETRYABLE_CODES,
    logger: StructuredLogger | None = None,
) -> RetryPolicy:
    """Specialise ``policy`` for backend calls labelled ``context``.

    Auth/permission failures and errors whose code is in
    ``non_retryable_codes`` are never retried. Every retry is logged as
    ``backend.call.retry`` before ``policy.on_retry`` runs.
    """
    denied = frozenset(non_retryable_codes)
    retry_logger = _logger if logger is None else logger

    def _should_retry(error: Exception) -> bool:
        if isinstance(error, BackendError) and error.kind in _NON_RETRYABLE_KINDS:
            return False
        if error_code_of(error) in denied:
            return False
        return policy.should_retry(error)

    def _on_retry(attempt: int, error: Exception) -> None:
        log_warning(
            retry_logger,
            "backend.call.retry",
            context=context,
            attempt=attempt,
            error_type=type(error).__name__,
            error=str(error),
        )
        if policy.on_retry is not None:
            policy.on_retry(attempt, error)

    return replace(policy, should_retry=_should_retry, on_retry=_on_retry)


async def with_guarded_call(
    operation: Callable[[], Awaitable[T]],
    context: str = DEFAULT_CONTEXT,
    *,
    breaker: CircuitBreaker,
    policy: RetryPolicy | None = None,
    non_retryable_codes: Iterable[str] = DEFAULT_NON_RETRYABLE_CODES,
    logger: StructuredLogger | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Retry ``operation`` under ``breaker`` protection.

    Raises:
        CircuitOpenError: The breaker rejected the call; nothing was attempted.
        Exception: The last operation error, unchanged.
    """
    effective = guarded_policy(
        RetryPolicy() if policy is None else policy,
        context=context,
        non_retryable_codes=non_retryable_codes,
        logger=logger,
    )

    async def _retried() -> T:
        return await with_retry(
            operation, effective, sleep=sleep, cancel_event=cancel_event
        )

    return await breaker.execute(_retried)


class GuardedCaller:
    """Handle owning the breaker and retry policy for one backend dependency.

    Create one per dependency at application startup and pass it to the code
    issuing backend calls.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        policy: RetryPolicy | None = None,
        non_retryable_codes: Iterable[str] = DEFAULT_NON_RETRYABLE_CODES,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.breaker = breaker
        self.policy = RetryPolicy() if policy is None else policy
        self.non_retryable_codes = tuple(non_retryable_codes)
        self._logger = logger
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings | None = None,
        *,
        name: str = "backend",
        listeners: Sequence[BreakerListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> GuardedCaller:
        settings = ResilienceSettings() if settings is None else settings
        return cls(
            build_backend_breaker(settings, name=name, listeners=listeners),
            policy=settings.retry_policy(),
            non_retryable_codes=settings.non_retryable_codes,
            logger=logger,
        )

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = DEFAULT_CONTEXT,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        return await with_guarded_call(
            operation,
            context,
            breaker=self.breaker,
            policy=self.policy,
            non_retryable_codes=self.non_retryable_codes,
            logger=self._logger,
            sleep=self._sleep,
            cancel_event=cancel_event,
        )
