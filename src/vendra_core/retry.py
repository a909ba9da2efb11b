from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from vendra_core.errors import BackendError, ErrorKind, TransientError, error_code_of

T = TypeVar("T")

_NON_RETRYABLE_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.PERMISSION})
_NON_RETRYABLE_HTTP_CODES = ("401", "403")


class RetryCancelledError(Exception):
    """Raised when a retry sequence is cancelled while waiting to retry."""


def default_should_retry(error: Exception) -> bool:
    """Retry everything except authentication and authorization failures."""
    if isinstance(error, TransientError):
        return True
    if isinstance(error, BackendError):
        return error.kind not in _NON_RETRYABLE_KINDS
    code = error_code_of(error)
    if code is None:
        return True
    return not any(marker in code for marker in _NON_RETRYABLE_HTTP_CODES)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry attempt count, backoff shape and hooks for one logical call.

    Delays are in seconds. The wait after failed attempt ``n`` is
    ``min(base_delay * backoff_factor ** (n - 1), max_delay)`` plus, when
    ``jitter`` is enabled, up to ``jitter_ratio`` of that delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1
    should_retry: Callable[[Exception], bool] = default_should_retry
    on_retry: Callable[[int, Exception], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor <= 1:
            raise ValueError("backoff_factor must be > 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")


class wait_capped_exponential_jitter(wait_base):
    """Wait ``base * factor ** (attempt - 1)`` capped at ``maximum``.

    A non-zero ``jitter_ratio`` adds ``uniform(0, jitter_ratio * delay)``.
    """

    def __init__(
        self,
        *,
        base: float,
        maximum: float,
        factor: float,
        jitter_ratio: float = 0.0,
    ) -> None:
        self.base = base
        self.maximum = maximum
        self.factor = factor
        self.jitter_ratio = jitter_ratio

    def __call__(self, retry_state: RetryCallState) -> float:
        try:
            delay = self.base * self.factor ** (retry_state.attempt_number - 1)
        except OverflowError:
            delay = self.maximum
        delay = min(delay, self.maximum)
        if self.jitter_ratio:
            delay += random.uniform(0, self.jitter_ratio * delay)
        return delay


def build_cancellable_sleep(
    cancel_event: asyncio.Event,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that raises ``RetryCancelledError`` on cancellation.

    Without a custom ``sleep`` the wait races ``cancel_event``; with one, the
    event is checked before and after the delegated sleep.
    """

    async def _cancellable_sleep(delay: float) -> None:
        if cancel_event.is_set():
            raise RetryCancelledError("retry cancelled before backoff wait")

        if sleep is not None:
            await sleep(delay)
        else:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=max(delay, 0.0))
            except TimeoutError:
                return

        if cancel_event.is_set():
            raise RetryCancelledError("retry cancelled during backoff wait")

    return _cancellable_sleep


def _retryable(policy: RetryPolicy) -> Callable[[BaseException], bool]:
    def _predicate(error: BaseException) -> bool:
        return isinstance(error, Exception) and policy.should_retry(error)

    return _predicate


def build_retrying(
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` implementing ``policy``.

    ``policy.on_retry`` runs after the delay is computed and before the wait.
    ``before_sleep`` runs right after it. Final errors are re-raised unwrapped.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = None if outcome is None else outcome.exception()
        if policy.on_retry is not None and isinstance(error, Exception):
            policy.on_retry(retry_state.attempt_number, error)
        if before_sleep is not None:
            before_sleep(retry_state)

    options: dict[str, Any] = {
        "retry": retry_if_exception(_retryable(policy)),
        "wait": wait_capped_exponential_jitter(
            base=policy.base_delay,
            maximum=policy.max_delay,
            factor=policy.backoff_factor,
            jitter_ratio=policy.jitter_ratio if policy.jitter else 0.0,
        ),
        "stop": stop_after_attempt(policy.max_attempts),
        "before_sleep": _before_sleep,
        "reraise": True,
    }
    if sleep is not None:
        options["sleep"] = sleep
    return AsyncRetrying(**options)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` gives up.

    Args:
        operation: Zero-argument async callable. Attempts never overlap.
        policy: Retry configuration. Defaults to ``RetryPolicy()``.
        sleep: Replacement for ``asyncio.sleep`` between attempts.
        cancel_event: When set during a backoff wait, stops the sequence.

    Returns:
        The first successful result.

    Raises:
        RetryCancelledError: ``cancel_event`` was set while waiting to retry;
            chained to the last operation error.
        Exception: The error of the last attempt, unchanged, once attempts are
            exhausted or ``policy.should_retry`` declines it.
    """
    policy = RetryPolicy() if policy is None else policy
    last_error: BaseException | None = None

    def _remember_error(retry_state: RetryCallState) -> None:
        nonlocal last_error
        if retry_state.outcome is not None:
            last_error = retry_state.outcome.exception()

    if cancel_event is not None:
        sleep = build_cancellable_sleep(cancel_event, sleep)

    retrying = build_retrying(policy, sleep=sleep, before_sleep=_remember_error)
    try:
        return await retrying(operation)
    except RetryCancelledError as cancelled:
        raise cancelled from last_error
