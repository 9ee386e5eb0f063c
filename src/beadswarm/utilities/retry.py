"""Retry helpers for external calls, built on tenacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Check if an exception is worth another attempt."""
    from beadswarm.errors import BeadswarmError

    if isinstance(exc, BeadswarmError):
        return exc.retryable
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def with_retry(
    *,
    max_attempts: int = 3,
    backoff: float = 1.0,
    on_retry: Callable[[RetryCallState], None] | None = None,
) -> Any:
    """Create a tenacity retry decorator with linear back-off.

    The n-th retry waits ``n * backoff`` seconds.

    Args:
        max_attempts: Total attempts including the first one.
        backoff: Seconds added to the wait on every retry.
        on_retry: Optional callback invoked before each sleep.
    """
    kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(max(1, max_attempts)),
        "wait": wait_incrementing(start=backoff, increment=backoff),
        "retry": retry_if_exception(is_retryable),
        "reraise": True,
    }
    if on_retry:
        kwargs["before_sleep"] = on_retry

    return retry(**kwargs)


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    backoff: float = 1.0,
    on_retry: Callable[[RetryCallState], None] | None = None,
    **kwargs: Any,
) -> T:
    """Call an async function, retrying retryable failures with linear back-off."""

    @with_retry(max_attempts=max_attempts, backoff=backoff, on_retry=on_retry)
    async def _wrapped() -> T:
        return await fn(*args, **kwargs)

    return await _wrapped()
