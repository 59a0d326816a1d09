"""Retry with exponential backoff, driven by error classification."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional, TypeVar

from .errors import AgentError, classify_error, get_backoff_delay, log_error, should_retry

T = TypeVar("T")

RetryCallback = Callable[[AgentError, int, float], None]


@dataclass
class RetryOptions:
    """Options for with_retry. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    on_retry: Optional[RetryCallback] = None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await operation(), retrying retryable failures with backoff.

    Each failure is classified; non-retryable errors and the failure of the
    last attempt are raised as AgentError. on_retry receives
    (error, attempt_number, delay) before each sleep, attempt_number being
    1-based. Cancellation is never retried.
    """
    opts = options or RetryOptions()
    attempts = max(1, opts.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)
            log_error(error)
            if not should_retry(error, attempt, attempts):
                if error is exc:
                    raise
                raise error from exc
            delay = get_backoff_delay(attempt, opts.base_delay, opts.max_delay)
            if opts.on_retry is not None:
                opts.on_retry(error, attempt + 1, delay)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryCallback", "RetryOptions", "with_retry"]
