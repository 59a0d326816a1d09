"""Token bucket rate limiter for outbound API calls."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket: holds up to max_tokens, refilled lazily at
    tokens_per_interval per interval seconds.

    State is guarded by a lock so one instance can be shared by every caller
    that targets the same downstream API.
    """

    def __init__(
        self,
        tokens_per_interval: float,
        interval: float,
        max_tokens: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if tokens_per_interval <= 0:
            raise ValueError("tokens_per_interval must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.tokens_per_interval = tokens_per_interval
        self.interval = interval
        self.max_tokens = max_tokens or tokens_per_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(self.max_tokens)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        to_add = (elapsed / self.interval) * self.tokens_per_interval
        if to_add > 0:
            self._tokens = min(self.max_tokens, self._tokens + to_add)
            self._last_refill = now

    def try_remove_tokens(self, count: float = 1) -> bool:
        """Take count tokens if available. Leaves the bucket unchanged on failure."""
        with self._lock:
            self._refill()
            if self._tokens >= count:
                self._tokens -= count
                return True
            return False

    def time_until_next_token(self) -> float:
        """Seconds until the current refill interval elapses."""
        with self._lock:
            elapsed = self._clock() - self._last_refill
            return max(0.0, self.interval - elapsed)

    async def remove_tokens(self, count: float = 1) -> None:
        """Wait (without an upper bound) until count tokens can be taken."""
        if count > self.max_tokens:
            raise ValueError(f"cannot take {count} tokens from a bucket of {self.max_tokens}")
        while not self.try_remove_tokens(count):
            wait = self.time_until_next_token()
            logger.debug("Rate limited; waiting %.3fs for %s token(s)", wait, count)
            await self._sleep(wait)

    def get_available_tokens(self) -> int:
        with self._lock:
            self._refill()
            return math.floor(self._tokens)

    def reset(self) -> None:
        """Restore full capacity."""
        with self._lock:
            self._tokens = float(self.max_tokens)
            self._last_refill = self._clock()


# Conservative per-target quotas: (tokens_per_interval, interval seconds).
DEFAULT_LIMITS: dict[str, tuple[int, float]] = {
    "anthropic": (40, 60.0),
    "openai": (40, 60.0),
    "ollama": (120, 60.0),
    "tracing": (100, 60.0),
}

_limiters: dict[str, RateLimiter] = {}
_limiters_lock = threading.Lock()


def get_rate_limiter(target: str) -> RateLimiter:
    """Return the shared limiter for a downstream API, creating it on first use."""
    key = target.strip().lower()
    with _limiters_lock:
        limiter = _limiters.get(key)
        if limiter is None:
            tokens, interval = DEFAULT_LIMITS.get(key, DEFAULT_LIMITS["anthropic"])
            limiter = RateLimiter(tokens_per_interval=tokens, interval=interval, max_tokens=tokens)
            _limiters[key] = limiter
        return limiter


def set_rate_limiter(target: str, limiter: RateLimiter) -> None:
    """Replace the shared limiter for a target (e.g. from configured settings)."""
    with _limiters_lock:
        _limiters[target.strip().lower()] = limiter


__all__ = ["DEFAULT_LIMITS", "RateLimiter", "get_rate_limiter", "set_rate_limiter"]
