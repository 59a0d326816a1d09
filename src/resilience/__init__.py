"""Resilience layer: error classification, retry with backoff, rate limiting."""

from .errors import (
    AgentError,
    ErrorKind,
    classify_error,
    get_backoff_delay,
    log_error,
    should_retry,
)
from .rate_limiter import RateLimiter, get_rate_limiter, set_rate_limiter
from .retry import RetryOptions, with_retry

__all__ = [
    "AgentError",
    "ErrorKind",
    "RateLimiter",
    "RetryOptions",
    "classify_error",
    "get_backoff_delay",
    "get_rate_limiter",
    "log_error",
    "set_rate_limiter",
    "should_retry",
    "with_retry",
]
