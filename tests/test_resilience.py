"""Unit tests for resilience: token bucket, error classification, backoff and retry."""
from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from src.resilience import (
    AgentError,
    ErrorKind,
    RateLimiter,
    RetryOptions,
    classify_error,
    get_backoff_delay,
    get_rate_limiter,
    set_rate_limiter,
    should_retry,
    with_retry,
)
from src.resilience.errors import USER_MESSAGES


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(tokens_per_interval=10, interval=1.0, max_tokens=10, clock=self.clock)

    def test_try_remove_within_capacity(self) -> None:
        for n in range(1, 11):
            limiter = RateLimiter(10, 1.0, 10, clock=FakeClock())
            self.assertTrue(limiter.try_remove_tokens(n))
            self.assertEqual(limiter.get_available_tokens(), 10 - n)

    def test_try_remove_more_than_available_leaves_tokens(self) -> None:
        self.assertTrue(self.limiter.try_remove_tokens(7))
        self.assertFalse(self.limiter.try_remove_tokens(4))
        self.assertEqual(self.limiter.get_available_tokens(), 3)

    def test_refill_is_proportional_to_elapsed_time(self) -> None:
        self.assertTrue(self.limiter.try_remove_tokens(10))
        self.assertEqual(self.limiter.get_available_tokens(), 0)
        self.clock.advance(0.5)
        self.assertEqual(self.limiter.get_available_tokens(), 5)

    def test_refill_caps_at_max_tokens(self) -> None:
        self.assertTrue(self.limiter.try_remove_tokens(5))
        self.clock.advance(2.0)
        self.assertEqual(self.limiter.get_available_tokens(), 10)

    def test_available_tokens_are_floored(self) -> None:
        self.assertTrue(self.limiter.try_remove_tokens(10))
        self.clock.advance(0.25)
        self.assertEqual(self.limiter.get_available_tokens(), 2)

    def test_reset_restores_capacity(self) -> None:
        self.limiter.try_remove_tokens(8)
        self.limiter.reset()
        self.assertEqual(self.limiter.get_available_tokens(), 10)

    def test_max_tokens_defaults_to_tokens_per_interval(self) -> None:
        limiter = RateLimiter(tokens_per_interval=40, interval=60.0, clock=FakeClock())
        self.assertEqual(limiter.max_tokens, 40)
        self.assertEqual(limiter.get_available_tokens(), 40)

    def test_invalid_parameters_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(tokens_per_interval=0, interval=1.0)
        with self.assertRaises(ValueError):
            RateLimiter(tokens_per_interval=1, interval=0)


class TestRateLimiterWaiting(unittest.IsolatedAsyncioTestCase):
    async def test_remove_tokens_sleeps_until_refilled(self) -> None:
        clock = FakeClock()
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.advance(seconds)

        limiter = RateLimiter(2, 1.0, 2, clock=clock, sleep=fake_sleep)
        await limiter.remove_tokens(2)
        self.assertEqual(sleeps, [])
        clock.advance(0.25)
        await limiter.remove_tokens(1)
        self.assertEqual(len(sleeps), 1)
        self.assertAlmostEqual(sleeps[0], 1.0)
        self.assertEqual(limiter.get_available_tokens(), 1)

    async def test_remove_tokens_larger_than_bucket_raises(self) -> None:
        limiter = RateLimiter(2, 1.0, 2, clock=FakeClock(), sleep=AsyncMock())
        with self.assertRaises(ValueError):
            await limiter.remove_tokens(3)


class TestRateLimiterRegistry(unittest.TestCase):
    def test_same_instance_per_target(self) -> None:
        self.assertIs(get_rate_limiter("tracing"), get_rate_limiter("Tracing"))
        self.assertIsNot(get_rate_limiter("tracing"), get_rate_limiter("anthropic"))

    def test_default_quotas(self) -> None:
        self.assertEqual(get_rate_limiter("tracing").tokens_per_interval, 100)
        self.assertEqual(get_rate_limiter("tracing").interval, 60.0)

    def test_set_rate_limiter_replaces_target(self) -> None:
        limiter = RateLimiter(5, 1.0)
        set_rate_limiter("unit-test-target", limiter)
        self.assertIs(get_rate_limiter("unit-test-target"), limiter)


class TestClassifyError(unittest.TestCase):
    def test_auth(self) -> None:
        err = classify_error(Exception("Error code: 401 - authentication failed"))
        self.assertEqual(err.kind, ErrorKind.AUTH_INVALID)
        self.assertFalse(err.is_retryable)

    def test_rate_limit(self) -> None:
        err = classify_error(Exception("429 Too Many Requests"))
        self.assertEqual(err.kind, ErrorKind.RATE_LIMITED)
        self.assertTrue(err.is_retryable)

    def test_network(self) -> None:
        err = classify_error(OSError("connect ECONNREFUSED 127.0.0.1:443"))
        self.assertEqual(err.kind, ErrorKind.NETWORK)
        self.assertTrue(err.is_retryable)

    def test_timeout(self) -> None:
        self.assertEqual(classify_error(Exception("request timed out")).kind, ErrorKind.TIMEOUT)
        self.assertEqual(classify_error(TimeoutError()).kind, ErrorKind.TIMEOUT)

    def test_server_error(self) -> None:
        err = classify_error(Exception("upstream returned 503"))
        self.assertEqual(err.kind, ErrorKind.SERVER_ERROR)
        self.assertTrue(err.is_retryable)

    def test_not_found(self) -> None:
        err = classify_error(Exception("ENOENT: no such file or directory"))
        self.assertEqual(err.kind, ErrorKind.NOT_FOUND)
        self.assertFalse(err.is_retryable)

    def test_tracing(self) -> None:
        err = classify_error(Exception("langsmith ingest failed"))
        self.assertEqual(err.kind, ErrorKind.TRACING_ERROR)
        self.assertFalse(err.is_retryable)

    def test_auth_checked_before_server_error(self) -> None:
        err = classify_error(Exception("401 authentication error after 500 retries"))
        self.assertEqual(err.kind, ErrorKind.AUTH_INVALID)

    def test_unmatched_is_unknown(self) -> None:
        err = classify_error(ValueError("something odd"))
        self.assertEqual(err.kind, ErrorKind.UNKNOWN)
        self.assertFalse(err.is_retryable)
        self.assertEqual(err.details["original_message"], "something odd")

    def test_classified_error_passes_through(self) -> None:
        original = AgentError("boom", ErrorKind.SEARCH_ERROR)
        self.assertIs(classify_error(original), original)

    def test_string_and_other_values(self) -> None:
        self.assertEqual(classify_error("plain failure").message, "plain failure")
        other = classify_error(42)
        self.assertEqual(other.kind, ErrorKind.UNKNOWN)
        self.assertEqual(other.message, "An unknown error occurred")

    def test_user_message(self) -> None:
        err = classify_error(Exception("429"))
        self.assertEqual(err.user_message, USER_MESSAGES[ErrorKind.RATE_LIMITED])
        self.assertEqual(AgentError("raw text").user_message, "raw text")


class TestBackoff(unittest.TestCase):
    def test_delay_ranges(self) -> None:
        for _ in range(50):
            self.assertTrue(1.0 <= get_backoff_delay(0, 1.0, 30.0) < 2.0)
            self.assertTrue(2.0 <= get_backoff_delay(1, 1.0, 30.0) < 3.0)
            self.assertTrue(4.0 <= get_backoff_delay(2, 1.0, 30.0) < 6.0)

    def test_delay_never_exceeds_max(self) -> None:
        for attempt in range(12):
            self.assertLessEqual(get_backoff_delay(attempt, 1.0, 5.0), 5.0)

    def test_jitter_bounds(self) -> None:
        with patch("src.resilience.errors.random.random", return_value=0.0):
            self.assertEqual(get_backoff_delay(1, 1.0, 30.0), 2.0)
        with patch("src.resilience.errors.random.random", return_value=0.999999):
            self.assertAlmostEqual(get_backoff_delay(1, 1.0, 30.0), 2.6, places=4)

    def test_should_retry(self) -> None:
        retryable = AgentError("x", ErrorKind.NETWORK, is_retryable=True)
        fatal = AgentError("x", ErrorKind.AUTH_INVALID)
        self.assertTrue(should_retry(retryable, 0, 3))
        self.assertTrue(should_retry(retryable, 1, 3))
        self.assertFalse(should_retry(retryable, 2, 3))
        self.assertFalse(should_retry(fatal, 0, 3))


class TestWithRetry(unittest.IsolatedAsyncioTestCase):
    async def test_returns_first_success(self) -> None:
        op = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        self.assertEqual(await with_retry(op, RetryOptions(), sleep=sleep), "ok")
        op.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_retries_retryable_then_succeeds(self) -> None:
        op = AsyncMock(side_effect=[Exception("503 unavailable"), Exception("rate limit"), "done"])
        sleep = AsyncMock()
        on_retry = MagicMock()
        result = await with_retry(op, RetryOptions(max_attempts=3, on_retry=on_retry), sleep=sleep)
        self.assertEqual(result, "done")
        self.assertEqual(op.await_count, 3)
        self.assertEqual(sleep.await_count, 2)
        self.assertEqual([c.args[1] for c in on_retry.call_args_list], [1, 2])
        first_delay = on_retry.call_args_list[0].args[2]
        self.assertTrue(1.0 <= first_delay <= 1.3)

    async def test_non_retryable_raises_immediately(self) -> None:
        op = AsyncMock(side_effect=Exception("401 invalid api key"))
        sleep = AsyncMock()
        with self.assertRaises(AgentError) as ctx:
            await with_retry(op, RetryOptions(max_attempts=5), sleep=sleep)
        self.assertEqual(ctx.exception.kind, ErrorKind.AUTH_INVALID)
        op.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_exhaustion_raises_classified_error(self) -> None:
        op = AsyncMock(side_effect=Exception("connection error"))
        sleep = AsyncMock()
        with self.assertRaises(AgentError) as ctx:
            await with_retry(op, RetryOptions(max_attempts=3, base_delay=0.01, max_delay=0.05), sleep=sleep)
        self.assertEqual(ctx.exception.kind, ErrorKind.NETWORK)
        self.assertEqual(op.await_count, 3)
        self.assertEqual(sleep.await_count, 2)
        for call in sleep.await_args_list:
            self.assertLessEqual(call.args[0], 0.05)

    async def test_cancellation_is_not_retried(self) -> None:
        op = AsyncMock(side_effect=asyncio.CancelledError())
        sleep = AsyncMock()
        with self.assertRaises(asyncio.CancelledError):
            await with_retry(op, RetryOptions(max_attempts=3), sleep=sleep)
        op.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
