"""Tests for rate limiting and retry utilities."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bridge_hub.rate_limit import (
    RateLimitError,
    RetryableError,
    compute_delay,
    exponential_backoff,
    is_rate_limit_error,
    is_transient_error,
)


class TestIsRateLimitError:
    """Tests for rate limit error detection."""

    def test_detects_rate_limit_message(self):
        """Should detect 'rate limit' in error message."""
        assert is_rate_limit_error(Exception("Rate limit exceeded"))
        assert is_rate_limit_error(Exception("rate_limit_error"))
        assert is_rate_limit_error(Exception("RateLimit hit"))

    def test_detects_429_status(self):
        """Should detect 429 status code."""
        assert is_rate_limit_error(Exception("HTTP 429: Too Many Requests"))

    def test_detects_throttling(self):
        assert is_rate_limit_error(Exception("Request throttled"))

    def test_returns_false_for_other_errors(self):
        """Should return False for non-rate-limit errors."""
        assert not is_rate_limit_error(Exception("Connection refused"))
        assert not is_rate_limit_error(Exception("Invalid API key"))


class TestIsTransientError:
    """Tests for transient error detection."""

    def test_detects_timeout_and_connection(self):
        assert is_transient_error(Exception("Connection timeout"))
        assert is_transient_error(Exception("Read timed out"))
        assert is_transient_error(Exception("Connection reset"))

    def test_detects_5xx_errors(self):
        assert is_transient_error(Exception("HTTP 502: Bad Gateway"))
        assert is_transient_error(Exception("HTTP 503: Service Unavailable"))

    def test_returns_false_for_other_errors(self):
        assert not is_transient_error(Exception("Invalid API key"))
        assert not is_transient_error(Exception("HTTP 400: Bad Request"))


class TestComputeDelay:
    def test_exponential_without_jitter(self):
        assert compute_delay(0, 1.0, 60.0, 0) == 1.0
        assert compute_delay(3, 1.0, 60.0, 0) == 8.0

    def test_capped_and_floored(self):
        assert compute_delay(10, 1.0, 5.0, 0) == 5.0
        assert compute_delay(0, 0.0, 5.0, 0) == 0.1


class TestExponentialBackoff:
    """Tests for the exponential backoff decorator."""

    def test_succeeds_on_first_try(self):
        """Should return immediately on success."""
        call_count = 0

        @exponential_backoff(max_retries=3, retryable_exceptions=(RetryableError,))
        async def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert asyncio.run(successful_func()) == "success"
        assert call_count == 1

    def test_retries_on_retryable_error(self):
        """Should retry on retryable errors."""
        call_count = 0
        sleeper = AsyncMock()

        @exponential_backoff(max_retries=3, base_delay=0.01, sleep=sleeper)
        async def failing_then_succeeding():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise RetryableError("Temporary failure")
            return "success"

        assert asyncio.run(failing_then_succeeding()) == "success"
        assert call_count == 3
        assert sleeper.await_count == 2

    def test_raises_rate_limit_error_after_max_retries(self):
        """Should raise RateLimitError after max retries."""
        call_count = 0

        @exponential_backoff(max_retries=2, base_delay=0.01, sleep=AsyncMock())
        async def always_failing():
            nonlocal call_count
            call_count += 1
            raise RetryableError("Always fails")

        with pytest.raises(RateLimitError):
            asyncio.run(always_failing())
        assert call_count == 3  # Initial + 2 retries

    def test_does_not_retry_non_retryable_errors(self):
        """Should not retry non-retryable errors."""
        call_count = 0

        @exponential_backoff(max_retries=3, retryable_exceptions=(RetryableError,))
        async def raises_value_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            asyncio.run(raises_value_error())
        assert call_count == 1

    @patch("bridge_hub.rate_limit.asyncio.sleep", new_callable=AsyncMock)
    def test_delay_increases_exponentially(self, mock_sleep):
        """With jitter=0 the delays are 1, 2, 4."""

        @exponential_backoff(max_retries=3, base_delay=1.0, max_delay=60.0, jitter=0)
        async def always_failing():
            raise RetryableError("Always fails")

        with pytest.raises(RateLimitError):
            asyncio.run(always_failing())

        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert delays == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]

    def test_retry_after_is_honored(self):
        sleeper = AsyncMock()

        @exponential_backoff(max_retries=1, base_delay=0.5, max_delay=30.0, jitter=0, sleep=sleeper)
        async def rate_limited():
            raise RetryableError("slow down", retry_after=7)

        with pytest.raises(RateLimitError):
            asyncio.run(rate_limited())
        assert sleeper.await_args.args[0] == pytest.approx(7.0)

    def test_decorated_method(self):
        class Client:
            def __init__(self):
                self.calls = 0

            @exponential_backoff(max_retries=1, sleep=AsyncMock())
            async def fetch(self, value):
                self.calls += 1
                if self.calls == 1:
                    raise RetryableError("once")
                return value

        client = Client()
        assert asyncio.run(client.fetch("ok")) == "ok"
        assert client.calls == 2
