"""Unit tests for the async retry decorator and strategies."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from storage_gateway.infra.metrics.prometheus import REGISTRY
from storage_gateway.utils.retry import (
    RetryStrategy,
    is_transient_http_error,
    retry,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/x")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status, request=request))


class TestRetryStrategy:
    """Test delay and eligibility rules."""

    def test_exponential_delay_capped(self):
        """Test delays grow geometrically up to the cap."""
        strategy = RetryStrategy(initial_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        """Test jitter stays inside its range."""
        strategy = RetryStrategy(initial_delay=2.0, jitter_range=(0.5, 1.5))
        for _ in range(20):
            assert 1.0 <= strategy.calculate_delay(0) <= 3.0

    def test_exception_filter(self):
        """Test only listed exception types are retried."""
        strategy = RetryStrategy(exceptions=(ConnectionError,))
        assert strategy.should_retry(ConnectionError()) is True
        assert strategy.should_retry(ValueError()) is False

    def test_invalid_attempts(self):
        """Test at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryStrategy(max_attempts=0)

    @pytest.mark.parametrize(
        ("exception", "expected"),
        [
            (_status_error(503), True),
            (_status_error(429), True),
            (_status_error(404), False),
            (_status_error(403), False),
            (httpx.ConnectError("refused"), True),
            (httpx.ReadTimeout("slow"), True),
            (ValueError("nope"), False),
        ],
    )
    def test_transient_http_errors(self, exception, expected):
        """Test which httpx failures count as transient."""
        assert is_transient_http_error(exception) is expected


class TestRetryDecorator:
    """Test the decorator end to end."""

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self):
        """Test a call that recovers returns its value and records the success."""
        func = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        func.__name__ = "flaky_fetch"
        on_retry = MagicMock()

        wrapped = retry(max_attempts=3, initial_delay=0, jitter=False, on_retry=on_retry)(func)
        assert await wrapped() == "ok"
        assert func.await_count == 3
        assert on_retry.call_count == 2
        assert (
            REGISTRY.get_sample_value(
                "storage_gateway_retry_success_after_failure_total",
                {"operation": "flaky_fetch", "attempts_needed": "3"},
            )
            >= 1
        )

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_exception(self):
        """Test running out of attempts raises the last exception itself."""
        func = AsyncMock(side_effect=[ConnectionError("first"), ConnectionError("last")])
        func.__name__ = "always_down"

        wrapped = retry(max_attempts=2, initial_delay=0, jitter=False)(func)
        with pytest.raises(ConnectionError, match="last"):
            await wrapped()
        assert func.await_count == 2
        assert (
            REGISTRY.get_sample_value(
                "storage_gateway_retry_exhausted_total",
                {"operation": "always_down"},
            )
            >= 1
        )

    @pytest.mark.asyncio
    async def test_deadline_raises_last_exception(self):
        """Test a passed ``stop_after_delay`` stops retrying with the original error."""
        func = AsyncMock(side_effect=TimeoutError("slow"))
        func.__name__ = "slow_fetch"

        wrapped = retry(max_attempts=5, initial_delay=0, jitter=False, stop_after_delay=0)(func)
        with pytest.raises(TimeoutError, match="slow"):
            await wrapped()
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(self):
        """Test exceptions rejected by ``retry_if`` are raised on the first attempt."""
        func = AsyncMock(side_effect=_status_error(404))
        func.__name__ = "lookup"

        wrapped = retry(max_attempts=5, initial_delay=0, retry_if=is_transient_http_error)(func)
        with pytest.raises(httpx.HTTPStatusError):
            await wrapped()
        assert func.await_count == 1
