"""
Tests for the circuit breaker and sliding-window rate limiter.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from insight_pipeline.rate_limit import CircuitBreaker, RateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(threshold=3, reset_time=60, clock=FakeClock())

        for _ in range(2):
            breaker.record_failure()
        assert breaker.can_proceed() is True

        breaker.record_failure()
        assert breaker.is_open is True
        assert breaker.can_proceed() is False

    def test_half_opens_after_reset_time(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, reset_time=30, clock=clock)
        breaker.record_failure()

        clock.now += 29
        assert breaker.can_proceed() is False

        clock.now += 1
        assert breaker.can_proceed() is True
        assert breaker.failure_count == 0

    def test_success_closes(self):
        breaker = CircuitBreaker(threshold=1, clock=FakeClock())
        breaker.record_failure()

        breaker.record_success()

        assert breaker.get_status() == {"is_open": False, "failure_count": 0, "threshold": 1}


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.mark.asyncio
    async def test_request_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=2, clock=clock)
        await limiter.acquire()
        clock.now += 10
        await limiter.acquire()

        allowed, wait = limiter.can_proceed()

        assert allowed is False
        assert wait == pytest.approx(50)

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=1, clock=clock)
        await limiter.acquire()

        clock.now += 61

        assert limiter.can_proceed() == (True, 0.0)

    def test_token_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(tokens_per_minute=1000, clock=clock)
        limiter.record_tokens(900)

        assert limiter.can_proceed(50)[0] is True
        assert limiter.can_proceed(200)[0] is False

    @pytest.mark.asyncio
    async def test_acquire_sleeps_until_window_frees(self):
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=1, clock=clock)
        await limiter.acquire()

        async def advance(seconds):
            clock.now += seconds

        with patch("insight_pipeline.rate_limit.asyncio.sleep", new=AsyncMock(side_effect=advance)) as sleep:
            waited = await limiter.acquire()

        sleep.assert_awaited_once_with(60.0)
        assert waited == 60.0
        assert limiter.get_stats()["throttle_count"] == 1

    @pytest.mark.asyncio
    async def test_no_wait_under_limit(self):
        limiter = RateLimiter(clock=FakeClock())

        assert await limiter.acquire() == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_limit(self):
        """Test slots are reserved before the call, so parallel acquires cannot overshoot."""
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=2, clock=clock)
        slept = []

        async def advance(seconds):
            slept.append(seconds)
            clock.now += seconds

        with patch("insight_pipeline.rate_limit.asyncio.sleep", new=AsyncMock(side_effect=advance)):
            waits = await asyncio.gather(*(limiter.acquire() for _ in range(3)))

        assert sorted(waits) == [0.0, 0.0, 60.0]
        assert slept == [60.0]
        assert limiter.get_stats()["total_requests"] == 3

    @pytest.mark.asyncio
    async def test_stats(self):
        limiter = RateLimiter(clock=FakeClock())
        await limiter.acquire()
        limiter.record_tokens(100)
        await limiter.acquire()
        limiter.record_tokens(50)

        stats = limiter.get_stats()

        assert stats["requests_last_minute"] == 2
        assert stats["tokens_last_minute"] == 150
        assert stats["total_requests"] == 2
