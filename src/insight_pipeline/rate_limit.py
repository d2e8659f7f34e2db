"""
Per-provider throttling.

- RateLimiter: sliding one-minute window over request count and token volume
- CircuitBreaker: opens after repeated failures, half-opens after a cool-down
"""

import asyncio
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class CircuitBreaker:
    """Circuit breaker guarding calls to one provider."""

    def __init__(self, threshold: int = 5, reset_time: float = 60, clock=time.monotonic):
        self.threshold = threshold
        self.reset_time = reset_time
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.is_open = False
        self._clock = clock

    def record_failure(self) -> None:
        """Record a failure and potentially open the circuit."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.threshold and not self.is_open:
            self.is_open = True
            logger.warning(f"[BREAKER] Circuit opened after {self.failure_count} failures")

    def record_success(self) -> None:
        self.failure_count = 0
        self.is_open = False

    def can_proceed(self) -> bool:
        """Check if a request may be sent."""
        if not self.is_open:
            return True

        if self._clock() - self.last_failure_time >= self.reset_time:
            self.is_open = False
            self.failure_count = 0
            return True

        return False

    def get_status(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
        }


class RateLimiter:
    """
    Sliding window rate limiter.

    Limits both request count and token throughput per minute.
    """

    def __init__(self, requests_per_minute: int = 60, tokens_per_minute: int = 100_000, clock=time.monotonic):
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self._clock = clock

        self._request_times: list[float] = []
        self._token_usage: list[tuple[float, int]] = []  # (timestamp, tokens)

        self._total_requests = 0
        self._total_tokens = 0
        self._throttle_count = 0
        self._lock = asyncio.Lock()

    def _cleanup_old_entries(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        self._request_times = [t for t in self._request_times if t > cutoff]
        self._token_usage = [(t, tokens) for t, tokens in self._token_usage if t > cutoff]

    def can_proceed(self, estimated_tokens: int = 0) -> tuple[bool, float]:
        """
        Check if a request can proceed under rate limits.

        Returns:
            (can_proceed, wait_seconds) tuple
        """
        now = self._clock()
        self._cleanup_old_entries(now)

        if len(self._request_times) >= self.requests_per_minute:
            wait_time = WINDOW_SECONDS - (now - self._request_times[0])
            return False, max(0.1, wait_time)

        current_tokens = sum(tokens for _, tokens in self._token_usage)
        if self._token_usage and current_tokens + estimated_tokens > self.tokens_per_minute:
            wait_time = WINDOW_SECONDS - (now - self._token_usage[0][0])
            return False, max(0.1, wait_time)

        return True, 0.0

    def _reserve_request(self) -> None:
        self._request_times.append(self._clock())
        self._total_requests += 1

    def record_tokens(self, tokens_used: int) -> None:
        """Count tokens consumed by a completed request."""
        if tokens_used > 0:
            self._token_usage.append((self._clock(), tokens_used))
            self._total_tokens += tokens_used

    async def acquire(self, estimated_tokens: int = 0) -> float:
        """
        Wait until the limits allow a request, then reserve its slot.

        The slot is taken before the call is made, so concurrent callers and
        failed attempts all count against the request limit. Waiters are
        served one at a time. Returns seconds waited.
        """
        waited = 0.0
        async with self._lock:
            while True:
                can_proceed, wait_time = self.can_proceed(estimated_tokens)
                if can_proceed:
                    break
                self._throttle_count += 1
                logger.info(f"[RATE] Throttling for {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                waited += wait_time
            self._reserve_request()
        return waited

    def get_stats(self) -> dict[str, Any]:
        self._cleanup_old_entries(self._clock())
        return {
            "requests_last_minute": len(self._request_times),
            "tokens_last_minute": sum(tokens for _, tokens in self._token_usage),
            "total_requests": self._total_requests,
            "total_tokens": self._total_tokens,
            "throttle_count": self._throttle_count,
            "requests_limit": self.requests_per_minute,
            "tokens_limit": self.tokens_per_minute,
        }
