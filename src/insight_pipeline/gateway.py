"""
Provider gateway.

Uniform entry point over the registered providers:
- Bounded retry loop with capped exponential backoff
- One switch to a fallback provider once retries are exhausted
- Per-provider rate limiting and circuit breaking
- Cheapest-provider selection for bulk requests
- Cost reporting to the CostGovernor on every success
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .cost import CostGovernor
from .errors import (
    ProviderError,
    ProviderRateLimited,
    ProviderResponseError,
    ProviderTransportError,
    ProviderUnavailable,
)
from .models import AnalysisType
from .profiling import profile_latency
from .providers.base import PromptPayload, ProviderRegistry
from .rate_limit import CircuitBreaker, RateLimiter

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ProviderTransportError, ProviderRateLimited, ProviderResponseError)


@dataclass
class GatewayResponse:
    content: str
    parsed: Any
    tokens_used: int
    cost: float
    provider: str
    model: str
    attempts: dict[str, int] = field(default_factory=dict)


class ProviderGateway:
    """Calls providers with retry, fallback and accounting."""

    def __init__(
        self,
        registry: ProviderRegistry,
        governor: CostGovernor,
        *,
        default_provider: str,
        fallback_provider: str | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        timeout: float = 60.0,
        bulk_threshold: int = 100,
        rate_limits: dict[str, tuple[int, int]] | None = None,
        breaker_threshold: int = 5,
        breaker_reset_seconds: float = 60,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.governor = governor
        self.default_provider = default_provider
        self.fallback_provider = fallback_provider
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.timeout = timeout
        self.bulk_threshold = bulk_threshold
        self._rate_limits = rate_limits or {}
        self._breaker_threshold = breaker_threshold
        self._breaker_reset_seconds = breaker_reset_seconds
        self._sleep = sleep

        self._limiters: dict[str, RateLimiter] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._attempts: dict[str, int] = {}
        self._successes: dict[str, int] = {}
        self._failures: dict[str, int] = {}
        self._fallbacks = 0

    def _limiter(self, name: str) -> RateLimiter:
        if name not in self._limiters:
            rpm, tpm = self._rate_limits.get(name, (60, 100_000))
            self._limiters[name] = RateLimiter(rpm, tpm)
        return self._limiters[name]

    def _breaker(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(self._breaker_threshold, self._breaker_reset_seconds)
        return self._breakers[name]

    def backoff_delay(self, attempt: int, error: Exception | None = None) -> float:
        """Delay before retry number attempt + 1 (attempt counts from 0)."""
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay += random.uniform(0, 1)
        if isinstance(error, ProviderRateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        return min(delay, self.max_delay)

    def select_provider(self, preference: str | None, response_count: int = 0) -> str:
        """Pick the provider to try first."""
        names = self.registry.names()
        if not names:
            raise ProviderUnavailable("No providers registered")

        if response_count > self.bulk_threshold:
            cheapest = min(names, key=self.governor.effective_cost_per_token)
            logger.info(f"[GATEWAY] Bulk request ({response_count} responses), using {cheapest}")
            return cheapest

        if preference and preference in self.registry:
            return preference
        if preference:
            logger.warning(f"[GATEWAY] Unknown provider '{preference}', using default")
        if self.default_provider in self.registry:
            return self.default_provider
        return names[0]

    @profile_latency("gateway_invoke")
    async def invoke(
        self,
        analysis_type: AnalysisType | str,
        prompt: PromptPayload,
        preference: str | None = None,
        *,
        fallback: str | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
        response_count: int = 0,
        parse: Callable[[str], Any] | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> GatewayResponse:
        """
        Run one prompt through the provider chain.

        Args:
            analysis_type: Analysis type (for logging)
            prompt: Prompt to send
            preference: Provider to try first
            fallback: Provider switched to once retries are exhausted
                (default: the configured fallback)
            max_retries: Total attempts per provider
            timeout: Per-call timeout in seconds
            response_count: Responses in the whole job, for bulk selection
            parse: Validates the reply text; a ProviderResponseError it raises
                is retried like a transport error

        Raises:
            ProviderUnavailable: retries and fallback exhausted
        """
        analysis_type = AnalysisType(analysis_type)
        max_retries = max(1, max_retries or self.max_retries)
        timeout = timeout or self.timeout
        fallback = fallback or self.fallback_provider

        primary = self.select_provider(preference, response_count)
        chain = [primary]
        if fallback and fallback != primary:
            if fallback in self.registry:
                chain.append(fallback)
            else:
                logger.warning(f"[GATEWAY] Fallback provider '{fallback}' is not registered")

        attempts: dict[str, int] = {}
        last_error: Exception | None = None
        for position, name in enumerate(chain):
            if position > 0:
                self._fallbacks += 1
                logger.warning(f"[GATEWAY] {chain[position - 1]} exhausted, falling back to {name}")
            try:
                return await self._call_with_retry(
                    name, prompt, attempts,
                    max_retries=max_retries,
                    timeout=timeout,
                    parse=parse,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except RETRYABLE_ERRORS as e:
                last_error = e

        raise ProviderUnavailable(
            f"{analysis_type.value} request failed on {', '.join(chain)}",
            provider=chain[-1],
            attempts=attempts,
            last_error=last_error,
        )

    async def _call_with_retry(
        self,
        name: str,
        prompt: PromptPayload,
        attempts: dict[str, int],
        *,
        max_retries: int,
        timeout: float,
        parse: Callable[[str], Any] | None,
        max_tokens: int,
        temperature: float,
    ) -> GatewayResponse:
        provider = self.registry.get(name)
        breaker = self._breaker(name)
        limiter = self._limiter(name)
        estimated_tokens = max_tokens + (len(prompt.system) + len(prompt.user)) // 4

        last_error: ProviderError | None = None
        for attempt in range(max_retries):
            if not breaker.can_proceed():
                raise ProviderTransportError("Circuit breaker is open", provider=name)

            await limiter.acquire(estimated_tokens)
            attempts[name] = attempts.get(name, 0) + 1
            self._attempts[name] = self._attempts.get(name, 0) + 1

            try:
                try:
                    generation = await asyncio.wait_for(
                        provider.generate(
                            prompt,
                            max_tokens=max_tokens,
                            temperature=temperature,
                            timeout=timeout,
                        ),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    raise ProviderTransportError(
                        f"Request timeout after {timeout}s", provider=name
                    ) from None
                parsed = parse(generation.text) if parse else None
            except RETRYABLE_ERRORS as e:
                e.provider = e.provider or name
                last_error = e
                breaker.record_failure()
                self._failures[name] = self._failures.get(name, 0) + 1
                logger.warning(
                    f"[GATEWAY] {name} attempt {attempt + 1}/{max_retries} failed: "
                    f"{type(e).__name__}: {e}"
                )
                if attempt < max_retries - 1:
                    await self._sleep(self.backoff_delay(attempt, e))
                continue

            breaker.record_success()
            tokens = generation.total_tokens
            limiter.record_tokens(tokens)
            cost = self.governor.calculate_cost(
                name, generation.input_tokens, generation.output_tokens, model=generation.model
            )
            self.governor.track(name, tokens, cost)
            self._successes[name] = self._successes.get(name, 0) + 1

            return GatewayResponse(
                content=generation.text,
                parsed=parsed,
                tokens_used=tokens,
                cost=cost,
                provider=name,
                model=generation.model,
                attempts=dict(attempts),
            )

        raise last_error

    def get_stats(self) -> dict[str, Any]:
        return {
            "attempts_by_provider": dict(self._attempts),
            "successes_by_provider": dict(self._successes),
            "failures_by_provider": dict(self._failures),
            "fallbacks": self._fallbacks,
            "circuit_breakers": {n: b.get_status() for n, b in self._breakers.items()},
            "rate_limiters": {n: l.get_stats() for n, l in self._limiters.items()},
        }
