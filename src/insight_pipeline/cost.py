"""
Cost governor.

Tracks token usage and spend per provider and accounting window (day and
month), estimates the cost of a job before it runs, and vetoes work that would
breach the configured ceilings.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .models import AnalysisType, ResponseRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1K tokens."""
    input_per_1k: float
    output_per_1k: float


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing(0.00015, 0.0006),
    "gpt-4-turbo-preview": ModelPricing(0.01, 0.03),
    "claude-3-5-haiku-20241022": ModelPricing(0.00025, 0.00125),
    "claude-3-5-sonnet-20241022": ModelPricing(0.003, 0.015),
    "google/gemini-2.5-flash-lite": ModelPricing(0.0001, 0.0004),
}

# Unknown models are priced like the most common default.
FALLBACK_PRICING = DEFAULT_PRICING["gpt-4o-mini"]

# Share of a bare token total assumed to be prompt tokens.
INPUT_SHARE = 0.7

CHARS_PER_TOKEN: dict[AnalysisType, float] = {
    AnalysisType.THEMATIC: 4.0,
    AnalysisType.SENTIMENT: 4.0,
    AnalysisType.CLUSTERS: 3.5,
    AnalysisType.CUSTOM: 4.0,
}

# Expected output tokens as a fraction of input tokens.
OUTPUT_RATIO: dict[AnalysisType, float] = {
    AnalysisType.THEMATIC: 0.5,
    AnalysisType.SENTIMENT: 0.8,
    AnalysisType.CLUSTERS: 0.6,
    AnalysisType.CUSTOM: 0.5,
}

PROMPT_OVERHEAD_TOKENS = 350


@dataclass(frozen=True)
class CostEstimate:
    input_tokens: int
    output_tokens: int
    cost: float
    provider: str

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimated_tokens": self.tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost": round(self.cost, 6),
            "provider": self.provider,
        }


@dataclass
class LedgerEntry:
    tokens: int = 0
    cost: float = 0.0
    calls: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CostGovernor:
    """
    Owns the cost ledger.

    Ledger rows are keyed by (provider, period) where period is "YYYY-MM-DD"
    for the daily window and "YYYY-MM" for the monthly one. Rows only grow;
    they are dropped only by reset().
    """

    def __init__(
        self,
        daily_budget: float | None = None,
        monthly_budget: float | None = None,
        pricing: dict[str, ModelPricing] | None = None,
        provider_models: dict[str, str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.daily_budget = daily_budget
        self.monthly_budget = monthly_budget
        self.pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        self.provider_models = dict(provider_models or {})
        self._clock = clock
        self._ledger: dict[tuple[str, str], LedgerEntry] = {}
        self._totals: dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def pricing_for(self, provider: str, model: str | None = None) -> ModelPricing:
        model = model or self.provider_models.get(provider, "")
        return self.pricing.get(model, FALLBACK_PRICING)

    def calculate_cost(
        self,
        provider: str,
        input_tokens: int,
        output_tokens: int | None = None,
        model: str | None = None,
    ) -> float:
        """
        Price a call.

        When only a total is known (output_tokens is None), input_tokens is
        treated as the total and split 70/30 between prompt and completion.
        """
        price = self.pricing_for(provider, model)
        if output_tokens is None:
            total = input_tokens
            input_tokens = total * INPUT_SHARE
            output_tokens = total - input_tokens
        return (input_tokens / 1000) * price.input_per_1k + (output_tokens / 1000) * price.output_per_1k

    def effective_cost_per_token(self, provider: str) -> float:
        price = self.pricing_for(provider)
        return (price.input_per_1k * INPUT_SHARE + price.output_per_1k * (1 - INPUT_SHARE)) / 1000

    def estimate(
        self,
        analysis_type: AnalysisType | str,
        responses: Iterable[ResponseRecord | str],
        provider: str,
        batch_size: int | None = None,
    ) -> CostEstimate:
        """
        Estimate tokens and cost for a job.

        Uses a static characters-per-token ratio per analysis type, a fixed
        prompt overhead per sub-batch, and an expected output ratio.
        """
        analysis_type = AnalysisType(analysis_type)
        texts = [r.text if isinstance(r, ResponseRecord) else str(r) for r in responses]
        chars = sum(len(t) for t in texts)

        batches = max(1, math.ceil(len(texts) / batch_size)) if batch_size else 1
        input_tokens = math.ceil(chars / CHARS_PER_TOKEN[analysis_type]) + PROMPT_OVERHEAD_TOKENS * batches
        output_tokens = math.ceil(input_tokens * OUTPUT_RATIO[analysis_type])
        cost = self.calculate_cost(provider, input_tokens, output_tokens)
        return CostEstimate(input_tokens, output_tokens, cost, provider)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _periods(self) -> tuple[str, str]:
        now = self._clock()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    def track(self, provider: str, tokens: int, cost: float) -> None:
        """Record a successful provider call."""
        if tokens < 0 or cost < 0:
            raise ValueError("tokens and cost must not be negative")
        day, month = self._periods()
        with self._lock:
            for key in ((provider, day), (provider, month)):
                entry = self._ledger.setdefault(key, LedgerEntry())
                entry.tokens += tokens
                entry.cost += cost
                entry.calls += 1
            total = self._totals.setdefault(provider, LedgerEntry())
            total.tokens += tokens
            total.cost += cost
            total.calls += 1
        logger.debug(f"[COST] {provider}: +{tokens} tokens, +${cost:.6f}")

    def _spent(self, period: str) -> float:
        return sum(entry.cost for (_, p), entry in self._ledger.items() if p == period)

    def spent(self) -> tuple[float, float]:
        """(daily spend, monthly spend) for the current windows."""
        day, month = self._periods()
        with self._lock:
            return self._spent(day), self._spent(month)

    def check_budget(self, cost: float) -> bool:
        """Return True if spending cost keeps every window within its ceiling."""
        if cost <= 0:
            return True
        daily, monthly = self.spent()
        for budget, spent in ((self.daily_budget, daily), (self.monthly_budget, monthly)):
            if budget is None:
                continue
            if spent >= budget or spent + cost > budget:
                return False
        return True

    def denied_window(self, cost: float) -> str:
        """Name the first window check_budget(cost) would fail on, or ""."""
        daily, monthly = self.spent()
        if self.daily_budget is not None and (daily >= self.daily_budget or daily + cost > self.daily_budget):
            return "daily"
        if self.monthly_budget is not None and (monthly >= self.monthly_budget or monthly + cost > self.monthly_budget):
            return "monthly"
        return ""

    def reset(self, period: str = "all") -> None:
        """Drop ledger rows for "daily", "monthly" or "all" windows."""
        if period not in ("daily", "monthly", "all"):
            raise ValueError(f"Unknown period: {period}")
        with self._lock:
            if period == "all":
                self._ledger.clear()
                self._totals.clear()
                return
            length = 10 if period == "daily" else 7
            for key in [k for k in self._ledger if len(k[1]) == length]:
                del self._ledger[key]

    def get_stats(self) -> dict[str, Any]:
        daily, monthly = self.spent()
        with self._lock:
            return {
                "total_cost": round(sum(e.cost for e in self._totals.values()), 6),
                "total_tokens": sum(e.tokens for e in self._totals.values()),
                "calls_by_provider": {p: e.calls for p, e in self._totals.items()},
                "cost_by_provider": {p: round(e.cost, 6) for p, e in self._totals.items()},
                "daily_cost": round(daily, 6),
                "monthly_cost": round(monthly, 6),
                "daily_budget": self.daily_budget,
                "monthly_budget": self.monthly_budget,
            }
