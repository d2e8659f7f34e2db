"""
Tests for the cost governor.
"""

from datetime import datetime, timedelta, timezone

import pytest

from insight_pipeline.cost import (
    CostGovernor,
    FALLBACK_PRICING,
    ModelPricing,
    PROMPT_OVERHEAD_TOKENS,
)
from insight_pipeline.models import ResponseRecord


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 31, 23, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestPricing:
    """Tests for cost calculation."""

    def test_total_only_split_70_30(self):
        """Test a bare token total is priced as 70% input, 30% output."""
        governor = CostGovernor()

        cost = governor.calculate_cost("unknown", 1000)

        expected = 0.7 * FALLBACK_PRICING.input_per_1k + 0.3 * FALLBACK_PRICING.output_per_1k
        assert cost == pytest.approx(expected)

    def test_explicit_split(self):
        governor = CostGovernor(pricing={"m": ModelPricing(0.01, 0.03)}, provider_models={"p": "m"})

        assert governor.calculate_cost("p", 2000, 1000) == pytest.approx(0.02 + 0.03)

    def test_model_override(self):
        governor = CostGovernor(pricing={"a": ModelPricing(1.0, 1.0), "b": ModelPricing(2.0, 2.0)})

        assert governor.calculate_cost("p", 1000, 0, model="b") == pytest.approx(2.0)

    def test_effective_cost_per_token(self):
        governor = CostGovernor(pricing={"m": ModelPricing(1.0, 2.0)}, provider_models={"p": "m"})

        assert governor.effective_cost_per_token("p") == pytest.approx((0.7 + 0.6) / 1000)

    def test_estimate_grows_with_batches(self):
        """Test each sub-batch adds prompt overhead."""
        governor = CostGovernor()
        responses = [ResponseRecord("x" * 40) for _ in range(10)]

        single = governor.estimate("sentiment", responses, "p", batch_size=10)
        split = governor.estimate("sentiment", responses, "p", batch_size=5)

        assert single.input_tokens == 100 + PROMPT_OVERHEAD_TOKENS
        assert split.input_tokens == 100 + 2 * PROMPT_OVERHEAD_TOKENS
        assert split.cost > single.cost
        assert single.to_dict()["estimated_tokens"] == single.tokens

    def test_estimate_accepts_strings(self):
        estimate = CostGovernor().estimate("thematic", ["abcd"] * 4, "p")

        assert estimate.input_tokens == 4 + PROMPT_OVERHEAD_TOKENS
        assert estimate.output_tokens == (4 + PROMPT_OVERHEAD_TOKENS) // 2


class TestBudget:
    """Tests for tracking and budget enforcement."""

    def test_no_budget_allows_everything(self):
        governor = CostGovernor()
        governor.track("p", 1_000_000, 500.0)

        assert governor.check_budget(1000.0) is True

    def test_denies_when_cost_would_exceed(self, clock):
        governor = CostGovernor(daily_budget=1.0, clock=clock)
        governor.track("p", 100, 0.6)

        assert governor.check_budget(0.4) is True
        assert governor.check_budget(0.5) is False
        assert governor.denied_window(0.5) == "daily"

    def test_denies_at_ceiling(self, clock):
        """Test spend at the ceiling denies any further positive cost."""
        governor = CostGovernor(daily_budget=1.0, clock=clock)
        governor.track("p", 100, 1.0)

        assert governor.check_budget(0.0001) is False
        assert governor.check_budget(0) is True

    def test_monthly_window(self, clock):
        governor = CostGovernor(daily_budget=10.0, monthly_budget=2.0, clock=clock)
        governor.track("p", 100, 1.5)
        clock.now += timedelta(hours=2)  # next day, next month
        governor.track("p", 100, 1.5)

        assert governor.spent() == (pytest.approx(1.5), pytest.approx(1.5))
        assert governor.check_budget(0.4) is True
        assert governor.check_budget(0.6) is False
        assert governor.denied_window(0.6) == "monthly"

    def test_windows_roll_over(self, clock):
        governor = CostGovernor(daily_budget=1.0, clock=clock)
        governor.track("p", 100, 1.0)

        clock.now += timedelta(days=1)

        assert governor.check_budget(0.5) is True

    def test_track_rejects_negative(self):
        governor = CostGovernor()

        with pytest.raises(ValueError):
            governor.track("p", -1, 0.0)
        with pytest.raises(ValueError):
            governor.track("p", 1, -0.1)

    def test_reset(self, clock):
        governor = CostGovernor(daily_budget=1.0, monthly_budget=1.0, clock=clock)
        governor.track("p", 100, 1.0)

        governor.reset("daily")
        assert governor.spent() == (0, pytest.approx(1.0))

        governor.reset("all")
        assert governor.spent() == (0, 0)
        assert governor.get_stats()["total_cost"] == 0

        with pytest.raises(ValueError):
            governor.reset("weekly")

    def test_stats(self, clock):
        """Test per-provider accounting."""
        governor = CostGovernor(daily_budget=5.0, clock=clock)
        governor.track("openai", 1000, 0.25)
        governor.track("openai", 500, 0.25)
        governor.track("anthropic", 200, 0.1)

        stats = governor.get_stats()

        assert stats["total_tokens"] == 1700
        assert stats["total_cost"] == pytest.approx(0.6)
        assert stats["calls_by_provider"] == {"openai": 2, "anthropic": 1}
        assert stats["cost_by_provider"]["openai"] == pytest.approx(0.5)
        assert stats["daily_cost"] == pytest.approx(0.6)
        assert stats["daily_budget"] == 5.0
