"""
Tests for the batch coordinator.

Tests cover:
- Splitting into ceil(n / batch_size) sub-batches
- Input-order results regardless of completion order
- Bounded concurrency
- Partial-failure recording vs. fail-fast cancellation
- Cancellation checkpoints and progress callbacks
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from insight_pipeline.batching import BatchCoordinator, split_batches
from insight_pipeline.cost import CostGovernor
from insight_pipeline.errors import JobCancelled, ProviderTransportError, ProviderUnavailable
from insight_pipeline.gateway import ProviderGateway
from insight_pipeline.models import AnalysisOptions
from insight_pipeline.providers.base import ProviderRegistry

from conftest import FakeProvider

TEXTS = ["happy 0", "bad 1", "fine 2", "happy 3", "bad 4", "fine 5"]
EXPECTED_LABELS = ["positive", "negative", "neutral", "positive", "negative", "neutral"]


class ConcurrencyProbe(FakeProvider):
    """FakeProvider that records how many calls overlap."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.peak = 0

    async def generate(self, prompt, **kwargs):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            return await super().generate(prompt, **kwargs)
        finally:
            self.in_flight -= 1


def make_coordinator(provider: FakeProvider, max_concurrency: int = 4) -> BatchCoordinator:
    registry = ProviderRegistry()
    registry.register(provider)
    gateway = ProviderGateway(
        registry,
        CostGovernor(),
        default_provider=provider.name,
        max_retries=1,
        base_delay=0,
        max_delay=0,
        jitter=False,
        sleep=AsyncMock(),
    )
    return BatchCoordinator(gateway, max_concurrency=max_concurrency)


class TestSplitBatches:
    def test_ranges(self):
        assert split_batches(5, 2) == [(0, 2), (2, 4), (4, 5)]
        assert split_batches(4, 2) == [(0, 2), (2, 4)]
        assert split_batches(0, 10) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            split_batches(3, 0)


class TestBatchCoordinator:
    """Tests for BatchCoordinator.run."""

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        """Test the slowest first sub-batch still lands first."""
        provider = FakeProvider(
            "p", delay=lambda prompt: 0.05 if "happy 0" in prompt.user else 0.0
        )
        coordinator = make_coordinator(provider)

        outcome = await coordinator.run("sentiment", TEXTS, 2, AnalysisOptions())
        merged = outcome.merged()

        assert provider.calls == 3
        assert outcome.succeeded == 3
        assert outcome.failures == []
        assert [e["response_index"] for e in merged["sentiments"]] == list(range(6))
        assert [e["label"] for e in merged["sentiments"]] == EXPECTED_LABELS
        assert outcome.tokens_used == 3 * 150
        assert outcome.providers == ["p"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        provider = ConcurrencyProbe("p", delay=0.02)
        coordinator = make_coordinator(provider, max_concurrency=2)

        await coordinator.run("sentiment", TEXTS, 1, AnalysisOptions())

        assert provider.calls == 6
        assert provider.peak == 2

    @pytest.mark.asyncio
    async def test_partial_failure_recorded(self):
        """Test a failed sub-batch is recorded and the rest complete."""
        provider = FakeProvider("p", script=[ProviderTransportError("reset")])
        coordinator = make_coordinator(provider, max_concurrency=1)

        outcome = await coordinator.run("sentiment", TEXTS, 2, AnalysisOptions(partial_failure=True))

        assert outcome.succeeded == 2
        assert len(outcome.failures) == 1
        failure = outcome.failures[0]
        assert (failure.index, failure.start, failure.end) == (0, 0, 2)
        assert failure.cause == "provider_unavailable"
        assert [e["response_index"] for e in outcome.merged()["sentiments"]] == [2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_remaining(self):
        """Test the first failure is re-raised and later sub-batches stop."""
        provider = FakeProvider("p", script=[ProviderTransportError("reset")], delay=0.01)
        coordinator = make_coordinator(provider, max_concurrency=1)

        with pytest.raises(ProviderUnavailable):
            await coordinator.run("sentiment", TEXTS, 2, AnalysisOptions(), partial_failure=False)

        assert provider.calls < 3

    @pytest.mark.asyncio
    async def test_should_continue_false_cancels(self):
        provider = FakeProvider("p")
        coordinator = make_coordinator(provider)

        with pytest.raises(JobCancelled):
            await coordinator.run(
                "sentiment", TEXTS, 2, AnalysisOptions(), should_continue=lambda: False,
            )

        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_async_callbacks(self):
        provider = FakeProvider("p")
        coordinator = make_coordinator(provider, max_concurrency=1)
        done = []

        async def on_batch_done(finished, total):
            done.append((finished, total))

        async def should_continue():
            await asyncio.sleep(0)
            return True

        await coordinator.run(
            "thematic", TEXTS, 2, AnalysisOptions(),
            on_batch_done=on_batch_done, should_continue=should_continue,
        )

        assert done == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_themes_merged_across_batches(self):
        provider = FakeProvider("p")
        coordinator = make_coordinator(provider)

        outcome = await coordinator.run("thematic", TEXTS, 4, AnalysisOptions())
        themes = outcome.merged()["themes"]

        assert len(themes) == 1
        assert themes[0]["response_indices"] == list(range(6))
        assert themes[0]["frequency"] == 6

    @pytest.mark.asyncio
    async def test_empty_input(self):
        outcome = await make_coordinator(FakeProvider("p")).run("sentiment", [], 10, AnalysisOptions())

        assert outcome.results == []
        assert outcome.merged()["sentiments"] == []
