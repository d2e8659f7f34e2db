"""
Pytest configuration and fixtures for Insight Pipeline tests.
"""

import asyncio
import json
import re
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio

from insight_pipeline.config import PipelineConfig
from insight_pipeline.context import PipelineContext
from insight_pipeline.job_queue import JobQueue
from insight_pipeline.notifier import ProgressNotifier, TokenAuthorizer
from insight_pipeline.providers.base import Generation, PromptPayload, ProviderRegistry


SUBSCRIBER_TOKEN = "test-subscriber-token"

_NUMBERED = re.compile(r"^\[(\d+)\] (.*)$", re.MULTILINE)


def scripted_reply(prompt: PromptPayload) -> str:
    """Answer a pipeline prompt the way a well-behaved model would."""
    responses = [(int(i), text) for i, text in _NUMBERED.findall(prompt.user)]
    user = prompt.user

    if "Classify the sentiment" in user:
        sentiments = []
        for index, text in responses:
            lowered = text.lower()
            if "happy" in lowered or "great" in lowered:
                label, score = "positive", 0.8
            elif "worried" in lowered or "bad" in lowered:
                label, score = "negative", -0.6
            else:
                label, score = "neutral", 0.0
            sentiments.append({"response_index": index, "label": label, "score": score})
        return json.dumps({"sentiments": sentiments})

    if "Identify the main themes" in user:
        return json.dumps({"themes": [{
            "name": "General feedback",
            "description": "Overall impressions",
            "response_indices": [i for i, _ in responses],
        }]})

    if "Group the responses" in user:
        return json.dumps({"clusters": [{
            "label": "All",
            "summary": "Every response",
            "response_indices": [i for i, _ in responses],
        }]})

    return json.dumps({"answer": f"{len(responses)} responses reviewed"})


class FakeProvider:
    """
    Provider test double.

    script items are consumed one per call: an Exception instance is raised,
    a str is returned as the reply text. Once the script is empty the reply
    comes from scripted_reply().
    """

    def __init__(
        self,
        name: str,
        model: str = "fake-model",
        script: list | None = None,
        delay=0.0,
        input_tokens: int = 100,
        output_tokens: int = 50,
    ):
        self.name = name
        self.model = model
        self.script = list(script or [])
        self.delay = delay
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = 0
        self.prompts: list[PromptPayload] = []

    async def generate(self, prompt, *, max_tokens, temperature, timeout) -> Generation:
        self.calls += 1
        self.prompts.append(prompt)
        delay = self.delay(prompt) if callable(self.delay) else self.delay
        if delay:
            await asyncio.sleep(delay)

        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            text = item
        else:
            text = scripted_reply(prompt)

        return Generation(
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=self.model,
        )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Create a test pipeline configuration."""
    return PipelineConfig(
        providers={},
        default_provider="primary",
        fallback_provider=None,
        max_retries=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
        provider_timeout_seconds=5.0,
        cache_max_entries=100,
        cache_ttl_seconds=3600,
        daily_budget=None,
        monthly_budget=None,
        batch_size=50,
        max_concurrency=4,
        worker_count=2,
        bulk_threshold=1000,
        k_anonymity=2,
        similarity_threshold=0.3,
        anonymization_salt="test-salt",
        db_path=":memory:",
        visibility_timeout_seconds=300,
        poll_interval_seconds=0.01,
        subscriber_tokens={SUBSCRIBER_TOKEN},
    )


@pytest.fixture
def primary_provider() -> FakeProvider:
    return FakeProvider("primary")


@pytest.fixture
def backup_provider() -> FakeProvider:
    return FakeProvider("backup", model="backup-model")


@pytest.fixture
def registry(primary_provider: FakeProvider, backup_provider: FakeProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(primary_provider)
    registry.register(backup_provider)
    return registry


@pytest.fixture
def notifier() -> ProgressNotifier:
    return ProgressNotifier(TokenAuthorizer({SUBSCRIBER_TOKEN}))


@pytest_asyncio.fixture
async def job_queue(notifier: ProgressNotifier) -> AsyncGenerator[JobQueue, None]:
    """Create an in-memory job queue."""
    queue = JobQueue(":memory:", notifier=notifier)
    await queue.initialize()
    yield queue
    await queue.close()


@pytest_asyncio.fixture
async def context(pipeline_config: PipelineConfig, registry: ProviderRegistry) -> AsyncGenerator[PipelineContext, None]:
    """Create a started pipeline context backed by fake providers."""
    ctx = PipelineContext(pipeline_config, registry=registry)
    await ctx.start()
    yield ctx
    await ctx.close()


@pytest.fixture
def sentiment_spec() -> dict:
    return {
        "questionnaire_id": "q-1",
        "analysis_type": "sentiment",
        "responses": [{"text": "I am happy"}, {"text": "I am worried"}, {"text": "It is fine"}],
        "options": {"language": "en"},
    }
