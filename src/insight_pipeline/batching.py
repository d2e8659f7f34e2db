"""
Batch coordinator.

Splits a response set into sub-batches, runs them through the gateway with
bounded concurrency, and collects per-sub-batch results in input order.
"""

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import JobCancelled, PipelineError
from .gateway import GatewayResponse, ProviderGateway
from .models import AnalysisOptions, AnalysisType
from .prompts import build_prompt, merge_payloads, parse_response

logger = logging.getLogger(__name__)


@dataclass
class BatchFailure:
    """A sub-batch that could not be analyzed."""
    index: int
    start: int
    end: int  # exclusive
    cause: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "cause": self.cause,
            "message": self.message,
        }


@dataclass
class BatchOutcome:
    analysis_type: AnalysisType
    # One slot per sub-batch in input order; None where the sub-batch failed
    results: list[dict[str, Any] | None]
    offsets: list[int]
    failures: list[BatchFailure] = field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0
    providers: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r is not None)

    def merged(self) -> dict[str, Any]:
        parts = [
            (offset, result)
            for offset, result in zip(self.offsets, self.results)
            if result is not None
        ]
        return merge_payloads(self.analysis_type, parts)


def split_batches(count: int, batch_size: int) -> list[tuple[int, int]]:
    """(start, end) ranges covering count items, ceil(count / batch_size) of them."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [
        (start, min(start + batch_size, count))
        for start in range(0, count, batch_size)
    ]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class BatchCoordinator:
    """Fans sub-batches out to the gateway."""

    def __init__(self, gateway: ProviderGateway, max_concurrency: int = 4):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.gateway = gateway
        self.max_concurrency = max_concurrency

    async def run(
        self,
        analysis_type: AnalysisType | str,
        texts: list[str],
        batch_size: int,
        options: AnalysisOptions,
        *,
        partial_failure: bool | None = None,
        on_batch_done: Callable[[int, int], Any] | None = None,
        should_continue: Callable[[], Any] | None = None,
    ) -> BatchOutcome:
        """
        Analyze texts in sub-batches.

        Args:
            analysis_type: Analysis type
            texts: Response texts in input order
            batch_size: Responses per sub-batch
            options: Job options (provider preference, retries, timeout, ...)
            partial_failure: Record failed sub-batches and keep going
                (default: options.partial_failure). When False the first
                failure cancels the remaining sub-batches and is re-raised.
            on_batch_done: Called with (finished, total) after each sub-batch
            should_continue: Checked before each sub-batch starts; a falsy
                result raises JobCancelled

        Returns:
            BatchOutcome with results ordered by input position
        """
        analysis_type = AnalysisType(analysis_type)
        if partial_failure is None:
            partial_failure = options.partial_failure

        ranges = split_batches(len(texts), batch_size)
        total = len(ranges)
        outcome = BatchOutcome(
            analysis_type=analysis_type,
            results=[None] * total,
            offsets=[start for start, _ in ranges],
        )
        responses: list[GatewayResponse | None] = [None] * total
        semaphore = asyncio.Semaphore(self.max_concurrency)
        finished = 0

        logger.info(
            f"[BATCH] {analysis_type.value}: {len(texts)} responses in {total} sub-batches "
            f"(concurrency {self.max_concurrency})"
        )

        async def run_one(index: int, start: int, end: int) -> None:
            nonlocal finished
            async with semaphore:
                if should_continue is not None and not await _maybe_await(should_continue()):
                    raise JobCancelled("Job cancelled before sub-batch started")

                chunk = texts[start:end]
                try:
                    response = await self.gateway.invoke(
                        analysis_type,
                        build_prompt(analysis_type, chunk, options),
                        options.provider,
                        fallback=options.fallback_provider,
                        max_retries=options.max_retries,
                        timeout=options.timeout_seconds,
                        response_count=len(texts),
                        parse=lambda text: parse_response(analysis_type, text, len(chunk)),
                        max_tokens=options.max_tokens,
                        temperature=options.temperature,
                    )
                except JobCancelled:
                    raise
                except PipelineError as e:
                    if not partial_failure:
                        raise
                    logger.warning(f"[BATCH] Sub-batch {index} [{start}:{end}] failed: {e.code}: {e}")
                    outcome.failures.append(BatchFailure(index, start, end, e.code, str(e)))
                else:
                    responses[index] = response
                    outcome.results[index] = response.parsed

            finished += 1
            if on_batch_done is not None:
                await _maybe_await(on_batch_done(finished, total))

        if not ranges:
            return outcome

        tasks = [
            asyncio.create_task(run_one(index, start, end))
            for index, (start, end) in enumerate(ranges)
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            for task in tasks:
                if task in done and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        outcome.failures.sort(key=lambda f: f.index)
        for response in responses:
            if response is None:
                continue
            outcome.tokens_used += response.tokens_used
            outcome.cost += response.cost
            if response.provider not in outcome.providers:
                outcome.providers.append(response.provider)
        return outcome
