"""
Outbound facade of the analysis pipeline.

Usage:
    async with AnalysisPipeline() as pipeline:
        job_id = await pipeline.enqueue({
            "questionnaire_id": "q-1",
            "analysis_type": "sentiment",
            "responses": [{"text": "I am happy"}],
            "options": {"language": "en"},
        })
        async for event in pipeline.subscribe(job_id, caller="dashboard"):
            ...
"""

import asyncio
import logging
from typing import Any

from .config import PipelineConfig
from .context import PipelineContext
from .errors import ProviderUnavailable
from .models import AnalysisOptions, AnalysisType, JobSpec, JobStatus, ResponseRecord
from .notifier import ProgressEvent, ProgressEventType, Subscription
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class AnalysisPipeline:
    """Enqueue, observe and account for analysis jobs."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        context: PipelineContext | None = None,
        workers: int | None = None,
    ):
        self.context = context or PipelineContext(config)
        self.pool = WorkerPool(self.context, size=workers)

    async def start(self, run_workers: bool = True) -> None:
        await self.context.start()
        if run_workers:
            await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        await self.context.close()

    async def __aenter__(self) -> "AnalysisPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def enqueue(self, spec: JobSpec | dict[str, Any]) -> str:
        """Submit a job and return its id without waiting for it."""
        job_id = await self.context.queue.enqueue(spec)
        self.pool.notify()
        return job_id

    async def get_status(self, job_id: str) -> dict[str, Any]:
        return await self.context.queue.get_status(job_id)

    async def get_progress(self, job_id: str) -> dict[str, Any]:
        return await self.context.queue.get_progress(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.context.queue.cancel(job_id)

    async def get_result(self, job_id: str) -> dict[str, Any] | None:
        result = await self.context.queue.get_result(job_id)
        return result.to_dict() if result else None

    async def subscribe(self, job_id: str, caller: str | None) -> Subscription:
        """
        Stream status and progress events for a job.

        Raises:
            JobNotFound: unknown job
            AuthorizationError: caller may not observe the job
        """
        job = await self.context.queue.get_job(job_id)
        self.context.notifier.remember(job_id, ProgressEvent(
            type=ProgressEventType.STATUS_CHANGED,
            job_id=job_id,
            status=job.status.value,
            progress=job.progress.to_dict(),
            error_code=job.error_code,
        ))
        return self.context.notifier.subscribe(job_id, caller)

    async def wait_for(self, job_id: str, timeout: float | None = None, interval: float = 0.05) -> dict[str, Any]:
        """Poll until the job is terminal and return its status."""
        async def poll() -> dict[str, Any]:
            while True:
                status = await self.get_status(job_id)
                if JobStatus(status["status"]).is_terminal:
                    return status
                await asyncio.sleep(interval)

        return await asyncio.wait_for(poll(), timeout=timeout)

    # ------------------------------------------------------------------
    # Accounting and introspection
    # ------------------------------------------------------------------

    def get_cost_stats(self) -> dict[str, Any]:
        return self.context.governor.get_stats()

    def get_cost_estimate(
        self,
        analysis_type: AnalysisType | str,
        responses: list[ResponseRecord | str | dict],
        options: AnalysisOptions | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Estimate tokens and cost for a prospective job."""
        if not isinstance(options, AnalysisOptions):
            options = AnalysisOptions.from_dict(options)
        records = [ResponseRecord.from_any(r) for r in responses]
        try:
            provider = self.context.gateway.select_provider(options.provider, len(records))
        except ProviderUnavailable:
            # Nothing registered; price against the configured default
            provider = options.provider or self.context.config.default_provider
        estimate = self.context.governor.estimate(
            analysis_type,
            records,
            provider,
            options.batch_size or self.context.config.batch_size,
        )
        return {
            **estimate.to_dict(),
            "within_budget": self.context.governor.check_budget(estimate.cost),
        }

    def get_cache_stats(self) -> dict[str, Any]:
        return self.context.cache.get_stats()

    async def get_stats(self) -> dict[str, Any]:
        return {
            "jobs": await self.context.queue.get_stats(),
            "gateway": self.context.gateway.get_stats(),
            "cache": self.get_cache_stats(),
            "cost": self.get_cost_stats(),
            "notifier": self.context.notifier.get_stats(),
            "workers": self.pool.size,
        }
