"""
Analysis worker and worker pool.

A worker runs one claimed job through the pipeline:

    1. validate          -> 10%
    2. anonymize         -> 25%
    3. cache lookup      -> 40%  (a hit skips to 6)
    4. budget check      -> 50%
    5. sub-batches       -> 50..90%
    6. persist result    -> 100%

Every progress update doubles as a cancellation checkpoint: once the job is
no longer running under this worker, the remaining steps are abandoned and
nothing is persisted or cached.
"""

import asyncio
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from .anonymization import AnonymizationReport
from .batching import BatchOutcome
from .cache_store import compute_fingerprint
from .errors import BudgetExceeded, CacheUnavailable, JobCancelled, PartialBatchFailure, PipelineError
from .job_queue import validate_spec
from .models import AnalysisJob, AnalysisResult, AnonymizationLevel, JobSpec
from .profiling import LatencyTracker

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)

STEP_VALIDATED = (1, 10.0)
STEP_ANONYMIZED = (2, 25.0)
STEP_CACHE_CHECKED = (3, 40.0)
STEP_BUDGET_APPROVED = (4, 50.0)
STEP_EXECUTED = (5, 90.0)


class AnalysisWorker:
    """Executes claimed jobs."""

    def __init__(self, context: "PipelineContext", worker_id: str | None = None):
        self.context = context
        self.worker_id = worker_id or f"worker_{uuid.uuid4().hex[:8]}"
        self.jobs_processed = 0

    @property
    def queue(self):
        return self.context.queue

    async def process(self, job: AnalysisJob) -> AnalysisResult | None:
        """
        Run a claimed job to a terminal state.

        Returns:
            The persisted result, or None if the job failed or was cancelled
        """
        logger.info(f"[WORKER] {self.worker_id} processing {job.job_id} ({job.analysis_type.value})")
        try:
            with LatencyTracker("job", job.job_id):
                result = await self._run(job)
        except JobCancelled:
            logger.info(f"[WORKER] {job.job_id} abandoned: no longer running")
            return None
        except PipelineError as e:
            message = f"{e.message}: {e.detail}" if e.detail else e.message
            await self.queue.fail(job.job_id, e.code, message, self.worker_id)
            return None
        except Exception as e:
            logger.exception(f"[WORKER] Unexpected error in {job.job_id}")
            await self.queue.fail(job.job_id, "internal_error", f"{type(e).__name__}: {e}", self.worker_id)
            return None
        finally:
            self.jobs_processed += 1
        return result

    async def _advance(self, job_id: str, step: tuple[int, float]) -> None:
        current_step, percentage = step
        if not await self.queue.update_progress(job_id, percentage, current_step, self.worker_id):
            raise JobCancelled(f"{job_id} is no longer running")

    async def _checkpoint(self, job_id: str) -> None:
        if not await self.queue.is_active(job_id, self.worker_id):
            raise JobCancelled(f"{job_id} is no longer running")

    def _cache_get(self, fingerprint: str) -> str | None:
        try:
            return self.context.cache.get(fingerprint)
        except CacheUnavailable as e:
            logger.warning(f"[WORKER] Cache unavailable, treating as miss: {e}")
            return None

    def _cache_put(self, fingerprint: str, payload: dict[str, Any]) -> None:
        try:
            self.context.cache.put(fingerprint, json.dumps(payload, ensure_ascii=False))
        except CacheUnavailable as e:
            logger.warning(f"[WORKER] Cache unavailable, result not cached: {e}")

    async def _run(self, job: AnalysisJob) -> AnalysisResult:
        context = self.context
        config = context.config
        options = job.options
        job_id = job.job_id

        await self._checkpoint(job_id)

        # 1. Validate
        validate_spec(JobSpec(
            questionnaire_id=job.questionnaire_id,
            analysis_type=job.analysis_type.value,
            responses=job.responses,
            options=options,
        ))
        await self._advance(job_id, STEP_VALIDATED)

        # 2. Anonymize
        level = AnonymizationLevel(options.anonymization_level)
        report: AnonymizationReport | None = None
        with LatencyTracker("anonymize", job_id):
            records = context.anonymizer.anonymize_responses(job.responses, level)
            texts = [record.text for record in records]
            if level is not AnonymizationLevel.NONE:
                report = context.anonymizer.build_report(
                    [r.text for r in job.responses],
                    level,
                    options.k_anonymity or config.k_anonymity,
                    config.similarity_threshold,
                )
                if not report.compliant:
                    logger.warning(f"[WORKER] {job_id}: identifiers survived {level.value} masking")
        anonymization = report.to_dict() if report else None
        await self._advance(job_id, STEP_ANONYMIZED)

        # 3. Cache lookup
        batch_size = options.batch_size or config.batch_size
        fingerprint = compute_fingerprint(
            job.analysis_type.value, texts, options.fingerprint_fields()
        )
        cached = self._cache_get(fingerprint)
        await self._advance(job_id, STEP_CACHE_CHECKED)
        if cached is not None:
            logger.info(f"[WORKER] {job_id}: cache hit {fingerprint[:12]}")
            return await self._persist(job_id, AnalysisResult(
                job_id=job_id,
                analysis_type=job.analysis_type,
                payload=json.loads(cached),
                from_cache=True,
                anonymization=anonymization,
            ))

        # 4. Budget
        provider = context.gateway.select_provider(options.provider, len(texts))
        estimate = context.governor.estimate(job.analysis_type, texts, provider, batch_size)
        if options.cost_ceiling is not None and estimate.cost > options.cost_ceiling:
            raise BudgetExceeded(
                f"Estimated cost ${estimate.cost:.6f} exceeds job ceiling ${options.cost_ceiling:.6f}",
                estimated_cost=estimate.cost,
                window="job",
            )
        if not context.governor.check_budget(estimate.cost):
            window = context.governor.denied_window(estimate.cost)
            raise BudgetExceeded(
                f"Estimated cost ${estimate.cost:.6f} exceeds the remaining {window} budget",
                estimated_cost=estimate.cost,
                window=window,
            )
        await self._advance(job_id, STEP_BUDGET_APPROVED)

        # 5. Execute
        outcome = await self._execute(job, texts, batch_size)
        if outcome.succeeded == 0:
            causes = ", ".join(sorted({f.cause for f in outcome.failures}))
            raise PartialBatchFailure(
                f"All {len(outcome.failures)} sub-batches failed ({causes})",
                failures=[f.to_dict() for f in outcome.failures],
            )
        await self._advance(job_id, STEP_EXECUTED)

        # 6. Persist
        result = AnalysisResult(
            job_id=job_id,
            analysis_type=job.analysis_type,
            payload=outcome.merged(),
            tokens_used=outcome.tokens_used,
            cost=outcome.cost,
            provider=",".join(outcome.providers) or None,
            failures=tuple(f.to_dict() for f in outcome.failures),
            anonymization=anonymization,
        )
        # Partial results are not cached so a retry can fill the gaps
        return await self._persist(job_id, result, None if outcome.failures else fingerprint)

    async def _execute(self, job: AnalysisJob, texts: list[str], batch_size: int) -> BatchOutcome:
        job_id = job.job_id
        start, end = STEP_BUDGET_APPROVED[1], STEP_EXECUTED[1]

        async def on_batch_done(finished: int, total: int) -> None:
            percentage = start + (end - start) * finished / total
            # A False return means cancelled; the next checkpoint handles it
            await self.queue.update_progress(job_id, percentage, STEP_EXECUTED[0], self.worker_id)

        async def should_continue() -> bool:
            return await self.queue.is_active(job_id, self.worker_id)

        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            with LatencyTracker("execute", job_id):
                return await self.context.batcher.run(
                    job.analysis_type,
                    texts,
                    batch_size,
                    job.options,
                    on_batch_done=on_batch_done,
                    should_continue=should_continue,
                )
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, job_id: str) -> None:
        interval = max(1.0, self.context.config.visibility_timeout_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            await self.queue.heartbeat(job_id, self.worker_id)

    async def _persist(self, job_id: str, result: AnalysisResult, fingerprint: str | None = None) -> AnalysisResult:
        with LatencyTracker("persist", job_id):
            stored = await self.queue.complete(job_id, result, self.worker_id)
        if not stored:
            raise JobCancelled(f"{job_id} is no longer running; result discarded")
        if fingerprint is not None:
            self._cache_put(fingerprint, result.payload)
        return result


class WorkerPool:
    """Fixed-size pool of workers polling the queue."""

    def __init__(self, context: "PipelineContext", size: int | None = None, poll_interval: float | None = None):
        self.context = context
        self.size = size or context.config.worker_count
        self.poll_interval = context.config.poll_interval_seconds if poll_interval is None else poll_interval
        self.workers = [AnalysisWorker(context, f"worker_{i}") for i in range(self.size)]
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    def notify(self) -> None:
        """Wake idle workers, e.g. after an enqueue."""
        self._wake.set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(worker), name=worker.worker_id)
            for worker in self.workers
        ]
        logger.info(f"[WORKER] Started pool of {self.size}")

    async def _loop(self, worker: AnalysisWorker) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.context.queue.claim(worker.worker_id)
            except Exception:
                logger.exception(f"[WORKER] {worker.worker_id} failed to claim a job")
                job = None

            if job is not None:
                await worker.process(job)
                continue

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Stop polling; let in-flight jobs finish for up to timeout seconds."""
        if not self._tasks:
            return
        self._stopping.set()
        self._wake.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[WORKER] Pool stopped")
