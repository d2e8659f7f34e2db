"""
Durable job queue for analysis jobs.

Implements a SQLite-backed queue with:
- Async operations via aiosqlite
- Write-ahead logging (WAL) for durability
- Priority ordering (highest first, FIFO within a priority)
- Leased claims with a visibility timeout for at-least-once delivery
- Conditional status transitions so terminal states are final
- Status and progress events pushed to the ProgressNotifier
"""

import asyncio
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any

import aiosqlite

from .errors import InvalidJobSpec, JobNotFound
from .models import (
    AnalysisJob,
    AnalysisOptions,
    AnalysisResult,
    AnalysisType,
    AnonymizationLevel,
    JobProgress,
    JobSpec,
    JobStatus,
    ResponseRecord,
)
from .notifier import ProgressEvent, ProgressEventType, ProgressNotifier

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6

# Deliveries allowed before a job whose lease keeps expiring is failed.
MAX_DELIVERIES = 3

_JOB_COLUMNS = (
    "job_id, questionnaire_id, analysis_type, responses, options, status, "
    "current_step, total_steps, percentage, created_at, started_at, completed_at, "
    "retry_count, error_code, error_message, worker_id"
)

_POSITIVE_OPTIONS = ("batch_size", "max_retries", "k_anonymity", "timeout_seconds", "max_tokens")


def validate_spec(spec: JobSpec | dict[str, Any]) -> JobSpec:
    """
    Check a submission and return it as a JobSpec.

    Raises:
        InvalidJobSpec: describing the first problem found
    """
    if isinstance(spec, dict):
        try:
            spec = JobSpec.from_dict(spec)
        except (TypeError, ValueError) as e:
            raise InvalidJobSpec(f"Malformed job specification: {e}") from e

    if spec.analysis_type not in AnalysisType.values():
        raise InvalidJobSpec(
            f"analysis_type must be one of {AnalysisType.values()}, got {spec.analysis_type!r}"
        )
    if not isinstance(spec.questionnaire_id, str) or not spec.questionnaire_id.strip():
        raise InvalidJobSpec("questionnaire_id must be a non-empty string")
    if not isinstance(spec.responses, (list, tuple)):
        raise InvalidJobSpec("responses must be a list")
    if not spec.responses:
        raise InvalidJobSpec("responses must not be empty")
    if not isinstance(spec.options, AnalysisOptions):
        raise InvalidJobSpec("options must be an object")
    for index, response in enumerate(spec.responses):
        if not isinstance(response, ResponseRecord):
            raise InvalidJobSpec(f"Response {index} must be a ResponseRecord")
        if not isinstance(response.text, str):
            raise InvalidJobSpec(f"Response {index} text must be a string")

    options = spec.options
    if options.anonymization_level not in [level.value for level in AnonymizationLevel]:
        raise InvalidJobSpec(f"Unknown anonymization_level: {options.anonymization_level!r}")
    if spec.analysis_type == AnalysisType.CUSTOM.value and not options.custom_prompt:
        raise InvalidJobSpec("custom analysis requires options.custom_prompt")
    for name in _POSITIVE_OPTIONS:
        value = getattr(options, name)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            raise InvalidJobSpec(f"options.{name} must be a positive number")
    if options.cost_ceiling is not None and (
        not isinstance(options.cost_ceiling, (int, float)) or options.cost_ceiling < 0
    ):
        raise InvalidJobSpec("options.cost_ceiling must not be negative")
    if not isinstance(options.priority, int):
        raise InvalidJobSpec("options.priority must be an integer")

    return spec


class JobQueue:
    """
    Priority job queue with SQLite backend.

    Workers claim jobs with a lease. A running job whose lease expires (the
    worker crashed or stalled) goes back to the queue with its retry count
    incremented; progress updates extend the lease.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        notifier: ProgressNotifier | None = None,
        visibility_timeout: float = 300.0,
        max_deliveries: int = MAX_DELIVERIES,
        clock=time.time,
    ):
        self.db_path = str(db_path)
        self.notifier = notifier
        self.visibility_timeout = visibility_timeout
        self.max_deliveries = max_deliveries
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the database connection and schema."""
        if self._initialized:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._create_schema()
        self._initialized = True

    async def _create_schema(self) -> None:
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL UNIQUE,
                questionnaire_id TEXT NOT NULL,
                analysis_type TEXT NOT NULL,
                responses TEXT NOT NULL,
                options TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                current_step INTEGER NOT NULL DEFAULT 0,
                total_steps INTEGER NOT NULL,
                percentage REAL NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                started_at REAL,
                completed_at REAL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_code TEXT,
                error_message TEXT,
                worker_id TEXT,
                lease_expires_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_dispatch ON jobs(status, priority DESC, seq);

            CREATE TABLE IF NOT EXISTS results (
                job_id TEXT PRIMARY KEY,
                result TEXT NOT NULL,
                created_at REAL NOT NULL,
                FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
            );
        """)
        async with self._db.execute("SELECT version FROM schema_version") as cursor:
            if await cursor.fetchone() is None:
                await self._db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
                )
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _row_to_job(self, row) -> AnalysisJob:
        return AnalysisJob(
            job_id=row[0],
            questionnaire_id=row[1],
            analysis_type=AnalysisType(row[2]),
            responses=[ResponseRecord.from_any(r) for r in json.loads(row[3])],
            options=AnalysisOptions.from_dict(json.loads(row[4])),
            status=JobStatus(row[5]),
            progress=JobProgress(current_step=row[6], total_steps=row[7], percentage=row[8]),
            created_at=row[9],
            started_at=row[10],
            completed_at=row[11],
            retry_count=row[12],
            error_code=row[13],
            error_message=row[14],
            worker_id=row[15],
        )

    async def _fetch_job(self, job_id: str) -> AnalysisJob | None:
        async with self._db.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def _require_job(self, job_id: str) -> AnalysisJob:
        job = await self._fetch_job(job_id)
        if job is None:
            raise JobNotFound(f"Unknown job: {job_id}")
        return job

    async def _publish(self, job_id: str, event_type: ProgressEventType) -> None:
        if self.notifier is None:
            return
        job = await self._fetch_job(job_id)
        if job is None:
            return
        self.notifier.publish(job_id, ProgressEvent(
            type=event_type,
            job_id=job_id,
            status=job.status.value,
            progress=job.progress.to_dict(),
            error_code=job.error_code,
        ))

    # ------------------------------------------------------------------
    # Submission and reads
    # ------------------------------------------------------------------

    async def enqueue(self, spec: JobSpec | dict[str, Any]) -> str:
        """
        Validate and enqueue a job.

        Returns:
            The new job id

        Raises:
            InvalidJobSpec: If the submission is malformed
        """
        spec = validate_spec(spec)
        await self.initialize()

        job_id = f"job_{uuid.uuid4().hex}"
        async with self._lock:
            await self._db.execute(
                """
                INSERT INTO jobs (job_id, questionnaire_id, analysis_type, responses, options,
                                  priority, status, total_steps, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    spec.questionnaire_id,
                    spec.analysis_type,
                    json.dumps([r.to_dict() for r in spec.responses], ensure_ascii=False),
                    json.dumps(spec.options.to_dict()),
                    spec.options.priority,
                    JobStatus.QUEUED.value,
                    TOTAL_STEPS,
                    self._clock(),
                ),
            )
            await self._db.commit()
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)

        logger.info(
            f"[QUEUE] Enqueued {job_id}: {spec.analysis_type}, "
            f"{len(spec.responses)} responses, priority {spec.options.priority}"
        )
        return job_id

    async def get_job(self, job_id: str) -> AnalysisJob:
        await self.initialize()
        return await self._require_job(job_id)

    async def get_status(self, job_id: str) -> dict[str, Any]:
        """Status and progress of a job."""
        job = await self.get_job(job_id)
        return job.status_dict()

    async def get_progress(self, job_id: str) -> dict[str, Any]:
        job = await self.get_job(job_id)
        return job.progress.to_dict()

    async def get_result(self, job_id: str) -> AnalysisResult | None:
        """The stored result, or None if the job has not completed."""
        await self.initialize()
        await self._require_job(job_id)
        async with self._db.execute(
            "SELECT result FROM results WHERE job_id = ?", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return AnalysisResult.from_dict(json.loads(row[0])) if row else None

    async def list_jobs(self, status: JobStatus | str | None = None, limit: int = 100) -> list[AnalysisJob]:
        await self.initialize()
        if status is None:
            query, params = f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY seq LIMIT ?", (limit,)
        else:
            query = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = ? ORDER BY seq LIMIT ?"
            params = (JobStatus(status).value, limit)
        async with self._db.execute(query, params) as cursor:
            return [self._row_to_job(row) async for row in cursor]

    async def is_cancelled(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        return job.status is JobStatus.CANCELLED

    async def is_active(self, job_id: str, worker_id: str | None = None) -> bool:
        """True while the job is running (and, if given, still leased to worker_id)."""
        job = await self.get_job(job_id)
        if job.status is not JobStatus.RUNNING:
            return False
        return worker_id is None or job.worker_id == worker_id

    async def get_stats(self) -> dict[str, Any]:
        await self.initialize()
        counts = {status.value: 0 for status in JobStatus}
        async with self._db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status") as cursor:
            async for status, count in cursor:
                counts[status] = count
        return {"total": sum(counts.values()), **counts}

    # ------------------------------------------------------------------
    # Worker protocol
    # ------------------------------------------------------------------

    async def _requeue_expired(self, now: float) -> None:
        async with self._db.execute(
            "SELECT job_id, retry_count FROM jobs WHERE status = ? AND lease_expires_at < ?",
            (JobStatus.RUNNING.value, now),
        ) as cursor:
            expired = await cursor.fetchall()
        if not expired:
            return

        for job_id, retry_count in expired:
            if retry_count + 1 >= self.max_deliveries:
                await self._db.execute(
                    """
                    UPDATE jobs SET status = ?, error_code = ?, error_message = ?,
                                    completed_at = ?, worker_id = NULL, lease_expires_at = NULL
                    WHERE job_id = ? AND status = ?
                    """,
                    (
                        JobStatus.FAILED.value, "lease_expired",
                        f"Lease expired {retry_count + 1} times without acknowledgement",
                        now, job_id, JobStatus.RUNNING.value,
                    ),
                )
                logger.warning(f"[QUEUE] {job_id} failed after {retry_count + 1} expired leases")
            else:
                await self._db.execute(
                    """
                    UPDATE jobs SET status = ?, retry_count = retry_count + 1,
                                    worker_id = NULL, lease_expires_at = NULL
                    WHERE job_id = ? AND status = ?
                    """,
                    (JobStatus.QUEUED.value, job_id, JobStatus.RUNNING.value),
                )
                logger.warning(f"[QUEUE] Lease expired for {job_id}, requeued")
        await self._db.commit()
        for job_id, _ in expired:
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)

    async def requeue_expired(self) -> None:
        """Return jobs with expired leases to the queue."""
        await self.initialize()
        async with self._lock:
            await self._requeue_expired(self._clock())

    async def claim(self, worker_id: str, visibility_timeout: float | None = None) -> AnalysisJob | None:
        """
        Lease the next job to a worker.

        Jobs are taken by priority (highest first) then enqueue order. The
        lease lasts visibility_timeout seconds and is extended by progress
        updates.

        Returns:
            The claimed job, or None if nothing is queued
        """
        await self.initialize()
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout

        async with self._lock:
            now = self._clock()
            await self._requeue_expired(now)

            async with self._db.execute(
                "SELECT job_id FROM jobs WHERE status = ? ORDER BY priority DESC, seq ASC LIMIT 1",
                (JobStatus.QUEUED.value,),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            job_id = row[0]
            cursor = await self._db.execute(
                """
                UPDATE jobs SET status = ?, worker_id = ?, lease_expires_at = ?,
                                started_at = COALESCE(started_at, ?)
                WHERE job_id = ? AND status = ?
                """,
                (JobStatus.RUNNING.value, worker_id, now + timeout, now, job_id, JobStatus.QUEUED.value),
            )
            if cursor.rowcount != 1:
                await self._db.rollback()
                return None
            await self._db.commit()
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)
            job = await self._fetch_job(job_id)

        logger.info(f"[QUEUE] {worker_id} claimed {job_id}")
        return job

    async def update_progress(
        self,
        job_id: str,
        percentage: float,
        current_step: int | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Advance a running job's progress and extend its lease.

        Progress never moves backwards. Returns False if the job is not
        running (or not leased to worker_id).
        """
        await self.initialize()
        percentage = max(0.0, min(100.0, float(percentage)))

        async with self._lock:
            job = await self._require_job(job_id)
            if job.status is not JobStatus.RUNNING or (worker_id and job.worker_id != worker_id):
                return False

            new_percentage = max(job.progress.percentage, percentage)
            new_step = max(job.progress.current_step, current_step or 0)
            await self._db.execute(
                """
                UPDATE jobs SET percentage = ?, current_step = ?, lease_expires_at = ?
                WHERE job_id = ? AND status = ?
                """,
                (new_percentage, new_step, self._clock() + self.visibility_timeout,
                 job_id, JobStatus.RUNNING.value),
            )
            await self._db.commit()
            if new_percentage != job.progress.percentage or new_step != job.progress.current_step:
                await self._publish(job_id, ProgressEventType.PROGRESS_UPDATED)
        return True

    async def heartbeat(self, job_id: str, worker_id: str | None = None) -> bool:
        """Extend the lease without changing progress."""
        return await self.update_progress(job_id, 0, worker_id=worker_id)

    async def complete(self, job_id: str, result: AnalysisResult, worker_id: str | None = None) -> bool:
        """
        Store the result and mark the job completed, in one transaction.

        Returns:
            False (and nothing stored) if the job is no longer running
        """
        await self.initialize()
        async with self._lock:
            now = self._clock()
            params: tuple = (
                JobStatus.COMPLETED.value, TOTAL_STEPS, now, job_id, JobStatus.RUNNING.value,
            )
            query = """
                UPDATE jobs SET status = ?, percentage = 100, current_step = ?,
                                completed_at = ?, lease_expires_at = NULL
                WHERE job_id = ? AND status = ?
            """
            if worker_id:
                query += " AND worker_id = ?"
                params += (worker_id,)
            cursor = await self._db.execute(query, params)
            if cursor.rowcount != 1:
                await self._db.rollback()
                logger.info(f"[QUEUE] Discarded result for {job_id}: job no longer running")
                return False

            await self._db.execute(
                "INSERT OR REPLACE INTO results (job_id, result, created_at) VALUES (?, ?, ?)",
                (job_id, json.dumps(result.to_dict(), ensure_ascii=False), now),
            )
            await self._db.commit()
            await self._publish(job_id, ProgressEventType.PROGRESS_UPDATED)
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)

        logger.info(f"[QUEUE] Completed {job_id}")
        return True

    async def fail(self, job_id: str, code: str, message: str, worker_id: str | None = None) -> bool:
        """
        Mark a job failed with a cause code.

        Without worker_id a queued or running job is failed. With worker_id
        only a running job leased to that worker is.
        """
        await self.initialize()
        async with self._lock:
            if worker_id:
                query = """
                    UPDATE jobs SET status = ?, error_code = ?, error_message = ?,
                                    completed_at = ?, lease_expires_at = NULL
                    WHERE job_id = ? AND status = ? AND worker_id = ?
                """
                params: tuple = (JobStatus.FAILED.value, code, message, self._clock(), job_id,
                                 JobStatus.RUNNING.value, worker_id)
            else:
                query = """
                    UPDATE jobs SET status = ?, error_code = ?, error_message = ?,
                                    completed_at = ?, lease_expires_at = NULL
                    WHERE job_id = ? AND status IN (?, ?)
                """
                params = (JobStatus.FAILED.value, code, message, self._clock(), job_id,
                          JobStatus.QUEUED.value, JobStatus.RUNNING.value)
            cursor = await self._db.execute(query, params)
            await self._db.commit()
            if cursor.rowcount != 1:
                logger.info(f"[QUEUE] Ignored failure for {job_id}: job not held by {worker_id or 'anyone'}")
                return False
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)

        logger.warning(f"[QUEUE] Failed {job_id}: {code}: {message}")
        return True

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        Returns:
            False if the job was already terminal

        Raises:
            JobNotFound: If job_id is unknown
        """
        await self.initialize()
        async with self._lock:
            await self._require_job(job_id)
            cursor = await self._db.execute(
                """
                UPDATE jobs SET status = ?, completed_at = ?, lease_expires_at = NULL
                WHERE job_id = ? AND status IN (?, ?)
                """,
                (JobStatus.CANCELLED.value, self._clock(), job_id,
                 JobStatus.QUEUED.value, JobStatus.RUNNING.value),
            )
            await self._db.commit()
            if cursor.rowcount != 1:
                return False
            await self._publish(job_id, ProgressEventType.STATUS_CHANGED)

        logger.info(f"[QUEUE] Cancelled {job_id}")
        return True
