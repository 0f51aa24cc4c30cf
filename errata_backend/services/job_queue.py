"""
SQL-table job queue for investigation runs.

Delivery is at-least-once: a job is claimed with FOR UPDATE SKIP LOCKED
(where the backend supports it), retried with exponential backoff on failure,
and deduplicated by ``job_key`` so enqueuing the same run twice is a no-op.
The queue's database engine lives in a ResourcePool so it connects lazily and
is disposed exactly once on shutdown.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from errata_backend.config import (
    JOB_MAX_ATTEMPTS,
    JOB_MAX_BACKOFF_SECONDS,
    LEASE_HELD_BACKOFF_SECONDS,
    WORKER_CONCURRENCY,
    WORKER_POLL_INTERVAL_SECONDS,
)
from errata_backend.db_helpers import create_or_find_by_unique_constraint
from errata_backend.db_session import build_engine, build_session_factory, transaction
from errata_backend.enums import JobStatus
from errata_backend.models import InvestigationJob, utcnow
from errata_backend.services.investigation_errors import RunLeaseHeldError
from errata_backend.services.resource_pool import ResourcePool

logger = logging.getLogger(__name__)

INVESTIGATE_TASK = "investigate"

_RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRY)
_FINISHED_STATUSES = (JobStatus.DONE, JobStatus.FAILED)


def investigation_job_key(run_id: UUID) -> str:
    return f"investigate-run:{run_id}"


def retry_backoff_seconds(attempts: int, max_backoff: float = JOB_MAX_BACKOFF_SECONDS) -> float:
    return float(min(2 ** attempts, max_backoff))


@dataclass(frozen=True)
class JobContext:
    job_id: UUID
    task: str
    payload: Dict[str, Any]
    attempt_number: int
    max_attempts: int
    worker_identity: str

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number >= self.max_attempts


JobHandler = Callable[[Dict[str, Any], JobContext], Awaitable[Any]]


class InvestigationQueue:
    def __init__(self, pool: ResourcePool[AsyncEngine], max_attempts: int = JOB_MAX_ATTEMPTS):
        self.pool = pool
        self.max_attempts = max_attempts
        self._factories: Dict[int, async_sessionmaker] = {}

    async def _session_factory(self) -> async_sessionmaker:
        engine = await self.pool.acquire()
        factory = self._factories.get(id(engine))
        if factory is None:
            self._factories = {id(engine): build_session_factory(engine)}
            factory = self._factories[id(engine)]
        return factory

    async def enqueue_investigation_run(self, run_id: UUID) -> None:
        await self.add_job(INVESTIGATE_TASK, {"run_id": str(run_id)}, investigation_job_key(run_id))

    async def add_job(self, task: str, payload: Dict[str, Any], job_key: str) -> None:
        """Insert a job, or revive the existing job with the same key."""
        now = utcnow()
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            # Revive finished jobs; flag running ones so they re-queue when they finish.
            revived = await session.execute(
                update(InvestigationJob)
                .where(InvestigationJob.job_key == job_key, InvestigationJob.status.in_(_FINISHED_STATUSES))
                .values(
                    status=JobStatus.PENDING,
                    task=task,
                    payload=payload,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    run_at=now,
                    last_error=None,
                    locked_by=None,
                    locked_at=None,
                    rerun_requested=False,
                )
                .execution_options(synchronize_session=False)
            )
            if revived.rowcount:
                logger.info("[QUEUE] Revived job %s", job_key)
                return

            flagged = await session.execute(
                update(InvestigationJob)
                .where(InvestigationJob.job_key == job_key, InvestigationJob.status == JobStatus.RUNNING)
                .values(rerun_requested=True)
                .execution_options(synchronize_session=False)
            )
            if flagged.rowcount:
                logger.info("[QUEUE] Job %s is running; flagged for rerun", job_key)
                return

            async def find_existing():
                result = await session.execute(
                    select(InvestigationJob).where(InvestigationJob.job_key == job_key)
                )
                return result.scalar_one_or_none()

            async def create():
                job = InvestigationJob(
                    task=task,
                    job_key=job_key,
                    payload=payload,
                    status=JobStatus.PENDING,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    run_at=now,
                    rerun_requested=False,
                )
                session.add(job)
                await session.flush()
                return job

            await create_or_find_by_unique_constraint(session, find_existing, create)

    async def fetch_next_job(self, worker_id: str) -> Optional[JobContext]:
        now = utcnow()
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            job = (
                await session.execute(
                    select(InvestigationJob)
                    .where(
                        InvestigationJob.status.in_(_RUNNABLE_STATUSES),
                        InvestigationJob.run_at <= now,
                    )
                    .order_by(InvestigationJob.run_at, InvestigationJob.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
            ).scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.attempts = job.attempts + 1
            job.locked_by = worker_id
            job.locked_at = now
            await session.flush()

            return JobContext(
                job_id=job.id,
                task=job.task,
                payload=dict(job.payload or {}),
                attempt_number=job.attempts,
                max_attempts=job.max_attempts,
                worker_identity=f"{worker_id}:job-{job.id}",
            )

    async def complete_job(self, job_id: UUID) -> None:
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            job = await session.get(InvestigationJob, job_id)
            if job is None:
                return
            job.locked_by = None
            job.locked_at = None
            job.last_error = None
            if job.rerun_requested:
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.run_at = utcnow()
                job.rerun_requested = False
            else:
                job.status = JobStatus.DONE

    async def fail_job(self, job_id: UUID, error: str) -> JobStatus:
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            job = await session.get(InvestigationJob, job_id)
            if job is None:
                return JobStatus.FAILED
            job.locked_by = None
            job.locked_at = None
            job.last_error = error
            if job.attempts >= job.max_attempts and not job.rerun_requested:
                job.status = JobStatus.FAILED
            else:
                if job.rerun_requested:
                    job.attempts = 0
                    job.rerun_requested = False
                job.status = JobStatus.RETRY
                job.run_at = utcnow() + timedelta(seconds=retry_backoff_seconds(job.attempts))
            return job.status

    async def reschedule_job(self, job_id: UUID, delay_seconds: float, reason: str) -> None:
        """Put a job back without consuming the attempt it just used."""
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            job = await session.get(InvestigationJob, job_id)
            if job is None:
                return
            job.status = JobStatus.RETRY
            job.attempts = max(job.attempts - 1, 0)
            job.run_at = utcnow() + timedelta(seconds=delay_seconds)
            job.locked_by = None
            job.locked_at = None
            job.last_error = reason

    async def release_stale_locks(self, older_than_seconds: float) -> int:
        """Return RUNNING jobs whose worker vanished to the retry pool."""
        now = utcnow()
        session_factory = await self._session_factory()
        async with transaction(session_factory) as session:
            result = await session.execute(
                update(InvestigationJob)
                .where(
                    InvestigationJob.status == JobStatus.RUNNING,
                    InvestigationJob.locked_at <= now - timedelta(seconds=older_than_seconds),
                )
                .values(status=JobStatus.RETRY, locked_by=None, locked_at=None, run_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.warning("[QUEUE] Released %s stale job lock(s)", result.rowcount)
            return result.rowcount

    async def close(self) -> None:
        await self.pool.close()


def build_investigation_queue(
    database_url: Optional[str] = None, max_attempts: int = JOB_MAX_ATTEMPTS
) -> InvestigationQueue:
    """Queue whose engine is created on first use and disposed on close()."""

    async def connect() -> AsyncEngine:
        return build_engine(database_url)

    async def release(engine: AsyncEngine) -> None:
        await engine.dispose()

    return InvestigationQueue(ResourcePool(connect, release, name="investigation-queue"), max_attempts)


class QueueWorker:
    """Runs ``concurrency`` polling consumers until ``stop()`` is called."""

    def __init__(
        self,
        queue: InvestigationQueue,
        handlers: Dict[str, JobHandler],
        concurrency: int = WORKER_CONCURRENCY,
        poll_interval_seconds: float = WORKER_POLL_INTERVAL_SECONDS,
        lease_held_backoff_seconds: float = LEASE_HELD_BACKOFF_SECONDS,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_held_backoff_seconds = lease_held_backoff_seconds
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run_forever(self) -> None:
        logger.info("[QUEUE] Worker %s starting %s consumer(s)", self.worker_id, self.concurrency)
        await asyncio.gather(*(self._consume(slot) for slot in range(self.concurrency)))
        logger.info("[QUEUE] Worker %s stopped", self.worker_id)

    async def _consume(self, slot: int) -> None:
        consumer_id = f"{self.worker_id}-{slot}"
        while not self._stopping.is_set():
            try:
                processed = await self.run_once(consumer_id)
            except Exception:
                logger.exception("[QUEUE] Consumer %s failed to poll", consumer_id)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self, consumer_id: Optional[str] = None) -> bool:
        """Fetch and execute one job. Returns False when nothing was runnable."""
        context = await self.queue.fetch_next_job(consumer_id or self.worker_id)
        if context is None:
            return False
        await self._execute(context)
        return True

    async def _execute(self, context: JobContext) -> None:
        handler = self.handlers.get(context.task)
        if handler is None:
            logger.error("[QUEUE] No handler for task %s (job %s)", context.task, context.job_id)
            await self.queue.fail_job(context.job_id, f"no handler for task {context.task}")
            return

        try:
            await handler(context.payload, context)
        except RunLeaseHeldError as exc:
            logger.info("[QUEUE] Job %s deferred: %s", context.job_id, exc)
            await self.queue.reschedule_job(context.job_id, self.lease_held_backoff_seconds, str(exc))
        except Exception as exc:
            status = await self.queue.fail_job(context.job_id, f"{type(exc).__name__}: {exc}")
            logger.warning(
                "[QUEUE] Job %s attempt %s/%s failed (%s): %s",
                context.job_id,
                context.attempt_number,
                context.max_attempts,
                status.value,
                exc,
            )
        else:
            await self.queue.complete_job(context.job_id)
