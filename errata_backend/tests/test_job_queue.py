import asyncio
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from errata_backend.db_session import transaction
from errata_backend.enums import JobStatus
from errata_backend.models import InvestigationJob, utcnow
from errata_backend.services.investigation_errors import RunLeaseHeldError
from errata_backend.services.job_queue import (
    INVESTIGATE_TASK,
    QueueWorker,
    build_investigation_queue,
    investigation_job_key,
    retry_backoff_seconds,
)
from errata_backend.services.resource_pool import PoolState


@pytest_asyncio.fixture
async def queue(test_engine, test_database_url):
    queue = build_investigation_queue(test_database_url, max_attempts=3)
    yield queue
    await queue.close()


async def _job(session_factory, run_id):
    async with session_factory() as session:
        result = await session.execute(
            select(InvestigationJob).where(InvestigationJob.job_key == investigation_job_key(run_id))
        )
        return result.scalar_one_or_none()


async def _make_due(session_factory):
    async with transaction(session_factory) as session:
        await session.execute(update(InvestigationJob).values(run_at=utcnow() - timedelta(seconds=1)))


def test_retry_backoff_is_exponential_and_capped():
    assert retry_backoff_seconds(1) == 2.0
    assert retry_backoff_seconds(3) == 8.0
    assert retry_backoff_seconds(20, max_backoff=300) == 300.0


@pytest.mark.asyncio
async def test_enqueue_is_deduplicated_by_run(session_factory, queue):
    run_id = uuid.uuid4()

    await queue.enqueue_investigation_run(run_id)
    await queue.enqueue_investigation_run(run_id)

    async with session_factory() as session:
        jobs = (await session.execute(select(InvestigationJob))).scalars().all()
    assert len(jobs) == 1
    assert jobs[0].task == INVESTIGATE_TASK
    assert jobs[0].payload == {"run_id": str(run_id)}
    assert jobs[0].status is JobStatus.PENDING
    assert jobs[0].max_attempts == 3


@pytest.mark.asyncio
async def test_queue_connects_lazily_and_closes_once(test_engine, test_database_url):
    queue = build_investigation_queue(test_database_url)
    assert queue.pool.state is PoolState.IDLE

    assert await queue.fetch_next_job("worker-a") is None
    assert queue.pool.state is PoolState.READY

    await queue.close()
    await queue.close()
    assert queue.pool.state is PoolState.CLOSED


@pytest.mark.asyncio
async def test_fetch_claims_one_job_and_counts_the_attempt(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)

    context = await queue.fetch_next_job("worker-a")

    assert context.task == INVESTIGATE_TASK
    assert context.payload == {"run_id": str(run_id)}
    assert context.attempt_number == 1
    assert context.is_last_attempt is False
    assert context.worker_identity == f"worker-a:job-{context.job_id}"
    assert await queue.fetch_next_job("worker-b") is None

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.RUNNING
    assert job.locked_by == "worker-a"


@pytest.mark.asyncio
async def test_completed_job_is_revived_by_a_new_enqueue(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)
    context = await queue.fetch_next_job("worker-a")
    await queue.complete_job(context.job_id)
    assert (await _job(session_factory, run_id)).status is JobStatus.DONE

    await queue.enqueue_investigation_run(run_id)

    job = await _job(session_factory, run_id)
    assert job.id == context.job_id
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_enqueue_while_running_requests_a_rerun(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)
    context = await queue.fetch_next_job("worker-a")

    await queue.enqueue_investigation_run(run_id)
    assert (await _job(session_factory, run_id)).rerun_requested is True

    await queue.complete_job(context.job_id)

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.rerun_requested is False


@pytest.mark.asyncio
async def test_failures_back_off_then_fail_at_max_attempts(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)

    statuses = []
    for attempt in range(1, 4):
        context = await queue.fetch_next_job("worker-a")
        assert context.attempt_number == attempt
        assert context.is_last_attempt is (attempt == 3)
        statuses.append(await queue.fail_job(context.job_id, f"boom {attempt}"))
        if attempt < 3:
            # Backoff keeps it off the queue until due.
            assert await queue.fetch_next_job("worker-a") is None
            await _make_due(session_factory)

    assert statuses == [JobStatus.RETRY, JobStatus.RETRY, JobStatus.FAILED]
    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.FAILED
    assert job.last_error == "boom 3"
    assert job.locked_by is None


@pytest.mark.asyncio
async def test_reschedule_does_not_consume_an_attempt(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)
    context = await queue.fetch_next_job("worker-a")

    await queue.reschedule_job(context.job_id, 30, "lease held")

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.RETRY
    assert job.attempts == 0
    assert job.run_at > utcnow() + timedelta(seconds=20)
    assert job.last_error == "lease held"


@pytest.mark.asyncio
async def test_stale_locks_are_released(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)
    await queue.fetch_next_job("worker-a")
    async with transaction(session_factory) as session:
        await session.execute(update(InvestigationJob).values(locked_at=utcnow() - timedelta(hours=1)))

    assert await queue.release_stale_locks(900) == 1

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.RETRY
    assert job.locked_by is None
    context = await queue.fetch_next_job("worker-b")
    assert context.attempt_number == 2


# ============================================================================
# Worker
# ============================================================================

@pytest.mark.asyncio
async def test_worker_completes_successful_jobs(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)
    received = []

    async def handle(payload, context):
        received.append((payload, context.attempt_number))

    worker = QueueWorker(queue, {INVESTIGATE_TASK: handle}, worker_id="worker-a")

    assert await worker.run_once() is True
    assert await worker.run_once() is False
    assert received == [({"run_id": str(run_id)}, 1)]
    assert (await _job(session_factory, run_id)).status is JobStatus.DONE


@pytest.mark.asyncio
async def test_worker_defers_lease_held_jobs(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)

    async def handle(payload, context):
        raise RunLeaseHeldError(run_id)

    worker = QueueWorker(queue, {INVESTIGATE_TASK: handle}, lease_held_backoff_seconds=30)
    await worker.run_once()

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.RETRY
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_worker_records_handler_failures(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)

    async def handle(payload, context):
        raise RuntimeError("provider down")

    worker = QueueWorker(queue, {INVESTIGATE_TASK: handle})
    await worker.run_once()

    job = await _job(session_factory, run_id)
    assert job.status is JobStatus.RETRY
    assert job.attempts == 1
    assert job.last_error == "RuntimeError: provider down"


@pytest.mark.asyncio
async def test_worker_fails_jobs_without_a_handler(session_factory, queue):
    run_id = uuid.uuid4()
    await queue.enqueue_investigation_run(run_id)

    worker = QueueWorker(queue, {})
    await worker.run_once()

    job = await _job(session_factory, run_id)
    assert job.last_error == f"no handler for task {INVESTIGATE_TASK}"


@pytest.mark.asyncio
async def test_run_forever_stops_on_request(session_factory, queue):
    run_ids = [uuid.uuid4(), uuid.uuid4()]
    for run_id in run_ids:
        await queue.enqueue_investigation_run(run_id)
    handled = []

    async def handle(payload, context):
        handled.append(payload["run_id"])
        if len(handled) == len(run_ids):
            worker.stop()

    worker = QueueWorker(queue, {INVESTIGATE_TASK: handle}, concurrency=2, poll_interval_seconds=0.01)
    await asyncio.wait_for(worker.run_forever(), timeout=10)

    assert sorted(handled) == sorted(str(run_id) for run_id in run_ids)
