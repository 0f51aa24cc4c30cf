"""
Investigation worker process.

Consumes investigation jobs from the queue and, in the background, sweeps
for stale job locks and stalled investigations.

    python -m errata_backend.worker
"""

import asyncio
import logging
import signal

from errata_backend.config import (
    LOG_LEVEL,
    SELECTOR_INTERVAL_SECONDS,
    STALE_JOB_LOCK_SECONDS,
    WORKER_CONCURRENCY,
)
from errata_backend.db_session import build_engine, build_session_factory
from errata_backend.services.investigator import AnthropicInvestigator
from errata_backend.services.job_queue import INVESTIGATE_TASK, QueueWorker, build_investigation_queue
from errata_backend.services.orchestrator import InvestigationOrchestrator, build_investigation_job_handler
from errata_backend.services.selector import requeue_stalled_investigations

logger = logging.getLogger(__name__)


async def _maintenance_loop(queue, session_factory, stopping: asyncio.Event) -> None:
    while not stopping.is_set():
        try:
            await queue.release_stale_locks(STALE_JOB_LOCK_SECONDS)
            await requeue_stalled_investigations(session_factory, queue)
        except Exception:
            logger.exception("[WORKER] Maintenance sweep failed")
        try:
            await asyncio.wait_for(stopping.wait(), timeout=SELECTOR_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass


async def run_worker() -> None:
    engine = build_engine()
    session_factory = build_session_factory(engine)
    queue = build_investigation_queue()

    # Fails fast here if the provider credential is missing.
    investigator = AnthropicInvestigator()
    orchestrator = InvestigationOrchestrator(session_factory, investigator)
    worker = QueueWorker(
        queue,
        {INVESTIGATE_TASK: build_investigation_job_handler(orchestrator)},
        concurrency=WORKER_CONCURRENCY,
    )

    stopping = asyncio.Event()

    def request_stop() -> None:
        logger.info("[WORKER] Shutdown requested")
        stopping.set()
        worker.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    maintenance = asyncio.create_task(_maintenance_loop(queue, session_factory, stopping))
    try:
        await worker.run_forever()
    finally:
        stopping.set()
        await maintenance
        await queue.close()
        await engine.dispose()
        logger.info("[WORKER] Stopped")


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
