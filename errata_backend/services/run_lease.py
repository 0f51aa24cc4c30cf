"""
Run leases: single-holder claims with heartbeats and stale-run recovery.

A lease is (lease_owner, lease_expires_at) on an InvestigationRun. Claiming
is one conditional UPDATE, so any number of workers may race for the same
run and at most one wins. Holders extend the lease from a background
heartbeat task. A lease that is never renewed simply expires.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from errata_backend.config import (
    RUN_HEARTBEAT_INTERVAL_SECONDS,
    RUN_LEASE_TTL_SECONDS,
)
from errata_backend.db_session import transaction
from errata_backend.enums import TERMINAL_CHECK_STATUSES, CheckStatus, LeaseClaimResult
from errata_backend.models import Investigation, InvestigationRun, utcnow

logger = logging.getLogger(__name__)


def _investigation_has_status(*statuses: CheckStatus):
    return exists().where(
        Investigation.id == InvestigationRun.investigation_id,
        Investigation.status.in_(statuses),
    )


def _lease_is_free(now: datetime):
    return or_(
        InvestigationRun.lease_owner.is_(None),
        InvestigationRun.lease_expires_at.is_(None),
        InvestigationRun.lease_expires_at <= now,
    )


async def claim_investigation_run_lease(
    session_factory: async_sessionmaker,
    run_id: UUID,
    worker_identity: str,
    ttl_seconds: float = RUN_LEASE_TTL_SECONDS,
) -> LeaseClaimResult:
    now = utcnow()
    async with transaction(session_factory) as session:
        result = await session.execute(
            update(InvestigationRun)
            .where(
                InvestigationRun.id == run_id,
                _investigation_has_status(CheckStatus.PENDING, CheckStatus.PROCESSING),
                # A PENDING run can carry a live lease between claim and PROCESSING.
                _lease_is_free(now),
            )
            .values(
                lease_owner=worker_identity,
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                recover_after_at=None,
                started_at=now,
                heartbeat_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return LeaseClaimResult.CLAIMED

        row = (
            await session.execute(
                select(InvestigationRun.id, Investigation.status)
                .join(Investigation, Investigation.id == InvestigationRun.investigation_id)
                .where(InvestigationRun.id == run_id)
            )
        ).one_or_none()

    if row is None:
        return LeaseClaimResult.MISSING
    if row.status in TERMINAL_CHECK_STATUSES:
        return LeaseClaimResult.TERMINAL
    return LeaseClaimResult.LEASE_HELD


async def renew_investigation_run_lease(
    session_factory: async_sessionmaker,
    run_id: UUID,
    worker_identity: str,
    ttl_seconds: float = RUN_LEASE_TTL_SECONDS,
) -> bool:
    """Extend a lease we still own on a PROCESSING investigation. Returns False if we lost it."""
    now = utcnow()
    async with transaction(session_factory) as session:
        result = await session.execute(
            update(InvestigationRun)
            .where(
                InvestigationRun.id == run_id,
                InvestigationRun.lease_owner == worker_identity,
                _investigation_has_status(CheckStatus.PROCESSING),
            )
            .values(
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                heartbeat_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class RunLeaseHeartbeat:
    """
    Background task that renews a run lease every ``interval_seconds``.

    Renewal failures are logged and never propagate; ``stop()`` cancels the
    task so nothing outlives the job.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        run_id: UUID,
        worker_identity: str,
        interval_seconds: float = RUN_HEARTBEAT_INTERVAL_SECONDS,
        ttl_seconds: float = RUN_LEASE_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.run_id = run_id
        self.worker_identity = worker_identity
        self.interval_seconds = interval_seconds
        self.ttl_seconds = ttl_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._beat(), name=f"lease-heartbeat-{self.run_id}")

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                renewed = await renew_investigation_run_lease(
                    self.session_factory, self.run_id, self.worker_identity, self.ttl_seconds
                )
            except Exception as exc:
                logger.warning("[LEASE] Heartbeat failed for run %s: %s", self.run_id, exc)
                continue
            if not renewed:
                logger.warning(
                    "[LEASE] Heartbeat for run %s did not renew; lease no longer held by %s",
                    self.run_id,
                    self.worker_identity,
                )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


# ---------------------------------------------------------------------------
# Stale-run recovery
# ---------------------------------------------------------------------------

def is_recoverable_processing_run_state(run: InvestigationRun, now: Optional[datetime] = None) -> bool:
    """
    A PROCESSING run may be handed back to the queue when its owner's lease has
    expired, or, after a transient failure released the lease, once its
    recovery grace window has passed.
    """
    now = now or utcnow()
    if run.lease_owner is not None:
        return run.lease_expires_at is None or run.lease_expires_at <= now
    return run.recover_after_at is None or run.recover_after_at <= now


def recoverable_run_predicate(now: datetime):
    return or_(
        and_(
            InvestigationRun.lease_owner.is_not(None),
            or_(InvestigationRun.lease_expires_at.is_(None), InvestigationRun.lease_expires_at <= now),
        ),
        and_(
            InvestigationRun.lease_owner.is_(None),
            or_(InvestigationRun.recover_after_at.is_(None), InvestigationRun.recover_after_at <= now),
        ),
    )


async def try_recover_expired_processing_run(
    session_factory: async_sessionmaker,
    run_id: UUID,
) -> Optional[Tuple[Investigation, InvestigationRun]]:
    """
    Reset a stuck PROCESSING run to PENDING with a cleared lease.

    The expiry predicate is re-checked inside the UPDATE, so when several
    callers race only one sees a row change; the rest get None.
    """
    now = utcnow()
    async with transaction(session_factory) as session:
        result = await session.execute(
            update(InvestigationRun)
            .where(
                InvestigationRun.id == run_id,
                _investigation_has_status(CheckStatus.PROCESSING),
                recoverable_run_predicate(now),
            )
            .values(
                lease_owner=None,
                lease_expires_at=None,
                recover_after_at=None,
                heartbeat_at=None,
                queued_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        investigation_id = select(InvestigationRun.investigation_id).where(
            InvestigationRun.id == run_id
        ).scalar_subquery()
        reset = await session.execute(
            update(Investigation)
            .where(Investigation.id == investigation_id, Investigation.status == CheckStatus.PROCESSING)
            .values(status=CheckStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        if reset.rowcount != 1:
            # The investigation left PROCESSING between the two statements.
            await session.rollback()
            return None

        row = (
            await session.execute(
                select(Investigation, InvestigationRun)
                .join(InvestigationRun, InvestigationRun.investigation_id == Investigation.id)
                .where(InvestigationRun.id == run_id)
            )
        ).one()

    logger.info("[LEASE] Recovered stale run %s; investigation %s back to PENDING", run_id, row[0].id)
    return row[0], row[1]
