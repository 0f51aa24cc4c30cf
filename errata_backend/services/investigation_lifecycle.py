"""
Investigation record management: get-or-create the Investigation and its
InvestigationRun for a registered post version, recover stuck runs and hand
PENDING runs to the job queue.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errata_backend.config import INVESTIGATION_MODEL, WORD_COUNT_LIMIT
from errata_backend.db_helpers import create_or_find_by_unique_constraint
from errata_backend.db_session import transaction
from errata_backend.enums import CheckStatus, ContentProvenance, InvestigationProvider
from errata_backend.models import ContentBlob, Investigation, InvestigationRun, PostVersion, utcnow
from errata_backend.services.content_identity import RegisteredVersion
from errata_backend.services.investigation_errors import InvestigationWordLimitError
from errata_backend.services.run_lease import (
    is_recoverable_processing_run_state,
    try_recover_expired_processing_run,
)

logger = logging.getLogger(__name__)

PendingRunHook = Callable[[AsyncSession, Investigation, InvestigationRun], Awaitable[None]]


class RunQueue(Protocol):
    async def enqueue_investigation_run(self, run_id: UUID) -> None:
        ...


@dataclass
class EnsureInvestigationResult:
    investigation: Investigation
    run: InvestigationRun
    created: bool
    run_created: bool
    enqueued: bool


async def ensure_investigation_record(
    session: AsyncSession,
    identity: RegisteredVersion,
    prompt_id: UUID,
    *,
    provider: InvestigationProvider = InvestigationProvider.ANTHROPIC,
    model: str = INVESTIGATION_MODEL,
    parent_investigation_id: Optional[UUID] = None,
    content_diff: Optional[str] = None,
    reject_over_word_limit_on_create: bool = True,
    word_count_limit: int = WORD_COUNT_LIMIT,
) -> tuple:
    """Return ``(investigation, created)`` for ``(post_id, content_hash)``."""
    created = False

    async def find_existing():
        result = await session.execute(
            select(Investigation).where(
                Investigation.post_id == identity.post_id,
                Investigation.content_hash == identity.content_hash,
            )
        )
        return result.scalar_one_or_none()

    async def create():
        nonlocal created
        # Only new investigations are gated; existing ones stay readable.
        if reject_over_word_limit_on_create and identity.word_count > word_count_limit:
            raise InvestigationWordLimitError(identity.word_count, word_count_limit)
        investigation = Investigation(
            post_id=identity.post_id,
            content_hash=identity.content_hash,
            post_version_id=identity.post_version_id,
            status=CheckStatus.PENDING,
            prompt_id=prompt_id,
            provider=provider,
            model=model,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
        )
        session.add(investigation)
        await session.flush()
        created = True
        return investigation

    investigation = await create_or_find_by_unique_constraint(session, find_existing, create)
    return investigation, created


async def ensure_investigation_run_record(
    session: AsyncSession, investigation: Investigation
) -> tuple:
    """Return ``(run, created)``; exactly one run exists per investigation."""
    created = False

    async def find_existing():
        result = await session.execute(
            select(InvestigationRun).where(InvestigationRun.investigation_id == investigation.id)
        )
        return result.scalar_one_or_none()

    async def create():
        nonlocal created
        run = InvestigationRun(
            investigation_id=investigation.id,
            queued_at=utcnow() if investigation.status is CheckStatus.PENDING else None,
        )
        session.add(run)
        await session.flush()
        created = True
        return run

    run = await create_or_find_by_unique_constraint(session, find_existing, create)
    return run, created


async def _requeue_failed(
    session: AsyncSession,
    investigation: Investigation,
    run: InvestigationRun,
    parent_investigation_id: Optional[UUID],
    content_diff: Optional[str],
) -> bool:
    now = utcnow()
    result = await session.execute(
        update(Investigation)
        .where(Investigation.id == investigation.id, Investigation.status == CheckStatus.FAILED)
        .values(
            status=CheckStatus.PENDING,
            checked_at=None,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await session.execute(
        update(InvestigationRun)
        .where(InvestigationRun.id == run.id)
        .values(
            lease_owner=None,
            lease_expires_at=None,
            recover_after_at=None,
            heartbeat_at=None,
            queued_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.refresh(investigation)
    await session.refresh(run)
    logger.info("[LIFECYCLE] Re-armed FAILED investigation %s", investigation.id)
    return True


async def ensure_investigation_queued(
    session_factory: async_sessionmaker,
    identity: RegisteredVersion,
    prompt_id: UUID,
    *,
    queue: Optional[RunQueue],
    provider: InvestigationProvider = InvestigationProvider.ANTHROPIC,
    model: str = INVESTIGATION_MODEL,
    parent_investigation_id: Optional[UUID] = None,
    content_diff: Optional[str] = None,
    reject_over_word_limit_on_create: bool = True,
    word_count_limit: int = WORD_COUNT_LIMIT,
    allow_requeue_failed: bool = False,
    enqueue: bool = True,
    on_pending_run: Optional[PendingRunHook] = None,
) -> EnsureInvestigationResult:
    """
    Make sure an investigation exists for ``identity`` and, if it is PENDING,
    that a job for its run is queued.

    COMPLETE investigations are returned untouched. FAILED ones are re-armed
    only with ``allow_requeue_failed``. A PROCESSING investigation whose
    worker vanished is recovered back to PENDING first.
    """
    async with transaction(session_factory) as session:
        investigation, created = await ensure_investigation_record(
            session,
            identity,
            prompt_id,
            provider=provider,
            model=model,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
            reject_over_word_limit_on_create=reject_over_word_limit_on_create,
            word_count_limit=word_count_limit,
        )
        run, run_created = await ensure_investigation_run_record(session, investigation)

        if allow_requeue_failed and investigation.status is CheckStatus.FAILED:
            await _requeue_failed(session, investigation, run, parent_investigation_id, content_diff)

    if created:
        logger.info(
            "[LIFECYCLE] Created investigation %s for post %s (%s)",
            investigation.id,
            identity.post_id,
            identity.content_hash[:12],
        )

    if investigation.status is CheckStatus.PROCESSING and is_recoverable_processing_run_state(run):
        recovered = await try_recover_expired_processing_run(session_factory, run.id)
        if recovered is not None:
            investigation, run = recovered

    enqueued = False
    if investigation.status is CheckStatus.PENDING and enqueue:
        if on_pending_run is not None:
            async with transaction(session_factory) as session:
                await on_pending_run(session, investigation, run)
        if queue is None:
            raise ValueError("A queue is required to enqueue investigation runs")
        await queue.enqueue_investigation_run(run.id)
        enqueued = True
        logger.debug("[LIFECYCLE] Enqueued run %s for investigation %s", run.id, investigation.id)

    return EnsureInvestigationResult(
        investigation=investigation,
        run=run,
        created=created,
        run_created=run_created,
        enqueued=enqueued,
    )


# ============================================================================
# Update lineage
# ============================================================================

NO_CHANGES_DIFF = "No changes detected."


def build_line_diff(previous: str, current: str) -> str:
    """Summarize an edit as the lines between the common prefix and suffix."""
    if previous == current:
        return NO_CHANGES_DIFF

    previous_lines = previous.split("\n")
    current_lines = current.split("\n")
    start = 0
    while (
        start < min(len(previous_lines), len(current_lines))
        and previous_lines[start] == current_lines[start]
    ):
        start += 1

    previous_end = len(previous_lines)
    current_end = len(current_lines)
    while (
        previous_end > start
        and current_end > start
        and previous_lines[previous_end - 1] == current_lines[current_end - 1]
    ):
        previous_end -= 1
        current_end -= 1

    removed: List[str] = previous_lines[start:previous_end]
    added: List[str] = current_lines[start:current_end]
    return "\n".join(
        [
            "Diff summary (line context):",
            "- Removed lines:",
            "\n".join(removed) if removed else "(none)",
            "+ Added lines:",
            "\n".join(added) if added else "(none)",
        ]
    )


async def find_update_source_investigation(
    session: AsyncSession, identity: RegisteredVersion
) -> Optional[tuple]:
    """
    Return ``(investigation, content_text)`` for the latest COMPLETE,
    server-verified investigation of the same post, or None when there is
    nothing to update from.
    """
    row = (
        await session.execute(
            select(Investigation, ContentBlob.content_text)
            .join(PostVersion, PostVersion.id == Investigation.post_version_id)
            .join(ContentBlob, ContentBlob.content_hash == Investigation.content_hash)
            .where(
                Investigation.post_id == identity.post_id,
                Investigation.status == CheckStatus.COMPLETE,
                PostVersion.content_provenance == ContentProvenance.SERVER_VERIFIED,
            )
            .order_by(Investigation.checked_at.desc())
            .limit(1)
        )
    ).first()
    if row is None:
        return None
    investigation, content_text = row
    if (
        investigation.post_version_id == identity.post_version_id
        or investigation.content_hash == identity.content_hash
    ):
        return None
    return investigation, content_text


async def ensure_investigation_queued_with_update_metadata(
    session_factory: async_sessionmaker,
    identity: RegisteredVersion,
    prompt_id: UUID,
    *,
    queue: Optional[RunQueue],
    **kwargs,
) -> EnsureInvestigationResult:
    """
    ``ensure_investigation_queued`` for user-triggered checks: an edited post
    is linked to its last verified investigation and carries a line diff.
    """
    async with transaction(session_factory) as session:
        source = await find_update_source_investigation(session, identity)

    if source is None:
        return await ensure_investigation_queued(session_factory, identity, prompt_id, queue=queue, **kwargs)

    parent, previous_text = source
    logger.info(
        "[LIFECYCLE] Post %s changed since investigation %s; queueing as an update",
        identity.post_id,
        parent.id,
    )
    return await ensure_investigation_queued(
        session_factory,
        identity,
        prompt_id,
        queue=queue,
        parent_investigation_id=parent.id,
        content_diff=build_line_diff(previous_text, identity.content_text),
        **kwargs,
    )
