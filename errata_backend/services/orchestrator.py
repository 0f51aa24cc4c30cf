"""
Investigation orchestrator: runs one queued investigation end to end.

    claim lease -> load context -> PROCESSING + heartbeat
                -> resolve images -> investigator
                -> COMPLETE (claims, audit) | FAILED | release for retry

Every terminal write is guarded by ``status = PROCESSING`` so a duplicate
delivery of the same job can never overwrite a finished investigation.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errata_backend.config import (
    RUN_HEARTBEAT_INTERVAL_SECONDS,
    RUN_LEASE_TTL_SECONDS,
    RUN_RECOVERY_GRACE_SECONDS,
)
from errata_backend.db_session import transaction
from errata_backend.enums import (
    AttemptOutcome,
    CheckStatus,
    ErrorClass,
    LeaseClaimResult,
    OrchestrationOutcome,
    Platform,
)
from errata_backend.models import (
    Claim,
    ClaimSource,
    ContentBlob,
    Investigation,
    InvestigationRun,
    Post,
    PostVersion,
    utcnow,
)
from errata_backend.schemas import (
    InvestigationAttemptAudit,
    InvestigationClaim,
    InvestigationResult,
    InvestigationSource,
)
from errata_backend.services.attempt_audit import persist_attempt_audit
from errata_backend.services.content_identity import load_image_occurrences
from errata_backend.services.content_normalization import sha256_hex
from errata_backend.services.error_classifier import (
    classify_error,
    error_status_code,
    format_error_for_log,
    unwrap_error,
)
from errata_backend.services.image_downloader import resolve_investigation_images
from errata_backend.services.image_occurrences import ImageOccurrence
from errata_backend.services.investigation_errors import (
    RecordGoneError,
    RunLeaseHeldError,
    TransientProviderError,
)
from errata_backend.services.investigator import Investigator, InvestigatorExecutionError
from errata_backend.services.investigator_input import InvestigatorImageOccurrence, InvestigatorInput
from errata_backend.services.run_lease import RunLeaseHeartbeat, claim_investigation_run_lease

logger = logging.getLogger(__name__)

ImageResolver = Callable[
    [async_sessionmaker, UUID, Sequence[ImageOccurrence]],
    Awaitable[List[InvestigatorImageOccurrence]],
]


@dataclass(frozen=True)
class InvestigationContext:
    run_id: UUID
    investigation_id: UUID
    platform: Platform
    url: str
    content_text: str
    image_occurrences: List[ImageOccurrence]
    parent_investigation_id: Optional[UUID] = None
    content_diff: Optional[str] = None
    old_claims: List[InvestigationClaim] = field(default_factory=list)


async def _load_claims(session: AsyncSession, investigation_id: UUID) -> List[InvestigationClaim]:
    claims = (
        await session.execute(
            select(Claim).where(Claim.investigation_id == investigation_id).order_by(Claim.claim_order)
        )
    ).scalars().all()
    if not claims:
        return []
    sources = (
        await session.execute(
            select(ClaimSource)
            .where(ClaimSource.claim_id.in_([claim.id for claim in claims]))
            .order_by(ClaimSource.source_order)
        )
    ).scalars().all()
    sources_by_claim = {}
    for source in sources:
        sources_by_claim.setdefault(source.claim_id, []).append(
            InvestigationSource(url=source.url, title=source.title, snippet=source.snippet)
        )
    return [
        InvestigationClaim(
            text=claim.text,
            context=claim.context,
            summary=claim.summary,
            reasoning=claim.reasoning,
            confidence=claim.confidence,
            sources=sources_by_claim.get(claim.id, []),
        )
        for claim in claims
    ]


async def _load_context(session: AsyncSession, run_id: UUID) -> Optional[InvestigationContext]:
    row = (
        await session.execute(
            select(InvestigationRun, Investigation, Post, ContentBlob)
            .join(Investigation, Investigation.id == InvestigationRun.investigation_id)
            .join(Post, Post.id == Investigation.post_id)
            .join(ContentBlob, ContentBlob.content_hash == Investigation.content_hash)
            .where(InvestigationRun.id == run_id)
        )
    ).one_or_none()
    if row is None:
        return None
    run, investigation, post, blob = row

    occurrences: List[ImageOccurrence] = []
    if investigation.post_version_id is not None:
        occurrence_set_id = (
            await session.execute(
                select(PostVersion.image_occurrence_set_id).where(
                    PostVersion.id == investigation.post_version_id
                )
            )
        ).scalar_one_or_none()
        if occurrence_set_id is not None:
            occurrences = await load_image_occurrences(session, occurrence_set_id)

    # Edits of an already checked post carry the earlier claims forward.
    old_claims: List[InvestigationClaim] = []
    if investigation.parent_investigation_id is not None:
        old_claims = await _load_claims(session, investigation.parent_investigation_id)

    return InvestigationContext(
        run_id=run.id,
        investigation_id=investigation.id,
        platform=post.platform,
        url=post.url,
        content_text=blob.content_text,
        image_occurrences=occurrences,
        parent_investigation_id=investigation.parent_investigation_id,
        content_diff=investigation.content_diff,
        old_claims=old_claims,
    )


async def _release_lease(
    session: AsyncSession,
    run_id: UUID,
    worker_identity: str,
    recover_after_seconds: Optional[float] = None,
) -> None:
    values = {"lease_owner": None, "lease_expires_at": None, "heartbeat_at": None}
    if recover_after_seconds is not None:
        values["recover_after_at"] = utcnow() + timedelta(seconds=recover_after_seconds)
    await session.execute(
        update(InvestigationRun)
        .where(InvestigationRun.id == run_id, InvestigationRun.lease_owner == worker_identity)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def _replace_claims(session: AsyncSession, investigation_id: UUID, result: InvestigationResult) -> None:
    existing_claims = select(Claim.id).where(Claim.investigation_id == investigation_id)
    await session.execute(delete(ClaimSource).where(ClaimSource.claim_id.in_(existing_claims)))
    await session.execute(delete(Claim).where(Claim.investigation_id == investigation_id))

    for claim_order, claim in enumerate(result.claims):
        claim_row = Claim(
            investigation_id=investigation_id,
            claim_order=claim_order,
            text=claim.text,
            context=claim.context,
            summary=claim.summary,
            reasoning=claim.reasoning,
            confidence=claim.confidence,
        )
        session.add(claim_row)
        await session.flush()
        session.add_all(
            ClaimSource(
                claim_id=claim_row.id,
                source_order=source_order,
                url=source.url,
                title=source.title,
                snippet=source.snippet,
                snapshot_hash=sha256_hex(source.snippet),
            )
            for source_order, source in enumerate(claim.sources)
        )
    await session.flush()


class InvestigationOrchestrator:
    """Runs queued investigations with an injected investigator."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        investigator: Investigator,
        image_resolver: Optional[ImageResolver] = None,
        lease_ttl_seconds: float = RUN_LEASE_TTL_SECONDS,
        heartbeat_interval_seconds: float = RUN_HEARTBEAT_INTERVAL_SECONDS,
        recovery_grace_seconds: float = RUN_RECOVERY_GRACE_SECONDS,
    ):
        self.session_factory = session_factory
        self.investigator = investigator
        self.image_resolver = image_resolver or resolve_investigation_images
        self.lease_ttl_seconds = lease_ttl_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.recovery_grace_seconds = recovery_grace_seconds

    async def orchestrate(
        self,
        run_id: UUID,
        *,
        attempt_number: int,
        is_last_attempt: bool,
        worker_identity: str,
    ) -> OrchestrationOutcome:
        claim = await claim_investigation_run_lease(
            self.session_factory, run_id, worker_identity, self.lease_ttl_seconds
        )
        if claim is LeaseClaimResult.MISSING:
            logger.info("[ORCHESTRATOR] Run %s no longer exists; skipping", run_id)
            return OrchestrationOutcome.SKIPPED_MISSING
        if claim is LeaseClaimResult.TERMINAL:
            logger.info("[ORCHESTRATOR] Run %s already finished; skipping", run_id)
            return OrchestrationOutcome.SKIPPED_TERMINAL
        if claim is LeaseClaimResult.LEASE_HELD:
            raise RunLeaseHeldError(run_id)

        try:
            context = await self._start_processing(run_id)
        except RecordGoneError as exc:
            logger.info("[ORCHESTRATOR] %s", exc)
            return OrchestrationOutcome.RECORD_GONE

        heartbeat = RunLeaseHeartbeat(
            self.session_factory,
            run_id,
            worker_identity,
            interval_seconds=self.heartbeat_interval_seconds,
            ttl_seconds=self.lease_ttl_seconds,
        )
        heartbeat.start()
        try:
            logger.info(
                "[ORCHESTRATOR] Investigating %s (run %s, attempt %s)",
                context.investigation_id,
                run_id,
                attempt_number,
            )
            try:
                image_occurrences = await self.image_resolver(
                    self.session_factory, context.investigation_id, context.image_occurrences
                )
                output = await self.investigator.investigate(
                    InvestigatorInput(
                        investigation_id=context.investigation_id,
                        platform=context.platform,
                        url=context.url,
                        content_text=context.content_text,
                        image_occurrences=image_occurrences,
                        is_update=context.parent_investigation_id is not None,
                        old_claims=context.old_claims,
                        content_diff=context.content_diff,
                    )
                )
                # A failed commit of the result is classified like any other failure.
                return await self._persist_success(
                    context,
                    output.result,
                    output.attempt_audit,
                    output.model_version,
                    attempt_number,
                    worker_identity,
                )
            except Exception as exc:
                return await self._handle_failure(
                    context, exc, attempt_number, is_last_attempt, worker_identity
                )
        finally:
            await heartbeat.stop()

    async def _start_processing(self, run_id: UUID) -> InvestigationContext:
        async with transaction(self.session_factory) as session:
            context = await _load_context(session, run_id)
            if context is None:
                raise RecordGoneError(f"Investigation context for run {run_id} is gone")
            result = await session.execute(
                update(Investigation)
                .where(
                    Investigation.id == context.investigation_id,
                    Investigation.status.in_((CheckStatus.PENDING, CheckStatus.PROCESSING)),
                )
                .values(status=CheckStatus.PROCESSING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise RecordGoneError(f"Investigation {context.investigation_id} left the runnable states")
            return context

    async def _persist_success(
        self,
        context: InvestigationContext,
        result: InvestigationResult,
        attempt_audit: InvestigationAttemptAudit,
        model_version: Optional[str],
        attempt_number: int,
        worker_identity: str,
    ) -> OrchestrationOutcome:
        now = utcnow()
        async with transaction(self.session_factory) as session:
            completed = await session.execute(
                update(Investigation)
                .where(
                    Investigation.id == context.investigation_id,
                    Investigation.status == CheckStatus.PROCESSING,
                )
                .values(
                    status=CheckStatus.COMPLETE,
                    checked_at=now,
                    model_version=model_version,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if completed.rowcount != 1:
                logger.warning(
                    "[ORCHESTRATOR] Investigation %s is no longer PROCESSING; discarding duplicate result",
                    context.investigation_id,
                )
                return OrchestrationOutcome.DUPLICATE_DISCARDED

            await persist_attempt_audit(
                session, context.investigation_id, attempt_number, AttemptOutcome.SUCCEEDED, attempt_audit
            )
            await _replace_claims(session, context.investigation_id, result)
            await _release_lease(session, context.run_id, worker_identity)

        logger.info(
            "[ORCHESTRATOR] Investigation %s COMPLETE with %s claim(s)",
            context.investigation_id,
            len(result.claims),
        )
        return OrchestrationOutcome.COMPLETED

    async def _handle_failure(
        self,
        context: InvestigationContext,
        exc: Exception,
        attempt_number: int,
        is_last_attempt: bool,
        worker_identity: str,
    ) -> OrchestrationOutcome:
        error_class = classify_error(exc)
        attempt_audit = exc.attempt_audit if isinstance(exc, InvestigatorExecutionError) else None
        status_code = error_status_code(unwrap_error(exc))
        message = format_error_for_log(exc)

        if error_class is ErrorClass.NON_RETRYABLE or is_last_attempt:
            async with transaction(self.session_factory) as session:
                failed = await session.execute(
                    update(Investigation)
                    .where(
                        Investigation.id == context.investigation_id,
                        Investigation.status == CheckStatus.PROCESSING,
                    )
                    .values(status=CheckStatus.FAILED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if failed.rowcount != 1:
                    logger.warning(
                        "[ORCHESTRATOR] Investigation %s left PROCESSING before its failure was recorded",
                        context.investigation_id,
                    )
                    return OrchestrationOutcome.DUPLICATE_DISCARDED
                if attempt_audit is not None:
                    await persist_attempt_audit(
                        session, context.investigation_id, attempt_number, AttemptOutcome.FAILED, attempt_audit
                    )
                await _release_lease(session, context.run_id, worker_identity)

            logger.error(
                "[ORCHESTRATOR] Investigation %s FAILED (%s, attempt %s): %s",
                context.investigation_id,
                error_class.value,
                attempt_number,
                message,
            )
            return OrchestrationOutcome.FAILED

        async with transaction(self.session_factory) as session:
            # No-op guarded write: holds the row lock so a concurrent COMPLETE
            # cannot land between this check and the audit write.
            still_processing = await session.execute(
                update(Investigation)
                .where(
                    Investigation.id == context.investigation_id,
                    Investigation.status == CheckStatus.PROCESSING,
                )
                .values(status=CheckStatus.PROCESSING)
                .execution_options(synchronize_session=False)
            )
            if still_processing.rowcount != 1:
                logger.warning(
                    "[ORCHESTRATOR] Investigation %s left PROCESSING before its retry was scheduled",
                    context.investigation_id,
                )
                return OrchestrationOutcome.DUPLICATE_DISCARDED
            if attempt_audit is not None:
                await persist_attempt_audit(
                    session, context.investigation_id, attempt_number, AttemptOutcome.FAILED, attempt_audit
                )
            await _release_lease(
                session, context.run_id, worker_identity, recover_after_seconds=self.recovery_grace_seconds
            )

        logger.warning(
            "[ORCHESTRATOR] Investigation %s attempt %s failed transiently: %s",
            context.investigation_id,
            attempt_number,
            message,
        )
        raise TransientProviderError(message, status_code) from exc


def build_investigation_job_handler(orchestrator: InvestigationOrchestrator):
    """Adapt the orchestrator to the job queue's ``handler(payload, context)`` signature."""

    async def handle(payload, context):
        return await orchestrator.orchestrate(
            UUID(payload["run_id"]),
            attempt_number=context.attempt_number,
            is_last_attempt=context.is_last_attempt,
            worker_identity=context.worker_identity,
        )

    return handle
