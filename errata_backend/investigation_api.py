"""Post registration and investigation intake API endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errata_backend.db_session import get_async_session, get_session_factory_dependency
from errata_backend.models import Claim, ClaimSource, Investigation
from errata_backend.schemas import (
    ClaimResponse,
    ClaimSourceResponse,
    InvestigateNowResponse,
    InvestigationDetailResponse,
    RegisteredVersionResponse,
    ViewPostRequest,
)
from errata_backend.services.canonical_fetcher import fetch_canonical_content
from errata_backend.services.content_identity import CanonicalFetcher, register_observed_version
from errata_backend.services.image_occurrences import ImageOccurrenceValidationError
from errata_backend.services.investigation_errors import (
    ContentMismatchError,
    InternalConsistencyError,
    InvestigationWordLimitError,
)
from errata_backend.services.investigation_lifecycle import ensure_investigation_queued_with_update_metadata
from errata_backend.services.job_queue import InvestigationQueue, build_investigation_queue
from errata_backend.services.prompt_registry import get_or_create_current_prompt

logger = logging.getLogger(__name__)
router = APIRouter(tags=["investigations"])

_queue: Optional[InvestigationQueue] = None


def get_investigation_queue() -> InvestigationQueue:
    global _queue
    if _queue is None:
        _queue = build_investigation_queue()
    return _queue


def get_canonical_fetcher() -> CanonicalFetcher:
    return fetch_canonical_content


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ContentMismatchError):
        return HTTPException(
            status_code=409,
            detail={
                "code": "CONTENT_MISMATCH",
                "message": str(exc),
                "observed_hash": exc.observed_hash,
                "canonical_hash": exc.canonical_hash,
            },
        )
    if isinstance(exc, InvestigationWordLimitError):
        return HTTPException(
            status_code=413,
            detail={
                "code": "WORD_LIMIT_EXCEEDED",
                "limit": exc.limit,
                "observed_word_count": exc.observed_word_count,
            },
        )
    if isinstance(exc, ImageOccurrenceValidationError):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)})
    return HTTPException(status_code=500, detail="An unexpected error occurred")


@router.post("/api/posts/view", response_model=RegisteredVersionResponse)
async def view_post(
    request: ViewPostRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory_dependency),
    fetcher: CanonicalFetcher = Depends(get_canonical_fetcher),
):
    """Register what the client saw and report how it was verified."""
    try:
        version = await register_observed_version(session_factory, request, fetcher=fetcher)
    except (ContentMismatchError, ImageOccurrenceValidationError) as exc:
        logger.info("[POSTS] Rejected view of %s %s: %s", request.platform.value, request.external_id, exc)
        raise _to_http_error(exc)
    except InternalConsistencyError as exc:
        logger.exception("[POSTS] Consistency failure registering %s %s", request.platform.value, request.external_id)
        raise _to_http_error(exc)

    return RegisteredVersionResponse(
        post_id=version.post_id,
        post_version_id=version.post_version_id,
        version_hash=version.version_hash,
        content_hash=version.content_hash,
        content_provenance=version.content_provenance,
        word_count=version.word_count,
    )


@router.post("/api/investigations/investigate-now", response_model=InvestigateNowResponse)
async def investigate_now(
    request: ViewPostRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory_dependency),
    queue: InvestigationQueue = Depends(get_investigation_queue),
    fetcher: CanonicalFetcher = Depends(get_canonical_fetcher),
):
    try:
        version = await register_observed_version(session_factory, request, fetcher=fetcher)
        prompt = await get_or_create_current_prompt(session_factory)
        result = await ensure_investigation_queued_with_update_metadata(
            session_factory,
            version,
            prompt.id,
            queue=queue,
            allow_requeue_failed=True,
        )
    except (ContentMismatchError, InvestigationWordLimitError, ImageOccurrenceValidationError) as exc:
        logger.info("[INVESTIGATE] Rejected %s %s: %s", request.platform.value, request.external_id, exc)
        raise _to_http_error(exc)
    except InternalConsistencyError as exc:
        logger.exception("[INVESTIGATE] Consistency failure for %s %s", request.platform.value, request.external_id)
        raise _to_http_error(exc)

    return InvestigateNowResponse(
        investigation_id=result.investigation.id,
        status=result.investigation.status,
        created=result.created,
        enqueued=result.enqueued,
        content_provenance=version.content_provenance,
    )


@router.get("/api/investigations/health")
async def health_check():
    return {"status": "healthy", "service": "investigations"}


@router.get("/api/investigations/{investigation_id}", response_model=InvestigationDetailResponse)
async def get_investigation(investigation_id: UUID, db: AsyncSession = Depends(get_async_session)):
    try:
        investigation = await db.get(Investigation, investigation_id)
        if investigation is None:
            raise HTTPException(status_code=404, detail="Investigation not found")

        claims = (
            await db.execute(
                select(Claim).where(Claim.investigation_id == investigation_id).order_by(Claim.claim_order)
            )
        ).scalars().all()
        sources_by_claim = {}
        if claims:
            sources = (
                await db.execute(
                    select(ClaimSource)
                    .where(ClaimSource.claim_id.in_([claim.id for claim in claims]))
                    .order_by(ClaimSource.claim_id, ClaimSource.source_order)
                )
            ).scalars().all()
            for source in sources:
                sources_by_claim.setdefault(source.claim_id, []).append(
                    ClaimSourceResponse(url=source.url, title=source.title, snippet=source.snippet)
                )

        return InvestigationDetailResponse(
            investigation_id=investigation.id,
            post_id=investigation.post_id,
            content_hash=investigation.content_hash,
            status=investigation.status,
            checked_at=investigation.checked_at,
            model_version=investigation.model_version,
            parent_investigation_id=investigation.parent_investigation_id,
            claims=[
                ClaimResponse(
                    text=claim.text,
                    context=claim.context,
                    summary=claim.summary,
                    reasoning=claim.reasoning,
                    confidence=claim.confidence,
                    sources=sources_by_claim.get(claim.id, []),
                )
                for claim in claims
            ],
        )

    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("[INVESTIGATIONS] Failed to load investigation %s", investigation_id)
        raise HTTPException(status_code=500, detail=str(exc))
