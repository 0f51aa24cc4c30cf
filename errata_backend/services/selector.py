"""
Periodic sweep that puts stalled investigations back on the queue.

Picks PENDING investigations (their job may have been lost) and PROCESSING
ones whose run can be recovered, and passes each through
ensure_investigation_queued. Re-enqueueing is idempotent thanks to the job key.
"""

import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from errata_backend.config import SELECTOR_BATCH_LIMIT
from errata_backend.enums import CheckStatus, ContentProvenance
from errata_backend.models import ContentBlob, Investigation, InvestigationRun, Post, PostVersion, utcnow
from errata_backend.services.content_identity import RegisteredVersion
from errata_backend.services.investigation_lifecycle import RunQueue, ensure_investigation_queued
from errata_backend.services.run_lease import recoverable_run_predicate

logger = logging.getLogger(__name__)


async def requeue_stalled_investigations(
    session_factory: async_sessionmaker,
    queue: RunQueue,
    limit: int = SELECTOR_BATCH_LIMIT,
) -> int:
    """Returns the number of investigations enqueued."""
    now = utcnow()
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(Investigation, Post, ContentBlob, PostVersion)
                .join(Post, Post.id == Investigation.post_id)
                .join(ContentBlob, ContentBlob.content_hash == Investigation.content_hash)
                .outerjoin(PostVersion, PostVersion.id == Investigation.post_version_id)
                .outerjoin(InvestigationRun, InvestigationRun.investigation_id == Investigation.id)
                .where(
                    or_(
                        Investigation.status == CheckStatus.PENDING,
                        and_(
                            Investigation.status == CheckStatus.PROCESSING,
                            or_(InvestigationRun.id.is_(None), recoverable_run_predicate(now)),
                        ),
                    )
                )
                .order_by(Investigation.created_at)
                .limit(limit)
            )
        ).all()

    enqueued = 0
    for investigation, post, blob, version in rows:
        identity = RegisteredVersion(
            post_id=post.id,
            post_version_id=investigation.post_version_id,
            platform=post.platform,
            external_id=post.external_id,
            url=post.url,
            version_hash=version.version_hash if version is not None else "",
            content_hash=blob.content_hash,
            content_text=blob.content_text,
            word_count=blob.word_count,
            content_provenance=(
                version.content_provenance if version is not None else ContentProvenance.CLIENT_FALLBACK
            ),
        )
        result = await ensure_investigation_queued(
            session_factory,
            identity,
            investigation.prompt_id,
            queue=queue,
            provider=investigation.provider,
            model=investigation.model,
            reject_over_word_limit_on_create=False,
        )
        if result.enqueued:
            enqueued += 1

    logger.info("[SELECTOR] Re-enqueued %s of %s stalled investigation(s)", enqueued, len(rows))
    return enqueued
