"""
Content identity resolution.

Turns client-observed post content into a content-addressed, provenance
tagged PostVersion:

    observed text -> normalize -> hash
                  -> authoritative re-fetch -> SERVER_VERIFIED | CLIENT_FALLBACK
                  -> Post / ContentBlob / ImageOccurrenceSet / PostVersion upsert

A server copy that disagrees with the observation is rejected outright with
ContentMismatchError and nothing is written.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errata_backend.db_helpers import create_or_find_by_unique_constraint
from errata_backend.db_session import transaction
from errata_backend.enums import ContentProvenance, Platform
from errata_backend.models import (
    ContentBlob,
    ImageOccurrence as ImageOccurrenceRow,
    ImageOccurrenceSet,
    Post,
    PostVersion,
    utcnow,
)
from errata_backend.schemas import ViewPostRequest
from errata_backend.services.canonical_fetcher import (
    CanonicalFetchRequest,
    CanonicalFetchResult,
    fetch_canonical_content,
)
from errata_backend.services.content_normalization import (
    hash_content,
    lesswrong_html_to_normalized_text,
    normalize_content,
    word_count,
)
from errata_backend.services.image_occurrences import (
    ImageOccurrence,
    compute_version_hash,
    hash_image_occurrences,
    validate_and_sort_image_occurrences,
)
from errata_backend.services.investigation_errors import (
    ContentMismatchError,
    InternalConsistencyError,
)

logger = logging.getLogger(__name__)

CanonicalFetcher = Callable[[CanonicalFetchRequest], Awaitable[CanonicalFetchResult]]


@dataclass(frozen=True)
class ResolvedContent:
    provenance: ContentProvenance
    content_text: str
    content_hash: str
    fetch_failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RegisteredVersion:
    post_id: UUID
    post_version_id: UUID
    platform: Platform
    external_id: str
    url: str
    version_hash: str
    content_hash: str
    content_text: str
    word_count: int
    content_provenance: ContentProvenance


def observed_content_text(request: ViewPostRequest) -> str:
    if request.platform is Platform.LESSWRONG and request.observed_html:
        return lesswrong_html_to_normalized_text(request.observed_html)
    return normalize_content(request.observed_content_text)


def to_canonical_fetch_request(request: ViewPostRequest) -> CanonicalFetchRequest:
    return CanonicalFetchRequest(
        platform=request.platform,
        external_id=request.external_id,
        url=request.url,
        wikipedia_language=request.wikipedia.language_code if request.wikipedia else None,
        wikipedia_revision_id=str(request.wikipedia.revision_id) if request.wikipedia else None,
    )


def resolve_canonical_content_version(
    observed_text: str,
    observed_hash: str,
    canonical: CanonicalFetchResult,
) -> ResolvedContent:
    if canonical.provenance is ContentProvenance.SERVER_VERIFIED:
        if canonical.content_hash != observed_hash:
            raise ContentMismatchError(observed_hash, canonical.content_hash)
        return ResolvedContent(
            provenance=ContentProvenance.SERVER_VERIFIED,
            content_text=canonical.content_text,
            content_hash=canonical.content_hash,
        )

    return ResolvedContent(
        provenance=ContentProvenance.CLIENT_FALLBACK,
        content_text=observed_text,
        content_hash=observed_hash,
        fetch_failure_reason=canonical.fetch_failure_reason or "canonical fetch failed",
    )


# ---------------------------------------------------------------------------
# Storage chain
# ---------------------------------------------------------------------------

async def _upsert_post(session: AsyncSession, platform: Platform, external_id: str, url: str) -> Post:
    async def find_existing():
        result = await session.execute(
            select(Post).where(Post.platform == platform, Post.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def create():
        post = Post(platform=platform, external_id=external_id, url=url)
        session.add(post)
        await session.flush()
        return post

    post = await create_or_find_by_unique_constraint(session, find_existing, create)
    if post.url != url:
        post.url = url
        await session.flush()
    return post


async def _get_or_create_content_blob(session: AsyncSession, content: ResolvedContent) -> ContentBlob:
    async def find_existing():
        result = await session.execute(
            select(ContentBlob).where(ContentBlob.content_hash == content.content_hash)
        )
        return result.scalar_one_or_none()

    async def create():
        blob = ContentBlob(
            content_hash=content.content_hash,
            content_text=content.content_text,
            word_count=word_count(content.content_text),
        )
        session.add(blob)
        await session.flush()
        return blob

    def assert_equivalent(blob: ContentBlob) -> None:
        if blob.content_text != content.content_text:
            raise InternalConsistencyError(
                f"Content hash collision for {content.content_hash}: stored text differs"
            )

    return await create_or_find_by_unique_constraint(session, find_existing, create, assert_equivalent)


async def load_image_occurrences(session: AsyncSession, occurrence_set_id: UUID) -> List[ImageOccurrence]:
    result = await session.execute(
        select(ImageOccurrenceRow)
        .where(ImageOccurrenceRow.occurrence_set_id == occurrence_set_id)
        .order_by(ImageOccurrenceRow.original_index)
    )
    return [
        ImageOccurrence(
            original_index=row.original_index,
            normalized_text_offset=row.normalized_text_offset,
            source_url=row.source_url,
            caption_text=row.caption_text,
        )
        for row in result.scalars().all()
    ]


async def _get_or_create_image_occurrence_set(
    session: AsyncSession, occurrences: List[ImageOccurrence], occurrences_hash: str
) -> ImageOccurrenceSet:
    async def find_existing():
        result = await session.execute(
            select(ImageOccurrenceSet).where(ImageOccurrenceSet.occurrences_hash == occurrences_hash)
        )
        return result.scalar_one_or_none()

    async def create():
        occurrence_set = ImageOccurrenceSet(occurrences_hash=occurrences_hash)
        session.add(occurrence_set)
        await session.flush()
        session.add_all(
            ImageOccurrenceRow(
                occurrence_set_id=occurrence_set.id,
                original_index=occurrence.original_index,
                normalized_text_offset=occurrence.normalized_text_offset,
                source_url=occurrence.source_url,
                caption_text=occurrence.caption_text,
            )
            for occurrence in occurrences
        )
        await session.flush()
        return occurrence_set

    occurrence_set = await create_or_find_by_unique_constraint(session, find_existing, create)
    stored = await load_image_occurrences(session, occurrence_set.id)
    if stored != occurrences:
        raise InternalConsistencyError(
            f"Image occurrence hash collision for {occurrences_hash}: stored occurrences differ"
        )
    return occurrence_set


async def _upsert_post_version(
    session: AsyncSession,
    post: Post,
    blob: ContentBlob,
    occurrence_set: ImageOccurrenceSet,
    content: ResolvedContent,
) -> PostVersion:
    version_hash = compute_version_hash(blob.content_hash, occurrence_set.occurrences_hash)
    now = utcnow()
    created = False

    async def find_existing():
        result = await session.execute(
            select(PostVersion).where(
                PostVersion.post_id == post.id, PostVersion.version_hash == version_hash
            )
        )
        return result.scalar_one_or_none()

    async def create():
        nonlocal created
        is_verified = content.provenance is ContentProvenance.SERVER_VERIFIED
        version = PostVersion(
            post_id=post.id,
            version_hash=version_hash,
            content_blob_id=blob.id,
            image_occurrence_set_id=occurrence_set.id,
            content_provenance=content.provenance,
            fetch_failure_reason=None if is_verified else content.fetch_failure_reason,
            server_verified_at=now if is_verified else None,
            first_seen_at=now,
            last_seen_at=now,
            seen_count=1,
        )
        session.add(version)
        await session.flush()
        created = True
        return version

    def assert_equivalent(version: PostVersion) -> None:
        if version.content_blob_id != blob.id or version.image_occurrence_set_id != occurrence_set.id:
            raise InternalConsistencyError(f"Post version hash collision for {version_hash}")

    version = await create_or_find_by_unique_constraint(session, find_existing, create, assert_equivalent)

    if not created:
        await session.execute(
            update(PostVersion)
            .where(PostVersion.id == version.id)
            .values(last_seen_at=now, seen_count=PostVersion.seen_count + 1)
        )

    if content.provenance is ContentProvenance.SERVER_VERIFIED:
        # Upgrade every fallback version of this post that carries the same text.
        result = await session.execute(
            update(PostVersion)
            .where(
                PostVersion.post_id == post.id,
                PostVersion.content_blob_id == blob.id,
                PostVersion.content_provenance == ContentProvenance.CLIENT_FALLBACK,
            )
            .values(
                content_provenance=ContentProvenance.SERVER_VERIFIED,
                fetch_failure_reason=None,
                server_verified_at=now,
            )
        )
        if result.rowcount:
            logger.info(
                "[IDENTITY] Upgraded %s post version(s) of post %s to SERVER_VERIFIED",
                result.rowcount,
                post.id,
            )

    await session.refresh(version)
    return version


async def register_observed_version(
    session_factory: async_sessionmaker,
    request: ViewPostRequest,
    fetcher: CanonicalFetcher = fetch_canonical_content,
) -> RegisteredVersion:
    """Resolve and persist the content identity of one observed post view."""
    observed_text = observed_content_text(request)
    observed_hash = hash_content(observed_text)

    canonical = await fetcher(to_canonical_fetch_request(request))
    content = resolve_canonical_content_version(observed_text, observed_hash, canonical)
    if content.provenance is ContentProvenance.CLIENT_FALLBACK:
        logger.info(
            "[IDENTITY] %s %s stored as CLIENT_FALLBACK: %s",
            request.platform.value,
            request.external_id,
            content.fetch_failure_reason,
        )

    occurrences = validate_and_sort_image_occurrences(
        request.observed_image_occurrences, len(content.content_text)
    )
    occurrences_hash = hash_image_occurrences(occurrences)

    async with transaction(session_factory) as session:
        post = await _upsert_post(session, request.platform, request.external_id, request.url)
        blob = await _get_or_create_content_blob(session, content)
        occurrence_set = await _get_or_create_image_occurrence_set(session, occurrences, occurrences_hash)
        version = await _upsert_post_version(session, post, blob, occurrence_set, content)

        return RegisteredVersion(
            post_id=post.id,
            post_version_id=version.id,
            platform=post.platform,
            external_id=post.external_id,
            url=post.url,
            version_hash=version.version_hash,
            content_hash=blob.content_hash,
            content_text=blob.content_text,
            word_count=blob.word_count,
            content_provenance=version.content_provenance,
        )
