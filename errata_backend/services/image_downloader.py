"""
Image download and storage for multimodal investigations.

Every hop is checked against host_safety before the request, and the host is
re-resolved after the response: the two address sets must overlap, which
narrows DNS rebinding windows. Redirects are followed by hand so each target
gets the same checks.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import urljoin, urlsplit
from uuid import UUID

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errata_backend.config import (
    FETCHER_USER_AGENT,
    IMAGE_DOWNLOAD_TIMEOUT_SECONDS,
    MAX_IMAGE_BYTES,
    MAX_IMAGES_PER_INVESTIGATION,
    MAX_REDIRECT_HOPS,
)
from errata_backend.db_helpers import create_or_find_by_unique_constraint
from errata_backend.db_session import transaction
from errata_backend.enums import ImageResolution
from errata_backend.models import ImageBlob, InvestigationImage
from errata_backend.services.content_normalization import sha256_hex
from errata_backend.services.host_safety import has_address_intersection, resolve_public_host_addresses
from errata_backend.services.image_occurrences import ImageOccurrence
from errata_backend.services.investigator_input import InvestigatorImageOccurrence, ResolvedImage

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


@dataclass(frozen=True)
class DownloadedImage:
    url: str
    mime_type: str
    data: bytes


def parse_image_content_type(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    normalized = header.split(";", 1)[0].strip().lower()
    return normalized if normalized.startswith("image/") else None


def is_fetchable_image_url(url: str) -> bool:
    try:
        parsed = urlsplit(url.strip())
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    return not (parsed.username or parsed.password)


def unique_image_urls(urls: Sequence[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for url in urls:
        candidate = url.strip()
        if candidate and is_fetchable_image_url(candidate):
            seen.setdefault(candidate, None)
    return list(seen)


async def _read_within_limit(response: httpx.Response, max_bytes: int) -> Optional[bytes]:
    chunks = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > max_bytes:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    max_bytes: int = MAX_IMAGE_BYTES,
    max_redirect_hops: int = MAX_REDIRECT_HOPS,
) -> Optional[DownloadedImage]:
    """Fetch one image, or return None if it is unsafe, unreachable, not an image or too large."""
    current_url = url
    try:
        for _hop in range(max_redirect_hops + 1):
            if not is_fetchable_image_url(current_url):
                return None
            hostname = urlsplit(current_url).hostname
            before = await resolve_public_host_addresses(hostname)
            if before is None:
                logger.info("[IMAGES] Refusing non-public image host %s", hostname)
                return None

            request = client.build_request("GET", current_url, headers={"Accept": "image/*"})
            response = await client.send(request, stream=True, follow_redirects=False)
            try:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if not location:
                        return None
                    current_url = urljoin(current_url, location)
                    continue

                if response.status_code != 200:
                    return None

                after = await resolve_public_host_addresses(hostname)
                if after is None or not has_address_intersection(before, after):
                    logger.warning("[IMAGES] Address set for %s changed during download", hostname)
                    return None

                mime_type = parse_image_content_type(response.headers.get("content-type"))
                if mime_type is None:
                    return None

                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > max_bytes:
                    return None

                data = await _read_within_limit(response, max_bytes)
                if data is None:
                    return None
                return DownloadedImage(url=current_url, mime_type=mime_type, data=data)
            finally:
                await response.aclose()
    except httpx.HTTPError as exc:
        logger.info("[IMAGES] Download failed for %s: %s", url, exc)
        return None

    logger.info("[IMAGES] Too many redirects for %s", url)
    return None


async def _get_or_create_image_blob(
    session: AsyncSession, source_url: str, image: DownloadedImage
) -> ImageBlob:
    content_hash = sha256_hex(image.data)

    async def find_existing():
        result = await session.execute(select(ImageBlob).where(ImageBlob.content_hash == content_hash))
        return result.scalar_one_or_none()

    async def create():
        blob = ImageBlob(
            content_hash=content_hash,
            original_url=source_url,
            mime_type=image.mime_type,
            size_bytes=len(image.data),
            data=image.data,
        )
        session.add(blob)
        await session.flush()
        return blob

    return await create_or_find_by_unique_constraint(session, find_existing, create)


async def resolve_investigation_images(
    session_factory: async_sessionmaker,
    investigation_id: UUID,
    occurrences: Sequence[ImageOccurrence],
    client: Optional[httpx.AsyncClient] = None,
    max_images: int = MAX_IMAGES_PER_INVESTIGATION,
) -> List[InvestigatorImageOccurrence]:
    """
    Download the images behind ``occurrences`` and record them for the investigation.

    The first ``max_images`` distinct URLs are downloaded; occurrences past that
    budget are OMITTED, and those whose download failed are MISSING. The
    investigation's InvestigationImage rows are replaced in one transaction.
    """
    if not occurrences:
        return []

    budget_urls = unique_image_urls([occurrence.source_url for occurrence in occurrences])[:max_images]

    downloaded: Dict[str, DownloadedImage] = {}
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            timeout=IMAGE_DOWNLOAD_TIMEOUT_SECONDS,
            headers={"User-Agent": FETCHER_USER_AGENT},
        )
    try:
        for url in budget_urls:
            image = await download_image(client, url)
            if image is not None:
                downloaded[url] = image
    finally:
        if owns_client:
            await client.aclose()

    resolved: Dict[str, ResolvedImage] = {}
    async with transaction(session_factory) as session:
        blob_ids: List[UUID] = []
        for url, image in downloaded.items():
            blob = await _get_or_create_image_blob(session, url, image)
            resolved[url] = ResolvedImage(content_hash=blob.content_hash, mime_type=blob.mime_type, data=image.data)
            if blob.id not in blob_ids:
                blob_ids.append(blob.id)

        await session.execute(
            delete(InvestigationImage).where(InvestigationImage.investigation_id == investigation_id)
        )
        session.add_all(
            InvestigationImage(investigation_id=investigation_id, image_blob_id=blob_id, image_order=order)
            for order, blob_id in enumerate(blob_ids)
        )

    logger.info(
        "[IMAGES] Investigation %s: %s/%s image URL(s) resolved",
        investigation_id,
        len(resolved),
        len(budget_urls),
    )

    budget = set(budget_urls)
    result = []
    for occurrence in occurrences:
        url = occurrence.source_url.strip()
        if url in resolved:
            resolution = ImageResolution.RESOLVED
        elif url in budget:
            resolution = ImageResolution.MISSING
        elif is_fetchable_image_url(url):
            resolution = ImageResolution.OMITTED
        else:
            resolution = ImageResolution.MISSING
        result.append(
            InvestigatorImageOccurrence(
                original_index=occurrence.original_index,
                normalized_text_offset=occurrence.normalized_text_offset,
                source_url=occurrence.source_url,
                resolution=resolution,
                caption_text=occurrence.caption_text,
                image=resolved.get(url),
            )
        )
    return result
