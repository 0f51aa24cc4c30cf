"""Authoritative server-side re-fetch of post content for provenance checks."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from errata_backend.config import (
    CANONICAL_FETCH_TIMEOUT_SECONDS,
    FETCHER_USER_AGENT,
    LESSWRONG_GRAPHQL_URL,
)
from errata_backend.enums import ContentProvenance, Platform
from errata_backend.services.content_normalization import (
    WIKIPEDIA_LANGUAGE_CODE_RE,
    hash_content,
    lesswrong_html_to_normalized_text,
    wikipedia_html_to_normalized_text,
)

logger = logging.getLogger(__name__)

LESSWRONG_POST_QUERY = """
query GetPost($id: String!) {
  post(input: { selector: { _id: $id } }) {
    result {
      _id
      contents {
        html
      }
    }
  }
}
"""


@dataclass(frozen=True)
class CanonicalFetchRequest:
    platform: Platform
    external_id: str
    url: str
    wikipedia_language: Optional[str] = None
    wikipedia_revision_id: Optional[str] = None


@dataclass(frozen=True)
class CanonicalFetchResult:
    provenance: ContentProvenance
    content_text: Optional[str] = None
    content_hash: Optional[str] = None
    fetch_failure_reason: Optional[str] = None

    @classmethod
    def server_verified(cls, content_text: str) -> "CanonicalFetchResult":
        return cls(
            provenance=ContentProvenance.SERVER_VERIFIED,
            content_text=content_text,
            content_hash=hash_content(content_text),
        )

    @classmethod
    def client_fallback(cls, reason: str) -> "CanonicalFetchResult":
        return cls(
            provenance=ContentProvenance.CLIENT_FALLBACK,
            fetch_failure_reason=reason or "canonical fetch failed",
        )


def _extract_lesswrong_html(payload: Any) -> Optional[str]:
    try:
        html = payload["data"]["post"]["result"]["contents"]["html"]
    except (KeyError, TypeError):
        return None
    return html if isinstance(html, str) and html else None


def _extract_wikipedia_parse(payload: Any) -> Optional[Dict[str, str]]:
    if not isinstance(payload, dict) or not isinstance(payload.get("parse"), dict):
        return None
    parse = payload["parse"]
    text = parse.get("text")
    revision_id = parse.get("revid")
    if not isinstance(text, str):
        return None
    if isinstance(revision_id, bool) or not (
        isinstance(revision_id, int) or (isinstance(revision_id, str) and revision_id.isdigit())
    ):
        return None
    return {"html": text, "revision_id": str(revision_id)}


async def _fetch_lesswrong(client: httpx.AsyncClient, request: CanonicalFetchRequest) -> CanonicalFetchResult:
    response = await client.post(
        LESSWRONG_GRAPHQL_URL,
        json={"query": LESSWRONG_POST_QUERY, "variables": {"id": request.external_id}},
    )
    if response.status_code >= 400:
        return CanonicalFetchResult.client_fallback(f"LW API returned {response.status_code}")

    html = _extract_lesswrong_html(response.json())
    if html is None:
        return CanonicalFetchResult.client_fallback("Could not extract HTML from LW API response")

    return CanonicalFetchResult.server_verified(lesswrong_html_to_normalized_text(html))


async def _fetch_wikipedia(client: httpx.AsyncClient, request: CanonicalFetchRequest) -> CanonicalFetchResult:
    language = (request.wikipedia_language or "").strip().lower()
    revision_id = (request.wikipedia_revision_id or "").strip()
    if not language or not revision_id or not WIKIPEDIA_LANGUAGE_CODE_RE.match(language):
        return CanonicalFetchResult.client_fallback(
            "Wikipedia canonical fetch requires valid language and revision metadata"
        )

    response = await client.get(
        f"https://{language}.wikipedia.org/w/api.php",
        params={
            "action": "parse",
            "format": "json",
            "formatversion": "2",
            "prop": "text|revid",
            "oldid": revision_id,
        },
    )
    if response.status_code >= 400:
        return CanonicalFetchResult.client_fallback(f"Wikipedia parse API returned {response.status_code}")

    parsed = _extract_wikipedia_parse(response.json())
    if parsed is None:
        return CanonicalFetchResult.client_fallback(
            "Could not extract canonical article HTML from Wikipedia parse response"
        )
    if parsed["revision_id"] != revision_id:
        return CanonicalFetchResult.client_fallback(
            f"Wikipedia parse revision mismatch: expected {revision_id}, got {parsed['revision_id']}"
        )

    return CanonicalFetchResult.server_verified(wikipedia_html_to_normalized_text(parsed["html"]))


async def _fetch(client: httpx.AsyncClient, request: CanonicalFetchRequest) -> CanonicalFetchResult:
    if request.platform is Platform.LESSWRONG:
        return await _fetch_lesswrong(client, request)
    if request.platform is Platform.WIKIPEDIA:
        return await _fetch_wikipedia(client, request)
    # X and Substack have no public canonical content API we can rely on.
    return CanonicalFetchResult.client_fallback(
        f"{request.platform.value} canonical server fetch unavailable"
    )


async def fetch_canonical_content(
    request: CanonicalFetchRequest,
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = CANONICAL_FETCH_TIMEOUT_SECONDS,
) -> CanonicalFetchResult:
    """
    Fetch the authoritative text for a post.

    Never raises for upstream problems: any failure becomes a CLIENT_FALLBACK
    result carrying the reason.
    """
    try:
        if client is not None:
            return await asyncio.wait_for(_fetch(client, request), timeout_seconds)

        timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": FETCHER_USER_AGENT},
        ) as owned_client:
            return await asyncio.wait_for(_fetch(owned_client, request), timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("[CANONICAL] Fetch timed out for %s %s", request.platform.value, request.external_id)
        return CanonicalFetchResult.client_fallback(
            f"Canonical fetch timed out after {timeout_seconds:g}s"
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning(
            "[CANONICAL] Fetch failed for %s %s: %s", request.platform.value, request.external_id, exc
        )
        return CanonicalFetchResult.client_fallback(str(exc) or type(exc).__name__)
