"""
Pytest configuration and shared fixtures for the Errata backend tests.

This module provides:
- Database fixtures (a fresh SQLite file per test, or TEST_DATABASE_URL)
- Canonical fetcher stubs (server verified / client fallback)
- A recording queue double
- Factories for view requests and queued investigations
"""

import os
from typing import List, Optional
from uuid import UUID

import pytest
import pytest_asyncio

from errata_backend.db_session import build_engine, build_session_factory
from errata_backend.enums import Platform
from errata_backend.models import Base
from errata_backend.schemas import ImageOccurrenceInput, ViewPostRequest
from errata_backend.services.canonical_fetcher import CanonicalFetchRequest, CanonicalFetchResult
from errata_backend.services.content_identity import register_observed_version
from errata_backend.services.investigation_lifecycle import ensure_investigation_queued
from errata_backend.services.prompt_registry import get_or_create_current_prompt


DEFAULT_POST_TEXT = "The Eiffel Tower was completed in 1889 and stands in Paris."


# ============================================================================
# Test Database Configuration
# ============================================================================

@pytest.fixture
def test_database_url(tmp_path):
    """Get test database URL from environment or use a throwaway SQLite file."""
    return os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/errata_test.db")


@pytest_asyncio.fixture
async def test_engine(test_database_url):
    engine = build_engine(test_database_url)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


# ============================================================================
# Collaborator doubles
# ============================================================================

class RecordingQueue:
    """Stands in for InvestigationQueue; remembers which runs were enqueued."""

    def __init__(self):
        self.enqueued: List[UUID] = []

    async def enqueue_investigation_run(self, run_id: UUID) -> None:
        self.enqueued.append(run_id)


@pytest.fixture
def recording_queue():
    return RecordingQueue()


async def fallback_fetcher(request: CanonicalFetchRequest) -> CanonicalFetchResult:
    return CanonicalFetchResult.client_fallback(f"{request.platform.value} canonical server fetch unavailable")


def verified_fetcher(canonical_text: str):
    async def fetch(request: CanonicalFetchRequest) -> CanonicalFetchResult:
        return CanonicalFetchResult.server_verified(canonical_text)

    return fetch


# ============================================================================
# Data factories
# ============================================================================

def make_view_request(
    text: str = DEFAULT_POST_TEXT,
    platform: Platform = Platform.X,
    external_id: str = "post-1",
    url: Optional[str] = None,
    occurrences: Optional[List[dict]] = None,
    **overrides,
) -> ViewPostRequest:
    return ViewPostRequest(
        platform=platform,
        external_id=external_id,
        url=url or f"https://example.com/{external_id}",
        observed_content_text=text,
        observed_image_occurrences=[ImageOccurrenceInput(**item) for item in occurrences or []],
        **overrides,
    )


@pytest.fixture
def view_request_factory():
    return make_view_request


@pytest.fixture
def fetchers():
    return {"fallback": fallback_fetcher, "verified": verified_fetcher}


@pytest_asyncio.fixture
async def prompt(session_factory):
    return await get_or_create_current_prompt(session_factory)


@pytest.fixture
def queued_investigation_factory(session_factory, prompt, recording_queue):
    """Register a post view and create its PENDING investigation + run."""

    async def create(request: Optional[ViewPostRequest] = None, **kwargs):
        version = await register_observed_version(
            session_factory, request or make_view_request(), fetcher=fallback_fetcher
        )
        kwargs.setdefault("queue", recording_queue)
        return await ensure_investigation_queued(session_factory, version, prompt.id, **kwargs)

    return create
