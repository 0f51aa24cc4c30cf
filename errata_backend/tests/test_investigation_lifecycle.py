from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from errata_backend.db_session import transaction
from errata_backend.enums import CheckStatus
from errata_backend.models import Investigation, InvestigationRun, utcnow
from errata_backend.services.content_identity import register_observed_version
from errata_backend.services.investigation_errors import InvestigationWordLimitError
from errata_backend.services.investigation_lifecycle import (
    NO_CHANGES_DIFF,
    build_line_diff,
    ensure_investigation_queued_with_update_metadata,
)
from errata_backend.services.selector import requeue_stalled_investigations


async def _update_investigation(session_factory, investigation_id, **values):
    async with transaction(session_factory) as session:
        await session.execute(update(Investigation).where(Investigation.id == investigation_id).values(**values))


async def _update_run(session_factory, run_id, **values):
    async with transaction(session_factory) as session:
        await session.execute(update(InvestigationRun).where(InvestigationRun.id == run_id).values(**values))


async def _investigation_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Investigation))).scalar_one()


@pytest.mark.asyncio
async def test_new_investigation_is_created_pending_and_enqueued(queued_investigation_factory, recording_queue):
    result = await queued_investigation_factory()

    assert result.created is True
    assert result.run_created is True
    assert result.enqueued is True
    assert result.investigation.status is CheckStatus.PENDING
    assert result.run.queued_at is not None
    assert recording_queue.enqueued == [result.run.id]


@pytest.mark.asyncio
async def test_same_content_reuses_investigation_and_run(
    session_factory, queued_investigation_factory, recording_queue
):
    first = await queued_investigation_factory()
    second = await queued_investigation_factory()

    assert second.created is False
    assert second.run_created is False
    assert second.investigation.id == first.investigation.id
    assert second.run.id == first.run.id
    # Still PENDING, so the run is offered to the queue again; the job key dedupes it.
    assert recording_queue.enqueued == [first.run.id, first.run.id]
    assert await _investigation_count(session_factory) == 1


@pytest.mark.asyncio
async def test_edited_content_gets_its_own_investigation(queued_investigation_factory, view_request_factory):
    first = await queued_investigation_factory(view_request_factory(text="Original wording of the post."))
    edited = await queued_investigation_factory(view_request_factory(text="Edited wording of the post."))

    assert edited.created is True
    assert edited.investigation.id != first.investigation.id
    assert edited.investigation.post_id == first.investigation.post_id


@pytest.mark.asyncio
async def test_word_limit_rejects_new_investigations_before_any_row(
    session_factory, queued_investigation_factory, recording_queue, view_request_factory
):
    request = view_request_factory(text="one two three four five six")

    with pytest.raises(InvestigationWordLimitError) as exc:
        await queued_investigation_factory(request, word_count_limit=5)

    assert exc.value.observed_word_count == 6
    assert exc.value.limit == 5
    assert await _investigation_count(session_factory) == 0
    assert recording_queue.enqueued == []


@pytest.mark.asyncio
async def test_word_limit_never_applies_to_existing_investigations(
    queued_investigation_factory, view_request_factory
):
    request = view_request_factory(text="one two three four five six")
    first = await queued_investigation_factory(request)

    again = await queued_investigation_factory(request, word_count_limit=5)

    assert again.created is False
    assert again.investigation.id == first.investigation.id


@pytest.mark.asyncio
async def test_word_limit_can_be_waived_on_create(queued_investigation_factory, view_request_factory):
    request = view_request_factory(text="one two three four five six")

    result = await queued_investigation_factory(
        request, word_count_limit=5, reject_over_word_limit_on_create=False
    )

    assert result.created is True


@pytest.mark.asyncio
async def test_complete_investigation_is_left_alone(session_factory, queued_investigation_factory, recording_queue):
    first = await queued_investigation_factory()
    checked_at = utcnow()
    await _update_investigation(
        session_factory, first.investigation.id, status=CheckStatus.COMPLETE, checked_at=checked_at
    )
    recording_queue.enqueued.clear()

    result = await queued_investigation_factory(allow_requeue_failed=True)

    assert result.investigation.status is CheckStatus.COMPLETE
    assert result.investigation.checked_at == checked_at
    assert result.enqueued is False
    assert recording_queue.enqueued == []


@pytest.mark.asyncio
async def test_failed_investigation_requeued_only_on_request(
    session_factory, queued_investigation_factory, recording_queue
):
    first = await queued_investigation_factory()
    await _update_investigation(session_factory, first.investigation.id, status=CheckStatus.FAILED)
    await _update_run(session_factory, first.run.id, lease_owner="worker-a", recover_after_at=utcnow())
    recording_queue.enqueued.clear()

    untouched = await queued_investigation_factory()
    assert untouched.investigation.status is CheckStatus.FAILED
    assert untouched.enqueued is False

    rearmed = await queued_investigation_factory(allow_requeue_failed=True)
    assert rearmed.investigation.id == first.investigation.id
    assert rearmed.investigation.status is CheckStatus.PENDING
    assert rearmed.investigation.checked_at is None
    assert rearmed.run.lease_owner is None
    assert rearmed.run.recover_after_at is None
    assert rearmed.enqueued is True
    assert recording_queue.enqueued == [first.run.id]


@pytest.mark.asyncio
async def test_stale_processing_investigation_is_recovered_and_enqueued(
    session_factory, queued_investigation_factory, recording_queue
):
    first = await queued_investigation_factory()
    await _update_investigation(session_factory, first.investigation.id, status=CheckStatus.PROCESSING)
    await _update_run(
        session_factory,
        first.run.id,
        lease_owner="crashed-worker",
        lease_expires_at=utcnow() - timedelta(seconds=1),
    )
    recording_queue.enqueued.clear()

    result = await queued_investigation_factory()

    assert result.investigation.status is CheckStatus.PENDING
    assert result.run.lease_owner is None
    assert result.enqueued is True
    assert recording_queue.enqueued == [first.run.id]


@pytest.mark.asyncio
async def test_live_processing_investigation_is_not_enqueued(
    session_factory, queued_investigation_factory, recording_queue
):
    first = await queued_investigation_factory()
    await _update_investigation(session_factory, first.investigation.id, status=CheckStatus.PROCESSING)
    await _update_run(
        session_factory,
        first.run.id,
        lease_owner="busy-worker",
        lease_expires_at=utcnow() + timedelta(seconds=60),
    )
    recording_queue.enqueued.clear()

    result = await queued_investigation_factory()

    assert result.investigation.status is CheckStatus.PROCESSING
    assert result.enqueued is False
    assert recording_queue.enqueued == []


@pytest.mark.asyncio
async def test_pending_run_hook_runs_before_enqueue(queued_investigation_factory, recording_queue):
    seen = []

    async def hook(session, investigation, run):
        seen.append((investigation.id, run.id, list(recording_queue.enqueued)))

    result = await queued_investigation_factory(on_pending_run=hook)

    assert seen == [(result.investigation.id, result.run.id, [])]
    assert recording_queue.enqueued == [result.run.id]


@pytest.mark.asyncio
async def test_enqueue_can_be_skipped_and_queue_is_required(queued_investigation_factory, recording_queue):
    skipped = await queued_investigation_factory(enqueue=False)
    assert skipped.enqueued is False
    assert recording_queue.enqueued == []

    with pytest.raises(ValueError):
        await queued_investigation_factory(queue=None)


# ============================================================================
# Stalled investigation sweep
# ============================================================================

@pytest.mark.asyncio
async def test_selector_requeues_pending_and_recoverable_investigations(
    session_factory, queued_investigation_factory, view_request_factory, recording_queue
):
    pending = await queued_investigation_factory(view_request_factory(external_id="pending"), enqueue=False)
    stale = await queued_investigation_factory(view_request_factory(external_id="stale"), enqueue=False)
    busy = await queued_investigation_factory(view_request_factory(external_id="busy"), enqueue=False)
    done = await queued_investigation_factory(view_request_factory(external_id="done"), enqueue=False)

    await _update_investigation(session_factory, stale.investigation.id, status=CheckStatus.PROCESSING)
    await _update_run(session_factory, stale.run.id, lease_owner=None, recover_after_at=utcnow() - timedelta(seconds=1))
    await _update_investigation(session_factory, busy.investigation.id, status=CheckStatus.PROCESSING)
    await _update_run(
        session_factory, busy.run.id, lease_owner="busy-worker", lease_expires_at=utcnow() + timedelta(seconds=60)
    )
    await _update_investigation(
        session_factory, done.investigation.id, status=CheckStatus.COMPLETE, checked_at=utcnow()
    )

    enqueued = await requeue_stalled_investigations(session_factory, recording_queue)

    assert enqueued == 2
    assert sorted(map(str, recording_queue.enqueued)) == sorted([str(pending.run.id), str(stale.run.id)])

    async with session_factory() as session:
        recovered = await session.get(Investigation, stale.investigation.id)
    assert recovered.status is CheckStatus.PENDING


@pytest.mark.asyncio
async def test_selector_waits_out_recovery_grace(session_factory, queued_investigation_factory, recording_queue):
    queued = await queued_investigation_factory(enqueue=False)
    await _update_investigation(session_factory, queued.investigation.id, status=CheckStatus.PROCESSING)
    await _update_run(
        session_factory, queued.run.id, lease_owner=None, recover_after_at=utcnow() + timedelta(seconds=60)
    )

    assert await requeue_stalled_investigations(session_factory, recording_queue) == 0
    assert recording_queue.enqueued == []


# ============================================================================
# Update lineage
# ============================================================================

ORIGINAL_TEXT = "The tower was completed in 1899."
EDITED_TEXT = "The tower was completed in 1889."


def test_line_diff_reports_only_changed_lines():
    assert build_line_diff("a\nb", "a\nb") == NO_CHANGES_DIFF
    assert build_line_diff("intro\nold line\noutro", "intro\nnew line\nadded\noutro") == (
        "Diff summary (line context):\n"
        "- Removed lines:\nold line\n"
        "+ Added lines:\nnew line\nadded"
    )
    assert build_line_diff("a\nb", "a\nb\nc").endswith("- Removed lines:\n(none)\n+ Added lines:\nc")


async def _register_verified(session_factory, view_request_factory, fetchers, text):
    return await register_observed_version(
        session_factory, view_request_factory(text=text), fetcher=fetchers["verified"](text)
    )


@pytest.mark.asyncio
async def test_edited_post_is_queued_as_update_of_its_verified_investigation(
    session_factory, prompt, recording_queue, view_request_factory, fetchers
):
    original = await _register_verified(session_factory, view_request_factory, fetchers, ORIGINAL_TEXT)
    first = await ensure_investigation_queued_with_update_metadata(
        session_factory, original, prompt.id, queue=recording_queue
    )
    assert first.investigation.parent_investigation_id is None
    await _update_investigation(
        session_factory, first.investigation.id, status=CheckStatus.COMPLETE, checked_at=utcnow()
    )

    edited = await _register_verified(session_factory, view_request_factory, fetchers, EDITED_TEXT)
    update_result = await ensure_investigation_queued_with_update_metadata(
        session_factory, edited, prompt.id, queue=recording_queue
    )

    assert update_result.created is True
    assert update_result.investigation.parent_investigation_id == first.investigation.id
    assert update_result.investigation.content_diff == build_line_diff(ORIGINAL_TEXT, EDITED_TEXT)
    assert recording_queue.enqueued == [first.run.id, update_result.run.id]

    # Viewing the checked text again finds the finished investigation, not an update of itself.
    again = await ensure_investigation_queued_with_update_metadata(
        session_factory, original, prompt.id, queue=recording_queue
    )
    assert again.investigation.id == first.investigation.id
    assert again.investigation.parent_investigation_id is None


@pytest.mark.asyncio
async def test_unverified_or_unfinished_investigations_are_not_update_sources(
    session_factory, prompt, recording_queue, view_request_factory, fetchers, queued_investigation_factory
):
    # CLIENT_FALLBACK content cannot anchor a diff even once COMPLETE.
    fallback = await queued_investigation_factory(view_request_factory(text=ORIGINAL_TEXT))
    await _update_investigation(
        session_factory, fallback.investigation.id, status=CheckStatus.COMPLETE, checked_at=utcnow()
    )
    # A verified investigation that is still PENDING cannot either.
    await ensure_investigation_queued_with_update_metadata(
        session_factory,
        await _register_verified(session_factory, view_request_factory, fetchers, "Second draft."),
        prompt.id,
        queue=recording_queue,
    )

    edited = await _register_verified(session_factory, view_request_factory, fetchers, EDITED_TEXT)
    result = await ensure_investigation_queued_with_update_metadata(
        session_factory, edited, prompt.id, queue=recording_queue
    )

    assert result.created is True
    assert result.investigation.parent_investigation_id is None
    assert result.investigation.content_diff is None
