"""Persistence of investigator attempt audits, idempotent per attempt number."""

import logging
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from errata_backend.db_helpers import create_or_find_by_unique_constraint
from errata_backend.enums import AttemptOutcome
from errata_backend.models import (
    InvestigationAttempt,
    InvestigationAttemptError,
    InvestigationAttemptRequestedTool,
    InvestigationAttemptToolCall,
    InvestigationAttemptUsage,
)
from errata_backend.schemas import InvestigationAttemptAudit
from errata_backend.services.investigation_errors import InternalConsistencyError

logger = logging.getLogger(__name__)

_CHILD_MODELS = (
    InvestigationAttemptRequestedTool,
    InvestigationAttemptToolCall,
    InvestigationAttemptUsage,
    InvestigationAttemptError,
)


def _validate_outcome(outcome: AttemptOutcome, audit: InvestigationAttemptAudit) -> None:
    if outcome is AttemptOutcome.SUCCEEDED and (audit.error is not None or audit.response is None):
        raise InternalConsistencyError("A SUCCEEDED attempt needs a response and no error")
    if outcome is AttemptOutcome.FAILED and audit.error is None:
        raise InternalConsistencyError("A FAILED attempt needs an error record")


def _apply_fields(attempt: InvestigationAttempt, outcome: AttemptOutcome, audit: InvestigationAttemptAudit) -> None:
    response = audit.response
    attempt.outcome = outcome
    attempt.started_at = audit.started_at
    attempt.completed_at = audit.completed_at
    attempt.request_model = audit.request_model
    attempt.request_instructions = audit.request_instructions
    attempt.request_input = audit.request_input
    attempt.request_max_output_tokens = audit.request_max_output_tokens
    attempt.response_id = response.response_id if response else None
    attempt.response_status = response.response_status if response else None
    attempt.response_model_version = response.response_model_version if response else None
    attempt.response_output_text = response.output_text if response else None
    attempt.response_output_items = response.output_items if response else None


async def persist_attempt_audit(
    session: AsyncSession,
    investigation_id: UUID,
    attempt_number: int,
    outcome: AttemptOutcome,
    audit: InvestigationAttemptAudit,
) -> InvestigationAttempt:
    """
    Write the audit for one attempt. A retry of the same attempt number
    overwrites the earlier row and replaces all of its child records.
    """
    _validate_outcome(outcome, audit)

    async def find_existing():
        result = await session.execute(
            select(InvestigationAttempt).where(
                InvestigationAttempt.investigation_id == investigation_id,
                InvestigationAttempt.attempt_number == attempt_number,
            )
        )
        return result.scalar_one_or_none()

    async def create():
        attempt = InvestigationAttempt(investigation_id=investigation_id, attempt_number=attempt_number)
        _apply_fields(attempt, outcome, audit)
        session.add(attempt)
        await session.flush()
        return attempt

    attempt = await create_or_find_by_unique_constraint(session, find_existing, create)
    _apply_fields(attempt, outcome, audit)

    for model in _CHILD_MODELS:
        await session.execute(delete(model).where(model.attempt_id == attempt.id))

    for order, tool in enumerate(audit.requested_tools):
        session.add(
            InvestigationAttemptRequestedTool(
                attempt_id=attempt.id,
                request_order=order,
                tool_type=str(tool.get("type", "unknown")),
                raw_definition=tool,
            )
        )

    response = audit.response
    if response is not None:
        for tool_call in response.tool_calls:
            session.add(
                InvestigationAttemptToolCall(
                    attempt_id=attempt.id,
                    output_index=tool_call.output_index,
                    provider_tool_call_id=tool_call.provider_tool_call_id,
                    tool_type=tool_call.tool_type,
                    status=tool_call.status,
                    raw_payload=tool_call.raw_payload,
                )
            )
        if response.usage is not None:
            session.add(
                InvestigationAttemptUsage(attempt_id=attempt.id, **response.usage.model_dump())
            )

    if audit.error is not None:
        session.add(InvestigationAttemptError(attempt_id=attempt.id, **audit.error.model_dump()))

    await session.flush()
    logger.debug(
        "[AUDIT] Persisted %s attempt %s for investigation %s",
        outcome.value,
        attempt_number,
        investigation_id,
    )
    return attempt
