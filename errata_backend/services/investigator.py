"""
Investigator contract and the Anthropic-backed implementation.

The orchestrator only depends on the ``Investigator`` protocol; workers build
a concrete investigator at startup and pass it in.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import anthropic
from pydantic import ValidationError

from errata_backend.config import (
    ANTHROPIC_API_KEY,
    INVESTIGATION_MAX_TOKENS,
    INVESTIGATION_MODEL,
    INVESTIGATION_TIMEOUT_SECONDS,
    TRACE_API_CALLS,
)
from errata_backend.enums import InvestigationProvider
from errata_backend.models import utcnow
from errata_backend.schemas import (
    AttemptErrorAudit,
    AttemptResponseAudit,
    AttemptToolCall,
    AttemptUsage,
    InvestigationAttemptAudit,
    InvestigationResult,
)
from errata_backend.services.investigation_errors import NonRetryableProviderError
from errata_backend.services.investigator_input import (
    InvestigatorInput,
    build_user_content,
    describe_user_content,
)
from errata_backend.services.prompt_registry import INVESTIGATION_SYSTEM_PROMPT, build_user_prompt

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 8}


# ============================================================================
# Errors
# ============================================================================

class InvestigatorStructuredOutputError(Exception):
    """The model's output did not match the investigation result contract."""


class InvestigatorExecutionError(Exception):
    """Wraps any investigator failure together with the audit of the attempt."""

    def __init__(self, cause: BaseException, attempt_audit: Optional[InvestigationAttemptAudit] = None):
        self.cause = cause
        self.attempt_audit = attempt_audit
        super().__init__(str(cause))


class CredentialSourceError(Exception):
    """The credential the investigation was meant to run with cannot be used."""


class ExpiredCredentialSourceError(CredentialSourceError):
    pass


class InvalidCredentialSourceError(CredentialSourceError):
    pass


# ============================================================================
# Contract
# ============================================================================

@dataclass(frozen=True)
class InvestigatorOutput:
    result: InvestigationResult
    attempt_audit: InvestigationAttemptAudit
    model_version: Optional[str]


class Investigator(Protocol):
    provider: InvestigationProvider
    model: str

    async def investigate(self, investigation_input: InvestigatorInput) -> InvestigatorOutput:
        ...


# ============================================================================
# Anthropic implementation
# ============================================================================

def _preview_text(text: str, limit: int = 240) -> str:
    cleaned = " ".join(str(text or "").split())
    return cleaned if len(cleaned) <= limit else f"{cleaned[:limit]}..."


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model text, tolerating a surrounding ``` fence."""
    raw = str(text or "").strip()
    fence_start = raw.find("```")
    if fence_start != -1:
        fence_end = raw.find("```", fence_start + 3)
        if fence_end != -1:
            raw = raw[fence_start + 3:fence_end].strip()
            if raw.startswith("json"):
                raw = raw[4:].strip()
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise InvestigatorStructuredOutputError("Investigation output must be a JSON object")
    return parsed


def _dump_block(block: Any) -> Dict[str, Any]:
    if hasattr(block, "model_dump"):
        return block.model_dump(mode="json")
    return dict(block)


def _response_audit(message: Any) -> AttemptResponseAudit:
    output_items = [_dump_block(block) for block in message.content]
    tool_calls = [
        AttemptToolCall(
            output_index=index,
            provider_tool_call_id=item.get("id") or item.get("tool_use_id"),
            tool_type=item.get("name") or item["type"],
            status=None,
            raw_payload=item,
        )
        for index, item in enumerate(output_items)
        if item.get("type") in {"server_tool_use", "tool_use", "web_search_tool_result"}
    ]
    usage = None
    if message.usage is not None:
        input_tokens = message.usage.input_tokens or 0
        output_tokens = message.usage.output_tokens or 0
        usage = AttemptUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cached_input_tokens=getattr(message.usage, "cache_read_input_tokens", None),
        )
    return AttemptResponseAudit(
        response_id=message.id,
        response_status=message.stop_reason,
        response_model_version=message.model,
        output_text="".join(item.get("text", "") for item in output_items if item.get("type") == "text"),
        output_items=output_items,
        tool_calls=tool_calls,
        usage=usage,
    )


def _error_audit(exc: BaseException) -> AttemptErrorAudit:
    status_code = getattr(exc, "status_code", None)
    return AttemptErrorAudit(
        error_name=type(exc).__name__,
        error_message=str(exc) or None,
        status_code=status_code if isinstance(status_code, int) else None,
    )


class AnthropicInvestigator:
    """Runs one investigation as a single Messages API call with server-side web search."""

    provider = InvestigationProvider.ANTHROPIC

    def __init__(
        self,
        api_key: Optional[str] = ANTHROPIC_API_KEY,
        model: str = INVESTIGATION_MODEL,
        max_tokens: int = INVESTIGATION_MAX_TOKENS,
        timeout_seconds: float = INVESTIGATION_TIMEOUT_SECONDS,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        if client is None and not api_key:
            raise InvalidCredentialSourceError("ANTHROPIC_API_KEY is not configured")
        self.model = model
        self.max_tokens = max_tokens
        # Retries are owned by the job queue, not the SDK.
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key, timeout=timeout_seconds, max_retries=0
        )

    async def investigate(self, investigation_input: InvestigatorInput) -> InvestigatorOutput:
        user_prompt = build_user_prompt(
            investigation_input.platform,
            investigation_input.url,
            investigation_input.content_text,
            is_update=investigation_input.is_update,
            old_claims=investigation_input.old_claims,
            content_diff=investigation_input.content_diff,
        )
        started_at = utcnow()
        tools: List[Dict[str, Any]] = [WEB_SEARCH_TOOL]
        response_audit: Optional[AttemptResponseAudit] = None
        request_input = user_prompt

        def audit(error: Optional[BaseException] = None) -> InvestigationAttemptAudit:
            return InvestigationAttemptAudit(
                started_at=started_at,
                completed_at=utcnow(),
                request_model=self.model,
                request_instructions=INVESTIGATION_SYSTEM_PROMPT,
                request_input=request_input,
                request_max_output_tokens=self.max_tokens,
                requested_tools=tools,
                response=response_audit,
                error=_error_audit(error) if error is not None else None,
            )

        try:
            content = build_user_content(
                user_prompt, investigation_input.content_text, investigation_input.image_occurrences
            )
            request_input = describe_user_content(content)

            if TRACE_API_CALLS:
                logger.info(
                    "[INVESTIGATOR] request investigation=%s model=%s input=%s",
                    investigation_input.investigation_id,
                    self.model,
                    _preview_text(request_input),
                )

            message = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=INVESTIGATION_SYSTEM_PROMPT,
                tools=tools,
                messages=[{"role": "user", "content": content}],
            )
            response_audit = _response_audit(message)

            if TRACE_API_CALLS:
                logger.info(
                    "[INVESTIGATOR] response investigation=%s stop=%s output=%s",
                    investigation_input.investigation_id,
                    message.stop_reason,
                    _preview_text(response_audit.output_text),
                )

            if message.stop_reason == "refusal":
                raise NonRetryableProviderError("Model declined to investigate this post")
            if message.stop_reason == "max_tokens":
                raise InvestigatorStructuredOutputError("Investigation output was truncated at max_tokens")

            try:
                result = InvestigationResult.model_validate(extract_json_object(response_audit.output_text))
            except (json.JSONDecodeError, ValidationError) as exc:
                raise InvestigatorStructuredOutputError(
                    f"Investigation output did not match the result schema: {exc}"
                ) from exc

        except Exception as exc:
            raise InvestigatorExecutionError(exc, audit(exc)) from exc

        return InvestigatorOutput(
            result=result,
            attempt_audit=audit(),
            model_version=message.model,
        )
