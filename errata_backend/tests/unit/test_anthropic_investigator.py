import json
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import anthropic
import httpx
import pytest

from errata_backend.enums import Platform
from errata_backend.schemas import InvestigationResult
from errata_backend.services.investigation_errors import NonRetryableProviderError
from errata_backend.services.investigator import (
    WEB_SEARCH_TOOL,
    AnthropicInvestigator,
    InvalidCredentialSourceError,
    InvestigatorExecutionError,
    InvestigatorStructuredOutputError,
    extract_json_object,
)
from errata_backend.services.investigator_input import InvestigatorInput
from errata_backend.services.prompt_registry import INVESTIGATION_SYSTEM_PROMPT

RESULT = {
    "claims": [
        {
            "text": "completed in 1899",
            "context": "The Eiffel Tower was completed in 1899 and stands in Paris.",
            "summary": "It was completed in 1889.",
            "reasoning": "Multiple sources give 1889.",
            "confidence": 0.95,
            "sources": [{"url": "https://example.org/eiffel", "title": "Eiffel Tower", "snippet": "opened in 1889"}],
        }
    ]
}


def _message(text, stop_reason="end_turn"):
    return SimpleNamespace(
        id="msg_123",
        model="claude-sonnet-4-5-20250929",
        stop_reason=stop_reason,
        content=[
            {"type": "server_tool_use", "id": "srvtoolu_1", "name": "web_search", "input": {"query": "eiffel"}},
            {"type": "text", "text": text},
        ],
        usage=SimpleNamespace(input_tokens=100, output_tokens=50, cache_read_input_tokens=10),
    )


def _client(create):
    return SimpleNamespace(messages=SimpleNamespace(create=create))


def _input():
    return InvestigatorInput(
        investigation_id=uuid4(),
        platform=Platform.X,
        url="https://x.com/1",
        content_text="The Eiffel Tower was completed in 1899 and stands in Paris.",
    )


def test_missing_api_key_is_a_credential_error():
    with pytest.raises(InvalidCredentialSourceError):
        AnthropicInvestigator(api_key=None)


@pytest.mark.asyncio
async def test_successful_investigation_returns_result_and_audit():
    create = AsyncMock(return_value=_message(json.dumps(RESULT)))
    investigator = AnthropicInvestigator(model="claude-sonnet-4-5", client=_client(create))

    output = await investigator.investigate(_input())

    kwargs = create.await_args.kwargs
    assert kwargs["system"] == INVESTIGATION_SYSTEM_PROMPT
    assert kwargs["tools"] == [WEB_SEARCH_TOOL]
    assert output.model_version == "claude-sonnet-4-5-20250929"
    assert output.result.claims[0].text == "completed in 1899"

    audit = output.attempt_audit
    assert audit.error is None
    assert audit.request_model == "claude-sonnet-4-5"
    assert audit.response.response_id == "msg_123"
    assert audit.response.usage.total_tokens == 150
    assert audit.response.tool_calls[0].provider_tool_call_id == "srvtoolu_1"
    assert audit.response.tool_calls[0].tool_type == "web_search"


@pytest.mark.asyncio
async def test_schema_violation_raises_structured_output_error_with_audit():
    create = AsyncMock(return_value=_message('{"claims": [{"text": "x"}]}'))
    investigator = AnthropicInvestigator(client=_client(create))

    with pytest.raises(InvestigatorExecutionError) as exc:
        await investigator.investigate(_input())

    assert isinstance(exc.value.cause, InvestigatorStructuredOutputError)
    assert exc.value.attempt_audit.error.error_name == "InvestigatorStructuredOutputError"
    assert exc.value.attempt_audit.response is not None


@pytest.mark.asyncio
async def test_truncated_output_is_a_structured_output_error():
    create = AsyncMock(return_value=_message('{"claims": [', stop_reason="max_tokens"))
    investigator = AnthropicInvestigator(client=_client(create))

    with pytest.raises(InvestigatorExecutionError) as exc:
        await investigator.investigate(_input())

    assert isinstance(exc.value.cause, InvestigatorStructuredOutputError)


@pytest.mark.asyncio
async def test_provider_error_is_wrapped_with_status_code():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    error = anthropic.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    investigator = AnthropicInvestigator(client=_client(AsyncMock(side_effect=error)))

    with pytest.raises(InvestigatorExecutionError) as exc:
        await investigator.investigate(_input())

    assert exc.value.cause is error
    assert exc.value.attempt_audit.error.status_code == 429
    assert exc.value.attempt_audit.response is None


@pytest.mark.asyncio
async def test_refusal_is_a_terminal_provider_error():
    create = AsyncMock(return_value=_message("", stop_reason="refusal"))
    investigator = AnthropicInvestigator(client=_client(create))

    with pytest.raises(InvestigatorExecutionError) as exc:
        await investigator.investigate(_input())

    assert isinstance(exc.value.cause, NonRetryableProviderError)
    assert exc.value.attempt_audit.error.error_name == "NonRetryableProviderError"


@pytest.mark.asyncio
async def test_update_input_sends_earlier_claims_and_diff():
    create = AsyncMock(return_value=_message(json.dumps({"claims": []})))
    investigator = AnthropicInvestigator(client=_client(create))
    earlier = InvestigationResult.model_validate(RESULT).claims
    update_input = InvestigatorInput(
        investigation_id=uuid4(),
        platform=Platform.X,
        url="https://x.com/1",
        content_text="The Eiffel Tower was completed in 1889 and stands in Paris.",
        is_update=True,
        old_claims=earlier,
        content_diff="Diff summary (line context):\n- Removed lines:\nold\n+ Added lines:\nnew",
    )

    output = await investigator.investigate(update_input)

    sent = create.await_args.kwargs["messages"][0]["content"][0]["text"]
    assert '"text": "completed in 1899"' in sent
    assert "- Removed lines:\nold" in sent
    assert output.attempt_audit.request_input == sent


def test_extract_json_object_accepts_fenced_output():
    assert extract_json_object('Here you go:\n```json\n{"claims": []}\n```') == {"claims": []}


def test_extract_json_object_rejects_arrays():
    with pytest.raises(InvestigatorStructuredOutputError):
        extract_json_object("[]")
