import asyncio
import json

import anthropic
import httpx
import pytest
from pydantic import BaseModel, ValidationError

from errata_backend.enums import ErrorClass
from errata_backend.services.error_classifier import (
    classify_error,
    error_status_code,
    format_error_for_log,
    unwrap_error,
)
from errata_backend.services.image_occurrences import (
    NON_CONTIGUOUS_ORIGINAL_INDEX,
    ImageOccurrenceValidationError,
)
from errata_backend.services.investigation_errors import NonRetryableProviderError
from errata_backend.services.investigator import (
    ExpiredCredentialSourceError,
    InvalidCredentialSourceError,
    InvestigatorExecutionError,
    InvestigatorStructuredOutputError,
)


def _anthropic_error(error_cls, status_code):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status_code, request=request)
    return error_cls(f"HTTP {status_code}", response=response, body=None)


def _validation_error():
    class _Model(BaseModel):
        value: int

    try:
        _Model.model_validate({"value": "not a number"})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


class _StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"upstream said {status}")
        self.status = status


@pytest.mark.parametrize(
    "error",
    [
        _anthropic_error(anthropic.RateLimitError, 429),
        _anthropic_error(anthropic.InternalServerError, 500),
        _StatusError(503),
        asyncio.TimeoutError(),
        httpx.ConnectError("connection reset"),
        RuntimeError("something unexpected"),
    ],
)
def test_transient_errors(error):
    assert classify_error(error) is ErrorClass.TRANSIENT


@pytest.mark.parametrize(
    "error",
    [
        _anthropic_error(anthropic.BadRequestError, 400),
        _anthropic_error(anthropic.AuthenticationError, 401),
        _anthropic_error(anthropic.PermissionDeniedError, 403),
        _anthropic_error(anthropic.NotFoundError, 404),
        _anthropic_error(anthropic.UnprocessableEntityError, 422),
        _StatusError(400),
        _validation_error(),
        json.JSONDecodeError("Expecting value", "", 0),
        InvestigatorStructuredOutputError("bad shape"),
        ImageOccurrenceValidationError(NON_CONTIGUOUS_ORIGINAL_INDEX, "gap"),
        ExpiredCredentialSourceError("key expired"),
        InvalidCredentialSourceError("key invalid"),
        NonRetryableProviderError("model declined"),
    ],
)
def test_non_retryable_errors(error):
    assert classify_error(error) is ErrorClass.NON_RETRYABLE


def test_execution_error_is_classified_by_its_cause():
    wrapped = InvestigatorExecutionError(_anthropic_error(anthropic.BadRequestError, 400))
    assert unwrap_error(wrapped) is wrapped.cause
    assert classify_error(wrapped) is ErrorClass.NON_RETRYABLE

    transient = InvestigatorExecutionError(_anthropic_error(anthropic.RateLimitError, 429))
    assert classify_error(transient) is ErrorClass.TRANSIENT


def test_status_code_read_from_response():
    request = httpx.Request("GET", "https://example.com")
    error = httpx.HTTPStatusError("not found", request=request, response=httpx.Response(404, request=request))
    assert error_status_code(error) == 404
    assert classify_error(error) is ErrorClass.NON_RETRYABLE


def test_format_error_for_log_includes_status():
    assert format_error_for_log(_StatusError(503)) == "status=503: upstream said 503"
    assert format_error_for_log(RuntimeError("boom")) == "boom"
    assert format_error_for_log(asyncio.TimeoutError()) == "TimeoutError"
