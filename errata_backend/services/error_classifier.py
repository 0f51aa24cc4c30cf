"""Retry classification for investigation failures."""

import json
from typing import Optional

from pydantic import ValidationError

from errata_backend.enums import ErrorClass
from errata_backend.services.image_occurrences import ImageOccurrenceValidationError
from errata_backend.services.investigation_errors import NonRetryableProviderError
from errata_backend.services.investigator import (
    CredentialSourceError,
    InvestigatorExecutionError,
    InvestigatorStructuredOutputError,
)

NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})

NON_RETRYABLE_ERROR_TYPES = (
    ValidationError,
    json.JSONDecodeError,
    InvestigatorStructuredOutputError,
    ImageOccurrenceValidationError,
    CredentialSourceError,
    NonRetryableProviderError,
)


def unwrap_error(error: BaseException) -> BaseException:
    while isinstance(error, InvestigatorExecutionError):
        error = error.cause
    return error


def error_status_code(error: BaseException) -> Optional[int]:
    """Read an HTTP status from anthropic.APIStatusError, httpx.HTTPStatusError or similar."""
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def classify_error(error: BaseException) -> ErrorClass:
    root = unwrap_error(error)
    if isinstance(root, NON_RETRYABLE_ERROR_TYPES):
        return ErrorClass.NON_RETRYABLE
    status_code = error_status_code(root)
    if status_code is not None and status_code in NON_RETRYABLE_STATUS_CODES:
        return ErrorClass.NON_RETRYABLE
    # 429, 5xx, timeouts, connection resets and anything unrecognized.
    return ErrorClass.TRANSIENT


def format_error_for_log(error: BaseException) -> str:
    root = unwrap_error(error)
    message = str(root) or type(root).__name__
    status_code = error_status_code(root)
    if status_code is not None:
        return f"status={status_code}: {message}"
    return message
