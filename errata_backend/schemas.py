"""Pydantic request/response and investigator contract models."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from errata_backend.enums import CheckStatus, ContentProvenance, Platform


# --- Observed content -------------------------------------------------------

class ImageOccurrenceInput(BaseModel):
    original_index: int
    normalized_text_offset: int
    source_url: str
    caption_text: Optional[str] = None


class WikipediaMetadata(BaseModel):
    language_code: str
    revision_id: int


class ViewPostRequest(BaseModel):
    platform: Platform
    external_id: str
    url: str
    observed_content_text: str
    # LessWrong clients may submit the rendered post HTML instead of text
    observed_html: Optional[str] = None
    observed_image_occurrences: List[ImageOccurrenceInput] = Field(default_factory=list)
    wikipedia: Optional[WikipediaMetadata] = None


class RegisteredVersionResponse(BaseModel):
    post_id: UUID
    post_version_id: UUID
    version_hash: str
    content_hash: str
    content_provenance: ContentProvenance
    word_count: int


class InvestigateNowResponse(BaseModel):
    investigation_id: UUID
    status: CheckStatus
    created: bool
    enqueued: bool
    content_provenance: ContentProvenance


class ClaimSourceResponse(BaseModel):
    url: str
    title: str
    snippet: str


class ClaimResponse(BaseModel):
    text: str
    context: str
    summary: str
    reasoning: str
    confidence: float
    sources: List[ClaimSourceResponse]


class InvestigationDetailResponse(BaseModel):
    investigation_id: UUID
    post_id: UUID
    content_hash: str
    status: CheckStatus
    checked_at: Optional[datetime] = None
    model_version: Optional[str] = None
    parent_investigation_id: Optional[UUID] = None
    claims: List[ClaimResponse] = Field(default_factory=list)


# --- Investigator output ----------------------------------------------------

class InvestigationSource(BaseModel):
    url: str
    title: str
    snippet: str


class InvestigationClaim(BaseModel):
    text: str = Field(min_length=1)
    context: str
    summary: str
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)
    sources: List[InvestigationSource] = Field(default_factory=list)


class InvestigationResult(BaseModel):
    claims: List[InvestigationClaim]


# --- Attempt audit ----------------------------------------------------------

class AttemptUsage(BaseModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cached_input_tokens: Optional[int] = None
    reasoning_output_tokens: Optional[int] = None


class AttemptToolCall(BaseModel):
    output_index: int
    provider_tool_call_id: Optional[str] = None
    tool_type: str
    status: Optional[str] = None
    raw_payload: Dict[str, Any]


class AttemptResponseAudit(BaseModel):
    response_id: Optional[str] = None
    response_status: Optional[str] = None
    response_model_version: Optional[str] = None
    output_text: Optional[str] = None
    output_items: List[Dict[str, Any]] = Field(default_factory=list)
    tool_calls: List[AttemptToolCall] = Field(default_factory=list)
    usage: Optional[AttemptUsage] = None


class AttemptErrorAudit(BaseModel):
    error_name: str
    error_message: Optional[str] = None
    status_code: Optional[int] = None


class InvestigationAttemptAudit(BaseModel):
    started_at: datetime
    completed_at: datetime
    request_model: str
    request_instructions: str
    request_input: str
    request_max_output_tokens: Optional[int] = None
    requested_tools: List[Dict[str, Any]] = Field(default_factory=list)
    response: Optional[AttemptResponseAudit] = None
    error: Optional[AttemptErrorAudit] = None
