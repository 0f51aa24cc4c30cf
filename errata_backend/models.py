"""
SQLAlchemy models for the Errata investigation core.

Content-addressed rows (ContentBlob, ImageOccurrenceSet, ImageBlob) are
immutable once written; everything keyed by a hash is deduplicated by it.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from errata_backend.enums import (
    AttemptOutcome,
    CheckStatus,
    ContentProvenance,
    InvestigationProvider,
    JobStatus,
    Platform,
)

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    PostgreSQL stores timestamptz natively; SQLite drops tzinfo, so values are
    normalized to UTC on the way in and re-tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum_column_type(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


# ============================================================================
# Posts and content identity
# ============================================================================

class Post(Base):
    """A piece of web content identified by (platform, external_id)."""
    __tablename__ = "posts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    platform = Column(_enum_column_type(Platform, "platform"), nullable=False)
    external_id = Column(Text, nullable=False)
    url = Column(Text, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_posts_platform_external_id"),
    )


class ContentBlob(Base):
    """Normalized post text, addressed by its sha256."""
    __tablename__ = "content_blobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    content_hash = Column(String(64), nullable=False, unique=True)
    content_text = Column(Text, nullable=False)
    word_count = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class ImageOccurrenceSet(Base):
    """An ordered list of image occurrences, addressed by the hash of its serialization."""
    __tablename__ = "image_occurrence_sets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    occurrences_hash = Column(String(64), nullable=False, unique=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class ImageOccurrence(Base):
    __tablename__ = "image_occurrences"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    occurrence_set_id = Column(
        Uuid, ForeignKey("image_occurrence_sets.id", ondelete="CASCADE"), nullable=False
    )
    original_index = Column(Integer, nullable=False)
    normalized_text_offset = Column(Integer, nullable=False)
    source_url = Column(Text, nullable=False)
    caption_text = Column(Text)

    __table_args__ = (
        UniqueConstraint("occurrence_set_id", "original_index", name="uq_image_occurrences_set_index"),
        CheckConstraint("original_index >= 0", name="image_occurrence_index_non_negative"),
        CheckConstraint("normalized_text_offset >= 0", name="image_occurrence_offset_non_negative"),
    )


class PostVersion(Base):
    """One observed (content, images) state of a post, with its trust classification."""
    __tablename__ = "post_versions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
    version_hash = Column(String(64), nullable=False)
    content_blob_id = Column(Uuid, ForeignKey("content_blobs.id"), nullable=False)
    image_occurrence_set_id = Column(Uuid, ForeignKey("image_occurrence_sets.id"), nullable=False)

    content_provenance = Column(
        _enum_column_type(ContentProvenance, "content_provenance"), nullable=False
    )
    fetch_failure_reason = Column(Text)
    server_verified_at = Column(UTCDateTime)

    first_seen_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_seen_at = Column(UTCDateTime, nullable=False, default=utcnow)
    seen_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("post_id", "version_hash", name="uq_post_versions_post_version_hash"),
        CheckConstraint(
            "(content_provenance = 'SERVER_VERIFIED' AND fetch_failure_reason IS NULL) "
            "OR (content_provenance = 'CLIENT_FALLBACK' AND fetch_failure_reason IS NOT NULL)",
            name="post_version_provenance_reason",
        ),
        CheckConstraint("seen_count >= 1", name="post_version_seen_count_positive"),
        Index("idx_post_versions_post_blob", "post_id", "content_blob_id"),
    )


class Prompt(Base):
    """Versioned investigation prompt text, deduplicated by hash."""
    __tablename__ = "prompts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    version = Column(Text, nullable=False, unique=True)
    prompt_hash = Column(String(64), nullable=False, unique=True)
    text = Column(Text, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


# ============================================================================
# Investigations and runs
# ============================================================================

class Investigation(Base):
    """A fact-check of one post's content, keyed by (post_id, content_hash)."""
    __tablename__ = "investigations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
    content_hash = Column(String(64), ForeignKey("content_blobs.content_hash"), nullable=False)
    # Version whose image occurrences are sent to the investigator
    post_version_id = Column(Uuid, ForeignKey("post_versions.id", ondelete="SET NULL"))

    status = Column(_enum_column_type(CheckStatus, "check_status"), nullable=False)
    prompt_id = Column(Uuid, ForeignKey("prompts.id"), nullable=False)
    provider = Column(_enum_column_type(InvestigationProvider, "investigation_provider"), nullable=False)
    model = Column(Text, nullable=False)

    parent_investigation_id = Column(Uuid, ForeignKey("investigations.id", ondelete="SET NULL"))
    content_diff = Column(Text)

    checked_at = Column(UTCDateTime)
    model_version = Column(Text)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("post_id", "content_hash", name="uq_investigations_post_content_hash"),
        CheckConstraint(
            "status != 'COMPLETE' OR checked_at IS NOT NULL",
            name="investigation_complete_has_checked_at",
        ),
        Index("idx_investigations_status", "status"),
    )


class InvestigationRun(Base):
    """Lease and timing bookkeeping for an investigation (exactly one per investigation)."""
    __tablename__ = "investigation_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid, ForeignKey("investigations.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    lease_owner = Column(Text)
    lease_expires_at = Column(UTCDateTime)
    recover_after_at = Column(UTCDateTime)

    queued_at = Column(UTCDateTime)
    started_at = Column(UTCDateTime)
    heartbeat_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_investigation_runs_lease_expires", "lease_expires_at"),
    )


# ============================================================================
# Attempt audit
# ============================================================================

class InvestigationAttempt(Base):
    """Request/response audit of one investigator call, keyed by attempt number."""
    __tablename__ = "investigation_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid, ForeignKey("investigations.id", ondelete="CASCADE"), nullable=False
    )
    attempt_number = Column(Integer, nullable=False)
    outcome = Column(_enum_column_type(AttemptOutcome, "attempt_outcome"), nullable=False)

    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=False)

    request_model = Column(Text, nullable=False)
    request_instructions = Column(Text, nullable=False)
    request_input = Column(Text, nullable=False)
    request_max_output_tokens = Column(Integer)

    response_id = Column(Text)
    response_status = Column(Text)
    response_model_version = Column(Text)
    response_output_text = Column(Text)
    response_output_items = Column(JSONType)

    __table_args__ = (
        UniqueConstraint("investigation_id", "attempt_number", name="uq_investigation_attempts_number"),
        CheckConstraint("attempt_number >= 1", name="investigation_attempt_number_positive"),
    )


class InvestigationAttemptRequestedTool(Base):
    __tablename__ = "investigation_attempt_requested_tools"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid, ForeignKey("investigation_attempts.id", ondelete="CASCADE"), nullable=False
    )
    request_order = Column(Integer, nullable=False)
    tool_type = Column(Text, nullable=False)
    raw_definition = Column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint("attempt_id", "request_order", name="uq_attempt_requested_tools_order"),
    )


class InvestigationAttemptToolCall(Base):
    __tablename__ = "investigation_attempt_tool_calls"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid, ForeignKey("investigation_attempts.id", ondelete="CASCADE"), nullable=False
    )
    output_index = Column(Integer, nullable=False)
    provider_tool_call_id = Column(Text)
    tool_type = Column(Text, nullable=False)
    status = Column(Text)
    raw_payload = Column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint("attempt_id", "output_index", name="uq_attempt_tool_calls_index"),
    )


class InvestigationAttemptUsage(Base):
    __tablename__ = "investigation_attempt_usage"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid, ForeignKey("investigation_attempts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    input_tokens = Column(Integer, nullable=False)
    output_tokens = Column(Integer, nullable=False)
    total_tokens = Column(Integer, nullable=False)
    cached_input_tokens = Column(Integer)
    reasoning_output_tokens = Column(Integer)


class InvestigationAttemptError(Base):
    __tablename__ = "investigation_attempt_errors"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid, ForeignKey("investigation_attempts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    error_name = Column(Text, nullable=False)
    error_message = Column(Text)
    status_code = Column(Integer)


# ============================================================================
# Results
# ============================================================================

class Claim(Base):
    __tablename__ = "claims"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid, ForeignKey("investigations.id", ondelete="CASCADE"), nullable=False
    )
    claim_order = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    context = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="claim_confidence_range"),
        Index("idx_claims_investigation", "investigation_id"),
    )


class ClaimSource(Base):
    __tablename__ = "claim_sources"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    claim_id = Column(Uuid, ForeignKey("claims.id", ondelete="CASCADE"), nullable=False)
    source_order = Column(Integer, nullable=False)
    url = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    snippet = Column(Text, nullable=False)
    snapshot_hash = Column(String(64), nullable=False)

    __table_args__ = (
        Index("idx_claim_sources_claim", "claim_id"),
    )


# ============================================================================
# Images
# ============================================================================

class ImageBlob(Base):
    """Downloaded image bytes, addressed by their sha256."""
    __tablename__ = "image_blobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    content_hash = Column(String(64), nullable=False, unique=True)
    original_url = Column(Text, nullable=False)
    mime_type = Column(Text, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    data = Column(LargeBinary, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class InvestigationImage(Base):
    __tablename__ = "investigation_images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid, ForeignKey("investigations.id", ondelete="CASCADE"), nullable=False
    )
    image_blob_id = Column(Uuid, ForeignKey("image_blobs.id"), nullable=False)
    image_order = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("investigation_id", "image_order", name="uq_investigation_images_order"),
    )


# ============================================================================
# Job queue
# ============================================================================

class InvestigationJob(Base):
    """Durable at-least-once job, deduplicated by job_key."""
    __tablename__ = "investigation_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    task = Column(Text, nullable=False)
    job_key = Column(Text, nullable=False, unique=True)
    payload = Column(JSONType, nullable=False)

    status = Column(_enum_column_type(JobStatus, "job_status"), nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    run_at = Column(UTCDateTime, nullable=False, default=utcnow)

    locked_by = Column(Text)
    locked_at = Column(UTCDateTime)
    last_error = Column(Text)
    # Set when the job is re-enqueued while running; completion then re-queues it.
    rerun_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_investigation_jobs_status_run_at", "status", "run_at"),
    )
