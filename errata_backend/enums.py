"""Closed status vocabularies shared by models, services and API schemas."""

import enum


class Platform(str, enum.Enum):
    LESSWRONG = "LESSWRONG"
    X = "X"
    SUBSTACK = "SUBSTACK"
    WIKIPEDIA = "WIKIPEDIA"


class CheckStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_CHECK_STATUSES = frozenset({CheckStatus.COMPLETE, CheckStatus.FAILED})


class ContentProvenance(str, enum.Enum):
    SERVER_VERIFIED = "SERVER_VERIFIED"
    CLIENT_FALLBACK = "CLIENT_FALLBACK"


class InvestigationProvider(str, enum.Enum):
    ANTHROPIC = "ANTHROPIC"
    OPENAI = "OPENAI"


class AttemptOutcome(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class LeaseClaimResult(str, enum.Enum):
    CLAIMED = "CLAIMED"
    MISSING = "MISSING"
    TERMINAL = "TERMINAL"
    LEASE_HELD = "LEASE_HELD"


class ErrorClass(str, enum.Enum):
    TRANSIENT = "TRANSIENT"
    NON_RETRYABLE = "NON_RETRYABLE"


class ImageResolution(str, enum.Enum):
    RESOLVED = "resolved"
    OMITTED = "omitted"
    MISSING = "missing"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RETRY = "retry"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class OrchestrationOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_MISSING = "skipped_missing"
    SKIPPED_TERMINAL = "skipped_terminal"
    DUPLICATE_DISCARDED = "duplicate_discarded"
    RECORD_GONE = "record_gone"
