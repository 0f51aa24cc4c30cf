"""Typed failures raised by the investigation core."""

from typing import Optional
from uuid import UUID


class ContentMismatchError(Exception):
    """Observed content hashes differently from the authoritative server copy."""

    def __init__(self, observed_hash: str, canonical_hash: str):
        self.observed_hash = observed_hash
        self.canonical_hash = canonical_hash
        super().__init__(
            f"Observed content hash {observed_hash} does not match canonical hash {canonical_hash}"
        )


class InvestigationWordLimitError(Exception):
    def __init__(self, observed_word_count: int, limit: int):
        self.observed_word_count = observed_word_count
        self.limit = limit
        super().__init__(
            f"Content has {observed_word_count} words, exceeding the investigation limit of {limit}"
        )


class RunLeaseHeldError(Exception):
    """Another worker holds a live lease on the run. Not a fault; retry later."""

    def __init__(self, run_id: UUID):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is leased by another worker")


class TransientProviderError(Exception):
    """Investigation failed transiently; the job should be retried with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NonRetryableProviderError(Exception):
    """Investigation failed in a way that retrying cannot fix."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class InternalConsistencyError(Exception):
    """Persistent state violates an invariant (hash collision, vanished row, prompt drift)."""


class RecordGoneError(Exception):
    """A row the job depends on was deleted concurrently."""
