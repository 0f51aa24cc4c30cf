"""Validation and canonical serialization of image occurrences within post text."""

import json
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional

from errata_backend.services.content_normalization import sha256_hex

NON_CONTIGUOUS_ORIGINAL_INDEX = "NON_CONTIGUOUS_ORIGINAL_INDEX"
OFFSET_EXCEEDS_CONTENT_LENGTH = "OFFSET_EXCEEDS_CONTENT_LENGTH"
DECREASING_NORMALIZED_TEXT_OFFSET = "DECREASING_NORMALIZED_TEXT_OFFSET"
NEGATIVE_NORMALIZED_TEXT_OFFSET = "NEGATIVE_NORMALIZED_TEXT_OFFSET"


class ImageOccurrenceValidationError(ValueError):
    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class ImageOccurrence:
    original_index: int
    normalized_text_offset: int
    source_url: str
    caption_text: Optional[str] = None


def _normalize_caption(caption: Optional[str]) -> Optional[str]:
    if caption is None:
        return None
    trimmed = caption.strip()
    return trimmed or None


def validate_and_sort_image_occurrences(
    occurrences: Iterable, content_text_length: int
) -> List[ImageOccurrence]:
    """
    Sort occurrences by original_index and check them against the content.

    Each item may be an ImageOccurrence or any object exposing the same
    attributes (e.g. the request schema). Captions are trimmed and empty
    captions dropped. Raises ImageOccurrenceValidationError with a ``code``.
    """
    normalized = sorted(
        (
            ImageOccurrence(
                original_index=item.original_index,
                normalized_text_offset=item.normalized_text_offset,
                source_url=item.source_url,
                caption_text=_normalize_caption(item.caption_text),
            )
            for item in occurrences
        ),
        key=lambda occurrence: occurrence.original_index,
    )

    previous_offset = 0
    for position, occurrence in enumerate(normalized):
        if occurrence.original_index != position:
            raise ImageOccurrenceValidationError(
                NON_CONTIGUOUS_ORIGINAL_INDEX,
                f"Image occurrence indices must be contiguous from 0; "
                f"expected {position}, got {occurrence.original_index}",
            )
        if occurrence.normalized_text_offset < 0:
            raise ImageOccurrenceValidationError(
                NEGATIVE_NORMALIZED_TEXT_OFFSET,
                f"Image occurrence {position} has negative offset {occurrence.normalized_text_offset}",
            )
        if occurrence.normalized_text_offset > content_text_length:
            raise ImageOccurrenceValidationError(
                OFFSET_EXCEEDS_CONTENT_LENGTH,
                f"Image occurrence {position} offset {occurrence.normalized_text_offset} "
                f"exceeds content length {content_text_length}",
            )
        if occurrence.normalized_text_offset < previous_offset:
            raise ImageOccurrenceValidationError(
                DECREASING_NORMALIZED_TEXT_OFFSET,
                f"Image occurrence {position} offset {occurrence.normalized_text_offset} "
                f"is before previous offset {previous_offset}",
            )
        previous_offset = occurrence.normalized_text_offset

    return normalized


def serialize_image_occurrences(occurrences: List[ImageOccurrence]) -> str:
    """Stable JSON serialization used for the occurrence-set hash."""
    return json.dumps(
        [asdict(occurrence) for occurrence in occurrences],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def hash_image_occurrences(occurrences: List[ImageOccurrence]) -> str:
    return sha256_hex(serialize_image_occurrences(occurrences))


def compute_version_hash(content_hash: str, occurrences_hash: str) -> str:
    return sha256_hex(f"{content_hash}\n{occurrences_hash}")
