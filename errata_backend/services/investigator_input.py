"""Investigator input types and multimodal message assembly."""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errata_backend.enums import ImageResolution, Platform
from errata_backend.schemas import InvestigationClaim
from errata_backend.services.image_occurrences import validate_and_sort_image_occurrences
from errata_backend.services.prompt_registry import POST_TEXT_CLOSE, POST_TEXT_OPEN

SAME_IMAGE_MARKER = "[Same image as earlier appears here.]"
OMITTED_IMAGE_MARKER = "[Image present in source but omitted due to image budget.]"
MISSING_IMAGE_MARKER = "[Image present in source but unavailable at inference time.]"


@dataclass(frozen=True)
class ResolvedImage:
    content_hash: str
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class InvestigatorImageOccurrence:
    original_index: int
    normalized_text_offset: int
    source_url: str
    resolution: ImageResolution
    caption_text: Optional[str] = None
    image: Optional[ResolvedImage] = None


@dataclass(frozen=True)
class InvestigatorInput:
    investigation_id: Any
    platform: Platform
    url: str
    content_text: str
    image_occurrences: List[InvestigatorImageOccurrence] = field(default_factory=list)
    is_update: bool = False
    old_claims: List[InvestigationClaim] = field(default_factory=list)
    content_diff: Optional[str] = None


def _text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def _image_part(image: ResolvedImage) -> Dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": image.mime_type,
            "data": base64.b64encode(image.data).decode("ascii"),
        },
    }


def _append_text(parts: List[Dict[str, Any]], text: str) -> None:
    if text:
        parts.append(_text_part(text))


def build_user_content(
    user_prompt: str,
    content_text: str,
    image_occurrences: List[InvestigatorImageOccurrence],
) -> List[Dict[str, Any]]:
    """
    Build the user message content blocks.

    Without images the prompt is a single text block. With images, the post
    text inside the prompt is split at each occurrence offset and the image
    (or a marker explaining its absence) is placed where it appeared.
    """
    occurrences = validate_and_sort_image_occurrences(image_occurrences, len(content_text))
    if not occurrences:
        return [_text_part(user_prompt)]

    by_index = {occurrence.original_index: occurrence for occurrence in image_occurrences}

    # Locate the delimited post block; a content diff may quote the same text.
    block = f"{POST_TEXT_OPEN}\n{content_text}\n{POST_TEXT_CLOSE}"
    block_start = user_prompt.find(block)
    if block_start < 0 or user_prompt.rfind(block) != block_start:
        raise ValueError("Post text must appear exactly once in the user prompt")
    start = block_start + len(POST_TEXT_OPEN) + 1
    end = start + len(content_text)

    parts: List[Dict[str, Any]] = []
    _append_text(parts, user_prompt[:start])

    seen_hashes = set()
    cursor = 0
    omitted_count = 0
    for normalized in occurrences:
        occurrence = by_index[normalized.original_index]
        _append_text(parts, content_text[cursor:normalized.normalized_text_offset])
        cursor = normalized.normalized_text_offset

        if normalized.caption_text is not None:
            _append_text(parts, f"[Image context] {normalized.caption_text}")

        if occurrence.resolution is ImageResolution.RESOLVED and occurrence.image is not None:
            if occurrence.image.content_hash in seen_hashes:
                _append_text(parts, SAME_IMAGE_MARKER)
                continue
            seen_hashes.add(occurrence.image.content_hash)
            parts.append(_image_part(occurrence.image))
        elif occurrence.resolution is ImageResolution.OMITTED:
            omitted_count += 1
            _append_text(parts, OMITTED_IMAGE_MARKER)
        else:
            _append_text(parts, MISSING_IMAGE_MARKER)

    _append_text(parts, content_text[cursor:])
    if omitted_count:
        _append_text(parts, f"[Note] {omitted_count} image occurrence(s) were omitted due to image budget.")
    _append_text(parts, user_prompt[end:])
    return parts


def describe_user_content(parts: List[Dict[str, Any]]) -> str:
    """Render content blocks as audit text, replacing image bytes with a placeholder."""
    lines = []
    for part in parts:
        if part["type"] == "text":
            lines.append(part["text"])
        else:
            source = part.get("source", {})
            lines.append(f"[image {source.get('media_type', 'unknown')}]")
    return "\n".join(lines)
