import base64

import pytest

from errata_backend.enums import ImageResolution, Platform
from errata_backend.services.investigator_input import (
    MISSING_IMAGE_MARKER,
    OMITTED_IMAGE_MARKER,
    SAME_IMAGE_MARKER,
    InvestigatorImageOccurrence,
    ResolvedImage,
    build_user_content,
    describe_user_content,
)
from errata_backend.services.prompt_registry import POST_TEXT_OPEN, build_user_prompt

TEXT = "First part. Second part. Third part."
IMAGE = ResolvedImage(content_hash="h1", mime_type="image/png", data=b"\x89PNG")


def _occurrence(index, offset, resolution, image=None, caption=None):
    return InvestigatorImageOccurrence(
        original_index=index,
        normalized_text_offset=offset,
        source_url=f"https://img.example.com/{index}.png",
        resolution=resolution,
        caption_text=caption,
        image=image,
    )


def _texts(parts):
    return [part["text"] for part in parts if part["type"] == "text"]


def test_without_images_prompt_is_single_text_block():
    prompt = build_user_prompt(Platform.X, "https://x.com/1", TEXT)
    assert build_user_content(prompt, TEXT, []) == [{"type": "text", "text": prompt}]


def test_images_are_interleaved_at_offsets():
    prompt = build_user_prompt(Platform.X, "https://x.com/1", TEXT)
    parts = build_user_content(
        prompt,
        TEXT,
        [
            _occurrence(0, 11, ImageResolution.RESOLVED, image=IMAGE, caption="a chart"),
            _occurrence(1, 24, ImageResolution.RESOLVED, image=IMAGE),
            _occurrence(2, len(TEXT), ImageResolution.MISSING),
        ],
    )

    image_parts = [part for part in parts if part["type"] == "image"]
    assert len(image_parts) == 1
    assert image_parts[0]["source"]["media_type"] == "image/png"
    assert base64.b64decode(image_parts[0]["source"]["data"]) == b"\x89PNG"

    texts = _texts(parts)
    assert "[Image context] a chart" in texts
    assert SAME_IMAGE_MARKER in texts
    assert MISSING_IMAGE_MARKER in texts
    # Text before the first image ends exactly at the occurrence offset.
    first_image_position = parts.index(image_parts[0])
    assert parts[first_image_position - 2]["text"].endswith("First part.")
    assert "".join(texts).count("Second part.") == 1


def test_omitted_images_get_marker_and_trailing_note():
    prompt = build_user_prompt(Platform.X, "https://x.com/1", TEXT)
    parts = build_user_content(
        prompt,
        TEXT,
        [
            _occurrence(0, 0, ImageResolution.OMITTED),
            _occurrence(1, 5, ImageResolution.OMITTED),
        ],
    )

    texts = _texts(parts)
    assert texts.count(OMITTED_IMAGE_MARKER) == 2
    assert any(text.startswith("[Note] 2 image occurrence(s) were omitted") for text in texts)


def test_post_text_must_appear_exactly_once():
    with pytest.raises(ValueError):
        build_user_content("no post here", TEXT, [_occurrence(0, 0, ImageResolution.MISSING)])


def test_describe_user_content_hides_image_bytes():
    prompt = build_user_prompt(Platform.X, "https://x.com/1", TEXT)
    parts = build_user_content(prompt, TEXT, [_occurrence(0, 0, ImageResolution.RESOLVED, image=IMAGE)])

    described = describe_user_content(parts)

    assert "[image image/png]" in described
    assert base64.b64encode(b"\x89PNG").decode("ascii") not in described


def test_images_land_in_the_post_block_when_the_diff_quotes_the_post():
    prompt = build_user_prompt(
        Platform.X, "https://x.com/1", TEXT, is_update=True, content_diff=f"+ Added lines:\n{TEXT}"
    )

    parts = build_user_content(prompt, TEXT, [_occurrence(0, 11, ImageResolution.MISSING)])

    texts = _texts(parts)
    marker_position = texts.index(MISSING_IMAGE_MARKER)
    assert texts[marker_position - 1] == "First part."
    assert texts[marker_position - 2].endswith(f"{POST_TEXT_OPEN}\n")
    # Only the diff still quotes the post in one piece.
    assert "".join(texts).count(TEXT) == 1
