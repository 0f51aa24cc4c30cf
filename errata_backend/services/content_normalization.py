"""Text normalization, hashing, and HTML-to-text conversion for content identity."""

import hashlib
import re
import unicodedata
from typing import List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
_WHITESPACE_RE = re.compile(r"\s+")

WIKIPEDIA_LANGUAGE_CODE_RE = re.compile(r"^[a-z][a-z0-9-]*$", re.IGNORECASE)

WIKIPEDIA_EXCLUDED_SECTION_TITLES = frozenset({
    "references",
    "notes",
    "further reading",
    "external links",
    "bibliography",
    "sources",
    "citations",
})

WIKIPEDIA_EXCLUDED_CLASS_TOKENS = frozenset({
    "mw-editsection",
    "references",
    "mw-references-wrap",
    "reflist",
    "noprint",
    "navbox",
    "vertical-navbox",
    "catlinks",
})

WIKIPEDIA_BLOCK_TAGS = frozenset({
    "p", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "figcaption", "blockquote", "tr", "td", "th", "div",
})

_HEADING_RE = re.compile(r"^h([2-6])$")


def normalize_content(text: str) -> str:
    """NFC, strip zero-width characters, collapse whitespace runs, trim."""
    normalized = unicodedata.normalize("NFC", text or "")
    normalized = _ZERO_WIDTH_RE.sub("", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def sha256_hex(value) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def hash_content(normalized_text: str) -> str:
    return sha256_hex(normalized_text)


def word_count(text: str) -> int:
    return len(text.split())


def _is_text_node(node) -> bool:
    # Comments, CDATA and doctypes are PreformattedString subclasses
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


def html_to_text_content(html: str) -> str:
    """Concatenate all text nodes in document order, like DOM textContent."""
    soup = BeautifulSoup(html or "", "html.parser")
    return "".join(str(node) for node in soup.descendants if _is_text_node(node))


def lesswrong_html_to_normalized_text(html: str) -> str:
    return normalize_content(html_to_text_content(html))


def normalize_wikipedia_section_title(value: str) -> str:
    return normalize_content(value).lower()


def is_excluded_wikipedia_section_title(value: str) -> bool:
    return normalize_wikipedia_section_title(value) in WIKIPEDIA_EXCLUDED_SECTION_TITLES


def should_exclude_wikipedia_element(tag_name: str, class_tokens: List[str]) -> bool:
    tag_name = tag_name.lower()
    tokens = [token.lower() for token in class_tokens]
    if tag_name in {"script", "style"}:
        return True
    if tag_name == "sup" and "reference" in tokens:
        return True
    return any(token in WIKIPEDIA_EXCLUDED_CLASS_TOKENS for token in tokens)


def _heading_level(tag_name: str) -> Optional[int]:
    match = _HEADING_RE.match(tag_name)
    return int(match.group(1)) if match else None


def wikipedia_html_to_text_content(html: str) -> str:
    """
    Extract article text from Wikipedia parse HTML.

    Drops excluded elements (references, navboxes, edit links, scripts) and
    whole sections whose heading is an excluded title, up to the next heading
    of the same or higher level. Block elements are padded with spaces.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    stack = [(child, False) for child in reversed(list(soup.children))]
    chunks: List[str] = []
    skip_section_level: Optional[int] = None

    while stack:
        node, is_exit = stack.pop()

        if is_exit:
            chunks.append(" ")
            continue

        if isinstance(node, Tag):
            tag_name = node.name.lower()
            level = _heading_level(tag_name)
            if level is not None:
                if skip_section_level is not None and level <= skip_section_level:
                    skip_section_level = None
                if is_excluded_wikipedia_section_title(node.get_text()):
                    skip_section_level = level
                    continue

            if skip_section_level is not None:
                continue
            if should_exclude_wikipedia_element(tag_name, node.get("class") or []):
                continue

            if tag_name in WIKIPEDIA_BLOCK_TAGS:
                chunks.append(" ")
                stack.append((node, True))
            stack.extend((child, False) for child in reversed(list(node.children)))
            continue

        if skip_section_level is None and _is_text_node(node):
            chunks.append(str(node))

    return "".join(chunks)


def wikipedia_html_to_normalized_text(html: str) -> str:
    return normalize_content(wikipedia_html_to_text_content(html))
