"""Extracts the prose surrounding a citation inside article HTML."""

from __future__ import annotations

import html
import re

from citekeeper.domains import normalize_hostname

TAG_RE = re.compile(r"<[^>]+>")
BREAK_RE = re.compile(r"\n\n|</?p[^>]*>|</?h[1-6][^>]*>", re.IGNORECASE)
SENTENCE_END_RE = re.compile(r"[.!?]+\s+")


def visible_text(fragment: str) -> str:
    """Strip tags and entities from an HTML fragment."""
    return re.sub(r"\s+", " ", html.unescape(TAG_RE.sub("", fragment))).strip()


def extract_citation_context(
    content: str, citation_url: str, max_length: int = 500
) -> str | None:
    """Return the paragraph (or sentence, when long) that mentions the URL.

    Falls back to the first mention of the URL's domain; None when neither
    appears in the content.
    """
    if not content or not citation_url:
        return None

    position = content.lower().find(citation_url.lower())
    if position == -1:
        domain = normalize_hostname(citation_url)
        if not domain:
            return None
        position = content.lower().find(domain)
        if position == -1:
            return None

    start, end = 0, len(content)
    for match in BREAK_RE.finditer(content):
        if match.end() <= position:
            start = match.end()
        elif match.start() > position:
            end = match.start()
            break

    paragraph = visible_text(content[start:end])
    if len(paragraph) <= max_length:
        return paragraph

    # Sentence around the mention, measured on the visible text.
    prefix = content[start:position]
    open_tag = prefix.rfind("<")
    if open_tag > prefix.rfind(">"):
        prefix = prefix[:open_tag]
    return _sentence_around(paragraph, len(visible_text(prefix)), max_length)


def _sentence_around(text: str, position: int, max_length: int) -> str:
    sentence_start, sentence_end = 0, len(text)
    for match in SENTENCE_END_RE.finditer(text):
        if match.end() <= position:
            sentence_start = match.end()
        elif match.end() > position:
            sentence_end = match.end()
            break

    sentence = text[sentence_start:sentence_end].strip()
    if len(sentence) <= max_length:
        return sentence

    offset = max(0, position - sentence_start - max_length // 2)
    clipped = sentence[offset : offset + max_length]
    prefix = "..." if offset > 0 else ""
    suffix = "..." if offset + max_length < len(sentence) else ""
    return f"{prefix}{clipped}{suffix}"
