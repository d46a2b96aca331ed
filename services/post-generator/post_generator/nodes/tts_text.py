"""Turns generated verses into plain text a TTS voice can read."""

from __future__ import annotations

import html
import logging
import re
from typing import Iterable, Optional

log = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]+>")
_MARKUP = re.compile(r"[*_#`\[\]()]")
_ELLIPSIS = re.compile(r"\.{3,}")
_NEWLINES = re.compile(r"[\r\n]+")
_DISALLOWED = re.compile(r"[^a-zA-Z0-9.,!?;:'\"\-/\s]")
_WHITESPACE = re.compile(r"\s+")
_LINE_BREAK = re.compile(r"<br\s*/?>|\n", re.IGNORECASE)

# Lines where the model comments on its own verse instead of writing it.
_ANALYSIS_LINE = re.compile(
    r"^\s*rhyme scheme|iambic pentameter|meter:|analysis:|style:", re.IGNORECASE
)
_SPEAKER_DIRECTIVE = re.compile(r"^Say \w+:\s*", re.IGNORECASE)


def unescape_html(text) -> str:
    if not isinstance(text, str):
        return "" if text is None else str(text)
    return html.unescape(text).replace("\xa0", " ")


def clean_text_for_tts(text) -> str:
    """Flatten markup and odd symbols into a single line of speakable text."""
    if not isinstance(text, str):
        return ""
    cleaned = unescape_html(text)
    cleaned = _TAG.sub(" ", cleaned)
    cleaned = _MARKUP.sub("", cleaned)
    cleaned = _ELLIPSIS.sub(". ", cleaned)
    cleaned = _NEWLINES.sub(" ", cleaned)
    cleaned = _DISALLOWED.sub("", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def drop_analysis_lines(text: str) -> str:
    lines = _LINE_BREAK.split(text)
    return " ".join(line for line in lines if not _ANALYSIS_LINE.search(line.strip()))


def strip_speaker_directive(text: str) -> str:
    """Remove a leading "Say calmly:" style instruction, if that leaves anything."""
    stripped = _SPEAKER_DIRECTIVE.sub("", text, count=1).strip()
    return stripped or text.strip()


def select_tts_window(
    text: str,
    target: int = 700,
    max_chars: int = 1000,
    min_chars: int = 50,
) -> Optional[str]:
    """Return the centred *target*-length window of *text*, or None if too short.

    The window is capped at *max_chars*; anything shorter than *min_chars*
    after windowing is not worth synthesizing.
    """
    if len(text) > target:
        start = max(0, len(text) // 2 - target // 2)
        text = text[start:start + target]
    if len(text) > max_chars:
        text = text[:max_chars]
    if len(text) < min_chars:
        log.info("TTS text too short (%d < %d chars), skipping", len(text), min_chars)
        return None
    return text


def build_tts_text(
    verses: Iterable[str],
    target: int = 700,
    max_chars: int = 1000,
    min_chars: int = 50,
) -> Optional[str]:
    """Join verses, drop analysis lines, clean, and pick the spoken window."""
    joined = "\n".join(v for v in verses if v)
    if not joined.strip():
        return None
    cleaned = clean_text_for_tts(drop_analysis_lines(joined))
    if not cleaned:
        return None
    window = select_tts_window(cleaned, target, max_chars, min_chars)
    if window is None:
        return None
    return strip_speaker_directive(window)
