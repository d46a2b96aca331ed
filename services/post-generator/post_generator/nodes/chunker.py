"""Chunker.

Splits a long document into ordered chunks of at most ``max_chars``,
preferring to cut at a paragraph break, then a sentence end, then a line
break, then a space.  Only whitespace at the cut points is dropped, so the
chunks (plus that whitespace) reproduce the document exactly.
"""

from __future__ import annotations

import logging
import re

from ..models import Chunk
from ..timing import timed_node

log = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"[.!?](?=\s)")


@timed_node("chunker")
def chunk_text(
    text: str,
    max_chars: int,
    min_chars: int = 0,
    lookback_ratio: float = 0.2,
) -> list[Chunk]:
    """Split *text* into ``Chunk`` objects.

    A piece shorter than *min_chars* (after trimming) is folded into the
    chunk before it; the first piece is always kept.  Blank text yields no
    chunks.
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be >= 1; got {max_chars}")
    if not text.strip():
        return []
    if len(text) <= max_chars:
        return [Chunk(0, text)]

    lookback = min(max_chars, max(1, int(max_chars * lookback_ratio)))
    spans: list[list[int]] = []
    cursor = 0

    while cursor < len(text):
        window_end = cursor + max_chars
        if window_end >= len(text):
            cut = len(text)
        else:
            search_start = max(cursor, window_end - lookback)
            cut = _find_breakpoint(text, cursor, search_start, window_end)

        piece = text[cursor:cut]
        if spans and len(piece.strip()) < min_chars:
            log.debug("Merging short piece (%d chars) into chunk %d",
                      len(piece.strip()), len(spans))
            spans[-1][1] = cut
        elif piece.strip():
            spans.append([cursor, cut])

        cursor = cut
        while cursor < len(text) and text[cursor].isspace():
            cursor += 1

    chunks = [Chunk(i, text[start:end]) for i, (start, end) in enumerate(spans)]
    log.info("Chunker: %d chars -> %d chunk(s) (max=%d, min=%d)",
             len(text), len(chunks), max_chars, min_chars)
    return chunks


def _find_breakpoint(text: str, cursor: int, search_start: int, window_end: int) -> int:
    """Return the cut position for the window ``[cursor, window_end)``."""
    # Paragraph break must sit fully inside the window.
    pos = text.rfind("\n\n", search_start, window_end)
    if pos > cursor:
        return pos

    last_sentence = None
    for m in _SENTENCE_END.finditer(text, search_start, window_end + 1):
        last_sentence = m
    if last_sentence is not None and last_sentence.end() > cursor:
        return last_sentence.end()

    for sep in ("\n", " "):
        pos = text.rfind(sep, search_start, window_end + 1)
        if pos > cursor:
            return pos

    return window_end
