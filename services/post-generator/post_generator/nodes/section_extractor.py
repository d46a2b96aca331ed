"""Section Extractor.

Line-oriented state machine that splits one freeform model response into
verse / image prompt / video prompt / music sections.  A header line moves
the machine to its section and is itself dropped; every other line is
appended to the buffer of the current section.

Prompt headers are matched by their leading words, case-insensitively,
after optional markdown heading or emphasis markers; the rest of the line
may carry anything and is dropped with it::

    ### Image Prompt
    **Image Prompt (16:9):**
    ### Video Prompt for Verse 1

A verse header must be the whole line, optionally numbered and followed by
a colon, so ordinary lines that start with "verse" stay verse text::

    ## Verse 2
    **Verse 1:**
"""

from __future__ import annotations

import logging
import re

from ..models import ParsedSections

log = logging.getLogger(__name__)

VERSE = "verse"
IMAGE = "image"
VIDEO = "video"
MUSIC = "music"

STATES = (VERSE, IMAGE, VIDEO, MUSIC)

DEFAULT_MUSIC_TAGS = "high fidelity, stereo"
DEFAULT_MUSIC_DURATION = "90"


_MARKER = r"(?:#{1,6}|\*\*|__|\*)"


def _header(name: str, rest: str = r"(?![a-z0-9]).*") -> re.Pattern:
    return re.compile(
        r"^\s*(?:" + _MARKER + r"\s*){0,2}" + name + rest + r"$",
        re.IGNORECASE,
    )


# (pattern, target state); first match wins.
TRANSITIONS: list[tuple[re.Pattern, str]] = [
    (_header(r"image\s+prompt"), IMAGE),
    (_header(r"video\s+prompt"), VIDEO),
    (_header(r"(?:music|audio)\s+(?:prompt|tags)"), MUSIC),
    (
        _header(r"verse", r"(?:\s+\d+)?\s*" + _MARKER + r"?\s*(?::\s*" + _MARKER + r"?\s*)?"),
        VERSE,
    ),
]

_CODE_FENCE = re.compile(r"```[a-z]*\n?", re.IGNORECASE)
_TAGS_LINE = re.compile(r"TAGS:\s*(.*)", re.IGNORECASE)
_DURATION = re.compile(r"DURATION:\s*(\d+)", re.IGNORECASE)
_EMPHASIS = re.compile(r"[*_#`]")
_LYRICS_LABEL = re.compile(r"LYRICS:", re.IGNORECASE)
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")
_HTML_TAG = re.compile(r"<[^>]*>?")
_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)


def match_header(line: str) -> str | None:
    """Return the state a header *line* switches to, or None for content."""
    for pattern, state in TRANSITIONS:
        if pattern.match(line):
            return state
    return None


def split_sections(raw_response: str) -> dict[str, str]:
    """Run the state machine and return the trimmed buffer of each state."""
    buffers = {state: [] for state in STATES}
    state = VERSE
    for line in raw_response.splitlines():
        target = match_header(line)
        if target is not None:
            state = target
            continue
        buffers[state].append(line + "\n")
    return {state: "".join(lines).strip() for state, lines in buffers.items()}


def extract_sections(raw_response: str) -> ParsedSections:
    """Parse a model response into ``ParsedSections``.

    If no verse text was found the whole response becomes the verse, so a
    response without (or with malformed) headers is still displayable.
    """
    buffers = split_sections(raw_response)
    return ParsedSections(
        verse=buffers[VERSE] or raw_response.strip(),
        image_prompt=buffers[IMAGE],
        video_prompt=buffers[VIDEO],
        music_tags=buffers[MUSIC],
    )


def extract_music_sections(raw_response: str) -> ParsedSections:
    """Like ``extract_sections`` but splits the music section further.

    ``TAGS:`` and ``DURATION:`` markers are pulled out of the music buffer
    and what remains is cleaned into plain lyrics.  Without a music section
    all three stay empty.
    """
    buffers = split_sections(raw_response)
    tags = duration = lyrics = ""
    if buffers[MUSIC]:
        tags, duration, lyrics = parse_music_block(buffers[MUSIC])
    return ParsedSections(
        verse=clean_verse_text(buffers[VERSE] or raw_response),
        image_prompt=buffers[IMAGE],
        video_prompt=buffers[VIDEO],
        music_tags=tags,
        music_duration=duration,
        lyrics=lyrics,
    )


def parse_music_block(block: str) -> tuple[str, str, str]:
    """Return ``(tags, duration, lyrics)`` from a raw music section."""
    text = _CODE_FENCE.sub("", block).replace("```", "")

    tags = DEFAULT_MUSIC_TAGS
    m = _TAGS_LINE.search(text)
    if m:
        raw_tags = _EMPHASIS.sub("", m.group(1)).strip()
        cleaned = ",".join(t.strip() for t in raw_tags.split(",") if t.strip())
        if cleaned:
            tags = cleaned
        text = text.replace(m.group(0), "", 1)

    duration = DEFAULT_MUSIC_DURATION
    m = _DURATION.search(text)
    if m:
        duration = m.group(1)
        text = text.replace(m.group(0), "", 1)

    lyrics = _EMPHASIS.sub("", text)
    lyrics = _LYRICS_LABEL.sub("", lyrics)
    lyrics = _EXTRA_BLANK_LINES.sub("\n\n", lyrics).strip()
    return tags, duration, lyrics


def clean_verse_text(text: str) -> str:
    """Strip bold/heading markers, HTML tags and trailing spaces."""
    if not text:
        return ""
    text = re.sub(r"\*\*|__|###", "", text)
    text = _HTML_TAG.sub("", text)
    return _TRAILING_SPACE.sub("", text).strip()
