"""Candidate Media Ranker.

Orders a page's image URLs by inferred resolution so the pipeline can pick
one representative "primary image".  Nothing is downloaded: the rank comes
from size hints in the query string or the filename.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlsplit

from ..models import ImageCandidate
from ..timing import timed_node

log = logging.getLogger(__name__)

# Vector art, avatars, banners, tracking pixels and inline data.
_EXCLUDED = re.compile(
    r"svg|profile_images|avatar|profile_banners|spacer|blank|1x1", re.IGNORECASE
)

_NAMED_SIZES = {
    "orig": 10000,
    "large": 5000,
    "medium": 4000,
    "small": 1000,
    "thumb": 500,
    "tiny": 100,
}
_SIZE_PARAMS = ("name", "size")
_DIMENSIONS = re.compile(r"^(\d+)x(\d+)$", re.IGNORECASE)

_SUFFIX_SIZES = (
    ("_bigger.", 75),
    ("_normal.", 50),
    ("_mini.", 25),
)

_JPEG_EXTENSION = re.compile(r"\.(jpg|jpeg)(\?.*)?$", re.IGNORECASE)
_JPEG_FORMAT_PARAM = re.compile(r"format=(jpg|jpeg)", re.IGNORECASE)


@timed_node("image_ranker")
def rank_images(urls: Iterable) -> list[ImageCandidate]:
    """Return the usable candidates in *urls*, best first."""
    candidates = [
        ImageCandidate(url=url, is_preferred_format=_is_jpeg(url), size_rank=size_rank(url))
        for url in urls
        if _is_candidate(url)
    ]
    # sorted() is stable, so equal keys keep input order.
    candidates = sorted(
        candidates, key=lambda c: (-c.size_rank, not c.is_preferred_format)
    )
    log.debug("Image ranker: %d candidate(s) kept", len(candidates))
    return candidates


def select_primary_image(urls: Iterable) -> Optional[str]:
    """Return the best candidate URL, or None when nothing usable remains."""
    ranked = rank_images(urls)
    return ranked[0].url if ranked else None


def size_rank(url: str) -> int:
    """Infer a relative size score for *url*; 0 when nothing hints at size."""
    try:
        query = parse_qs(urlsplit(url).query)
    except ValueError:
        query = {}

    for param in _SIZE_PARAMS:
        values = query.get(param)
        if not values:
            continue
        token = values[0].strip().lower()
        if token in _NAMED_SIZES:
            return _NAMED_SIZES[token]
        m = _DIMENSIONS.match(token)
        if m:
            return int(m.group(1)) * int(m.group(2))

    for suffix, score in _SUFFIX_SIZES:
        if suffix in url:
            return score
    return 0


def _is_candidate(url) -> bool:
    if not isinstance(url, str) or not url.strip():
        return False
    if url.strip().lower().startswith("data:"):
        return False
    return not _EXCLUDED.search(url)


def _is_jpeg(url: str) -> bool:
    return bool(_JPEG_EXTENSION.search(url) or _JPEG_FORMAT_PARAM.search(url))
