"""Builds a ``Document`` from scraped page JSON.

Two input shapes are accepted:

* the raw scrape -- ``{title, source, description, content, images, youtube}``
* the Open Graph result -- ``{ogResult: {ogTitle, ogUrl, ogDescription,
  ogImage, jsonLD}, ogHTML, youtube}``
"""

from __future__ import annotations

import html
import logging
import re
from typing import Any, Iterable

from bs4 import BeautifulSoup

from ..models import Document
from .image_ranker import rank_images

log = logging.getLogger(__name__)

_NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]
_RUNS_OF_SPACE = re.compile(r"\s{2,}")


class UnknownPageShape(ValueError):
    """The page JSON matches neither supported shape."""


def strip_page_html(markup: str) -> str:
    """Visible text of *markup*: entities decoded, comments and scripts dropped."""
    if not markup:
        return ""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup.find_all(_NON_CONTENT_TAGS):
        tag.decompose()
    text = soup.get_text(separator=" ", strip=True)
    return _RUNS_OF_SPACE.sub(" ", text).strip()


def build_document(page: dict, extra_images: Iterable[str] = ()) -> Document:
    if not isinstance(page, dict):
        raise UnknownPageShape("page must be a JSON object")

    if "ogResult" in page:
        og = page.get("ogResult") or {}
        title = og.get("ogTitle") or page.get("name") or "Untitled"
        url = og.get("ogUrl") or ""
        description = og.get("ogDescription") or ""
        body_html = page.get("ogHTML") or ""
        images = _og_images(og.get("ogImage"))
        article_body = _article_body(og.get("jsonLD"))
    elif "content" in page:
        title = page.get("title") or "Untitled"
        url = page.get("source") or ""
        description = page.get("description") or ""
        body_html = page.get("content") or ""
        images = list(page.get("images") or [])
        article_body = None
    else:
        raise UnknownPageShape("expected 'content' or 'ogResult' in page JSON")

    subtitles = (page.get("youtube") or {}).get("subtitles") or ""
    text = "\n".join(part for part in (url, title, description, subtitles) if part)
    if article_body:
        text += (
            f'\n\n<blockquote cite="{url}">JSON-LD:\n'
            f"{html.escape(article_body)}</blockquote>"
        )
    page_text = strip_page_html(body_html)
    if page_text:
        text += f"\n\nPage Content:\n{page_text}"

    candidates = rank_images([*images, *extra_images])
    log.info("Document %r: %d chars, %d image candidate(s)",
             title, len(text.strip()), len(candidates))
    return Document(
        text=text.strip(),
        primary_image_candidates=candidates,
        title=title,
        source_url=url,
    )


def _og_images(value: Any) -> list:
    if not value:
        return []
    if not isinstance(value, list):
        value = [value]
    return [item.get("url") if isinstance(item, dict) else item for item in value]


def _article_body(json_ld: Any) -> str | None:
    if not isinstance(json_ld, list):
        return None
    for item in json_ld:
        if isinstance(item, dict) and item.get("articleBody"):
            return str(item["articleBody"])
    return None
