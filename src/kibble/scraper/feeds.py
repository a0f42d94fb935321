from __future__ import annotations

from typing import Any

import feedparser
from bs4 import BeautifulSoup

from ..errors import ExtractionError
from ..utils import collapse_whitespace

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"

_FEED_SUFFIXES = ("/feed", "/rss", "/atom", ".xml", ".rss", ".atom")
_FEED_SEGMENTS = ("/feeds/", "/rss/")
_XML_CONTENT_TYPES = ("application/rss+xml", "application/atom+xml", "application/xml", "text/xml")


def is_feed_url(url: str) -> bool:
    lower = url.lower()
    for sep in ("?", "#"):
        idx = lower.find(sep)
        if idx >= 0:
            lower = lower[:idx]
    lower = lower.rstrip("/")
    return lower.endswith(_FEED_SUFFIXES) or any(segment in lower for segment in _FEED_SEGMENTS)


def is_xml_content_type(content_type: str) -> bool:
    lower = (content_type or "").lower()
    return any(kind in lower for kind in _XML_CONTENT_TYPES)


def strip_html(value: str) -> str:
    if "<" not in value:
        return collapse_whitespace(value)
    return collapse_whitespace(BeautifulSoup(value, "html.parser").get_text(" "))


def parse_feed(body: bytes) -> tuple[str, str]:
    """Parse RSS 2.0 or Atom bytes into ``(feed_title, formatted_text)``.

    Raises ExtractionError when the payload has no titled entries, so callers
    can fall back to HTML heuristics.
    """
    parsed = feedparser.parse(body)
    entries = parsed.entries or []
    if not entries:
        reason = parsed.get("bozo_exception") if parsed.get("bozo") else "no entries"
        raise ExtractionError(f"failed to parse feed: {reason}")
    blocks = [block for block in (_format_entry(entry) for entry in entries) if block]
    if not blocks:
        raise ExtractionError("failed to parse feed: no titled entries")
    feed_title = collapse_whitespace((parsed.get("feed") or {}).get("title") or "")
    return feed_title, "".join(blocks)


def _format_entry(entry: Any) -> str:
    title = collapse_whitespace(entry.get("title") or "")
    if not title:
        return ""
    lines = [f"ARTICLE: {title}\n"]
    link = _entry_link(entry)
    if link:
        lines.append(f"LINK: {link}\n")
    date = entry.get("published") or entry.get("updated") or ""
    if date:
        lines.append(f"DATE: {date}\n")
    body = _entry_body(entry)
    if body:
        lines.append(strip_html(body) + "\n\n")
    return "".join(lines)


def _entry_body(entry: Any) -> str:
    # content:encoded and atom <content> both land in entry.content
    for content in entry.get("content") or []:
        value = content.get("value") if isinstance(content, dict) else None
        if value and value.strip():
            return value
    return entry.get("summary") or entry.get("description") or ""


def _entry_link(entry: Any) -> str:
    links = entry.get("links") or []
    for link in links:
        if link.get("rel") in ("alternate", None, "") and link.get("href"):
            return link["href"]
    if entry.get("link"):
        return entry["link"]
    if links and links[0].get("href"):
        return links[0]["href"]
    return ""
