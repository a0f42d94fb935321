from __future__ import annotations

import logging
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..fetch import fetch_url
from ..models import ValidationResult
from ..reddit import is_reddit_url
from ..utils import log_event
from .extract import Scraper

FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")
DISCOVERY_TIMEOUT_SECONDS = 10


def discover_feed_url(page_url: str, *, user_agent: str, timeout: float = DISCOVERY_TIMEOUT_SECONDS) -> str:
    """Return the first advertised RSS/Atom feed of a page, or an empty string."""
    result = fetch_url(page_url, timeout=timeout, user_agent=user_agent)
    if not result.ok:
        return ""
    if "html" not in result.content_type.lower() and result.content_type:
        return ""
    soup = BeautifulSoup(result.body, "html.parser")
    for link in soup.find_all("link"):
        rels = link.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if "alternate" not in [rel.lower() for rel in rels]:
            continue
        if (link.get("type") or "").lower().strip() not in FEED_LINK_TYPES:
            continue
        href = (link.get("href") or "").strip()
        if href:
            return urljoin(result.url or page_url, href)
    return ""


class SourceValidator:
    def __init__(
        self,
        scraper: Scraper,
        *,
        timeout: float = 15,
        min_chars: int = 200,
        logger: logging.Logger | None = None,
    ) -> None:
        self.scraper = scraper
        self.timeout = timeout
        self.min_chars = min_chars
        self.logger = logger or logging.getLogger("kibble.scraper")

    def validate(self, url: str, name: str = "") -> ValidationResult:
        target = url
        feed_url = ""
        if not is_reddit_url(url):
            feed_url = discover_feed_url(url, user_agent=self.scraper.user_agent)
            if feed_url:
                target = feed_url

        try:
            content = self.scraper.scrape_url(target, name, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.INFO, "source_validation_failed", url=target, error=str(exc))
            return ValidationResult(url=url, name=name, ok=False, reason=str(exc), feed_url=feed_url)

        if len(content.content) < self.min_chars:
            reason = f"insufficient content: {len(content.content)} chars"
            log_event(self.logger, logging.INFO, "source_validation_failed", url=target, error=reason)
            return ValidationResult(url=url, name=name, ok=False, reason=reason, feed_url=feed_url)

        return ValidationResult(url=url, name=name or content.source_name, ok=True, feed_url=feed_url)
