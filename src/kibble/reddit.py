from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from .errors import RefreshCancelled
from .fetch import DEFAULT_USER_AGENT, fetch_url
from .utils import log_event

MEDIA_DOMAINS = frozenset(
    {
        "i.redd.it",
        "v.redd.it",
        "imgur.com",
        "i.imgur.com",
        "youtube.com",
        "youtu.be",
        "gfycat.com",
        "streamable.com",
        "twitter.com",
        "x.com",
        "reddit.com",
    }
)

_SUBREDDIT_PATTERNS = (
    re.compile(r"reddit\.com/r/([a-zA-Z0-9_]+)"),
    re.compile(r"^r/([a-zA-Z0-9_]+)"),
)


@dataclass(frozen=True)
class RedditPost:
    title: str
    body: str
    permalink: str
    subreddit: str
    author: str
    score: int


@dataclass(frozen=True)
class LinkPost:
    title: str
    url: str
    domain: str
    score: int


@dataclass(frozen=True)
class DomainRank:
    domain: str
    count: int
    total_score: int
    sample_urls: tuple[str, ...]


def is_reddit_url(url: str) -> bool:
    return "reddit.com/r/" in url or url.startswith("r/")


def extract_subreddit(url: str) -> str:
    for pattern in _SUBREDDIT_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    raise ValueError(f"could not extract subreddit from URL: {url}")


def subreddit_display_name(url: str) -> str:
    idx = url.find("/r/")
    if idx == -1:
        return "reddit"
    rest = url[idx + 3 :]
    return "r/" + rest.split("/", 1)[0]


def normalize_domain(domain: str) -> str:
    domain = domain.lower().strip()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def is_media_domain(domain: str) -> bool:
    domain = normalize_domain(domain)
    if domain in MEDIA_DOMAINS:
        return True
    return any(domain.endswith("." + media) for media in MEDIA_DOMAINS)


def rank_domains(posts: list[LinkPost], limit: int = 8) -> list[DomainRank]:
    counts: dict[str, int] = {}
    scores: dict[str, int] = {}
    samples: dict[str, list[str]] = {}
    for post in posts:
        domain = normalize_domain(post.domain or urlsplit(post.url).hostname or "")
        if not domain or is_media_domain(domain):
            continue
        counts[domain] = counts.get(domain, 0) + 1
        scores[domain] = scores.get(domain, 0) + post.score
        urls = samples.setdefault(domain, [])
        if post.url and len(urls) < 3:
            urls.append(post.url)
    ranked = sorted(counts, key=lambda domain: (-counts[domain], -scores[domain], domain))
    return [
        DomainRank(
            domain=domain,
            count=counts[domain],
            total_score=scores[domain],
            sample_urls=tuple(samples[domain]),
        )
        for domain in ranked[:limit]
    ]


class RedditClient:
    """Read-only client for the public subreddit JSON listings.

    All calls made through one instance share a minimum spacing; waiters are
    serialized on a lock.
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30,
        min_words: int = 100,
        min_interval: float = 1.1,
        min_link_score: int = 10,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.min_words = min_words
        self.min_interval = min_interval
        self.min_link_score = min_link_score
        self.stop_event = stop_event
        self.logger = logger or logging.getLogger("kibble.reddit")
        self._lock = threading.Lock()
        self._last_request: float | None = None

    def fetch_posts(self, subreddit_url: str) -> list[RedditPost]:
        subreddit = extract_subreddit(subreddit_url)
        listing = self._listing(subreddit, f"https://www.reddit.com/r/{subreddit}.json?limit=25")
        posts = []
        for data in _children(listing):
            if not data.get("is_self"):
                continue
            body = data.get("selftext") or ""
            if len(body.split()) < self.min_words:
                continue
            posts.append(
                RedditPost(
                    title=data.get("title") or "",
                    body=body,
                    permalink=data.get("permalink") or "",
                    subreddit=data.get("subreddit") or subreddit,
                    author=data.get("author") or "",
                    score=int(data.get("score") or 0),
                )
            )
        return posts

    def fetch_top_links(self, subreddit_url: str) -> list[LinkPost]:
        subreddit = extract_subreddit(subreddit_url)
        listing = self._listing(
            subreddit, f"https://www.reddit.com/r/{subreddit}/top.json?t=week&limit=25"
        )
        links = []
        for data in _children(listing):
            if data.get("is_self"):
                continue
            score = int(data.get("score") or 0)
            if score < self.min_link_score:
                continue
            url = data.get("url") or ""
            domain = normalize_domain(data.get("domain") or urlsplit(url).hostname or "")
            if not domain or domain.startswith("self.") or is_media_domain(domain):
                continue
            links.append(LinkPost(title=data.get("title") or "", url=url, domain=domain, score=score))
        return links

    def _listing(self, subreddit: str, api_url: str) -> dict[str, Any]:
        self._wait_for_rate_limit()
        status, payload, error = _get_json(api_url, timeout=self.timeout, user_agent=self.user_agent)
        if status == 404:
            raise ValueError(f"subreddit r/{subreddit} not found")
        if status == 403:
            raise ValueError(f"subreddit r/{subreddit} is private or quarantined")
        if status == 429:
            raise ValueError("Reddit rate limit exceeded")
        if status is not None and status != 200:
            raise ValueError(f"Reddit API returned status {status}")
        if error:
            raise ValueError(f"fetch subreddit {subreddit}: {error}")
        if not isinstance(payload, dict):
            raise ValueError("failed to parse Reddit JSON listing")
        log_event(self.logger, logging.DEBUG, "reddit_listing_fetched", subreddit=subreddit, url=api_url)
        return payload

    def _wait_for_rate_limit(self) -> None:
        with self._lock:
            if self.stop_event is not None and self.stop_event.is_set():
                raise RefreshCancelled()
            if self._last_request is not None:
                wait = self.min_interval - (time.monotonic() - self._last_request)
                if wait > 0:
                    if self.stop_event is not None:
                        if self.stop_event.wait(wait):
                            raise RefreshCancelled()
                    else:
                        time.sleep(wait)
            self._last_request = time.monotonic()


def _children(listing: dict[str, Any]) -> list[dict[str, Any]]:
    children = (listing.get("data") or {}).get("children") or []
    return [child.get("data") or {} for child in children if isinstance(child, dict)]


def _get_json(url: str, *, timeout: float, user_agent: str) -> tuple[int | None, Any, str | None]:
    result = fetch_url(url, timeout=timeout, user_agent=user_agent, accept="application/json")
    if result.error:
        return result.status, None, result.error
    try:
        return result.status, json.loads(result.body), None
    except json.JSONDecodeError as exc:
        return result.status, None, f"failed to parse Reddit JSON: {exc}"
