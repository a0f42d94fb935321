from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from ..config import Config, default_config
from ..errors import ExtractionError, RefreshCancelled
from ..fetch import FetchResult, fetch_url
from ..models import NewsSource, ScrapedContent, ScrapeResult
from ..reddit import RedditClient, is_reddit_url, subreddit_display_name
from ..utils import log_event, url_host
from .feeds import FEED_ACCEPT, is_feed_url, is_xml_content_type, parse_feed
from .heuristics import extract_html_text

MIN_HTML_CHARS = 100


class Scraper:
    def __init__(
        self,
        config: Config | None = None,
        *,
        reddit: RedditClient | None = None,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        config = config or default_config()
        self.timeout = config.http.timeout_seconds
        self.user_agent = config.http.user_agent
        self.max_body_bytes = config.http.max_body_bytes
        self.max_chars = config.sources.max_content_chars
        self.stop_event = stop_event
        self.logger = logger or logging.getLogger("kibble.scraper")
        self.reddit = reddit or RedditClient(
            user_agent=self.user_agent,
            timeout=self.timeout,
            stop_event=stop_event,
        )

    def scrape_source(self, source: NewsSource, timeout: float | None = None) -> ScrapedContent:
        return self.scrape_url(source.url, source.name, timeout=timeout)

    def scrape_url(self, url: str, name: str = "", *, timeout: float | None = None) -> ScrapedContent:
        self._check_cancelled()
        timeout = timeout or self.timeout
        if is_reddit_url(url):
            return self._scrape_reddit(url, name)

        prefetched: FetchResult | None = None
        if is_feed_url(url):
            prefetched = self._fetch(url, timeout, accept=FEED_ACCEPT, max_bytes=self.max_body_bytes)
            if prefetched.error:
                raise ExtractionError(f"scrape error for {url}: {prefetched.error}")
            try:
                return self._from_feed(url, name, prefetched)
            except ExtractionError as exc:
                log_event(self.logger, logging.DEBUG, "feed_fallback_to_html", url=url, error=str(exc))

        self._check_cancelled()
        result = prefetched or self._fetch(url, timeout)
        if result.error:
            raise ExtractionError(f"scrape error for {url}: {result.error}")
        if result.status != 200:
            raise ExtractionError(f"scrape error for {url}: unexpected status (status: {result.status})")

        if prefetched is None and is_xml_content_type(result.content_type):
            try:
                return self._from_feed(url, name, result)
            except ExtractionError as exc:
                log_event(self.logger, logging.DEBUG, "feed_fallback_to_html", url=url, error=str(exc))

        title, text = extract_html_text(result.body)
        if len(text) < MIN_HTML_CHARS:
            raise ExtractionError(f"insufficient content scraped from {url}")
        return ScrapedContent(
            source_name=name or title or url_host(url),
            url=url,
            content=self._cap(text),
        )

    def scrape_sources(
        self,
        sources: list[NewsSource],
        *,
        concurrency: int = 5,
        deadline_seconds: float = 300,
    ) -> list[ScrapeResult]:
        """Scrape sources in parallel; every source gets exactly one result.

        Sources still running when the deadline passes, or when the stop event
        is set, are reported as failures.
        """
        if not sources:
            return []
        executor = ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix="scrape")
        futures = {executor.submit(self._scrape_one, source): source for source in sources}
        results: dict[int, ScrapeResult] = {}
        pending = set(futures)
        deadline = time.monotonic() + deadline_seconds
        try:
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or self._cancelled():
                    break
                done, pending = wait(pending, timeout=min(remaining, 1.0), return_when=FIRST_COMPLETED)
                for future in done:
                    results[id(futures[future])] = future.result()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        reason = "context canceled" if self._cancelled() else (
            f"scrape deadline exceeded after {int(deadline_seconds)}s"
        )
        ordered = []
        for source in sources:
            result = results.get(id(source))
            if result is None:
                result = ScrapeResult(source=source, content=None, error=reason)
            ordered.append(result)
        return ordered

    def _scrape_one(self, source: NewsSource) -> ScrapeResult:
        try:
            content = self.scrape_source(source)
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
            if not isinstance(exc, (ExtractionError, RefreshCancelled, ValueError)):
                error = f"panic while scraping: {error}"
            log_event(self.logger, logging.WARNING, "source_scrape_failed", url=source.url, error=error)
            return ScrapeResult(source=source, content=None, error=error)
        log_event(
            self.logger,
            logging.DEBUG,
            "source_scraped",
            url=source.url,
            chars=len(content.content),
        )
        return ScrapeResult(source=source, content=content, error=None)

    def _scrape_reddit(self, url: str, name: str) -> ScrapedContent:
        try:
            posts = self.reddit.fetch_posts(url)
        except RefreshCancelled:
            raise
        except ValueError as exc:
            raise ExtractionError(f"failed to fetch Reddit posts: {exc}") from exc
        if not posts:
            raise ExtractionError(
                f"no valid posts found in subreddit (text posts with >{self.reddit.min_words} words)"
            )
        blocks = []
        for post in posts:
            blocks.append(
                f"REDDIT POST: {post.title}\n"
                f"LINK: https://reddit.com{post.permalink}\n"
                f"SCORE: {post.score} | AUTHOR: u/{post.author}\n"
                f"{post.body}\n\n---\n\n"
            )
        return ScrapedContent(
            source_name=name or subreddit_display_name(url),
            url=url,
            content=self._cap("".join(blocks)),
        )

    def _from_feed(self, url: str, name: str, result: FetchResult) -> ScrapedContent:
        if result.error:
            raise ExtractionError(f"feed fetch failed: {result.error}")
        if result.status != 200:
            raise ExtractionError(f"feed returned status {result.status}")
        if "text/html" in result.content_type.lower():
            raise ExtractionError("feed URL returned HTML, not XML")
        feed_title, text = parse_feed(result.body)
        return ScrapedContent(
            source_name=name or feed_title or url_host(url),
            url=url,
            content=self._cap(text),
        )

    def _fetch(
        self,
        url: str,
        timeout: float,
        *,
        accept: str | None = None,
        max_bytes: int | None = None,
    ) -> FetchResult:
        return fetch_url(
            url,
            timeout=timeout,
            user_agent=self.user_agent,
            accept=accept,
            max_bytes=max_bytes,
        )

    def _cap(self, text: str) -> str:
        if len(text) > self.max_chars:
            return text[: self.max_chars] + "..."
        return text

    def _cancelled(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancelled():
            raise RefreshCancelled()
