from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import Config, default_config
from .db import DBConn
from .discovery import DiscoveryOutcome, SourceDiscovery
from .errors import (
    AlreadyRefreshingError,
    KibbleError,
    ProviderError,
    RefreshCancelled,
    RefreshError,
    classify_error,
)
from .llm.client import AIClient
from .locks import FACT_TOPIC, NEWS_TOPIC, KeyedLocks
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    Fact,
    FactsRefreshResult,
    NewsRefreshResult,
    NewsTopic,
    ScrapedContent,
    ScrapeResult,
    SettingsSnapshot,
    Story,
    Topic,
)
from .scraper import Scraper, SourceValidator
from .similarity import SimilarityChecker
from .storage import (
    create_fact,
    create_story,
    delete_source,
    get_news_topic,
    get_topic,
    init_db,
    list_news_topics_due,
    list_sources,
    list_topic_trigrams,
    list_topics_due,
    load_settings_snapshot,
    log_api_usage,
    log_refresh,
    prune_stories,
    purge_expired_sessions,
    recent_story_titles,
    record_source_failure,
    record_source_success,
    set_news_refresh_status,
    update_news_topic_refresh_time,
    update_topic_refresh_time,
)
from .utils import log_event, utc_now_iso_offset
from .wikipedia import WikipediaClient

RECENT_TITLES_LIMIT = 30
STORY_RETENTION_FACTOR = 3
FAN_OUT_POLL_SECONDS = 0.5


@dataclass
class _NewsProgress:
    sources_scraped: int = 0
    sources_failed: int = 0
    removed_source_count: int = 0
    discovery_passes: int = 0
    contents: list[ScrapedContent] = field(default_factory=list)


class Scheduler:
    """Periodic driver for fact and news refreshes.

    Every unit of work runs on its own thread with its own database
    connection and holds the per-item lock for its whole duration.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        connect: Callable[[], DBConn] | None = None,
        ai: AIClient | None = None,
        scraper: Scraper | None = None,
        discovery: SourceDiscovery | None = None,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or default_config()
        self.stop_event = stop_event or threading.Event()
        self.logger = logger or logging.getLogger("kibble.scheduler")
        self.connect = connect or (lambda: init_db(self.config.paths.state_db))
        self.scraper = scraper or Scraper(self.config, stop_event=self.stop_event)
        self.ai = ai or AIClient(
            self.config,
            wiki=WikipediaClient(user_agent=self.config.http.user_agent),
        )
        if discovery is None:
            validator = SourceValidator(
                self.scraper,
                timeout=self.config.sources.validation_timeout_seconds,
                min_chars=self.config.sources.min_validation_chars,
            )
            discovery = SourceDiscovery(self.ai, validator, self.scraper.reddit)
        self.discovery = discovery
        self.locks = KeyedLocks()

    # Entry points

    def run(self) -> None:
        """Refresh immediately, then once per tick until the stop event is set."""
        tick = self.config.scheduler.tick_seconds
        log_event(self.logger, logging.INFO, "scheduler_started", tick_seconds=tick)
        while not self.stop_event.is_set():
            next_tick = time.monotonic() + tick
            try:
                self.check_and_refresh()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "scheduler_tick_failed", error=str(exc))
            if self.stop_event.wait(max(0.0, next_tick - time.monotonic())):
                break
        log_event(self.logger, logging.INFO, "scheduler_stopped")

    def check_and_refresh(self) -> None:
        self._with_conn(self._purge_sessions)
        topics = self._with_conn(list_topics_due) or []
        self._fan_out(
            FACT_TOPIC,
            [topic.id for topic in topics],
            self.config.scheduler.fact_concurrency,
            self._run_facts_unit,
        )
        news_topics = self._with_conn(list_news_topics_due) or []
        self._fan_out(
            NEWS_TOPIC,
            [topic.id for topic in news_topics],
            self.config.scheduler.news_concurrency,
            self._run_news_unit,
        )

    def refresh_now(self, topic_id: int) -> FactsRefreshResult:
        with self.locks.hold(FACT_TOPIC, topic_id) as acquired:
            if not acquired:
                raise AlreadyRefreshingError("topic", topic_id)
            return self._run_facts_unit(topic_id)

    def refresh_news_now(self, news_topic_id: int) -> NewsRefreshResult | None:
        """Refresh a news topic now; returns None when it is already being refreshed."""
        with self.locks.hold(NEWS_TOPIC, news_topic_id) as acquired:
            if not acquired:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "news_refresh_already_running",
                    news_topic_id=news_topic_id,
                )
                return None
            return self._run_news_unit(news_topic_id)

    def discover_sources_now(self, news_topic_id: int) -> DiscoveryOutcome:
        with self.locks.hold(NEWS_TOPIC, news_topic_id) as acquired:
            if not acquired:
                raise AlreadyRefreshingError("news topic", news_topic_id)
            conn = self.connect()
            try:
                topic = get_news_topic(conn, news_topic_id)
                if topic is None:
                    raise RefreshError(f"news topic {news_topic_id} not found")
                settings = load_settings_snapshot(conn, self.config)
                return self.discovery.discover(conn, topic, settings)
            finally:
                conn.close()

    # Fan-out

    def _fan_out(
        self,
        kind: str,
        item_ids: list[int],
        concurrency: int,
        unit: Callable[[int], Any],
    ) -> list[Any]:
        if not item_ids:
            return []
        executor = ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix=f"{kind}-refresh")
        futures = []
        try:
            for item_id in item_ids:
                if self.stop_event.is_set():
                    break
                futures.append(executor.submit(self._locked_unit, kind, item_id, unit))
            pending = set(futures)
            while pending and not self.stop_event.is_set():
                _, pending = wait(pending, timeout=FAN_OUT_POLL_SECONDS, return_when=FIRST_COMPLETED)
            if pending:
                log_event(self.logger, logging.WARNING, "refresh_abandoned", kind=kind, count=len(pending))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results = []
        for future in futures:
            if not future.done() or future.cancelled():
                continue
            try:
                result = future.result()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "refresh_thread_error", kind=kind, error=str(exc))
                continue
            if result is not None:
                results.append(result)
        return results

    def _locked_unit(self, kind: str, item_id: int, unit: Callable[[int], Any]) -> Any:
        with self.locks.hold(kind, item_id) as acquired:
            if not acquired:
                log_event(self.logger, logging.DEBUG, "refresh_skipped_locked", kind=kind, item_id=item_id)
                return None
            return unit(item_id)

    # Facts

    def _run_facts_unit(self, topic_id: int) -> FactsRefreshResult:
        conn = self.connect()
        try:
            topic = get_topic(conn, topic_id)
            if topic is None:
                raise RefreshError(f"topic {topic_id} not found")
            start = time.monotonic()
            try:
                return self._refresh_topic(conn, topic, start)
            except Exception as exc:  # noqa: BLE001
                message = f"panic: {exc}"
                log_event(self.logger, logging.ERROR, "facts_refresh_panic", topic=topic.name, error=message)
                log_refresh(
                    conn,
                    topic_type="facts",
                    topic_id=topic.id,
                    topic_name=topic.name,
                    status="error",
                    duration_ms=_elapsed_ms(start),
                    error_type=classify_error(message),
                    error_message=message,
                    provider=topic.ai_provider,
                )
                return FactsRefreshResult(
                    topic_id=topic.id,
                    requested=topic.facts_per_refresh,
                    generated=0,
                    discarded=0,
                    tokens_used=0,
                    provider=topic.ai_provider,
                    model="",
                    error=message,
                )
        finally:
            conn.close()

    def _refresh_topic(self, conn: Any, topic: Topic, start: float) -> FactsRefreshResult:
        log_event(self.logger, logging.INFO, "facts_refresh_started", topic=topic.name, topic_id=topic.id)
        settings = load_settings_snapshot(conn, self.config)
        try:
            facts, chat = self.ai.generate_facts(topic, settings)
        except KibbleError as exc:
            return self._facts_failed(conn, topic, settings, start, exc)
        if self.stop_event.is_set():
            return self._facts_failed(conn, topic, settings, start, RefreshCancelled())

        checker = SimilarityChecker(
            list_topic_trigrams(conn, topic.id),
            threshold=settings.similarity_threshold,
            size=self.config.similarity.ngram_size,
        )
        kept: list[str] = []
        discarded = 0
        for content in facts:
            accepted, grams = checker.check(content)
            if not accepted:
                discarded += 1
                continue
            try:
                create_fact(
                    conn,
                    Fact(
                        id=None,
                        topic_id=topic.id,
                        content=content,
                        trigrams=sorted(grams),
                        is_custom=False,
                        is_archived=False,
                        source=chat.provider,
                        ai_provider=chat.provider,
                        ai_model=chat.model,
                    ),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "fact_save_failed", topic=topic.name, error=str(exc))
                continue
            kept.append(content)

        log_api_usage(
            conn,
            topic_id=topic.id,
            requested=topic.facts_per_refresh,
            generated=len(kept),
            discarded=discarded,
            tokens_used=chat.tokens_used,
            provider=chat.provider,
            model=chat.model,
        )
        update_topic_refresh_time(conn, topic.id)
        log_refresh(
            conn,
            topic_type="facts",
            topic_id=topic.id,
            topic_name=topic.name,
            status="success",
            duration_ms=_elapsed_ms(start),
            provider=chat.provider,
            model=chat.model,
            item_count=len(kept),
        )
        log_event(
            self.logger,
            logging.INFO,
            "facts_refreshed",
            topic=topic.name,
            generated=len(kept),
            discarded=discarded,
        )
        return FactsRefreshResult(
            topic_id=topic.id,
            requested=topic.facts_per_refresh,
            generated=len(kept),
            discarded=discarded,
            tokens_used=chat.tokens_used,
            provider=chat.provider,
            model=chat.model,
            facts=kept,
        )

    def _facts_failed(
        self,
        conn: Any,
        topic: Topic,
        settings: SettingsSnapshot,
        start: float,
        exc: Exception,
    ) -> FactsRefreshResult:
        message = str(exc)
        provider = self.ai.provider_for(topic.ai_provider, settings).name
        log_event(self.logger, logging.ERROR, "facts_generation_failed", topic=topic.name, error=message)
        log_api_usage(
            conn,
            topic_id=topic.id,
            requested=topic.facts_per_refresh,
            generated=0,
            discarded=0,
            tokens_used=0,
            provider=provider,
            model="",
            error=message,
        )
        log_refresh(
            conn,
            topic_type="facts",
            topic_id=topic.id,
            topic_name=topic.name,
            status="error",
            duration_ms=_elapsed_ms(start),
            error_type=classify_error(message),
            error_message=message,
            provider=provider,
        )
        return FactsRefreshResult(
            topic_id=topic.id,
            requested=topic.facts_per_refresh,
            generated=0,
            discarded=0,
            tokens_used=0,
            provider=provider,
            model="",
            error=message,
        )

    # News

    def _run_news_unit(self, news_topic_id: int) -> NewsRefreshResult:
        conn = self.connect()
        try:
            topic = get_news_topic(conn, news_topic_id)
            if topic is None:
                raise RefreshError(f"news topic {news_topic_id} not found")
            start = time.monotonic()
            progress = _NewsProgress()
            try:
                return self._refresh_news_topic(conn, topic, start, progress)
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "news_refresh_panic", topic=topic.name, error=str(exc))
                return self._news_failed(conn, topic, start, progress, f"panic: {exc}")
        finally:
            conn.close()

    def _refresh_news_topic(
        self,
        conn: Any,
        topic: NewsTopic,
        start: float,
        progress: _NewsProgress,
    ) -> NewsRefreshResult:
        log_event(self.logger, logging.INFO, "news_refresh_started", topic=topic.name, news_topic_id=topic.id)
        set_news_refresh_status(conn, topic.id, STATUS_IN_PROGRESS)
        settings = load_settings_snapshot(conn, self.config)
        try:
            sources = list_sources(conn, topic.id, active_only=True)
            bootstrapped = False
            if not sources:
                self.discovery.discover(conn, topic, settings)
                progress.discovery_passes += 1
                bootstrapped = True
                sources = list_sources(conn, topic.id, active_only=True)
                if not sources:
                    raise RefreshError("no sources available for topic")

            results = self.scraper.scrape_sources(
                sources,
                concurrency=self.config.scheduler.scrape_concurrency,
                deadline_seconds=self.config.scheduler.scrape_timeout_seconds,
            )
            self._apply_scrape_results(conn, topic, results, progress)

            if progress.removed_source_count and not bootstrapped:
                self._refill_sources(conn, topic, settings, progress)

            if self.stop_event.is_set():
                raise RefreshCancelled()
            if not progress.contents:
                raise RefreshError("failed to scrape any content from active sources")

            titles = recent_story_titles(conn, topic.id, RECENT_TITLES_LIMIT)
            try:
                drafts, chat = self.ai.summarize(topic, progress.contents, settings, existing_titles=titles)
            except ProviderError as exc:
                raise RefreshError(f"summarize content: {exc}") from exc
            if self.stop_event.is_set():
                raise RefreshCancelled()
        except KibbleError as exc:
            return self._news_failed(conn, topic, start, progress, str(exc))

        provider = chat.provider if chat else ""
        model = chat.model if chat else ""
        created = 0
        for draft in drafts:
            try:
                create_story(
                    conn,
                    Story(
                        id=None,
                        news_topic_id=topic.id,
                        title=draft.title,
                        summary=draft.summary,
                        source_url=draft.source_url,
                        source_title=draft.source_title,
                        ai_provider=provider,
                        ai_model=model,
                    ),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "story_save_failed", topic=topic.name, error=str(exc))
                continue
            created += 1

        pruned = prune_stories(conn, topic.id, topic.stories_per_refresh * STORY_RETENTION_FACTOR)
        set_news_refresh_status(
            conn,
            topic.id,
            STATUS_COMPLETED,
            next_refresh=utc_now_iso_offset(seconds=topic.refresh_interval_minutes * 60),
            touch_last_refresh=True,
        )
        update_news_topic_refresh_time(conn, topic.id)
        log_refresh(
            conn,
            topic_type="news",
            topic_id=topic.id,
            topic_name=topic.name,
            status="success",
            duration_ms=_elapsed_ms(start),
            provider=provider,
            model=model,
            item_count=created,
        )
        log_event(
            self.logger,
            logging.INFO,
            "news_refreshed",
            topic=topic.name,
            stories=created,
            pruned=pruned,
            removed_sources=progress.removed_source_count,
        )
        return NewsRefreshResult(
            news_topic_id=topic.id,
            status=STATUS_COMPLETED,
            stories_created=created,
            sources_scraped=progress.sources_scraped,
            sources_failed=progress.sources_failed,
            removed_source_count=progress.removed_source_count,
            discovery_passes=progress.discovery_passes,
        )

    def _apply_scrape_results(
        self,
        conn: Any,
        topic: NewsTopic,
        results: list[ScrapeResult],
        progress: _NewsProgress,
    ) -> None:
        threshold = self.config.sources.removal_threshold
        for result in results:
            source = result.source
            if result.content is None:
                progress.sources_failed += 1
                error = result.error or "unknown scrape error"
                try:
                    failures = record_source_failure(conn, source.id, error)
                    if failures >= threshold:
                        delete_source(conn, source.id)
                        progress.removed_source_count += 1
                        log_event(
                            self.logger,
                            logging.WARNING,
                            "source_removed",
                            url=source.url,
                            failures=failures,
                            news_topic_id=topic.id,
                        )
                except Exception as exc:  # noqa: BLE001
                    log_event(self.logger, logging.ERROR, "source_status_update_failed", url=source.url, error=str(exc))
                continue
            progress.sources_scraped += 1
            try:
                record_source_success(conn, source.id)
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "source_status_update_failed", url=source.url, error=str(exc))
            progress.contents.append(result.content)

    def _refill_sources(
        self,
        conn: Any,
        topic: NewsTopic,
        settings: SettingsSnapshot,
        progress: _NewsProgress,
    ) -> None:
        """Run one discovery pass after sources were removed.

        An emptied pool gets a full discovery; otherwise only the removed
        count is replaced.
        """
        progress.discovery_passes += 1
        if list_sources(conn, topic.id, active_only=True):
            self.discovery.replace(conn, topic, settings, progress.removed_source_count)
            return
        try:
            self.discovery.discover(conn, topic, settings)
        except RefreshError as exc:
            log_event(self.logger, logging.ERROR, "replacement_discovery_failed", topic=topic.name, error=str(exc))

    def _news_failed(
        self,
        conn: Any,
        topic: NewsTopic,
        start: float,
        progress: _NewsProgress,
        message: str,
    ) -> NewsRefreshResult:
        error_type = classify_error(message)
        log_event(
            self.logger,
            logging.ERROR,
            "news_refresh_failed",
            topic=topic.name,
            error_type=error_type,
            error=message,
        )
        set_news_refresh_status(
            conn,
            topic.id,
            STATUS_FAILED,
            next_refresh=utc_now_iso_offset(seconds=self.config.scheduler.failure_backoff_seconds),
            error_message=message,
        )
        log_refresh(
            conn,
            topic_type="news",
            topic_id=topic.id,
            topic_name=topic.name,
            status="error",
            duration_ms=_elapsed_ms(start),
            error_type=error_type,
            error_message=message,
            provider=topic.ai_provider,
        )
        return NewsRefreshResult(
            news_topic_id=topic.id,
            status=STATUS_FAILED,
            sources_scraped=progress.sources_scraped,
            sources_failed=progress.sources_failed,
            removed_source_count=progress.removed_source_count,
            discovery_passes=progress.discovery_passes,
            error_type=error_type,
            error_message=message,
        )

    # Housekeeping

    def _purge_sessions(self, conn: Any) -> None:
        purged = purge_expired_sessions(conn)
        if purged:
            log_event(self.logger, logging.DEBUG, "sessions_purged", count=purged)

    def _with_conn(self, action: Callable[[Any], Any]) -> Any:
        try:
            conn = self.connect()
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "db_connect_failed", error=str(exc))
            return None
        try:
            return action(conn)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "scheduler_query_failed", action=action.__name__, error=str(exc))
            return None
        finally:
            conn.close()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
