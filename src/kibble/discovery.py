from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .catalog import find_relevant
from .errors import ProviderError, RefreshCancelled, RefreshError
from .llm.client import AIClient
from .models import NewsTopic, SettingsSnapshot
from .reddit import LinkPost, RedditClient, is_reddit_url, rank_domains
from .scraper.validate import SourceValidator
from .storage import add_source, delete_discovered_sources, list_sources
from .utils import log_event, validate_url

MAX_MINED_SUBREDDITS = 3
MAX_COMMUNITY_DOMAINS = 8


@dataclass(frozen=True)
class DiscoveryOutcome:
    proposed: int
    accepted: int
    rejected: int
    tokens_used: int = 0


class SourceDiscovery:
    """Finds, validates and persists news sources for a topic."""

    def __init__(
        self,
        ai: AIClient,
        validator: SourceValidator,
        reddit: RedditClient,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.ai = ai
        self.validator = validator
        self.reddit = reddit
        self.logger = logger or logging.getLogger("kibble.discovery")

    def mine_community_domains(self, conn: Any, topic: NewsTopic) -> list[str]:
        subreddits = [source.url for source in list_sources(conn, topic.id) if is_reddit_url(source.url)]
        for feed in find_relevant(topic.name, topic.description):
            if is_reddit_url(feed.url) and feed.url not in subreddits:
                subreddits.append(feed.url)
        if not subreddits:
            return []

        links: list[LinkPost] = []
        for url in subreddits[:MAX_MINED_SUBREDDITS]:
            try:
                links.extend(self.reddit.fetch_top_links(url))
            except RefreshCancelled:
                raise
            except ValueError as exc:
                log_event(self.logger, logging.DEBUG, "community_mining_failed", url=url, error=str(exc))
        if not links:
            return []
        domains = [rank.domain for rank in rank_domains(links, limit=MAX_COMMUNITY_DOMAINS)]
        log_event(self.logger, logging.INFO, "community_domains_mined", topic=topic.name, domains=",".join(domains))
        return domains

    def discover(self, conn: Any, topic: NewsTopic, settings: SettingsSnapshot) -> DiscoveryOutcome:
        """Replace every AI-discovered source of a topic with a fresh validated set.

        Manual sources are kept and never duplicated.
        """
        domains = self.mine_community_domains(conn, topic)
        try:
            candidates, result = self.ai.discover_sources(topic, settings, community_domains=domains)
        except RefreshCancelled:
            raise
        except ProviderError as exc:
            raise RefreshError(f"discover sources: {exc}") from exc

        cleared = delete_discovered_sources(conn, topic.id)
        log_event(self.logger, logging.DEBUG, "discovered_sources_cleared", topic=topic.name, count=cleared)
        outcome = self._accept(conn, topic, candidates, limit=None, tokens_used=result.tokens_used)
        log_event(
            self.logger,
            logging.INFO,
            "sources_discovered",
            topic=topic.name,
            proposed=outcome.proposed,
            accepted=outcome.accepted,
        )
        return outcome

    def replace(self, conn: Any, topic: NewsTopic, settings: SettingsSnapshot, count: int) -> DiscoveryOutcome:
        """Add up to ``count`` new sources next to the ones the topic already has."""
        try:
            candidates, result = self.ai.discover_sources(topic, settings)
        except RefreshCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "replacement_discovery_failed", topic=topic.name, error=str(exc))
            return DiscoveryOutcome(proposed=0, accepted=0, rejected=0)
        outcome = self._accept(conn, topic, candidates, limit=count, tokens_used=result.tokens_used)
        log_event(
            self.logger,
            logging.INFO,
            "sources_replaced",
            topic=topic.name,
            removed=count,
            replaced=outcome.accepted,
        )
        return outcome

    def _accept(
        self,
        conn: Any,
        topic: NewsTopic,
        candidates: list,
        *,
        limit: int | None,
        tokens_used: int,
    ) -> DiscoveryOutcome:
        existing = {source.url for source in list_sources(conn, topic.id)}
        accepted = 0
        rejected = 0
        for candidate in candidates:
            if limit is not None and accepted >= limit:
                break
            try:
                url = validate_url(candidate.url)
            except ValueError as exc:
                log_event(self.logger, logging.DEBUG, "candidate_url_invalid", url=candidate.url, error=str(exc))
                rejected += 1
                continue
            if url in existing:
                continue
            if self.validator.scraper.stop_event is not None and self.validator.scraper.stop_event.is_set():
                raise RefreshCancelled()

            verdict = self.validator.validate(url, candidate.name)
            if not verdict.ok:
                log_event(
                    self.logger,
                    logging.INFO,
                    "candidate_rejected",
                    url=url,
                    name=candidate.name,
                    reason=verdict.reason,
                )
                rejected += 1
                continue

            final_url = verdict.feed_url or url
            if final_url != url:
                log_event(self.logger, logging.INFO, "feed_discovered", original=url, feed=final_url)
            if final_url in existing:
                continue
            try:
                source_id = add_source(conn, topic.id, final_url, candidate.name or verdict.name)
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "source_insert_failed", url=final_url, error=str(exc))
                continue
            if source_id is None:
                continue
            existing.add(final_url)
            accepted += 1
            log_event(self.logger, logging.INFO, "source_added", topic=topic.name, url=final_url)
        return DiscoveryOutcome(
            proposed=len(candidates),
            accepted=accepted,
            rejected=rejected,
            tokens_used=tokens_used,
        )
