from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import jsonschema

from ..catalog import CatalogFeed, find_relevant
from ..config import Config, default_config
from ..errors import ProviderError
from ..models import CandidateSource, ChatResult, NewsTopic, ScrapedContent, SettingsSnapshot, Topic
from ..utils import log_event
from ..wikipedia import WikipediaClient
from .prompts import (
    build_discover_prompt,
    build_facts_prompt,
    build_search_queries_prompt,
    build_summarize_prompt,
    load_json_list,
    parse_numbered_lines,
)
from .providers import ChatProvider, ChatRequest, Message, resolve_provider

SOURCE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["url"],
    "properties": {
        "url": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": "string"},
    },
}

STORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "summary"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "summary": {"type": "string", "minLength": 1},
        "source_url": {"type": "string"},
        "source_title": {"type": "string"},
    },
}

MAX_QUERIES = 3
RESULTS_PER_QUERY = 3
MAX_ARTICLES = 5
MAX_RESEARCH_CHARS = 4000


@dataclass(frozen=True)
class StoryDraft:
    title: str
    summary: str
    source_url: str
    source_title: str


class AIClient:
    """Builds prompts, routes them to the configured chat provider and parses the replies."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        wiki: WikipediaClient | None = None,
        provider_factory: Callable[[str, SettingsSnapshot], ChatProvider] = resolve_provider,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or default_config()
        self.wiki = wiki
        self.provider_factory = provider_factory
        self.logger = logger or logging.getLogger("kibble.llm")

    def provider_for(self, topic_provider: str, settings: SettingsSnapshot) -> ChatProvider:
        return self.provider_factory(topic_provider, settings)

    def generate_facts(self, topic: Topic, settings: SettingsSnapshot) -> tuple[list[str], ChatResult]:
        provider = self.provider_for(topic.ai_provider, settings)
        research = ""
        if topic.is_niche:
            research = self._safe_research(provider, topic.name, topic.description)
        prompt = build_facts_prompt(
            topic.name,
            topic.description,
            settings.ai_custom_instructions,
            settings.ai_tone_instructions,
            topic.facts_per_refresh,
            topic.summary_min_words,
            topic.summary_max_words,
            research=research,
        )
        result = provider.chat(
            ChatRequest(
                messages=[Message(role="user", content=prompt)],
                temperature=0.9,
                max_tokens=2048,
                timeout=self.config.scheduler.facts_timeout_seconds,
            )
        )
        if not result.text.strip():
            raise ProviderError(f"empty response from {provider.name}")
        facts = parse_numbered_lines(result.text)
        if not facts:
            raise ProviderError(f"no parseable facts in response from {provider.name}")
        return facts, result

    def discover_sources(
        self,
        topic: NewsTopic,
        settings: SettingsSnapshot,
        *,
        suggested_feeds: Iterable[CatalogFeed] | None = None,
        community_domains: Iterable[str] = (),
    ) -> tuple[list[CandidateSource], ChatResult]:
        provider = self.provider_for(topic.ai_provider, settings)
        if suggested_feeds is None:
            suggested_feeds = find_relevant(topic.name, topic.description)
        research = ""
        if topic.is_niche:
            research = self._safe_research(provider, topic.name, topic.description)
        prompt = build_discover_prompt(
            topic.name,
            topic.description,
            settings.news_sourcing_instructions,
            suggested_feeds,
            community_domains,
            research=research,
        )
        result = provider.chat(
            ChatRequest(
                messages=[Message(role="user", content=prompt)],
                temperature=0.7,
                max_tokens=2048,
                json_mode=True,
                timeout=self.config.scheduler.discover_timeout_seconds,
            )
        )
        items = self._parse_items(result, provider, "sources", SOURCE_SCHEMA)
        candidates = [
            CandidateSource(
                url=item["url"].strip(),
                name=(item.get("name") or "").strip(),
                description=(item.get("description") or "").strip(),
            )
            for item in items
        ]
        return candidates, result

    def summarize(
        self,
        topic: NewsTopic,
        contents: list[ScrapedContent],
        settings: SettingsSnapshot,
        *,
        existing_titles: Iterable[str] = (),
    ) -> tuple[list[StoryDraft], ChatResult | None]:
        if not contents:
            return [], None
        provider = self.provider_for(topic.ai_provider, settings)
        prompt = build_summarize_prompt(
            topic.name,
            contents,
            settings.news_summarizing_instructions,
            settings.news_tone_instructions,
            topic.stories_per_refresh,
            topic.summary_min_words,
            topic.summary_max_words,
            existing_titles=existing_titles,
        )
        result = provider.chat(
            ChatRequest(
                messages=[Message(role="user", content=prompt)],
                temperature=0.7,
                max_tokens=4096,
                json_mode=True,
                timeout=self.config.scheduler.summarize_timeout_seconds,
            )
        )
        items = self._parse_items(result, provider, "stories", STORY_SCHEMA)
        drafts = [
            StoryDraft(
                title=item["title"].strip(),
                summary=item["summary"].strip(),
                source_url=(item.get("source_url") or "").strip(),
                source_title=(item.get("source_title") or "").strip(),
            )
            for item in items
        ]
        return drafts[: max(topic.stories_per_refresh, 0)], result

    def generate_search_queries(self, provider: ChatProvider, name: str, description: str) -> list[str]:
        try:
            result = provider.chat(
                ChatRequest(
                    messages=[Message(role="user", content=build_search_queries_prompt(name, description))],
                    temperature=0.5,
                    max_tokens=256,
                    timeout=self.config.http.timeout_seconds,
                )
            )
        except ProviderError as exc:
            log_event(self.logger, logging.WARNING, "search_queries_failed", topic=name, error=str(exc))
            return [name]
        queries = parse_numbered_lines(result.text)
        return queries[:MAX_QUERIES] or [name]

    def research_topic(self, provider: ChatProvider, name: str, description: str) -> str:
        """Collect encyclopedia summaries for a topic as a prompt context block."""
        if self.wiki is None:
            raise ValueError("wikipedia client not available")
        queries = self.generate_search_queries(provider, name, description)
        log_event(self.logger, logging.DEBUG, "research_started", topic=name, queries=len(queries))

        titles: list[str] = []
        for query in queries:
            try:
                results = self.wiki.search(query, limit=RESULTS_PER_QUERY)
            except ValueError as exc:
                log_event(self.logger, logging.DEBUG, "wikipedia_search_failed", query=query, error=str(exc))
                continue
            for hit in results:
                if hit.title not in titles:
                    titles.append(hit.title)
        if not titles:
            raise ValueError(f"no Wikipedia articles found for {name!r}")

        parts: list[str] = []
        total = 0
        for title in titles[:MAX_ARTICLES]:
            try:
                summary = self.wiki.summary(title)
            except ValueError as exc:
                log_event(self.logger, logging.DEBUG, "wikipedia_summary_failed", title=title, error=str(exc))
                continue
            parts.append(summary)
            total += len(summary)
            if total > MAX_RESEARCH_CHARS:
                break
        if not parts:
            raise ValueError(f"could not fetch any Wikipedia summaries for {name!r}")
        return "\n\n".join(parts)

    def _safe_research(self, provider: ChatProvider, name: str, description: str) -> str:
        if self.wiki is None:
            return ""
        try:
            return self.research_topic(provider, name, description)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "research_failed", topic=name, error=str(exc))
            return ""

    def _parse_items(
        self,
        result: ChatResult,
        provider: ChatProvider,
        kind: str,
        schema: dict[str, Any],
    ) -> list[dict[str, Any]]:
        if not result.text.strip():
            raise ProviderError(f"empty response from {provider.name}")
        try:
            payload = load_json_list(result.text, kind)
        except ValueError as exc:
            raise ProviderError(
                f"failed to parse {kind} JSON from {provider.name}: {exc} (response: {result.text[:200]})"
            ) from exc
        items = []
        for item in payload:
            try:
                jsonschema.validate(item, schema)
            except jsonschema.ValidationError as exc:
                log_event(self.logger, logging.DEBUG, "llm_item_rejected", kind=kind, error=exc.message)
                continue
            items.append(item)
        return items

