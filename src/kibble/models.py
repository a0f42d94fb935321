from __future__ import annotations

from dataclasses import dataclass, field

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class Topic:
    id: int
    name: str
    description: str
    is_active: bool
    facts_per_refresh: int
    refresh_interval_minutes: int
    summary_min_words: int
    summary_max_words: int
    ai_provider: str
    is_niche: bool
    last_refreshed_at: str | None


@dataclass(frozen=True)
class Fact:
    id: int | None
    topic_id: int
    content: str
    trigrams: list[str]
    is_custom: bool
    is_archived: bool
    source: str
    ai_provider: str
    ai_model: str


@dataclass(frozen=True)
class NewsTopic:
    id: int
    name: str
    description: str
    is_active: bool
    stories_per_refresh: int
    refresh_interval_minutes: int
    summary_min_words: int
    summary_max_words: int
    ai_provider: str
    is_niche: bool
    last_refreshed_at: str | None


@dataclass(frozen=True)
class NewsSource:
    id: int
    news_topic_id: int
    url: str
    name: str
    is_manual: bool
    is_active: bool
    failure_count: int
    last_error: str


@dataclass(frozen=True)
class Story:
    id: int | None
    news_topic_id: int
    title: str
    summary: str
    source_url: str
    source_title: str
    ai_provider: str
    ai_model: str


@dataclass(frozen=True)
class NewsRefreshStatus:
    news_topic_id: int
    status: str
    last_refresh: str | None
    next_refresh: str | None
    error_message: str


@dataclass(frozen=True)
class CandidateSource:
    url: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class ScrapedContent:
    source_name: str
    url: str
    content: str


@dataclass(frozen=True)
class ScrapeResult:
    source: NewsSource
    content: ScrapedContent | None
    error: str | None


@dataclass(frozen=True)
class ValidationResult:
    url: str
    name: str
    ok: bool
    reason: str = ""
    feed_url: str = ""


@dataclass(frozen=True)
class SettingsSnapshot:
    ai_provider: str = "gemini"
    ai_custom_instructions: str = ""
    ai_tone_instructions: str = ""
    news_sourcing_instructions: str = ""
    news_summarizing_instructions: str = ""
    news_tone_instructions: str = ""
    similarity_threshold: float = 0.6
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "mistral-nemo"
    chutes_api_key: str = ""
    chutes_model: str = "deepseek-ai/DeepSeek-V3"


@dataclass(frozen=True)
class ChatResult:
    text: str
    tokens_used: int
    model: str
    provider: str


@dataclass(frozen=True)
class FactsRefreshResult:
    topic_id: int
    requested: int
    generated: int
    discarded: int
    tokens_used: int
    provider: str
    model: str
    facts: list[str] = field(default_factory=list)
    error: str = ""


@dataclass(frozen=True)
class NewsRefreshResult:
    news_topic_id: int
    status: str
    stories_created: int = 0
    sources_scraped: int = 0
    sources_failed: int = 0
    removed_source_count: int = 0
    discovery_passes: int = 0
    error_type: str = ""
    error_message: str = ""
