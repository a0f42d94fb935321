from __future__ import annotations

import logging
from typing import Callable

from .utils import json_dumps, utc_now_iso

Migration = Callable[..., None]

SEED_SETTINGS: dict[str, object] = {
    "ai_provider": "gemini",
    "ai_custom_instructions": "",
    "ai_tone_instructions": "",
    "news_sourcing_instructions": (
        "Find reliable, reputable news sources that provide regular updates. "
        "Include relevant Reddit subreddits when appropriate. "
        "Prefer sources with RSS feeds or well-structured HTML. "
        "Avoid paywalled content when possible."
    ),
    "news_summarizing_instructions": (
        "Summarize the news story in a clear, informative tone. "
        "Focus on the key facts and why this story matters. "
        "Keep the summary between 75-150 words."
    ),
    "news_tone_instructions": "",
    "similarity_threshold": 0.6,
}


def apply_migrations(conn) -> None:
    logger = logging.getLogger("kibble.migrations")
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _id_column(conn) -> str:
    if getattr(conn, "backend", "sqlite") == "postgres":
        return "id BIGSERIAL PRIMARY KEY"
    return "id INTEGER PRIMARY KEY AUTOINCREMENT"


def _migration_facts_schema(conn) -> None:
    id_col = _id_column(conn)
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS topics (
            {id_col},
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            display_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            facts_per_refresh INTEGER NOT NULL DEFAULT 5,
            refresh_interval_minutes INTEGER NOT NULL DEFAULT 1440,
            summary_min_words INTEGER NOT NULL DEFAULT 0,
            summary_max_words INTEGER NOT NULL DEFAULT 0,
            ai_provider TEXT NOT NULL DEFAULT '',
            is_niche INTEGER NOT NULL DEFAULT 0,
            last_refreshed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS facts (
            {id_col},
            topic_id INTEGER NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            trigrams TEXT NOT NULL DEFAULT '[]',
            is_custom INTEGER NOT NULL DEFAULT 0,
            is_archived INTEGER NOT NULL DEFAULT 0,
            source TEXT NOT NULL DEFAULT '',
            ai_provider TEXT NOT NULL DEFAULT '',
            ai_model TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_facts_topic ON facts(topic_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS secrets (
            key TEXT PRIMARY KEY,
            key_id TEXT NOT NULL,
            blob TEXT NOT NULL,
            last4 TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS api_usage_log (
            {id_col},
            topic_id INTEGER NULL,
            facts_requested INTEGER NOT NULL DEFAULT 0,
            facts_generated INTEGER NOT NULL DEFAULT 0,
            facts_discarded INTEGER NOT NULL DEFAULT 0,
            tokens_used INTEGER NOT NULL DEFAULT 0,
            ai_provider TEXT NOT NULL DEFAULT '',
            ai_model TEXT NOT NULL DEFAULT '',
            error TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            token TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    for key, value in SEED_SETTINGS.items():
        conn.execute(
            "INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json_dumps(value), utc_now_iso()),
        )


def _migration_news_schema(conn) -> None:
    id_col = _id_column(conn)
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS news_topics (
            {id_col},
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            display_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            stories_per_refresh INTEGER NOT NULL DEFAULT 5,
            refresh_interval_minutes INTEGER NOT NULL DEFAULT 120,
            summary_min_words INTEGER NOT NULL DEFAULT 0,
            summary_max_words INTEGER NOT NULL DEFAULT 0,
            ai_provider TEXT NOT NULL DEFAULT '',
            is_niche INTEGER NOT NULL DEFAULT 0,
            last_refreshed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS news_sources (
            {id_col},
            news_topic_id INTEGER NOT NULL REFERENCES news_topics(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            is_manual INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            failure_count INTEGER NOT NULL DEFAULT 0 CHECK (failure_count >= 0),
            last_error TEXT NOT NULL DEFAULT '',
            last_scraped_at TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(news_topic_id, url)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS stories (
            {id_col},
            news_topic_id INTEGER NOT NULL REFERENCES news_topics(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            summary TEXT NOT NULL,
            source_url TEXT NOT NULL DEFAULT '',
            source_title TEXT NOT NULL DEFAULT '',
            ai_provider TEXT NOT NULL DEFAULT '',
            ai_model TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_stories_topic ON stories(news_topic_id, created_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS news_refresh_status (
            news_topic_id INTEGER PRIMARY KEY REFERENCES news_topics(id) ON DELETE CASCADE,
            last_refresh TEXT NULL,
            next_refresh TEXT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            error_message TEXT NOT NULL DEFAULT ''
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS refresh_log (
            {id_col},
            topic_type TEXT NOT NULL,
            topic_id INTEGER NOT NULL,
            topic_name TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            error_type TEXT NOT NULL DEFAULT '',
            error_message TEXT NOT NULL DEFAULT '',
            duration_ms INTEGER NOT NULL DEFAULT 0,
            ai_provider TEXT NOT NULL DEFAULT '',
            ai_model TEXT NOT NULL DEFAULT '',
            item_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_facts_schema", _migration_facts_schema),
        ("002_news_schema", _migration_news_schema),
    ]
