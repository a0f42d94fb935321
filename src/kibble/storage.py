from __future__ import annotations

import json
import os
from datetime import datetime, timedelta
from typing import Any

from .config import Config, get_state_db_path
from .db import DBConn, connect_db
from .models import (
    STATUS_PENDING,
    Fact,
    NewsRefreshStatus,
    NewsSource,
    NewsTopic,
    SettingsSnapshot,
    Story,
    Topic,
)
from .security.secrets import decrypt_secret, encrypt_secret, secret_aad
from .utils import json_dumps, parse_iso, utc_now, utc_now_iso

SECRET_ENV_FALLBACKS = {
    "gemini_api_key": "KIBBLE_GEMINI_API_KEY",
    "chutes_api_key": "KIBBLE_CHUTES_API_KEY",
}


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or get_state_db_path())


# Settings


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


def store_secret(conn: Any, key: str, value: str) -> None:
    key_id, blob = encrypt_secret(value, secret_aad(key))
    conn.execute(
        """
        INSERT INTO secrets (key, key_id, blob, last4, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            key_id = excluded.key_id,
            blob = excluded.blob,
            last4 = excluded.last4,
            updated_at = excluded.updated_at
        """,
        (key, key_id, blob, value[-4:], utc_now_iso()),
    )
    conn.commit()


def load_secret(conn: Any, key: str) -> str:
    row = conn.execute("SELECT blob FROM secrets WHERE key = ?", (key,)).fetchone()
    if row:
        return decrypt_secret(row[0], secret_aad(key))
    env_name = SECRET_ENV_FALLBACKS.get(key)
    if env_name:
        return os.environ.get(env_name, "")
    return ""


def load_settings_snapshot(conn: Any, config: Config) -> SettingsSnapshot:
    def text(key: str, default: str = "") -> str:
        value = get_setting(conn, key, default)
        return str(value) if value is not None else default

    try:
        threshold = float(get_setting(conn, "similarity_threshold", config.similarity.threshold))
    except (TypeError, ValueError):
        threshold = config.similarity.threshold
    if not 0 < threshold <= 1:
        threshold = config.similarity.threshold

    return SettingsSnapshot(
        ai_provider=text("ai_provider", "gemini") or "gemini",
        ai_custom_instructions=text("ai_custom_instructions"),
        ai_tone_instructions=text("ai_tone_instructions"),
        news_sourcing_instructions=text("news_sourcing_instructions"),
        news_summarizing_instructions=text("news_summarizing_instructions"),
        news_tone_instructions=text("news_tone_instructions"),
        similarity_threshold=threshold,
        gemini_api_key=load_secret(conn, "gemini_api_key"),
        gemini_model=text("gemini_model") or config.llm.gemini_model,
        ollama_url=text("ollama_url") or config.llm.ollama_url,
        ollama_model=text("ollama_model") or config.llm.ollama_model,
        chutes_api_key=load_secret(conn, "chutes_api_key"),
        chutes_model=text("chutes_model") or config.llm.chutes_model,
    )


# Topics and facts

_TOPIC_COLUMNS = (
    "id, name, description, is_active, facts_per_refresh, refresh_interval_minutes, "
    "summary_min_words, summary_max_words, ai_provider, is_niche, last_refreshed_at"
)


def create_topic(
    conn: Any,
    name: str,
    description: str = "",
    *,
    facts_per_refresh: int = 5,
    refresh_interval_minutes: int = 1440,
    summary_min_words: int = 0,
    summary_max_words: int = 0,
    ai_provider: str = "",
    is_niche: bool = False,
    is_active: bool = True,
) -> int:
    now = utc_now_iso()
    row = conn.execute(
        """
        INSERT INTO topics
            (name, description, is_active, facts_per_refresh, refresh_interval_minutes,
             summary_min_words, summary_max_words, ai_provider, is_niche, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            name,
            description,
            int(is_active),
            facts_per_refresh,
            refresh_interval_minutes,
            summary_min_words,
            summary_max_words,
            ai_provider,
            int(is_niche),
            now,
            now,
        ),
    ).fetchone()
    conn.commit()
    return int(row[0])


def get_topic(conn: Any, topic_id: int) -> Topic | None:
    row = conn.execute(f"SELECT {_TOPIC_COLUMNS} FROM topics WHERE id = ?", (topic_id,)).fetchone()
    return _topic_from_row(row) if row else None


def list_topics_due(conn: Any, now: datetime | None = None) -> list[Topic]:
    now = now or utc_now()
    rows = conn.execute(f"SELECT {_TOPIC_COLUMNS} FROM topics WHERE is_active = 1").fetchall()
    topics = [_topic_from_row(row) for row in rows]
    due = [
        topic
        for topic in topics
        if _is_due(topic.last_refreshed_at, topic.refresh_interval_minutes, now)
    ]
    return sorted(due, key=lambda topic: (topic.last_refreshed_at is not None, topic.last_refreshed_at or ""))


def update_topic_refresh_time(conn: Any, topic_id: int) -> None:
    now = utc_now_iso()
    conn.execute(
        "UPDATE topics SET last_refreshed_at = ?, updated_at = ? WHERE id = ?",
        (now, now, topic_id),
    )
    conn.commit()


def list_topic_trigrams(conn: Any, topic_id: int) -> list[set[str]]:
    rows = conn.execute("SELECT trigrams FROM facts WHERE topic_id = ?", (topic_id,)).fetchall()
    gram_sets = []
    for row in rows:
        try:
            gram_sets.append(set(json.loads(row[0] or "[]")))
        except json.JSONDecodeError:
            continue
    return gram_sets


def create_fact(conn: Any, fact: Fact) -> int:
    row = conn.execute(
        """
        INSERT INTO facts
            (topic_id, content, trigrams, is_custom, is_archived, source, ai_provider, ai_model, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            fact.topic_id,
            fact.content,
            json.dumps(sorted(fact.trigrams)),
            int(fact.is_custom),
            int(fact.is_archived),
            fact.source,
            fact.ai_provider,
            fact.ai_model,
            utc_now_iso(),
        ),
    ).fetchone()
    conn.commit()
    return int(row[0])


def list_facts(conn: Any, topic_id: int, include_archived: bool = False) -> list[Fact]:
    sql = (
        "SELECT id, topic_id, content, trigrams, is_custom, is_archived, source, ai_provider, ai_model "
        "FROM facts WHERE topic_id = ?"
    )
    if not include_archived:
        sql += " AND is_archived = 0"
    rows = conn.execute(sql + " ORDER BY id", (topic_id,)).fetchall()
    return [
        Fact(
            id=int(row[0]),
            topic_id=int(row[1]),
            content=row[2],
            trigrams=json.loads(row[3] or "[]"),
            is_custom=bool(row[4]),
            is_archived=bool(row[5]),
            source=row[6],
            ai_provider=row[7],
            ai_model=row[8],
        )
        for row in rows
    ]


def archive_fact(conn: Any, fact_id: int) -> None:
    conn.execute("UPDATE facts SET is_archived = 1 WHERE id = ?", (fact_id,))
    conn.commit()


def log_api_usage(
    conn: Any,
    *,
    topic_id: int | None,
    requested: int,
    generated: int,
    discarded: int,
    tokens_used: int,
    provider: str,
    model: str,
    error: str = "",
) -> None:
    conn.execute(
        """
        INSERT INTO api_usage_log
            (topic_id, facts_requested, facts_generated, facts_discarded, tokens_used,
             ai_provider, ai_model, error, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (topic_id, requested, generated, discarded, tokens_used, provider, model, error, utc_now_iso()),
    )
    conn.commit()


def log_refresh(
    conn: Any,
    *,
    topic_type: str,
    topic_id: int,
    topic_name: str,
    status: str,
    duration_ms: int,
    error_type: str = "",
    error_message: str = "",
    provider: str = "",
    model: str = "",
    item_count: int = 0,
) -> None:
    conn.execute(
        """
        INSERT INTO refresh_log
            (topic_type, topic_id, topic_name, status, error_type, error_message,
             duration_ms, ai_provider, ai_model, item_count, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            topic_type,
            topic_id,
            topic_name,
            status,
            error_type,
            error_message,
            duration_ms,
            provider,
            model,
            item_count,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_refresh_log(conn: Any, topic_type: str, topic_id: int) -> list[dict[str, Any]]:
    cols = ["status", "error_type", "error_message", "ai_provider", "ai_model", "item_count"]
    rows = conn.execute(
        f"SELECT {', '.join(cols)} FROM refresh_log WHERE topic_type = ? AND topic_id = ? ORDER BY id",
        (topic_type, topic_id),
    ).fetchall()
    return [dict(zip(cols, row)) for row in rows]


def purge_expired_sessions(conn: Any, now: datetime | None = None) -> int:
    cutoff = (now or utc_now()).isoformat()
    cursor = conn.execute("DELETE FROM sessions WHERE expires_at < ?", (cutoff,))
    conn.commit()
    return cursor.rowcount or 0


# News topics, sources and stories

_NEWS_TOPIC_COLUMNS = (
    "id, name, description, is_active, stories_per_refresh, refresh_interval_minutes, "
    "summary_min_words, summary_max_words, ai_provider, is_niche, last_refreshed_at"
)

_SOURCE_COLUMNS = "id, news_topic_id, url, name, is_manual, is_active, failure_count, last_error"


def create_news_topic(
    conn: Any,
    name: str,
    description: str = "",
    *,
    stories_per_refresh: int = 5,
    refresh_interval_minutes: int = 120,
    summary_min_words: int = 0,
    summary_max_words: int = 0,
    ai_provider: str = "",
    is_niche: bool = False,
    is_active: bool = True,
) -> int:
    now = utc_now_iso()
    row = conn.execute(
        """
        INSERT INTO news_topics
            (name, description, is_active, stories_per_refresh, refresh_interval_minutes,
             summary_min_words, summary_max_words, ai_provider, is_niche, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            name,
            description,
            int(is_active),
            stories_per_refresh,
            refresh_interval_minutes,
            summary_min_words,
            summary_max_words,
            ai_provider,
            int(is_niche),
            now,
            now,
        ),
    ).fetchone()
    topic_id = int(row[0])
    conn.execute(
        "INSERT OR IGNORE INTO news_refresh_status (news_topic_id, status) VALUES (?, ?)",
        (topic_id, STATUS_PENDING),
    )
    conn.commit()
    return topic_id


def get_news_topic(conn: Any, news_topic_id: int) -> NewsTopic | None:
    row = conn.execute(
        f"SELECT {_NEWS_TOPIC_COLUMNS} FROM news_topics WHERE id = ?", (news_topic_id,)
    ).fetchone()
    return _news_topic_from_row(row) if row else None


def list_news_topics_due(conn: Any, now: datetime | None = None) -> list[NewsTopic]:
    now = now or utc_now()
    rows = conn.execute(
        f"""
        SELECT {', '.join('t.' + col.strip() for col in _NEWS_TOPIC_COLUMNS.split(','))},
               s.next_refresh
        FROM news_topics t
        LEFT JOIN news_refresh_status s ON s.news_topic_id = t.id
        WHERE t.is_active = 1
        """
    ).fetchall()
    due = []
    for row in rows:
        topic = _news_topic_from_row(row[:-1])
        next_refresh = row[-1]
        if next_refresh and parse_iso(next_refresh) > now:
            continue
        if _is_due(topic.last_refreshed_at, topic.refresh_interval_minutes, now):
            due.append(topic)
    return sorted(due, key=lambda topic: (topic.last_refreshed_at is not None, topic.last_refreshed_at or ""))


def update_news_topic_refresh_time(conn: Any, news_topic_id: int) -> None:
    now = utc_now_iso()
    conn.execute(
        "UPDATE news_topics SET last_refreshed_at = ?, updated_at = ? WHERE id = ?",
        (now, now, news_topic_id),
    )
    conn.commit()


def list_sources(conn: Any, news_topic_id: int, active_only: bool = False) -> list[NewsSource]:
    sql = f"SELECT {_SOURCE_COLUMNS} FROM news_sources WHERE news_topic_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    rows = conn.execute(sql + " ORDER BY id", (news_topic_id,)).fetchall()
    return [_source_from_row(row) for row in rows]


def get_source(conn: Any, source_id: int) -> NewsSource | None:
    row = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM news_sources WHERE id = ?", (source_id,)).fetchone()
    return _source_from_row(row) if row else None


def add_source(
    conn: Any,
    news_topic_id: int,
    url: str,
    name: str,
    *,
    is_manual: bool = False,
) -> int | None:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO news_sources
            (news_topic_id, url, name, is_manual, is_active, failure_count, last_error, created_at)
        VALUES (?, ?, ?, ?, 1, 0, '', ?)
        """,
        (news_topic_id, url, name, int(is_manual), utc_now_iso()),
    )
    conn.commit()
    if not cursor.rowcount:
        return None
    row = conn.execute(
        "SELECT id FROM news_sources WHERE news_topic_id = ? AND url = ?",
        (news_topic_id, url),
    ).fetchone()
    return int(row[0]) if row else None


def delete_source(conn: Any, source_id: int) -> None:
    conn.execute("DELETE FROM news_sources WHERE id = ?", (source_id,))
    conn.commit()


def delete_discovered_sources(conn: Any, news_topic_id: int) -> int:
    cursor = conn.execute(
        "DELETE FROM news_sources WHERE news_topic_id = ? AND is_manual = 0",
        (news_topic_id,),
    )
    conn.commit()
    return cursor.rowcount or 0


def record_source_failure(conn: Any, source_id: int, error: str) -> int:
    conn.execute(
        """
        UPDATE news_sources
        SET failure_count = failure_count + 1, last_error = ?, last_scraped_at = ?
        WHERE id = ?
        """,
        (error[:500], utc_now_iso(), source_id),
    )
    row = conn.execute("SELECT failure_count FROM news_sources WHERE id = ?", (source_id,)).fetchone()
    conn.commit()
    return int(row[0]) if row else 0


def record_source_success(conn: Any, source_id: int) -> int:
    conn.execute(
        """
        UPDATE news_sources
        SET failure_count = CASE WHEN failure_count > 0 THEN failure_count - 1 ELSE 0 END,
            last_error = '',
            last_scraped_at = ?
        WHERE id = ?
        """,
        (utc_now_iso(), source_id),
    )
    row = conn.execute("SELECT failure_count FROM news_sources WHERE id = ?", (source_id,)).fetchone()
    conn.commit()
    return int(row[0]) if row else 0


def create_story(conn: Any, story: Story) -> int:
    row = conn.execute(
        """
        INSERT INTO stories
            (news_topic_id, title, summary, source_url, source_title, ai_provider, ai_model, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            story.news_topic_id,
            story.title,
            story.summary,
            story.source_url,
            story.source_title,
            story.ai_provider,
            story.ai_model,
            utc_now_iso(),
        ),
    ).fetchone()
    conn.commit()
    return int(row[0])


def list_stories(conn: Any, news_topic_id: int) -> list[Story]:
    rows = conn.execute(
        """
        SELECT id, news_topic_id, title, summary, source_url, source_title, ai_provider, ai_model
        FROM stories WHERE news_topic_id = ?
        ORDER BY created_at DESC, id DESC
        """,
        (news_topic_id,),
    ).fetchall()
    return [
        Story(
            id=int(row[0]),
            news_topic_id=int(row[1]),
            title=row[2],
            summary=row[3],
            source_url=row[4],
            source_title=row[5],
            ai_provider=row[6],
            ai_model=row[7],
        )
        for row in rows
    ]


def recent_story_titles(conn: Any, news_topic_id: int, limit: int = 30) -> list[str]:
    rows = conn.execute(
        "SELECT title FROM stories WHERE news_topic_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
        (news_topic_id, limit),
    ).fetchall()
    return [row[0] for row in rows]


def prune_stories(conn: Any, news_topic_id: int, keep: int) -> int:
    rows = conn.execute(
        "SELECT id FROM stories WHERE news_topic_id = ? ORDER BY created_at DESC, id DESC",
        (news_topic_id,),
    ).fetchall()
    stale = [(int(row[0]),) for row in rows[max(keep, 0):]]
    if stale:
        conn.executemany("DELETE FROM stories WHERE id = ?", stale)
    conn.commit()
    return len(stale)


def get_news_refresh_status(conn: Any, news_topic_id: int) -> NewsRefreshStatus | None:
    row = conn.execute(
        """
        SELECT news_topic_id, status, last_refresh, next_refresh, error_message
        FROM news_refresh_status WHERE news_topic_id = ?
        """,
        (news_topic_id,),
    ).fetchone()
    if not row:
        return None
    return NewsRefreshStatus(
        news_topic_id=int(row[0]),
        status=row[1],
        last_refresh=row[2],
        next_refresh=row[3],
        error_message=row[4] or "",
    )


def set_news_refresh_status(
    conn: Any,
    news_topic_id: int,
    status: str,
    *,
    next_refresh: str | None = None,
    error_message: str = "",
    touch_last_refresh: bool = False,
) -> None:
    last_refresh = utc_now_iso() if touch_last_refresh else None
    conn.execute(
        """
        INSERT INTO news_refresh_status (news_topic_id, last_refresh, next_refresh, status, error_message)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(news_topic_id) DO UPDATE SET
            last_refresh = COALESCE(excluded.last_refresh, news_refresh_status.last_refresh),
            next_refresh = COALESCE(excluded.next_refresh, news_refresh_status.next_refresh),
            status = excluded.status,
            error_message = excluded.error_message
        """,
        (news_topic_id, last_refresh, next_refresh, status, error_message),
    )
    conn.commit()


def _is_due(last_refreshed_at: str | None, interval_minutes: int, now: datetime) -> bool:
    if not last_refreshed_at:
        return True
    return parse_iso(last_refreshed_at) <= now - timedelta(minutes=interval_minutes)


def _topic_from_row(row) -> Topic:
    return Topic(
        id=int(row[0]),
        name=row[1],
        description=row[2] or "",
        is_active=bool(row[3]),
        facts_per_refresh=int(row[4]),
        refresh_interval_minutes=int(row[5]),
        summary_min_words=int(row[6]),
        summary_max_words=int(row[7]),
        ai_provider=row[8] or "",
        is_niche=bool(row[9]),
        last_refreshed_at=row[10],
    )


def _news_topic_from_row(row) -> NewsTopic:
    return NewsTopic(
        id=int(row[0]),
        name=row[1],
        description=row[2] or "",
        is_active=bool(row[3]),
        stories_per_refresh=int(row[4]),
        refresh_interval_minutes=int(row[5]),
        summary_min_words=int(row[6]),
        summary_max_words=int(row[7]),
        ai_provider=row[8] or "",
        is_niche=bool(row[9]),
        last_refreshed_at=row[10],
    )


def _source_from_row(row) -> NewsSource:
    return NewsSource(
        id=int(row[0]),
        news_topic_id=int(row[1]),
        url=row[2],
        name=row[3] or "",
        is_manual=bool(row[4]),
        is_active=bool(row[5]),
        failure_count=int(row[6]),
        last_error=row[7] or "",
    )
