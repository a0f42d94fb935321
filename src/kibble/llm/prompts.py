from __future__ import annotations

import json
import re
from typing import Any, Iterable

from ..catalog import CatalogFeed
from ..models import ScrapedContent

_NUMBERING = re.compile(r"^\s*(?:\d+[\.\)]\s*|[-*]\s+)")


def _length_rule(noun: str, min_words: int, max_words: int) -> str:
    if min_words > 0 and max_words > 0:
        return f"Each {noun} should be between {min_words} and {max_words} words long.\n"
    if min_words > 0:
        return f"Each {noun} should be at least {min_words} words long.\n"
    if max_words > 0:
        return f"Each {noun} should be at most {max_words} words long.\n"
    return ""


def build_facts_prompt(
    topic: str,
    description: str,
    custom_instructions: str,
    tone_instructions: str,
    count: int,
    min_words: int = 0,
    max_words: int = 0,
    research: str = "",
) -> str:
    parts = []
    if research:
        parts.append(
            "=== REFERENCE MATERIAL ===\n"
            "Use the following reference material to ensure accuracy and depth. "
            "You may also draw on general knowledge, but prefer facts grounded in this material.\n\n"
            f"{research}\n\n=== END REFERENCE MATERIAL ===\n\n"
        )
    parts.append(f'Generate exactly {count} unique, interesting, and accurate facts about the topic: "{topic}".\n')
    if description:
        parts.append(f"Topic description: {description}\n")
    if custom_instructions:
        parts.append(f"Additional instructions: {custom_instructions}\n")
    if tone_instructions:
        parts.append(f"Tone and style: {tone_instructions}\n")
    parts.append(_length_rule("fact", min_words, max_words))
    parts.append(
        "\nIMPORTANT: Return ONLY the facts as a numbered list (1., 2., 3., etc.), one per line. "
        "Do not include any other text, headers, or explanations. "
        "Each fact should be a single, self-contained sentence or short paragraph."
    )
    return "".join(parts)


def parse_numbered_lines(text: str) -> list[str]:
    items = []
    for line in text.splitlines():
        cleaned = _NUMBERING.sub("", line.strip(), count=1).strip()
        if cleaned:
            items.append(cleaned)
    return items


def build_search_queries_prompt(topic: str, description: str) -> str:
    return (
        f'Generate 3-5 specific search queries for finding factual information about: "{topic}"\n'
        f"Description: {description}\n\n"
        "Return ONLY the search queries as a numbered list, one per line. "
        "Each query should target a different aspect of the topic.\n"
        "Make queries specific enough to find encyclopedia articles or authoritative sources."
    )


def build_discover_prompt(
    topic: str,
    description: str,
    sourcing_instructions: str,
    suggested_feeds: Iterable[CatalogFeed] = (),
    community_domains: Iterable[str] = (),
    research: str = "",
) -> str:
    parts = []
    if research:
        parts.append(
            "=== BACKGROUND RESEARCH ===\n"
            "The following research material provides context about this topic. "
            "Use it to identify more specific, niche sources that cover this subject area.\n\n"
            f"{research}\n\n=== END BACKGROUND RESEARCH ===\n\n"
        )
    parts.append(
        "You are a helpful assistant that discovers reliable web sources for news topics.\n\n"
        f"Topic: {topic}\nDescription: {description}\n\n"
    )
    if sourcing_instructions:
        parts.append(sourcing_instructions + "\n\n")
    feeds = list(suggested_feeds)
    if feeds:
        parts.append(
            "Here are known-good RSS feeds that may be relevant to this topic. "
            "PREFER these feeds when they match the topic well, as they are verified to work:\n\n"
        )
        parts.extend(f"- {feed.name} ({feed.url})\n" for feed in feeds)
        parts.append("\nYou may include additional sources beyond this list if needed to cover the topic well.\n\n")
    domains = list(community_domains)
    if domains:
        parts.append(
            "These websites are frequently shared in related online communities and may publish "
            "relevant news (look for their RSS feeds or topic pages):\n"
        )
        parts.extend(f"- {domain}\n" for domain in domains)
        parts.append("\n")
    parts.append(
        "Find 4-8 reliable sources that provide ongoing news and updates related to this topic. "
        "Sources can include:\n"
        "- News websites and RSS feeds\n"
        "- Reddit subreddits (format as https://reddit.com/r/subredditname)\n"
        "- Technical blogs or official sources\n\n"
        "For Reddit, include 1-2 relevant subreddits if they exist for this topic. "
        "Choose active subreddits with engaged communities.\n\n"
        "For each source, provide:\n"
        "1. The URL (must be a real, working URL)\n"
        "2. A short name for the source\n"
        "3. A brief description of what content it provides\n\n"
        "IMPORTANT: Return ONLY a valid JSON array with no additional text, markdown, or explanation.\n\n"
        "Format:\n"
        "[\n"
        '  {"url": "https://example.com/feed", "name": "Example News", "description": "Daily updates on topic"},\n'
        '  {"url": "https://reddit.com/r/technology", "name": "r/technology", "description": "Tech news and discussion"}\n'
        "]"
    )
    return "".join(parts)


def build_summarize_prompt(
    topic: str,
    contents: list[ScrapedContent],
    summarizing_instructions: str,
    tone_instructions: str,
    max_stories: int,
    min_words: int = 0,
    max_words: int = 0,
    existing_titles: Iterable[str] = (),
) -> str:
    parts = [
        "You are a news summarization assistant. Analyze the following scraped content "
        "and create clear, informative news summaries.\n\n"
        f"Topic: {topic}\n\n"
    ]
    if summarizing_instructions:
        parts.append(summarizing_instructions + "\n\n")
    if tone_instructions:
        parts.append(f"Tone and style: {tone_instructions}\n\n")
    rule = _length_rule("story summary", min_words, max_words)
    if rule:
        parts.append(rule + "\n")
    parts.append("Scraped Content:\n")
    for index, content in enumerate(contents, start=1):
        parts.append(f"\n--- Source {index}: {content.source_name} ---\nURL: {content.url}\n{content.content}\n")
    titles = [title for title in existing_titles if title]
    if titles:
        parts.append("\nThese stories were already published recently. Do NOT repeat them:\n")
        parts.extend(f"- {title}\n" for title in titles)
    parts.append(
        f"\nFrom the content above, identify the {max_stories} most interesting and relevant news stories.\n\n"
        "IMPORTANT FILTERING RULES:\n"
        f'- ONLY include content that DIRECTLY relates to the topic "{topic}"\n'
        "- Skip any content that is off-topic or only tangentially related\n"
        "- For Reddit posts, focus on substantive discussions and news, not casual comments or memes\n"
        "- Prioritize recent, newsworthy content over general discussion\n\n"
        "For each story:\n"
        "1. Create a compelling headline (title)\n"
        "2. Write a summary focusing on key facts and why this story matters\n"
        "3. Include the source URL where the story was found\n"
        "4. Include the source name/title\n\n"
        "IMPORTANT: Return ONLY a valid JSON array with no additional text, markdown, or explanation.\n\n"
        "Format:\n"
        "[\n"
        '  {"title": "Headline Here", "summary": "Summary text here...", '
        '"source_url": "https://source.com/article", "source_title": "Source Name"}\n'
        "]"
    )
    return "".join(parts)


def clean_json_response(response: str) -> str:
    response = response.strip()
    if response.startswith("```json"):
        response = response[len("```json"):]
    elif response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    return response.strip()


def extract_json(raw: str) -> str:
    """Best-effort recovery of a JSON document from a chatty model reply."""
    raw = raw.strip()
    if _looks_like_json(raw):
        return raw
    cleaned = clean_json_response(raw)
    if _looks_like_json(cleaned):
        return cleaned
    for opener, closer in (("[", "]"), ("{", "}")):
        start = raw.find(opener)
        end = raw.rfind(closer)
        if start >= 0 and end > start:
            candidate = raw[start : end + 1]
            if _looks_like_json(candidate):
                return candidate
    return cleaned


def load_json_list(raw: str, key_hint: str) -> list[Any]:
    """Decode a JSON array, unwrapping ``{"<key_hint>": [...]}`` objects from JSON-mode replies."""
    payload = json.loads(extract_json(raw))
    if isinstance(payload, dict):
        for key in (key_hint, "items", "results", "data"):
            if isinstance(payload.get(key), list):
                return payload[key]
        values = [value for value in payload.values() if isinstance(value, list)]
        if len(values) == 1:
            return values[0]
        return [payload]
    if isinstance(payload, list):
        return payload
    raise ValueError(f"expected a JSON array, got {type(payload).__name__}")


def _looks_like_json(text: str) -> bool:
    text = text.strip()
    return (text.startswith("[") and text.endswith("]")) or (text.startswith("{") and text.endswith("}"))
