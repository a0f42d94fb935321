from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

import yaml

CATALOG_PATH = os.path.join(os.path.dirname(__file__), "data", "feeds.yml")
MAX_RESULTS = 20
MIN_KEYWORD_LENGTH = 3


@dataclass(frozen=True)
class CatalogFeed:
    name: str
    url: str
    description: str


@dataclass(frozen=True)
class CatalogCategory:
    name: str
    feeds: tuple[CatalogFeed, ...]


def load_catalog(path: str = CATALOG_PATH) -> tuple[CatalogCategory, ...]:
    return _load_catalog_cached(os.path.abspath(path))


@lru_cache(maxsize=4)
def _load_catalog_cached(path: str) -> tuple[CatalogCategory, ...]:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    categories = []
    for raw in data.get("categories") or []:
        feeds = tuple(
            CatalogFeed(
                name=str(feed.get("name") or ""),
                url=str(feed.get("url") or ""),
                description=str(feed.get("description") or ""),
            )
            for feed in raw.get("feeds") or []
            if feed.get("url")
        )
        categories.append(CatalogCategory(name=str(raw.get("name") or ""), feeds=feeds))
    return tuple(categories)


def keywords_for(topic_name: str, description: str = "") -> list[str]:
    words = f"{topic_name} {description}".lower().split()
    return [word for word in words if len(word) >= MIN_KEYWORD_LENGTH]


def find_relevant(
    topic_name: str,
    description: str = "",
    *,
    categories: tuple[CatalogCategory, ...] | None = None,
    limit: int = MAX_RESULTS,
) -> list[CatalogFeed]:
    """Return catalog feeds whose category, name or description mentions a topic keyword.

    A category-name match pulls in the whole category; otherwise feeds are
    matched one by one. Results are unique by URL.
    """
    keywords = keywords_for(topic_name, description)
    if not keywords:
        return []
    if categories is None:
        categories = load_catalog()

    seen: set[str] = set()
    results: list[CatalogFeed] = []
    for category in categories:
        category_name = category.name.lower()
        if any(keyword in category_name for keyword in keywords):
            matches = list(category.feeds)
        else:
            matches = [
                feed
                for feed in category.feeds
                if any(keyword in f"{feed.name} {feed.description}".lower() for keyword in keywords)
            ]
        for feed in matches:
            if feed.url in seen:
                continue
            seen.add(feed.url)
            results.append(feed)
    return results[:limit]
