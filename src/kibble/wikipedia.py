from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlencode

from .fetch import DEFAULT_USER_AGENT, fetch_url

SEARCH_ENDPOINT = "https://en.wikipedia.org/w/api.php"
SUMMARY_ENDPOINT = "https://en.wikipedia.org/api/rest_v1/page/summary/"


@dataclass(frozen=True)
class SearchResult:
    title: str
    snippet: str


class WikipediaClient:
    def __init__(self, *, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 15) -> None:
        self.user_agent = user_agent
        self.timeout = timeout

    def search(self, query: str, limit: int = 3) -> list[SearchResult]:
        params = urlencode(
            {
                "action": "query",
                "list": "search",
                "srsearch": query,
                "format": "json",
                "srlimit": str(limit),
            }
        )
        payload = self._get_json(f"{SEARCH_ENDPOINT}?{params}")
        hits = ((payload.get("query") or {}).get("search")) or []
        return [
            SearchResult(title=hit.get("title") or "", snippet=hit.get("snippet") or "")
            for hit in hits
            if hit.get("title")
        ]

    def summary(self, title: str) -> str:
        url = SUMMARY_ENDPOINT + quote(title.replace(" ", "_"), safe="")
        payload = self._get_json(url)
        extract = payload.get("extract") or ""
        if not extract:
            raise ValueError(f"no extract for {title!r}")
        return f"## {payload.get('title') or title}\n{extract}"

    def _get_json(self, url: str) -> dict[str, Any]:
        result = fetch_url(url, timeout=self.timeout, user_agent=self.user_agent, accept="application/json")
        if result.error or result.status != 200:
            raise ValueError(f"wikipedia returned status {result.status}: {result.error}")
        try:
            payload = json.loads(result.body)
        except json.JSONDecodeError as exc:
            raise ValueError(f"failed to parse wikipedia JSON: {exc}") from exc
        return payload if isinstance(payload, dict) else {}
