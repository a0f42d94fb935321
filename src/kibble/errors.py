from __future__ import annotations


class KibbleError(Exception):
    pass


class ExtractionError(KibbleError):
    pass


class ProviderError(KibbleError):
    pass


class RefreshError(KibbleError):
    pass


class RefreshCancelled(KibbleError):
    def __init__(self, message: str = "refresh canceled: context canceled") -> None:
        super().__init__(message)


class AlreadyRefreshingError(KibbleError):
    def __init__(self, kind: str, item_id: int) -> None:
        super().__init__(f"{kind} {item_id} is already being refreshed")
        self.kind = kind
        self.item_id = item_id


# Ordered: the first matching rule wins.
_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("timeout", ("deadline exceeded", "context canceled", "timed out", "timeout")),
    ("no_sources", ("no sources available",)),
    ("no_content", ("failed to scrape any content", "insufficient content")),
    ("discovery_error", ("discover sources",)),
    ("scrape_error", ("scrape error", "failed to visit")),
    ("parse_error", ("failed to parse", "json")),
    ("rate_limited", ("status 429", "rate limit")),
    ("auth_error", ("status 401", "status 403", "api key")),
    ("bad_request", ("status 400",)),
    ("not_found", ("status 404",)),
    ("server_error", ("status 5",)),
    ("empty_response", ("empty response", "no parseable facts")),
    (
        "connection_error",
        (
            "connection refused",
            "connection reset",
            "no such host",
            "name or service not known",
            "temporary failure in name resolution",
            "nodename nor servname",
        ),
    ),
    ("summarize_error", ("summarize content",)),
    ("panic", ("panic",)),
]


def classify_error(message: str | BaseException | None) -> str:
    if message is None:
        return ""
    text = str(message).lower()
    if not text:
        return ""
    if text.startswith("panic:"):
        return "panic"
    if "model" in text and "not found" in text:
        if not any(pattern in text for pattern in _RULES[0][1]):
            return "model_not_found"
    for error_type, patterns in _RULES:
        if any(pattern in text for pattern in patterns):
            return error_type
    return "ai_error"
