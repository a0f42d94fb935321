from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from ..errors import ProviderError
from ..models import ChatResult, SettingsSnapshot

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
CHUTES_BASE_URL = "https://llm.chutes.ai/v1"


@dataclass(frozen=True)
class Message:
    role: str
    content: str


@dataclass(frozen=True)
class ChatRequest:
    messages: list[Message]
    temperature: float = 0.7
    max_tokens: int = 2048
    json_mode: bool = False
    timeout: float = 60
    extra: dict[str, Any] = field(default_factory=dict)


class ChatProvider:
    name = "base"

    def __init__(self, settings: SettingsSnapshot) -> None:
        self.settings = settings

    @property
    def model(self) -> str:
        raise NotImplementedError

    def chat(self, request: ChatRequest) -> ChatResult:
        raise NotImplementedError


class GeminiProvider(ChatProvider):
    name = "gemini"

    @property
    def model(self) -> str:
        return self.settings.gemini_model

    def chat(self, request: ChatRequest) -> ChatResult:
        api_key = self.settings.gemini_api_key
        if not api_key:
            raise ProviderError("gemini API key not configured")
        path = _join_url(
            GEMINI_BASE_URL,
            f"/models/{urllib.parse.quote(self.model)}:generateContent",
        )
        payload: dict[str, Any] = {
            "contents": [{"parts": [{"text": messages_to_prompt(request.messages)}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.json_mode:
            payload["generationConfig"]["responseMimeType"] = "application/json"
        response = _http_request(self.name, "POST", _append_key(path, api_key), {}, payload, request.timeout)
        usage = response.get("usageMetadata") or {}
        return ChatResult(
            text=_read_google(response),
            tokens_used=int(usage.get("totalTokenCount") or 0),
            model=self.model,
            provider=self.name,
        )


class OpenAICompatibleProvider(ChatProvider):
    """Shared request shape for providers exposing ``/chat/completions``."""

    base_url = ""

    def api_key(self) -> str:
        return ""

    def chat(self, request: ChatRequest) -> ChatResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": message.role, "content": message.content} for message in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": False,
        }
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {}
        key = self.api_key()
        if key:
            headers["Authorization"] = f"Bearer {key}"
        response = _http_request(
            self.name,
            "POST",
            _join_url(self.base_url, "/chat/completions"),
            headers,
            payload,
            request.timeout,
        )
        usage = response.get("usage") or {}
        return ChatResult(
            text=_read_openai(response),
            tokens_used=int(usage.get("total_tokens") or 0),
            model=str(response.get("model") or self.model),
            provider=self.name,
        )


class OllamaProvider(OpenAICompatibleProvider):
    name = "ollama"

    @property
    def base_url(self) -> str:  # type: ignore[override]
        return _join_url(self.settings.ollama_url or "http://localhost:11434", "/v1")

    @property
    def model(self) -> str:
        return self.settings.ollama_model or "mistral-nemo"


class ChutesProvider(OpenAICompatibleProvider):
    name = "chutes"
    base_url = CHUTES_BASE_URL

    @property
    def model(self) -> str:
        return self.settings.chutes_model or "deepseek-ai/DeepSeek-V3"

    def api_key(self) -> str:
        return self.settings.chutes_api_key

    def chat(self, request: ChatRequest) -> ChatResult:
        if not self.api_key():
            raise ProviderError("chutes API key not configured")
        return super().chat(request)


PROVIDERS: dict[str, type[ChatProvider]] = {
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
    "chutes": ChutesProvider,
}


def resolve_provider(topic_provider: str, settings: SettingsSnapshot) -> ChatProvider:
    name = (topic_provider or settings.ai_provider or "gemini").strip().lower()
    provider_cls = PROVIDERS.get(name, GeminiProvider)
    return provider_cls(settings)


def messages_to_prompt(messages: list[Message]) -> str:
    if len(messages) == 1:
        return messages[0].content
    parts = []
    for message in messages:
        suffix = "\n\n" if message.role == "system" else "\n"
        parts.append(message.content + suffix)
    return "".join(parts)


def _http_request(
    provider_name: str,
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise ProviderError(f"{provider_name} returned status {exc.code}: {body[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ProviderError(f"{provider_name} request failed: {exc.reason}") from exc
    except TimeoutError as exc:
        raise ProviderError(f"{provider_name} request timed out after {timeout}s") from exc
    except OSError as exc:
        raise ProviderError(f"{provider_name} request failed: {exc}") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"failed to parse {provider_name} response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ProviderError(f"failed to parse {provider_name} response: expected an object")
    return parsed


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ProviderError("empty response: no choices returned")
    return (choices[0].get("message") or {}).get("content") or ""


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise ProviderError("empty response: no candidates returned")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    if not parts:
        return ""
    return parts[0].get("text") or ""


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
