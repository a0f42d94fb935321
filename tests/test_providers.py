import pytest

from kibble.errors import ProviderError
from kibble.llm import providers as providers_module
from kibble.llm.providers import (
    ChatRequest,
    ChutesProvider,
    GeminiProvider,
    Message,
    OllamaProvider,
    messages_to_prompt,
    resolve_provider,
)
from kibble.models import SettingsSnapshot


@pytest.fixture
def http(monkeypatch):
    calls = []
    replies = []

    def fake_request(provider_name, method, url, headers, payload, timeout):
        calls.append(
            {
                "provider": provider_name,
                "method": method,
                "url": url,
                "headers": headers,
                "payload": payload,
                "timeout": timeout,
            }
        )
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(providers_module, "_http_request", fake_request)
    return calls, replies


def _request(**kwargs):
    return ChatRequest(messages=[Message(role="user", content="hello")], **kwargs)


def test_resolve_provider_prefers_topic_then_setting():
    settings = SettingsSnapshot(ai_provider="ollama")

    assert isinstance(resolve_provider("", settings), OllamaProvider)
    assert isinstance(resolve_provider("Chutes", settings), ChutesProvider)
    assert isinstance(resolve_provider("unknown", settings), GeminiProvider)
    assert isinstance(resolve_provider("", SettingsSnapshot(ai_provider="")), GeminiProvider)


def test_gemini_request_shape(http):
    calls, replies = http
    replies.append(
        {
            "candidates": [{"content": {"parts": [{"text": "1. A fact."}]}}],
            "usageMetadata": {"totalTokenCount": 77},
        }
    )
    provider = GeminiProvider(SettingsSnapshot(gemini_api_key="secret", gemini_model="gemini-2.5-flash"))

    result = provider.chat(_request(temperature=0.9, max_tokens=100, json_mode=True, timeout=12))

    assert result.text == "1. A fact."
    assert result.tokens_used == 77
    assert result.provider == "gemini"
    assert result.model == "gemini-2.5-flash"
    call = calls[0]
    assert call["url"].endswith("/models/gemini-2.5-flash:generateContent?key=secret")
    assert call["payload"]["contents"][0]["parts"][0]["text"] == "hello"
    assert call["payload"]["generationConfig"] == {
        "temperature": 0.9,
        "maxOutputTokens": 100,
        "responseMimeType": "application/json",
    }
    assert call["timeout"] == 12


def test_gemini_without_key_fails_before_any_request(http):
    calls, _ = http

    with pytest.raises(ProviderError, match="gemini API key not configured"):
        GeminiProvider(SettingsSnapshot()).chat(_request())
    assert calls == []


def test_gemini_without_candidates_is_empty_response(http):
    _, replies = http
    replies.append({"candidates": []})

    with pytest.raises(ProviderError, match="empty response"):
        GeminiProvider(SettingsSnapshot(gemini_api_key="k")).chat(_request())


def test_ollama_uses_openai_shape_without_auth(http):
    calls, replies = http
    replies.append(
        {
            "model": "mistral-nemo:latest",
            "choices": [{"message": {"content": "[]"}}],
            "usage": {"total_tokens": 5},
        }
    )
    provider = OllamaProvider(SettingsSnapshot(ollama_url="http://ollama:11434/", ollama_model="mistral-nemo"))

    result = provider.chat(_request(json_mode=True))

    assert result.model == "mistral-nemo:latest"
    assert result.tokens_used == 5
    call = calls[0]
    assert call["url"] == "http://ollama:11434/v1/chat/completions"
    assert call["headers"] == {}
    assert call["payload"]["model"] == "mistral-nemo"
    assert call["payload"]["response_format"] == {"type": "json_object"}
    assert call["payload"]["messages"] == [{"role": "user", "content": "hello"}]


def test_chutes_sends_bearer_token(http):
    calls, replies = http
    replies.append({"choices": [{"message": {"content": "ok"}}]})
    provider = ChutesProvider(SettingsSnapshot(chutes_api_key="tok"))

    result = provider.chat(_request())

    assert result.text == "ok"
    assert result.model == "deepseek-ai/DeepSeek-V3"
    assert calls[0]["headers"] == {"Authorization": "Bearer tok"}
    assert calls[0]["url"] == "https://llm.chutes.ai/v1/chat/completions"
    assert "response_format" not in calls[0]["payload"]


def test_chutes_without_key_fails(http):
    with pytest.raises(ProviderError, match="chutes API key not configured"):
        ChutesProvider(SettingsSnapshot()).chat(_request())


def test_transport_errors_propagate(http):
    _, replies = http
    replies.append(ProviderError("ollama returned status 500: boom"))

    with pytest.raises(ProviderError, match="status 500"):
        OllamaProvider(SettingsSnapshot()).chat(_request())


def test_messages_to_prompt_separates_system_prompt():
    messages = [Message(role="system", content="Be terse."), Message(role="user", content="Hi")]

    assert messages_to_prompt(messages) == "Be terse.\n\nHi\n"
