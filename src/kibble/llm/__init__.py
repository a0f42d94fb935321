from .client import AIClient, StoryDraft
from .providers import PROVIDERS, ChatProvider, ChatRequest, Message, resolve_provider

__all__ = ["AIClient", "ChatProvider", "ChatRequest", "Message", "PROVIDERS", "StoryDraft", "resolve_provider"]
