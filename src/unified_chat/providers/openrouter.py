"""OpenRouter provider implementation."""

from __future__ import annotations

from unified_chat.providers.openai import OpenAICompatibleProvider


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter proxies many vendors, so every model name is accepted."""

    name = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
