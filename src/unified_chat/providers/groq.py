"""Groq provider implementation."""

from __future__ import annotations

from unified_chat.providers.openai import OpenAICompatibleProvider


class GroqProvider(OpenAICompatibleProvider):
    """Groq's OpenAI-compatible endpoint; model names may carry a ``groq/`` prefix."""

    name = "groq"
    model_prefix = "groq/"
    default_base_url = "https://api.groq.com/openai/v1"
