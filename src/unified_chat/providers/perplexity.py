"""Perplexity provider implementation."""

from __future__ import annotations

from unified_chat.providers.openai import OpenAICompatibleProvider


class PerplexityProvider(OpenAICompatibleProvider):
    name = "perplexity"
    model_prefix = "perplexity/"
    default_base_url = "https://api.perplexity.ai"
