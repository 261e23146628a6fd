"""Adapter lookup by provider key, with a legacy model-prefix fallback."""

from __future__ import annotations

import logging

from unified_chat.capabilities import CapabilityRegistry, registry
from unified_chat.config import ConfigOptions
from unified_chat.errors import UnsupportedProviderError
from unified_chat.providers import (
    AI21Provider,
    AnthropicProvider,
    BaseProvider,
    BedrockProvider,
    CohereProvider,
    GeminiProvider,
    GroqProvider,
    MistralProvider,
    OpenAICompatibleEndpointProvider,
    OpenAIProvider,
    OpenRouterProvider,
    PerplexityProvider,
)

logger = logging.getLogger(__name__)

HANDLERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "ai21": AI21Provider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "cohere": CohereProvider,
    "bedrock": BedrockProvider,
    "mistral": MistralProvider,
    "groq": GroqProvider,
    "perplexity": PerplexityProvider,
    "openrouter": OpenRouterProvider,
    "openai-compatible": OpenAICompatibleEndpointProvider,
}

# checked in order when no provider key is given
MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gpt-", "openai"),
    ("groq/", "groq"),
    ("claude-", "anthropic"),
    ("gemini-", "gemini"),
    ("command", "cohere"),
    ("bedrock/", "bedrock"),
    ("mistral/", "mistral"),
    ("jamba-", "ai21"),
    ("perplexity/", "perplexity"),
)


def resolve_provider(provider: str | None, model: str) -> str:
    """Return the provider key serving ``model``."""
    if provider is not None:
        if provider in HANDLERS:
            return provider
        raise UnsupportedProviderError(provider, model)
    for prefix, key in MODEL_PREFIXES:
        if model.startswith(prefix):
            return key
    raise UnsupportedProviderError(None, model)


def get_handler(
    provider: str | None,
    model: str,
    options: ConfigOptions | None = None,
    *,
    capabilities: CapabilityRegistry = registry,
) -> BaseProvider:
    """Build a fresh adapter bound to its provider's capability slice."""
    key = resolve_provider(provider, model)
    logger.debug("Dispatching model %s to the %s adapter", model, key)
    return HANDLERS[key](options, capabilities.for_provider(key))
