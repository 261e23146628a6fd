"""Provider adapters for unified_chat."""

from .ai21 import AI21Provider
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .bedrock import BedrockProvider
from .cohere import CohereProvider
from .gemini import GeminiProvider
from .groq import GroqProvider
from .mistral import MistralProvider
from .openai import OpenAICompatibleProvider, OpenAIProvider
from .openai_compatible import OpenAICompatibleEndpointProvider
from .openrouter import OpenRouterProvider
from .perplexity import PerplexityProvider

__all__ = [
    "BaseProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "AI21Provider",
    "AnthropicProvider",
    "GeminiProvider",
    "CohereProvider",
    "BedrockProvider",
    "MistralProvider",
    "GroqProvider",
    "PerplexityProvider",
    "OpenRouterProvider",
    "OpenAICompatibleEndpointProvider",
]
