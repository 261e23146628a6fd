"""Capability matrix: which models each provider knows and which optional
features (streaming, JSON mode, image input, tool calls, n > 1) they support.

Every feature is either a boolean (applies to all models of the provider) or
an explicit allow-list of model names. The built-in table never changes;
callers may append models at runtime through ``CapabilityRegistry.extend``.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Literal, Union

from unified_chat.errors import InputError

FeatureSupport = Union[bool, tuple[str, ...]]
Feature = Literal["json", "images", "tool_calls", "n", "streaming"]

_FEATURE_ALIASES: dict[str, Feature] = {
    "json": "json",
    "images": "images",
    "tool_calls": "tool_calls",
    "toolCalls": "tool_calls",
    "n": "n",
    "nGreaterThanOne": "n",
    "n_greater_than_one": "n",
    "streaming": "streaming",
}


@dataclass(frozen=True)
class ModelFeatures:
    """Feature flags of a single runtime-registered model."""

    json: bool = False
    images: bool = False
    tool_calls: bool = False
    n: bool = False
    streaming: bool = True


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capability slice of one provider."""

    provider: str
    models: FeatureSupport
    streaming: FeatureSupport
    json: FeatureSupport
    images: FeatureSupport
    tool_calls: FeatureSupport
    n: FeatureSupport
    # n > 1 combined with stream=True; the unified stream carries one choice
    n_with_streaming: bool = False
    extra_models: Mapping[str, ModelFeatures] = field(default_factory=dict)

    def is_supported_model(self, model: str) -> bool:
        if model in self.extra_models:
            return True
        return _is_supported(self.models, model)

    def supports(self, feature: str, model: str) -> bool:
        name = _canonical_feature(feature)
        extra = self.extra_models.get(model)
        if extra is not None:
            return getattr(extra, name)
        return _is_supported(getattr(self, name), model)

    def features_of(self, model: str) -> ModelFeatures:
        return ModelFeatures(
            json=self.supports("json", model),
            images=self.supports("images", model),
            tool_calls=self.supports("tool_calls", model),
            n=self.supports("n", model),
            streaming=self.supports("streaming", model),
        )

    def is_builtin_model(self, model: str) -> bool:
        return not isinstance(self.models, bool) and model in self.models


def _is_supported(support: FeatureSupport, model: str) -> bool:
    if isinstance(support, bool):
        return support
    return model in support


def _canonical_feature(feature: str) -> Feature:
    try:
        return _FEATURE_ALIASES[feature]
    except KeyError as exc:
        raise InputError(f"Unknown feature '{feature}'.") from exc


_OPENAI_MODELS = (
    "o1-mini",
    "o1-mini-2024-09-12",
    "o1-preview",
    "o1-preview-2024-09-12",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4o-2024-05-13",
    "gpt-4o-2024-08-06",
    "gpt-4-turbo",
    "gpt-4-turbo-2024-04-09",
    "gpt-4-0125-preview",
    "gpt-4-turbo-preview",
    "gpt-4-1106-preview",
    "gpt-4-vision-preview",
    "gpt-4",
    "gpt-4-0314",
    "gpt-4-0613",
    "gpt-4-32k",
    "gpt-4-32k-0314",
    "gpt-4-32k-0613",
    "gpt-3.5-turbo",
    "gpt-3.5-turbo-16k",
    "gpt-3.5-turbo-0301",
    "gpt-3.5-turbo-0613",
    "gpt-3.5-turbo-1106",
    "gpt-3.5-turbo-0125",
    "gpt-3.5-turbo-16k-0613",
)
_OPENAI_MODERN = (
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4o-2024-05-13",
    "gpt-4o-2024-08-06",
    "gpt-4-turbo",
    "gpt-4-turbo-2024-04-09",
    "gpt-4-0125-preview",
    "gpt-4-turbo-preview",
    "gpt-4-1106-preview",
    "gpt-4-vision-preview",
)

_ANTHROPIC_MODELS = (
    "claude-3-5-sonnet-20240620",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
    "claude-2.1",
    "claude-2.0",
    "claude-instant-1.2",
)
_ANTHROPIC_CLAUDE_3 = (
    "claude-3-5-sonnet-20240620",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
)

_GEMINI_MODELS = ("gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.5-flash-8b", "gemini-1.0-pro")
_GEMINI_1_5 = ("gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.5-flash-8b")

_COHERE_MODELS = (
    "command-r-plus",
    "command-r",
    "command",
    "command-nightly",
    "command-light",
    "command-light-nightly",
)

_BEDROCK_MODELS = (
    "amazon.titan-text-lite-v1",
    "amazon.titan-text-express-v1",
    "anthropic.claude-3-5-sonnet-20240620-v1:0",
    "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "anthropic.claude-3-5-haiku-20241022-v1:0",
    "anthropic.claude-3-opus-20240229-v1:0",
    "anthropic.claude-3-sonnet-20240229-v1:0",
    "anthropic.claude-3-haiku-20240307-v1:0",
    "anthropic.claude-v2:1",
    "anthropic.claude-v2",
    "anthropic.claude-instant-v1",
    "cohere.command-r-plus-v1:0",
    "cohere.command-r-v1:0",
    "cohere.command-text-v14",
    "cohere.command-light-text-v14",
    "meta.llama3-8b-instruct-v1:0",
    "meta.llama3-70b-instruct-v1:0",
    "meta.llama2-13b-chat-v1",
    "meta.llama2-70b-chat-v1",
    "mistral.mistral-7b-instruct-v0:2",
    "mistral.mixtral-8x7b-instruct-v0:1",
    "mistral.mistral-large-2402-v1:0",
)

_MISTRAL_MODELS = (
    "open-mistral-7b",
    "mistral-tiny-2312",
    "open-mixtral-8x7b",
    "mistral-small-2312",
    "open-mixtral-8x22b",
    "open-mixtral-8x22b-2404",
    "mistral-small-latest",
    "mistral-small-2402",
    "mistral-medium-latest",
    "mistral-medium-2312",
    "mistral-large-latest",
    "mistral-large-2402",
    "codestral-latest",
    "codestral-2405",
    "codestral-mamba-2407",
)

_GROQ_MODELS = ("llama3-8b-8192", "llama3-70b-8192", "mixtral-8x7b-32768", "gemma-7b-it", "gemma2-9b-it")

_PERPLEXITY_MODELS = (
    "llama-3-sonar-small-32k-chat",
    "llama-3-sonar-small-32k-online",
    "llama-3-sonar-large-32k-chat",
    "llama-3-sonar-large-32k-online",
    "llama-3-8b-instruct",
    "llama-3-70b-instruct",
    "mixtral-8x7b-instruct",
)

BUILTIN_CAPABILITIES: Mapping[str, ProviderCapabilities] = MappingProxyType(
    {
        "openai": ProviderCapabilities(
            provider="openai",
            models=_OPENAI_MODELS,
            # the o1 family cannot stream
            streaming=tuple(m for m in _OPENAI_MODELS if not m.startswith("o1-")),
            json=_OPENAI_MODERN + ("gpt-3.5-turbo", "gpt-3.5-turbo-1106", "gpt-3.5-turbo-0125"),
            images=_OPENAI_MODERN,
            tool_calls=(
                "gpt-4o",
                "gpt-4o-mini",
                "gpt-4o-2024-05-13",
                "gpt-4o-2024-08-06",
                "gpt-4-turbo",
                "gpt-4-turbo-2024-04-09",
                "gpt-4-turbo-preview",
                "gpt-4-0125-preview",
                "gpt-4-1106-preview",
                "gpt-4",
                "gpt-4-0613",
                "gpt-3.5-turbo",
                "gpt-3.5-turbo-0125",
                "gpt-3.5-turbo-1106",
                "gpt-3.5-turbo-0613",
            ),
            n=True,
        ),
        "ai21": ProviderCapabilities(
            provider="ai21",
            models=("jamba-instruct",),
            streaming=("jamba-instruct",),
            json=(),
            images=(),
            tool_calls=(),
            n=True,
        ),
        "anthropic": ProviderCapabilities(
            provider="anthropic",
            models=_ANTHROPIC_MODELS,
            streaming=_ANTHROPIC_MODELS,
            json=(),
            images=tuple(m for m in _ANTHROPIC_CLAUDE_3 if m != "claude-3-5-haiku-20241022"),
            tool_calls=_ANTHROPIC_CLAUDE_3,
            n=False,
        ),
        "gemini": ProviderCapabilities(
            provider="gemini",
            models=_GEMINI_MODELS,
            streaming=_GEMINI_MODELS,
            json=_GEMINI_1_5,
            images=_GEMINI_1_5,
            tool_calls=_GEMINI_MODELS,
            n=True,
        ),
        "cohere": ProviderCapabilities(
            provider="cohere",
            models=_COHERE_MODELS,
            streaming=_COHERE_MODELS,
            json=(),
            images=(),
            tool_calls=("command-r-plus", "command-r", "command-nightly"),
            n=False,
        ),
        "bedrock": ProviderCapabilities(
            provider="bedrock",
            models=_BEDROCK_MODELS,
            streaming=_BEDROCK_MODELS,
            # Converse does not forward Mistral's responseFormat, so no JSON mode
            json=(),
            images=(
                "anthropic.claude-3-5-sonnet-20240620-v1:0",
                "anthropic.claude-3-5-sonnet-20241022-v2:0",
                "anthropic.claude-3-sonnet-20240229-v1:0",
                "anthropic.claude-3-opus-20240229-v1:0",
                "anthropic.claude-3-haiku-20240307-v1:0",
            ),
            tool_calls=(
                "anthropic.claude-3-5-sonnet-20240620-v1:0",
                "anthropic.claude-3-5-sonnet-20241022-v2:0",
                "anthropic.claude-3-5-haiku-20241022-v1:0",
                "anthropic.claude-3-opus-20240229-v1:0",
                "anthropic.claude-3-sonnet-20240229-v1:0",
                "anthropic.claude-3-haiku-20240307-v1:0",
                "cohere.command-r-plus-v1:0",
                "cohere.command-r-v1:0",
                "mistral.mistral-large-2402-v1:0",
            ),
            n=False,
        ),
        "mistral": ProviderCapabilities(
            provider="mistral",
            models=_MISTRAL_MODELS,
            streaming=_MISTRAL_MODELS,
            # weaker models produce unusable JSON and are left out on purpose
            json=(
                "open-mistral-7b",
                "mistral-tiny-2312",
                "open-mixtral-8x22b",
                "open-mixtral-8x22b-2404",
                "mistral-large-latest",
                "mistral-large-2402",
                "codestral-latest",
                "codestral-2405",
                "codestral-mamba-2407",
            ),
            images=(),
            tool_calls=(
                "open-mixtral-8x22b",
                "open-mixtral-8x22b-2404",
                "mistral-small-latest",
                "mistral-small-2402",
                "mistral-large-latest",
                "mistral-large-2402",
                "codestral-mamba-2407",
            ),
            n=False,
        ),
        "groq": ProviderCapabilities(
            provider="groq",
            models=_GROQ_MODELS,
            streaming=_GROQ_MODELS,
            json=("llama3-70b-8192", "gemma-7b-it", "gemma2-9b-it"),
            images=(),
            tool_calls=(),
            n=False,
        ),
        "perplexity": ProviderCapabilities(
            provider="perplexity",
            models=_PERPLEXITY_MODELS,
            streaming=_PERPLEXITY_MODELS,
            json=(),
            images=(),
            tool_calls=(),
            n=False,
        ),
        "openrouter": ProviderCapabilities(
            provider="openrouter",
            models=True,
            streaming=True,
            json=True,
            images=True,
            tool_calls=True,
            n=True,
        ),
        "openai-compatible": ProviderCapabilities(
            provider="openai-compatible",
            models=True,
            streaming=True,
            json=True,
            images=True,
            tool_calls=True,
            n=True,
        ),
    }
)


class CapabilityRegistry:
    """Append-only view over the built-in matrix plus runtime model extensions.

    Reads never block. ``extend`` takes an internal lock, so concurrent
    registrations are serialized; a registered model can never be removed.
    """

    def __init__(self, builtin: Mapping[str, ProviderCapabilities] = BUILTIN_CAPABILITIES) -> None:
        self._builtin = dict(builtin)
        self._extensions: dict[str, dict[str, ModelFeatures]] = {name: {} for name in self._builtin}
        self._lock = threading.Lock()

    def providers(self) -> tuple[str, ...]:
        return tuple(self._builtin)

    def for_provider(self, provider: str) -> ProviderCapabilities:
        """Return a snapshot of one provider's capabilities, extensions included."""
        try:
            builtin = self._builtin[provider]
        except KeyError as exc:
            raise InputError(f"Unknown provider '{provider}'.") from exc
        extensions = self._extensions[provider]
        if not extensions:
            return builtin
        return replace(builtin, extra_models=MappingProxyType(dict(extensions)))

    def is_supported_model(self, provider: str, model: str) -> bool:
        return self.for_provider(provider).is_supported_model(model)

    def supports(self, feature: str, provider: str, model: str) -> bool:
        return self.for_provider(provider).supports(feature, model)

    def extend(
        self,
        provider: str,
        model: str,
        features: ModelFeatures | Mapping[str, bool] | None = None,
        *,
        like: str | None = None,
    ) -> ModelFeatures:
        """Register ``model`` under ``provider``.

        Exactly one of ``features`` (explicit flags) or ``like`` (an existing
        model of the same provider whose flags are copied) must be given.
        """
        if (features is None) == (like is None):
            raise InputError("Pass either 'features' or 'like' when extending the model list.")

        with self._lock:
            current = self.for_provider(provider)
            if current.is_builtin_model(model):
                raise InputError(f"Model '{model}' is already a built-in {provider} model.")
            if model in current.extra_models:
                raise InputError(f"Model '{model}' has already been registered for {provider}.")

            if like is not None:
                if not current.is_supported_model(like):
                    raise InputError(f"Cannot copy features from unknown {provider} model '{like}'.")
                resolved = current.features_of(like)
            elif isinstance(features, ModelFeatures):
                resolved = features
            else:
                unknown = set(features) - {"json", "images", "tool_calls", "n", "streaming"}
                if unknown:
                    raise InputError(f"Unknown feature flag(s): {', '.join(sorted(unknown))}")
                resolved = ModelFeatures(**features)

            self._extensions[provider][model] = resolved
            return resolved


registry = CapabilityRegistry()


def extend_model_list(
    provider: str,
    model: str,
    features: ModelFeatures | Mapping[str, bool] | None = None,
    *,
    like: str | None = None,
) -> ModelFeatures:
    """Register a custom model on the process-wide registry."""
    return registry.extend(provider, model, features, like=like)
