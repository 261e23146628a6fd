"""Package specific exception hierarchy."""

from __future__ import annotations


class UnifiedChatError(Exception):
    """Base exception for unified_chat package."""


class InputError(UnifiedChatError, ValueError):
    """Raised for user-correctable problems: bad parameters, unsupported
    feature combinations or missing credentials."""


class UnsupportedProviderError(InputError):
    """Raised when no adapter matches the requested provider or model."""

    def __init__(self, provider: str | None, model: str | None = None) -> None:
        target = provider if provider is not None else model
        super().__init__(
            f"Provider '{target}' is not available. "
            "Are you sure the model name is correct and the provider is supported?"
        )
        self.provider = provider
        self.model = model


class UnsupportedFeatureError(InputError):
    """Raised when a requested feature is unsupported by a provider/model."""

    def __init__(self, feature: str, provider: str, model: str) -> None:
        super().__init__(f"Feature '{feature}' is not supported by {provider} model '{model}'.")
        self.feature = feature
        self.provider = provider
        self.model = model


class InvariantError(UnifiedChatError):
    """Internal contract violation, typically a malformed provider response."""

    def __init__(self, message: str) -> None:
        super().__init__(
            f"{message}\nShould never happen. Please report this error to the developers."
        )


class ProviderError(UnifiedChatError):
    """Represents provider-specific HTTP or API errors."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code


class StreamEventError(ProviderError):
    """A fault the provider signalled inside an otherwise healthy event stream."""

    def __init__(self, provider: str, kind: str, message: str) -> None:
        super().__init__(provider, f"{kind}: {message}")
        self.kind = kind
