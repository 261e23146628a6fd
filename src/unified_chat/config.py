"""Caller supplied options and credential resolution.

An explicit value always wins over the environment. Each provider reads its
own environment variable (see ``ENV_MAP``); Bedrock uses the three-field AWS
group in ``AWS_ENV``.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from unified_chat.errors import InputError

ENV_MAP: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "ai21": "AI21_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "openai-compatible": "OPENAI_COMPATIBLE_API_KEY",
}

AWS_ENV: dict[str, str] = {
    "region": "AWS_REGION_NAME",
    "access_key_id": "AWS_ACCESS_KEY_ID",
    "secret_access_key": "AWS_SECRET_ACCESS_KEY",
}


class BedrockOptions(BaseModel):
    """AWS credential group used by the Bedrock adapter."""

    model_config = ConfigDict(frozen=True)

    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None


class ConfigOptions(BaseModel):
    """Options shared by every adapter built for a call."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    api_key: str | None = None
    base_url: str | None = None
    # skip the known-model check, e.g. for fine-tuned or freshly released models
    bypass_model_check: bool = False
    bedrock: BedrockOptions | None = None
    # handed to httpx untouched; this layer imposes no timeout of its own
    timeout_s: float | None = None
    transport: httpx.AsyncBaseTransport | None = None

    def client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self.timeout_s}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return kwargs


def resolve_api_key(provider: str, explicit: str | None = None) -> str:
    """Return the API key for ``provider`` or raise ``InputError``."""
    env_var = ENV_MAP[provider]
    api_key = explicit if explicit is not None else os.environ.get(env_var)
    if not api_key:
        raise InputError(
            f"No {provider} API key detected. Please define a '{env_var}' environment variable "
            "or supply the API key using the 'api_key' option."
        )
    return api_key


def resolve_aws_credentials(options: BedrockOptions | None) -> BedrockOptions:
    """Fill the AWS credential group from the environment, validating completeness."""
    options = options or BedrockOptions()
    region = options.region or os.environ.get(AWS_ENV["region"])
    if not region:
        raise InputError(
            "No AWS region detected. Please define a region using either the 'region' field "
            f"of the 'bedrock' options or the '{AWS_ENV['region']}' environment variable."
        )

    resolved = {
        "access_key_id": options.access_key_id or os.environ.get(AWS_ENV["access_key_id"]),
        "secret_access_key": options.secret_access_key
        or os.environ.get(AWS_ENV["secret_access_key"]),
    }
    missing = [field for field, value in resolved.items() if not value]
    if missing:
        env_vars = ", ".join(AWS_ENV[field] for field in missing)
        raise InputError(
            f"Missing AWS credentials: {env_vars}. Please define these environment variables or "
            f"supply them using the following fields of the 'bedrock' options: {', '.join(missing)}."
        )
    return BedrockOptions(region=region, **resolved)
