"""Generic adapter for self-hosted or third-party OpenAI-compatible servers."""

from __future__ import annotations

from unified_chat.errors import InputError
from unified_chat.providers.openai import OpenAICompatibleProvider
from unified_chat.types import ChatRequest


class OpenAICompatibleEndpointProvider(OpenAICompatibleProvider):
    """Talks to whatever server ``options.base_url`` points at."""

    name = "openai-compatible"

    def validate_inputs(self, req: ChatRequest) -> str:
        model = super().validate_inputs(req)
        if not self.options.base_url:
            raise InputError(
                "The 'openai-compatible' provider requires a 'base_url' option pointing at the server."
            )
        return model
