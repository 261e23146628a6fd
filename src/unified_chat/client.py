"""Async client forwarding unified requests to provider adapters."""

from __future__ import annotations

from typing import Any

from unified_chat.capabilities import CapabilityRegistry, registry
from unified_chat.config import ConfigOptions
from unified_chat.dispatch import get_handler
from unified_chat.providers.base import BaseProvider
from unified_chat.streaming import ChatStream
from unified_chat.types import ChatRequest, ChatResponse


class LLMClient:
    """High-level entry point: ``await client.chat.completions.create(...)``."""

    def __init__(
        self,
        options: ConfigOptions | None = None,
        *,
        capabilities: CapabilityRegistry = registry,
    ) -> None:
        self.options = options or ConfigOptions()
        self._capabilities = capabilities
        self.chat = _Chat(self)

    def get_handler(self, provider: str | None, model: str) -> BaseProvider:
        """Return a fresh adapter for a provider key or model name."""
        return get_handler(provider, model, self.options, capabilities=self._capabilities)

    async def create(self, req: ChatRequest | None = None, **params: Any) -> ChatResponse | ChatStream:
        """Execute a chat completion, given as a request object or keyword fields."""
        if req is None:
            req = ChatRequest.model_validate(params)
        elif params:
            req = ChatRequest.model_validate({**req.model_dump(), **params})
        handler = self.get_handler(req.provider, req.model)
        return await handler.create(req)


class _Completions:
    def __init__(self, client: LLMClient) -> None:
        self._client = client

    async def create(self, req: ChatRequest | None = None, **params: Any) -> ChatResponse | ChatStream:
        return await self._client.create(req, **params)


class _Chat:
    def __init__(self, client: LLMClient) -> None:
        self.completions = _Completions(client)
