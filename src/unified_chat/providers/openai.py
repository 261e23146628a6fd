"""OpenAI provider and the shared implementation for OpenAI-compatible APIs."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from unified_chat.errors import InvariantError, StreamEventError
from unified_chat.providers.base import BaseProvider, stop_sequences
from unified_chat.streaming import (
    ChatStream,
    StreamEnd,
    StreamEvent,
    StreamFinish,
    StreamStart,
    TextDelta,
    ToolCallFragment,
    UsageReport,
    iter_sse,
)
from unified_chat.types import (
    ChatRequest,
    ChatResponse,
    Choice,
    FinishReason,
    FunctionCall,
    Message,
    ResponseMessage,
    ToolCall,
    Usage,
)

_CHAT_PATH = "/chat/completions"

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "content_filter": "content_filter",
    "function_call": "function_call",
}


class OpenAICompatibleProvider(BaseProvider):
    """Chat Completions client for any endpoint that speaks OpenAI's wire format.

    Subclasses set ``name`` and ``default_base_url``; the request body, the
    response and the SSE stream are already in the unified shape, so
    conversion is mostly a matter of dropping unset fields.
    """

    default_base_url: str | None = None
    # ask for a trailing usage chunk on streams
    include_stream_usage = False
    _logger = logging.getLogger(__name__)

    def base_url(self) -> str:
        if self.options.base_url is not None:
            return self.options.base_url
        if self.default_base_url is None:
            raise InvariantError(f"{type(self).__name__} has no default base URL.")
        return self.default_base_url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
        }

    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        """Call Chat Completions and normalize the result."""
        payload = self._build_payload(req, model)
        data, _ = await self._post_json(self.base_url(), _CHAT_PATH, headers=self._headers(), json=payload)
        return self._to_response(data, model)

    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        payload = self._build_payload(req, model)
        payload["stream"] = True
        if self.include_stream_usage:
            payload["stream_options"] = {"include_usage": True}
        return self._open_stream(
            self._events,
            base_url=self.base_url(),
            path=_CHAT_PATH,
            headers=self._headers(),
            model=model,
            json=payload,
        )

    def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": self._serialize_messages(req.messages),
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.stop is not None:
            payload["stop"] = stop_sequences(req.stop)
        if req.n is not None:
            payload["n"] = req.n
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        if req.response_format is not None:
            payload["response_format"] = req.response_format.model_dump()

        if req.tools and req.tool_choice != "none":
            payload["tools"] = [tool.model_dump(exclude_none=True) for tool in req.tools]
            if req.tool_choice is not None:
                payload["tool_choice"] = (
                    req.tool_choice if isinstance(req.tool_choice, str) else req.tool_choice.model_dump()
                )
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        return [message.model_dump(exclude_none=True) for message in messages]

    def _to_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        choices = [self._to_choice(raw, position) for position, raw in enumerate(data.get("choices") or [])]
        if not choices:
            raise InvariantError(f"{self.name} returned a response without choices.")
        return ChatResponse(
            id=data.get("id"),
            created=data.get("created") or self._timestamp(),
            model=data.get("model") or model,
            usage=self._to_usage(data.get("usage")),
            choices=choices,
        )

    def _to_choice(self, raw: dict[str, Any], position: int) -> Choice:
        message = raw.get("message") or {}
        tool_calls = [
            ToolCall(
                id=call["id"],
                function=FunctionCall(
                    name=call["function"]["name"],
                    arguments=call["function"].get("arguments") or "",
                ),
            )
            for call in message.get("tool_calls") or []
        ]
        return Choice(
            index=raw.get("index", position),
            message=ResponseMessage(content=message.get("content"), tool_calls=tool_calls or None),
            finish_reason=self._finish_reason(FINISH_REASONS, raw.get("finish_reason")),
        )

    @staticmethod
    def _to_usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = raw.get("prompt_tokens") or 0
        completion = raw.get("completion_tokens") or 0
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=raw.get("total_tokens") or prompt + completion,
        )

    @staticmethod
    def _tool_call_key(call: dict[str, Any], position: int) -> Any:
        return call.get("index", position)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        started = False
        async for message in iter_sse(response):
            data_str = message.data.strip()
            if data_str == "[DONE]":
                yield StreamEnd()
                continue

            try:
                event = json.loads(data_str)
            except json.JSONDecodeError:
                self._logger.debug("Skipping non-JSON streaming chunk: %s", data_str)
                continue

            if "error" in event:
                error = event["error"]
                detail = error.get("message", error) if isinstance(error, dict) else error
                raise StreamEventError(self.name, "error", str(detail))

            if not started:
                started = True
                yield StreamStart(id=event.get("id"))

            for choice in event.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield TextDelta(delta["content"])
                for position, call in enumerate(delta.get("tool_calls") or []):
                    function = call.get("function") or {}
                    yield ToolCallFragment(
                        key=self._tool_call_key(call, position),
                        id=call.get("id"),
                        name=function.get("name"),
                        arguments=function.get("arguments"),
                    )
                if choice.get("finish_reason") is not None:
                    yield StreamFinish(self._finish_reason(FINISH_REASONS, choice["finish_reason"]))

            usage = self._to_usage(event.get("usage"))
            if usage is not None:
                yield UsageReport(usage)


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI Chat Completions."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    include_stream_usage = True
