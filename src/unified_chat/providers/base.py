"""Provider-agnostic base class and the conversion policies adapters share."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import aclosing
from typing import Any, cast

import httpx

from unified_chat.capabilities import ProviderCapabilities, registry
from unified_chat.config import ConfigOptions, resolve_api_key
from unified_chat.errors import InputError, InvariantError, ProviderError
from unified_chat.images import ParsedImage, resolve_image
from unified_chat.streaming import ChatStream, StreamEvent, normalize_events
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    Choice,
    FinishReason,
    Message,
    ResponseMessage,
    SystemMessage,
    Tool,
    ToolCall,
    ToolChoiceFunction,
    Usage,
)
from unified_chat.validation import validate_request

PLACEHOLDER_TEXT = "Empty"
SYSTEM_PREFIX = "System: "


class BaseProvider(ABC):
    """Abstract base class for provider adapters.

    ``create`` validates the request against the adapter's capability slice
    and then hands off to ``chat`` or ``stream``.
    """

    name: str
    # routing prefix stripped from model names, e.g. "groq/"
    model_prefix: str | None = None
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        options: ConfigOptions | None = None,
        capabilities: ProviderCapabilities | None = None,
    ) -> None:
        self.options = options or ConfigOptions()
        self.capabilities = capabilities or registry.for_provider(self.name)

    async def create(self, req: ChatRequest) -> ChatResponse | ChatStream:
        """Run one chat completion, streamed when ``req.stream`` is set."""
        model = self.validate_inputs(req)
        if req.stream:
            return await self.stream(req, model)
        return await self.chat(req, model)

    def validate_inputs(self, req: ChatRequest) -> str:
        """Validate ``req`` and return the model name as the provider knows it."""
        model = self.strip_prefix(req.model)
        validate_request(
            req,
            self.capabilities,
            model=model,
            bypass_model_check=self.options.bypass_model_check,
        )
        return model

    def strip_prefix(self, model: str) -> str:
        if self.model_prefix and model.startswith(self.model_prefix):
            return model[len(self.model_prefix) :]
        return model

    @abstractmethod
    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        """Execute a non-streaming completion."""
        raise NotImplementedError

    @abstractmethod
    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        """Prepare a streaming completion; the HTTP call starts on first iteration."""
        raise NotImplementedError

    def _api_key(self) -> str:
        return resolve_api_key(self.name, self.options.api_key)

    def _warn_ignored(self, option: str) -> None:
        self._logger.warning("The '%s' option is not supported by %s and will be ignored.", option, self.name)

    def _new_client(self, base_url: str = "") -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, **self.options.client_kwargs())

    async def _post_json(
        self,
        base_url: str,
        path: str,
        *,
        headers: Mapping[str, str],
        **request_kwargs: Any,
    ) -> tuple[dict[str, Any], httpx.Response]:
        async with self._new_client(base_url) as client:
            response = await client.post(path, headers=dict(headers), **request_kwargs)
            return self._json_or_error(response), response

    def _open_stream(
        self,
        events: Callable[[httpx.Response], AsyncIterator[StreamEvent]],
        *,
        base_url: str,
        path: str,
        headers: Mapping[str, str],
        model: str,
        **request_kwargs: Any,
    ) -> ChatStream:
        """Build a lazily started ``ChatStream`` over one streaming POST."""

        async def _gen() -> AsyncIterator[Any]:
            async with self._new_client(base_url) as client:
                async with client.stream("POST", path, headers=dict(headers), **request_kwargs) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise ProviderError(
                            self.name,
                            body.decode(errors="replace") or response.reason_phrase,
                            status_code=response.status_code,
                        )
                    created = self._timestamp()
                    id = self._stream_id(response)
                    chunks = normalize_events(events(response), model=model, created=created, id=id)
                    async with aclosing(chunks):
                        async for chunk in chunks:
                            yield chunk

        return ChatStream(_gen())

    def _stream_id(self, response: httpx.Response) -> str | None:
        return None

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                response.text or response.reason_phrase,
                status_code=response.status_code,
            )
        return cast(dict[str, Any], response.json())

    async def _resolve_image(self, url: str, detail: str | None = None) -> ParsedImage:
        if detail not in (None, "auto"):
            self._logger.warning("%s does not support the image 'detail' field; ignoring '%s'.", self.name, detail)
        async with self._new_client() as client:
            return await resolve_image(url, client)

    def _finish_reason(self, table: Mapping[str, FinishReason], code: str | None) -> FinishReason:
        if code is not None and code in table:
            return table[code]
        self._logger.warning("Unknown %s finish reason %r; reporting 'unknown'.", self.name, code)
        return "unknown"

    def _join_text(self, texts: Sequence[str]) -> str | None:
        if not texts:
            return None
        if len(texts) > 1:
            self._logger.warning("Received %d text blocks from %s; joining them with newlines.", len(texts), self.name)
        return "\n".join(texts)

    @staticmethod
    def _timestamp() -> int:
        return int(time.time())


def single_choice_response(
    *,
    id: str | None,
    created: int,
    model: str,
    content: str | None,
    tool_calls: list[ToolCall] | None,
    finish_reason: FinishReason,
    usage: Usage | None,
) -> ChatResponse:
    return ChatResponse(
        id=id,
        created=created,
        model=model,
        usage=usage,
        choices=[
            Choice(
                index=0,
                message=ResponseMessage(content=content, tool_calls=tool_calls or None),
                finish_reason=finish_reason,
            )
        ],
    )


def stop_sequences(stop: str | list[str] | None) -> list[str] | None:
    if stop is None:
        return None
    return [stop] if isinstance(stop, str) else list(stop)


def halve_temperature(temperature: float | None) -> float | None:
    """Map the unified 0..2 range onto providers that accept 0..1."""
    return None if temperature is None else temperature / 2


def split_leading_system(messages: Sequence[Message]) -> tuple[SystemMessage | None, list[Message]]:
    """Pop the first message when it is a system message."""
    if messages and isinstance(messages[0], SystemMessage):
        return messages[0], list(messages[1:])
    return None, list(messages)


def find_linked_tool_call(messages: Sequence[Message], index: int, tool_call_id: str) -> ToolCall:
    """Return the assistant tool call answered by the tool message at ``index``."""
    for message in reversed(messages[:index]):
        if isinstance(message, AssistantMessage):
            for call in message.tool_calls or ():
                if call.id == tool_call_id:
                    return call
    raise InvariantError(f"Could not find the tool call with id '{tool_call_id}' for the tool result.")


def parse_arguments(call: ToolCall) -> Any:
    try:
        return json.loads(call.function.arguments)
    except json.JSONDecodeError as exc:
        raise InputError(
            f"The arguments of tool call '{call.id}' are not valid JSON: {call.function.arguments}"
        ) from exc


def parse_json_text(text: str) -> Any:
    """Decode a tool result when it is JSON, falling back to the raw string."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def merge_adjacent_turns(turns: list[dict[str, Any]], content_key: str = "content") -> list[dict[str, Any]]:
    """Merge consecutive turns that share a role.

    List contents are concatenated, string contents joined with a newline.
    """
    merged: list[dict[str, Any]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            previous = merged[-1][content_key]
            current = turn[content_key]
            if isinstance(previous, str) and isinstance(current, str):
                merged[-1][content_key] = f"{previous}\n{current}"
            else:
                merged[-1][content_key] = list(previous) + list(current)
        else:
            merged.append(dict(turn))
    return merged


def selected_tools(tools: list[Tool] | None, choice: str | ToolChoiceFunction | None) -> list[Tool] | None:
    """Apply ``tool_choice`` to the tool list for providers without a native
    specific-function choice: ``none`` drops the tools, a named function keeps
    only that one."""
    if not tools or choice == "none":
        return None
    if isinstance(choice, ToolChoiceFunction):
        kept = [tool for tool in tools if tool.function.name == choice.function.name]
        if not kept:
            raise InputError(
                f"The 'tool_choice' function '{choice.function.name}' is not in the 'tools' array."
            )
        return kept
    return tools
