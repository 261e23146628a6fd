"""Anthropic provider implementation."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from unified_chat.errors import InvariantError, StreamEventError
from unified_chat.providers.base import (
    PLACEHOLDER_TEXT,
    SYSTEM_PREFIX,
    BaseProvider,
    halve_temperature,
    merge_adjacent_turns,
    parse_arguments,
    single_choice_response,
    split_leading_system,
    stop_sequences,
)
from unified_chat.streaming import (
    ChatStream,
    StreamEnd,
    StreamEvent,
    StreamFinish,
    StreamStart,
    TextDelta,
    ToolCallFragment,
    iter_sse,
)
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    FinishReason,
    FunctionCall,
    ImagePart,
    Message,
    Tool,
    ToolCall,
    ToolChoice,
    ToolChoiceFunction,
    ToolMessage,
    Usage,
    UserMessage,
    content_text,
)

_DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
_MESSAGES_PATH = "/messages"
_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

FINISH_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


class AnthropicProvider(BaseProvider):
    """Async adapter for the Anthropic Messages API."""

    name = "anthropic"
    _logger = logging.getLogger(__name__)

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key(),
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

    def _base_url(self) -> str:
        return self.options.base_url or _DEFAULT_BASE_URL

    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        payload = await self._build_payload(req, model)
        data, _ = await self._post_json(self._base_url(), _MESSAGES_PATH, headers=self._headers(), json=payload)
        return self._to_response(data, req.tool_choice)

    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        payload = await self._build_payload(req, model)
        payload["stream"] = True
        return self._open_stream(
            self._events,
            base_url=self._base_url(),
            path=_MESSAGES_PATH,
            headers=self._headers(),
            model=model,
            json=payload,
        )

    async def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        system, messages = await self._convert_messages(req.messages)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": req.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system is not None:
            payload["system"] = system
        if req.temperature is not None:
            payload["temperature"] = halve_temperature(req.temperature)
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.stop is not None:
            payload["stop_sequences"] = stop_sequences(req.stop)
        payload.update(self._serialize_tools(req.tools, req.tool_choice))
        return payload

    async def _convert_messages(self, messages: list[Message]) -> tuple[str | None, list[dict[str, Any]]]:
        """Split off the system prompt and fold the rest into alternating
        user/assistant turns of content blocks."""
        system_message, rest = split_leading_system(messages)
        system = content_text(system_message.content) if system_message is not None else None

        if not rest or isinstance(rest[0], AssistantMessage):
            rest.insert(0, UserMessage(content=PLACEHOLDER_TEXT))

        turns: list[dict[str, Any]] = []
        for message in rest:
            role = "assistant" if isinstance(message, AssistantMessage) else "user"
            turns.append({"role": role, "content": await self._convert_blocks(message)})
        return system, merge_adjacent_turns(turns)

    async def _convert_blocks(self, message: Message) -> list[dict[str, Any]]:
        if isinstance(message, ToolMessage):
            return [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": content_text(message.content),
                }
            ]

        prefix = SYSTEM_PREFIX if message.role == "system" else ""
        blocks: list[dict[str, Any]] = []
        parts = [message.content] if isinstance(message.content, str) else message.content or []
        for part in parts:
            if isinstance(part, str):
                if part:
                    blocks.append({"type": "text", "text": f"{prefix}{part}"})
            elif isinstance(part, ImagePart):
                image = await self._resolve_image(part.image_url.url, part.image_url.detail)
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": image.mime_type, "data": image.data},
                    }
                )
            elif part.text:
                blocks.append({"type": "text", "text": f"{prefix}{part.text}"})

        if isinstance(message, AssistantMessage):
            for call in message.tool_calls or ():
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.function.name,
                        "input": parse_arguments(call),
                    }
                )
        return blocks

    @staticmethod
    def _serialize_tools(tools: list[Tool] | None, tool_choice: ToolChoice | None) -> dict[str, Any]:
        if not tools or tool_choice == "none":
            return {}
        payload_tools = [
            {
                "name": tool.function.name,
                "description": tool.function.description,
                "input_schema": {"type": "object", **(tool.function.parameters or {})},
            }
            for tool in tools
        ]
        for tool in payload_tools:
            if tool["description"] is None:
                del tool["description"]

        if isinstance(tool_choice, ToolChoiceFunction):
            choice: dict[str, Any] = {"type": "tool", "name": tool_choice.function.name}
        elif tool_choice == "required":
            choice = {"type": "any"}
        else:
            choice = {"type": "auto"}
        return {"tools": payload_tools, "tool_choice": choice}

    def _to_response(self, data: dict[str, Any], tool_choice: ToolChoice | None) -> ChatResponse:
        stop_reason = data.get("stop_reason")
        if stop_reason is None:
            raise InvariantError("Detected a 'stop_reason' value of 'null' during a non-streaming call.")

        blocks = data.get("content") or []
        texts = [block["text"] for block in blocks if block.get("type") == "text"]
        tool_uses = [block for block in blocks if block.get("type") == "tool_use"]

        if isinstance(tool_choice, ToolChoiceFunction):
            # a forced function yields exactly one call
            selected = [block for block in tool_uses if block.get("name") == tool_choice.function.name]
            if not selected:
                raise InvariantError(
                    f"Did not receive a tool use block from Anthropic for the function: "
                    f"{tool_choice.function.name}"
                )
            tool_uses = selected[:1]

        tool_calls = [
            ToolCall(
                id=block["id"],
                function=FunctionCall(name=block["name"], arguments=json.dumps(block.get("input", {}))),
            )
            for block in tool_uses
        ]

        content = self._join_text(texts)
        if content is None and not all(block.get("type") == "tool_use" for block in blocks):
            content = ""

        return single_choice_response(
            id=data.get("id"),
            created=self._timestamp(),
            model=data.get("model", ""),
            content=content,
            tool_calls=tool_calls,
            finish_reason=self._finish_reason(FINISH_REASONS, stop_reason),
            usage=self._to_usage(data.get("usage")),
        )

    @staticmethod
    def _to_usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = raw.get("input_tokens") or 0
        completion = raw.get("output_tokens") or 0
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        input_tokens = 0
        async for message in iter_sse(response):
            try:
                event = json.loads(message.data)
            except json.JSONDecodeError:
                self._logger.debug("Skipping non-JSON streaming chunk: %s", message.data)
                continue

            kind = event.get("type", message.event)
            if kind == "message_start":
                started = event.get("message") or {}
                input_tokens = (started.get("usage") or {}).get("input_tokens") or 0
                yield StreamStart(id=started.get("id"))
            elif kind == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    yield ToolCallFragment(
                        key=event.get("index"), id=block.get("id"), name=block.get("name"), arguments=""
                    )
                elif block.get("type") == "text" and block.get("text"):
                    yield TextDelta(block["text"])
            elif kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    yield TextDelta(delta.get("text", ""))
                elif delta.get("type") == "input_json_delta":
                    yield ToolCallFragment(key=event.get("index"), arguments=delta.get("partial_json", ""))
            elif kind == "message_delta":
                stop_reason = (event.get("delta") or {}).get("stop_reason")
                if stop_reason is not None:
                    output_tokens = (event.get("usage") or {}).get("output_tokens") or 0
                    yield StreamFinish(
                        self._finish_reason(FINISH_REASONS, stop_reason),
                        usage=Usage(
                            prompt_tokens=input_tokens,
                            completion_tokens=output_tokens,
                            total_tokens=input_tokens + output_tokens,
                        ),
                    )
            elif kind == "message_stop":
                yield StreamEnd()
            elif kind == "error":
                error = event.get("error") or {}
                raise StreamEventError(self.name, error.get("type", "error"), error.get("message", ""))
            elif kind not in ("ping", "content_block_stop"):
                self._logger.debug("Ignoring Anthropic stream event: %s", kind)
