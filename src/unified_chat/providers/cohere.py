"""Cohere provider implementation (v1 chat API)."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from unified_chat.errors import InputError, ProviderError, StreamEventError
from unified_chat.providers.base import (
    PLACEHOLDER_TEXT,
    BaseProvider,
    find_linked_tool_call,
    halve_temperature,
    parse_arguments,
    parse_json_text,
    selected_tools,
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
    iter_json_lines,
    new_tool_call_id,
)
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    FinishReason,
    FunctionCall,
    Message,
    Tool,
    ToolCall,
    ToolMessage,
    Usage,
    content_text,
    iter_text,
)

_BASE_URL = "https://api.cohere.com/v1"
_CHAT_PATH = "/chat"

FINISH_REASONS: dict[str, FinishReason] = {
    "COMPLETE": "stop",
    "STOP_SEQUENCE": "stop",
    "USER_CANCEL": "stop",
    "MAX_TOKENS": "length",
    "ERROR_TOXIC": "content_filter",
}
FAILED_FINISH_REASONS = {
    "ERROR_LIMIT": "The generation could not be completed because the model's context limit was reached.",
    "ERROR": "The generation could not be completed due to an error.",
}

_ROLES = {"system": "SYSTEM", "user": "USER", "assistant": "CHATBOT", "tool": "TOOL"}

_SCALAR_TYPES = {"string": "str", "integer": "int", "number": "float", "boolean": "bool"}


def python_type_name(schema: dict[str, Any]) -> str:
    """Translate a JSON-schema node into the Python type name Cohere expects."""
    kind = schema.get("type")
    if kind in _SCALAR_TYPES:
        return _SCALAR_TYPES[kind]
    if kind == "array":
        items = schema.get("items")
        return f"List[{python_type_name(items)}]" if isinstance(items, dict) and items.get("type") else "List"
    if kind == "object":
        for nested in (schema.get("properties") or {}).values():
            python_type_name(nested)
        values = schema.get("additionalProperties")
        if isinstance(values, dict) and values.get("type"):
            return f"Dict[str, {python_type_name(values)}]"
        return "Dict"
    raise InputError(f"Cohere does not support the JSON schema type: {kind!r}")


def convert_tool(tool: Tool) -> dict[str, Any]:
    """Map one unified tool onto Cohere's ``parameter_definitions`` grammar."""
    parameters = tool.function.parameters or {}
    required = set(parameters.get("required") or ())
    definitions: dict[str, Any] = {}
    for name, schema in (parameters.get("properties") or {}).items():
        definition: dict[str, Any] = {"type": python_type_name(schema), "required": name in required}
        if schema.get("description"):
            definition["description"] = schema["description"]
        definitions[name] = definition

    converted: dict[str, Any] = {"name": tool.function.name, "parameter_definitions": definitions}
    # the field is mandatory on Cohere's side
    converted["description"] = tool.function.description or ""
    return converted


class CohereProvider(BaseProvider):
    """Async adapter for Cohere's v1 ``/chat`` endpoint.

    The last user message travels in ``message`` and everything before it in
    ``chat_history``; pending tool results go to ``tool_results`` instead.
    """

    name = "cohere"
    _logger = logging.getLogger(__name__)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _check_options(self) -> None:
        if self.options.base_url is not None:
            self._warn_ignored("base_url")

    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        self._check_options()
        payload = self._build_payload(req, model)
        data, _ = await self._post_json(_BASE_URL, _CHAT_PATH, headers=self._headers(), json=payload)
        return self._to_response(data, model)

    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        self._check_options()
        payload = self._build_payload(req, model)
        payload["stream"] = True
        return self._open_stream(
            self._events,
            base_url=_BASE_URL,
            path=_CHAT_PATH,
            headers=self._headers(),
            model=model,
            json=payload,
        )

    def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model}
        payload.update(self._convert_messages(req.messages))
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        if req.temperature is not None:
            payload["temperature"] = halve_temperature(req.temperature)
        if req.top_p is not None:
            payload["p"] = req.top_p
        if req.stop is not None:
            payload["stop_sequences"] = stop_sequences(req.stop)

        tools = selected_tools(req.tools, req.tool_choice)
        if tools:
            payload["tools"] = [convert_tool(tool) for tool in tools]
        return payload

    def _convert_messages(self, messages: list[Message]) -> dict[str, Any]:
        system_message, rest = split_leading_system(messages)
        converted: dict[str, Any] = {}
        if system_message is not None:
            converted["preamble"] = content_text(system_message.content)

        offset = len(messages) - len(rest)
        trailing_tools = 0
        while trailing_tools < len(rest) and isinstance(rest[-1 - trailing_tools], ToolMessage):
            trailing_tools += 1

        if trailing_tools:
            history = rest[: len(rest) - trailing_tools]
            converted["message"] = ""
            converted["tool_results"] = [
                self._tool_result(messages, offset + index, message)
                for index, message in enumerate(rest)
                if index >= len(rest) - trailing_tools
            ]
        elif rest and rest[-1].role == "user":
            history = rest[:-1]
            converted["message"] = content_text(rest[-1].content) or PLACEHOLDER_TEXT
        else:
            history = rest
            converted["message"] = PLACEHOLDER_TEXT

        converted["chat_history"] = [
            self._history_entry(messages, offset + index, message) for index, message in enumerate(history)
        ]
        return converted

    def _history_entry(self, messages: list[Message], index: int, message: Message) -> dict[str, Any]:
        if isinstance(message, ToolMessage):
            return {"role": "TOOL", "tool_results": [self._tool_result(messages, index, message)]}
        entry: dict[str, Any] = {"role": _ROLES[message.role], "message": "\n".join(iter_text(message.content))}
        if isinstance(message, AssistantMessage) and message.tool_calls:
            entry["tool_calls"] = [
                {"name": call.function.name, "parameters": parse_arguments(call)} for call in message.tool_calls
            ]
        return entry

    @staticmethod
    def _tool_result(messages: list[Message], index: int, message: ToolMessage) -> dict[str, Any]:
        call = find_linked_tool_call(messages, index, message.tool_call_id)
        output = parse_json_text(content_text(message.content))
        if not isinstance(output, dict):
            output = {"output": output}
        return {
            "call": {"name": call.function.name, "parameters": parse_arguments(call)},
            "outputs": [output],
        }

    def _resolve_finish(self, code: str | None, has_tool_calls: bool) -> FinishReason:
        if code in FAILED_FINISH_REASONS:
            raise ProviderError(self.name, FAILED_FINISH_REASONS[code])
        reason = self._finish_reason(FINISH_REASONS, code)
        if reason == "stop" and has_tool_calls:
            return "tool_calls"
        return reason

    def _to_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        tool_calls = [
            ToolCall(
                id=new_tool_call_id(),
                function=FunctionCall(name=call["name"], arguments=json.dumps(call.get("parameters") or {})),
            )
            for call in data.get("tool_calls") or []
        ]
        text = data.get("text")
        return single_choice_response(
            id=data.get("generation_id"),
            created=self._timestamp(),
            model=model,
            content=text if text or not tool_calls else None,
            tool_calls=tool_calls,
            finish_reason=self._resolve_finish(data.get("finish_reason"), bool(tool_calls)),
            usage=self._to_usage(data.get("meta")),
        )

    @staticmethod
    def _to_usage(meta: dict[str, Any] | None) -> Usage | None:
        billed = (meta or {}).get("billed_units") or {}
        prompt = billed.get("input_tokens")
        completion = billed.get("output_tokens")
        if prompt is None or completion is None:
            return None
        prompt, completion = int(prompt), int(completion)
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        streamed_calls = False
        async for event in iter_json_lines(response):
            kind = event.get("event_type")
            if kind == "stream-start":
                yield StreamStart(id=event.get("generation_id"))
            elif kind == "text-generation":
                yield TextDelta(event.get("text", ""))
            elif kind == "tool-calls-chunk":
                delta = event.get("tool_call_delta")
                if delta is None:
                    # tool plan text streamed ahead of the calls
                    if event.get("text"):
                        yield TextDelta(event["text"])
                    continue
                streamed_calls = True
                yield ToolCallFragment(
                    key=delta.get("index", 0),
                    name=delta.get("name"),
                    arguments=delta.get("parameters"),
                )
            elif kind == "tool-calls-generation":
                if streamed_calls:
                    continue
                for index, call in enumerate(event.get("tool_calls") or []):
                    streamed_calls = True
                    yield ToolCallFragment(
                        key=index, name=call["name"], arguments=json.dumps(call.get("parameters") or {})
                    )
            elif kind == "stream-end":
                code = event.get("finish_reason")
                if code in FAILED_FINISH_REASONS:
                    raise StreamEventError(self.name, code, FAILED_FINISH_REASONS[code])
                final = event.get("response") or {}
                yield StreamFinish(
                    self._resolve_finish(code, streamed_calls),
                    usage=self._to_usage(final.get("meta")),
                )
                yield StreamEnd()
            else:
                self._logger.debug("Ignoring Cohere stream event: %s", kind)
