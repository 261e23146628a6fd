"""Mistral provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from unified_chat.providers.base import find_linked_tool_call, halve_temperature, selected_tools
from unified_chat.providers.openai import OpenAICompatibleProvider
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    Message,
    ToolChoiceFunction,
    ToolMessage,
    content_text,
)


class MistralProvider(OpenAICompatibleProvider):
    """Mistral's chat completions API.

    Close to OpenAI's format, except that tool messages must name the
    function they answer and a specific function can only be forced by
    narrowing the tool list and asking for ``any`` tool.
    """

    name = "mistral"
    model_prefix = "mistral/"
    default_base_url = "https://api.mistral.ai/v1"
    include_stream_usage = False
    _logger = logging.getLogger(__name__)

    def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        payload = super()._build_payload(req, model)
        if req.temperature is not None:
            payload["temperature"] = halve_temperature(req.temperature)

        payload.pop("tool_choice", None)
        tools = selected_tools(req.tools, req.tool_choice)
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.function.name,
                        "description": tool.function.description or "",
                        "parameters": tool.function.parameters or {},
                    },
                }
                for tool in tools
            ]
            if isinstance(req.tool_choice, ToolChoiceFunction) or req.tool_choice == "required":
                payload["tool_choice"] = "any"
            elif req.tool_choice == "auto":
                payload["tool_choice"] = "auto"
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for index, message in enumerate(messages):
            if isinstance(message, ToolMessage):
                call = find_linked_tool_call(messages, index, message.tool_call_id)
                converted.append(
                    {
                        "role": "tool",
                        "name": call.function.name,
                        "content": content_text(message.content),
                        "tool_call_id": message.tool_call_id,
                    }
                )
            elif isinstance(message, AssistantMessage):
                entry: dict[str, Any] = {"role": "assistant", "content": content_text(message.content)}
                if message.tool_calls:
                    entry["tool_calls"] = [call.model_dump() for call in message.tool_calls]
                converted.append(entry)
            else:
                converted.append({"role": message.role, "content": content_text(message.content)})
        return converted

    @staticmethod
    def _tool_call_key(call: dict[str, Any], position: int) -> Any:
        # streamed calls arrive whole, identified by id rather than index
        return call.get("id") or call.get("index", position)
