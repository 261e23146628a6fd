"""AI21 (Jamba) provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from unified_chat.errors import InputError
from unified_chat.providers.base import SYSTEM_PREFIX, merge_adjacent_turns
from unified_chat.providers.openai import OpenAICompatibleProvider
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    Message,
    SystemMessage,
    ToolMessage,
    iter_text,
)

MAX_N = 16


class AI21Provider(OpenAICompatibleProvider):
    """AI21 Studio chat completions.

    Only the first message may use the ``system`` role; later system
    messages are sent as user turns prefixed with ``"System: "``, and
    consecutive turns of the same role are merged.
    """

    name = "ai21"
    default_base_url = "https://api.ai21.com/studio/v1"
    _logger = logging.getLogger(__name__)

    def validate_inputs(self, req: ChatRequest) -> str:
        model = super().validate_inputs(req)
        if req.n is not None and not 0 <= req.n <= MAX_N:
            raise InputError(
                f"AI21 requires that the 'n' parameter is a value between 0 and {MAX_N}, "
                f"inclusive. Instead, got: {req.n}"
            )
        return model

    def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        payload = super()._build_payload(req, model)
        # no tool or JSON support on this endpoint
        for key in ("tools", "tool_choice", "response_format"):
            payload.pop(key, None)
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        turns: list[dict[str, Any]] = []
        for index, message in enumerate(messages):
            if isinstance(message, SystemMessage):
                if index == 0:
                    turns.append({"role": "system", "content": "\n".join(iter_text(message.content))})
                else:
                    texts = [f"{SYSTEM_PREFIX}{text}" for text in iter_text(message.content)]
                    turns.append({"role": "user", "content": "\n".join(texts)})
            elif isinstance(message, AssistantMessage):
                turns.append({"role": "assistant", "content": "\n".join(iter_text(message.content))})
            elif isinstance(message, ToolMessage):
                raise InputError("AI21 does not support tool messages.")
            else:
                turns.append({"role": "user", "content": "\n".join(iter_text(message.content))})
        return merge_adjacent_turns(turns)
