"""Google Gemini provider implementation (generateContent REST API)."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from unified_chat.errors import ProviderError, StreamEventError
from unified_chat.providers.base import (
    PLACEHOLDER_TEXT,
    SYSTEM_PREFIX,
    BaseProvider,
    find_linked_tool_call,
    merge_adjacent_turns,
    parse_arguments,
    parse_json_text,
    split_leading_system,
    stop_sequences,
)
from unified_chat.streaming import (
    ChatStream,
    StreamEvent,
    StreamFinish,
    StreamStart,
    TextDelta,
    ToolCallFragment,
    UsageReport,
    iter_sse,
    new_tool_call_id,
)
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    Choice,
    FinishReason,
    FunctionCall,
    ImagePart,
    Message,
    ResponseMessage,
    SystemMessage,
    ToolCall,
    ToolChoiceFunction,
    ToolMessage,
    Usage,
    UserMessage,
    content_text,
    iter_text,
)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


class GeminiProvider(BaseProvider):
    """Async adapter for Gemini's ``generateContent`` endpoints."""

    name = "gemini"
    _logger = logging.getLogger(__name__)

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self._api_key(), "Content-Type": "application/json"}

    def _check_options(self) -> None:
        if self.options.base_url is not None:
            self._warn_ignored("base_url")

    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        self._check_options()
        payload = await self._build_payload(req)
        data, _ = await self._post_json(
            _BASE_URL, f"/models/{model}:generateContent", headers=self._headers(), json=payload
        )
        return self._to_response(data, model)

    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        self._check_options()
        payload = await self._build_payload(req)
        return self._open_stream(
            self._events,
            base_url=_BASE_URL,
            path=f"/models/{model}:streamGenerateContent",
            headers=self._headers(),
            model=model,
            params={"alt": "sse"},
            json=payload,
        )

    async def _build_payload(self, req: ChatRequest) -> dict[str, Any]:
        system_message, rest = split_leading_system(req.messages)
        if not rest or isinstance(rest[0], AssistantMessage):
            rest.insert(0, UserMessage(content=PLACEHOLDER_TEXT))
        payload: dict[str, Any] = {"contents": await self._convert_messages(rest)}
        if system_message is not None:
            payload["systemInstruction"] = {
                "parts": [{"text": text} for text in iter_text(system_message.content)]
            }

        if req.tools and req.tool_choice != "none":
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        tool.function.model_dump(exclude_none=True) for tool in req.tools
                    ]
                }
            ]
            payload["toolConfig"] = {"functionCallingConfig": self._calling_config(req.tool_choice)}

        config: dict[str, Any] = {}
        if req.max_tokens is not None:
            config["maxOutputTokens"] = req.max_tokens
        if req.temperature is not None:
            config["temperature"] = req.temperature
        if req.top_p is not None:
            config["topP"] = req.top_p
        if req.stop is not None:
            config["stopSequences"] = stop_sequences(req.stop)
        if req.n is not None:
            config["candidateCount"] = req.n
        if req.response_format is not None and req.response_format.type == "json_object":
            config["responseMimeType"] = "application/json"
        if config:
            payload["generationConfig"] = config
        return payload

    @staticmethod
    def _calling_config(tool_choice: Any) -> dict[str, Any]:
        if isinstance(tool_choice, ToolChoiceFunction):
            return {"mode": "ANY", "allowedFunctionNames": [tool_choice.function.name]}
        if tool_choice == "required":
            return {"mode": "ANY"}
        return {"mode": "AUTO"}

    async def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        turns: list[dict[str, Any]] = []
        for index, message in enumerate(messages):
            if isinstance(message, AssistantMessage):
                parts: list[dict[str, Any]] = [
                    {"functionCall": {"name": call.function.name, "args": parse_arguments(call)}}
                    for call in message.tool_calls or ()
                ]
                parts.extend({"text": text} for text in iter_text(message.content) if text)
                if not parts:
                    self._logger.debug("Skipping an assistant message with no text or tool calls")
                    continue
                turns.append({"role": "model", "parts": parts})
            elif isinstance(message, ToolMessage):
                call = find_linked_tool_call(messages, index, message.tool_call_id)
                result = parse_json_text(content_text(message.content))
                if not isinstance(result, dict):
                    result = {"content": result}
                turns.append(
                    {
                        "role": "user",
                        "parts": [{"functionResponse": {"name": call.function.name, "response": result}}],
                    }
                )
            elif isinstance(message, SystemMessage):
                parts = [{"text": f"{SYSTEM_PREFIX}{text}"} for text in iter_text(message.content)]
                turns.append({"role": "user", "parts": parts})
            else:
                turns.append({"role": "user", "parts": await self._user_parts(message.content)})
        return merge_adjacent_turns(turns, content_key="parts")

    async def _user_parts(self, content: Any) -> list[dict[str, Any]]:
        if isinstance(content, str):
            return [{"text": content}]
        parts: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, ImagePart):
                image = await self._resolve_image(part.image_url.url, part.image_url.detail)
                parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
            else:
                parts.append({"text": part.text})
        return parts

    def _to_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "unknown")
            raise ProviderError(self.name, f"The prompt was blocked: {block_reason}")

        choices = []
        for position, candidate in enumerate(candidates):
            parts = (candidate.get("content") or {}).get("parts") or []
            texts = [part["text"] for part in parts if "text" in part]
            tool_calls = [
                ToolCall(
                    id=new_tool_call_id(),
                    function=FunctionCall(
                        name=part["functionCall"]["name"],
                        arguments=json.dumps(part["functionCall"].get("args", {})),
                    ),
                )
                for part in parts
                if "functionCall" in part
            ]
            choices.append(
                Choice(
                    index=candidate.get("index", position),
                    message=ResponseMessage(content="".join(texts) if texts else None, tool_calls=tool_calls or None),
                    finish_reason=self._candidate_finish(candidate.get("finishReason"), bool(tool_calls)),
                )
            )

        return ChatResponse(
            id=data.get("responseId"),
            created=self._timestamp(),
            model=data.get("modelVersion") or model,
            usage=self._to_usage(data.get("usageMetadata")),
            choices=choices,
        )

    def _candidate_finish(self, code: str | None, has_tool_calls: bool) -> FinishReason:
        reason = self._finish_reason(FINISH_REASONS, code)
        # function calls finish with STOP
        if reason == "stop" and has_tool_calls:
            return "tool_calls"
        return reason

    @staticmethod
    def _to_usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = raw.get("promptTokenCount") or 0
        completion = raw.get("candidatesTokenCount") or 0
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=raw.get("totalTokenCount") or prompt + completion,
        )

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        started = False
        calls = 0
        async for message in iter_sse(response):
            try:
                event = json.loads(message.data)
            except json.JSONDecodeError:
                self._logger.debug("Skipping non-JSON streaming chunk: %s", message.data)
                continue

            if "error" in event:
                error = event["error"]
                raise StreamEventError(self.name, str(error.get("status", "error")), error.get("message", ""))
            block_reason = (event.get("promptFeedback") or {}).get("blockReason")
            if block_reason is not None:
                raise StreamEventError(self.name, "blocked", f"The prompt was blocked: {block_reason}")

            if not started:
                started = True
                yield StreamStart(id=event.get("responseId"))

            usage = self._to_usage(event.get("usageMetadata"))
            if usage is not None:
                yield UsageReport(usage)

            for candidate in event.get("candidates") or []:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if "text" in part:
                        yield TextDelta(part["text"])
                    elif "functionCall" in part:
                        yield ToolCallFragment(
                            key=calls,
                            name=part["functionCall"]["name"],
                            arguments=json.dumps(part["functionCall"].get("args", {})),
                        )
                        calls += 1
                if candidate.get("finishReason") is not None:
                    yield StreamFinish(self._candidate_finish(candidate["finishReason"], calls > 0))
