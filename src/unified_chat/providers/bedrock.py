"""Amazon Bedrock provider implementation (Converse API).

Requests are signed with SigV4 and streamed responses arrive as AWS binary
event-stream frames; both concerns are delegated to botocore.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from botocore.eventstream import EventStreamBuffer

from unified_chat.config import BedrockOptions, resolve_aws_credentials
from unified_chat.errors import InvariantError, StreamEventError
from unified_chat.providers.base import (
    PLACEHOLDER_TEXT,
    SYSTEM_PREFIX,
    BaseProvider,
    halve_temperature,
    merge_adjacent_turns,
    parse_arguments,
    single_choice_response,
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
    UsageReport,
)
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    FinishReason,
    FunctionCall,
    ImagePart,
    Message,
    SystemMessage,
    Tool,
    ToolCall,
    ToolChoice,
    ToolChoiceFunction,
    ToolMessage,
    Usage,
    UserMessage,
    content_text,
    iter_text,
)

_SERVICE = "bedrock"

FINISH_REASONS: dict[str, FinishReason] = {
    "content_filtered": "content_filter",
    "guardrail_intervened": "content_filter",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

STREAM_EXCEPTIONS = frozenset(
    {
        "internalServerException",
        "modelStreamErrorException",
        "throttlingException",
        "validationException",
        "serviceUnavailableException",
    }
)

NO_SYSTEM_MODELS = frozenset(
    {
        "cohere.command-light-text-v14",
        "cohere.command-text-v14",
        "amazon.titan-text-express-v1",
        "amazon.titan-text-lite-v1",
        "mistral.mistral-7b-instruct-v0:2",
        "mistral.mixtral-8x7b-instruct-v0:1",
    }
)
NO_ASSISTANT_MODELS = frozenset({"cohere.command-light-text-v14", "cohere.command-text-v14"})


def supports_system_messages(model: str) -> bool:
    return model not in NO_SYSTEM_MODELS


def supports_assistant_messages(model: str) -> bool:
    return model not in NO_ASSISTANT_MODELS


def convert_tool_config(tools: list[Tool] | None, tool_choice: ToolChoice | None) -> dict[str, Any] | None:
    if not tools or tool_choice == "none":
        return None
    specs = []
    for tool in tools:
        spec: dict[str, Any] = {"name": tool.function.name}
        if tool.function.description is not None:
            spec["description"] = tool.function.description
        if tool.function.parameters is not None:
            spec["inputSchema"] = {"json": tool.function.parameters}
        specs.append({"toolSpec": spec})

    if isinstance(tool_choice, ToolChoiceFunction):
        choice: dict[str, Any] = {"tool": {"name": tool_choice.function.name}}
    elif tool_choice == "required":
        choice = {"any": {}}
    else:
        choice = {"auto": {}}
    return {"tools": specs, "toolChoice": choice}


class BedrockProvider(BaseProvider):
    """Async adapter for the Bedrock Runtime ``converse`` endpoints."""

    name = "bedrock"
    model_prefix = "bedrock/"
    _logger = logging.getLogger(__name__)

    def _credentials(self) -> BedrockOptions:
        if self.options.base_url is not None:
            self._warn_ignored("base_url")
        if self.options.api_key is not None:
            self._logger.warning(
                "The 'api_key' option is ignored by bedrock, which uses the 'access_key_id' and "
                "'secret_access_key' fields of the 'bedrock' options instead."
            )
        return resolve_aws_credentials(self.options.bedrock)

    @staticmethod
    def _endpoint(region: str) -> str:
        return f"https://bedrock-runtime.{region}.amazonaws.com"

    @staticmethod
    def _signed_headers(url: str, body: bytes, credentials: BedrockOptions) -> dict[str, str]:
        request = AWSRequest(method="POST", url=url, data=body, headers={"Content-Type": "application/json"})
        SigV4Auth(
            Credentials(credentials.access_key_id, credentials.secret_access_key),
            _SERVICE,
            credentials.region,
        ).add_auth(request)
        return dict(request.headers.items())

    def _prepare(self, payload: dict[str, Any], model: str, action: str) -> tuple[str, str, bytes, dict[str, str]]:
        credentials = self._credentials()
        base_url = self._endpoint(credentials.region or "")
        path = f"/model/{quote(model, safe='')}/{action}"
        body = json.dumps(payload).encode()
        return base_url, path, body, self._signed_headers(base_url + path, body, credentials)

    async def chat(self, req: ChatRequest, model: str) -> ChatResponse:
        payload = await self._build_payload(req, model)
        base_url, path, body, headers = self._prepare(payload, model, "converse")
        data, response = await self._post_json(base_url, path, headers=headers, content=body)
        return self._to_response(data, model, req.tool_choice, response.headers.get("x-amzn-RequestId"))

    async def stream(self, req: ChatRequest, model: str) -> ChatStream:
        payload = await self._build_payload(req, model)
        base_url, path, body, headers = self._prepare(payload, model, "converse-stream")
        return self._open_stream(
            self._events,
            base_url=base_url,
            path=path,
            headers=headers,
            model=model,
            content=body,
        )

    def _stream_id(self, response: httpx.Response) -> str | None:
        return response.headers.get("x-amzn-RequestId")

    async def _build_payload(self, req: ChatRequest, model: str) -> dict[str, Any]:
        system, messages = await self._convert_messages(req.messages, model)
        payload: dict[str, Any] = {"messages": messages}
        if system:
            payload["system"] = system

        inference: dict[str, Any] = {}
        if req.max_tokens is not None:
            inference["maxTokens"] = req.max_tokens
        if req.stop is not None:
            inference["stopSequences"] = stop_sequences(req.stop)
        if req.temperature is not None:
            inference["temperature"] = halve_temperature(req.temperature)
        if req.top_p is not None:
            inference["topP"] = req.top_p
        if inference:
            payload["inferenceConfig"] = inference

        tool_config = convert_tool_config(req.tools, req.tool_choice)
        if tool_config is not None:
            payload["toolConfig"] = tool_config
        return payload

    async def _convert_messages(
        self, messages: list[Message], model: str
    ) -> tuple[list[dict[str, str]], list[dict[str, Any]]]:
        rest = list(messages)
        system: list[dict[str, str]] = []
        if supports_system_messages(model):
            while rest and isinstance(rest[0], SystemMessage):
                system.append({"text": content_text(rest.pop(0).content)})

        if not rest or isinstance(rest[0], (AssistantMessage, ToolMessage)):
            rest.insert(0, UserMessage(content=PLACEHOLDER_TEXT))

        assistant_role = supports_assistant_messages(model)
        turns: list[dict[str, Any]] = []
        for message in rest:
            role = "assistant" if assistant_role and isinstance(message, AssistantMessage) else "user"
            turns.append({"role": role, "content": await self._convert_blocks(message, assistant_role)})
        return system, merge_adjacent_turns(turns)

    async def _convert_blocks(self, message: Message, assistant_role: bool) -> list[dict[str, Any]]:
        if isinstance(message, ToolMessage):
            return [
                {
                    "toolResult": {
                        "toolUseId": message.tool_call_id,
                        "content": [{"text": content_text(message.content)}],
                    }
                }
            ]

        if isinstance(message, SystemMessage):
            prefix = SYSTEM_PREFIX
        elif isinstance(message, AssistantMessage) and not assistant_role:
            prefix = "Assistant: "
        else:
            prefix = ""

        blocks: list[dict[str, Any]] = []
        if isinstance(message, UserMessage) and not isinstance(message.content, str):
            for part in message.content:
                if isinstance(part, ImagePart):
                    image = await self._resolve_image(part.image_url.url, part.image_url.detail)
                    blocks.append(
                        {"image": {"format": image.mime_type.split("/")[1], "source": {"bytes": image.data}}}
                    )
                elif part.text:
                    blocks.append({"text": part.text})
        else:
            blocks.extend({"text": f"{prefix}{text}"} for text in iter_text(message.content) if text)

        if isinstance(message, AssistantMessage):
            for call in message.tool_calls or ():
                blocks.append(
                    {"toolUse": {"toolUseId": call.id, "name": call.function.name, "input": parse_arguments(call)}}
                )
        return blocks

    def _to_response(
        self,
        data: dict[str, Any],
        model: str,
        tool_choice: ToolChoice | None,
        request_id: str | None,
    ) -> ChatResponse:
        message = (data.get("output") or {}).get("message") or {}
        if message.get("role") == "user":
            raise InvariantError("Detected a user message in Bedrock's response.")

        blocks = message.get("content") or []
        texts = [block["text"] for block in blocks if "text" in block]
        tool_uses = [block["toolUse"] for block in blocks if "toolUse" in block]

        if isinstance(tool_choice, ToolChoiceFunction):
            selected = [use for use in tool_uses if use.get("name") == tool_choice.function.name]
            if not selected:
                raise InvariantError(
                    f"Did not receive a tool use block from Bedrock for the function: {tool_choice.function.name}"
                )
            tool_uses = selected[:1]

        tool_calls = []
        for use in tool_uses:
            if use.get("name") is None:
                raise InvariantError("Bedrock returned a tool use block without a function name.")
            tool_calls.append(
                ToolCall(
                    id=use.get("toolUseId") or use["name"],
                    function=FunctionCall(
                        name=use["name"],
                        arguments=json.dumps(use["input"]) if "input" in use else "",
                    ),
                )
            )

        content = self._join_text(texts)
        if content is None and not (blocks and all("toolUse" in block for block in blocks)):
            content = ""

        return single_choice_response(
            id=request_id,
            created=self._timestamp(),
            model=model,
            content=content,
            tool_calls=tool_calls,
            finish_reason=self._finish_reason(FINISH_REASONS, data.get("stopReason")),
            usage=self._to_usage(data.get("usage")),
        )

    @staticmethod
    def _to_usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw or raw.get("inputTokens") is None or raw.get("outputTokens") is None:
            return None
        prompt, completion = raw["inputTokens"], raw["outputTokens"]
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    async def _frames(self, response: httpx.Response) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Decode the binary event stream into ``(event type, payload)`` pairs."""
        buffer = EventStreamBuffer()
        async for data in response.aiter_bytes():
            buffer.add_data(data)
            for message in buffer:
                headers = message.headers
                payload = json.loads(message.payload) if message.payload else {}
                message_type = headers.get(":message-type", "event")
                if message_type == "exception":
                    kind = headers.get(":exception-type", "exception")
                    raise StreamEventError(self.name, kind, payload.get("message", str(payload)))
                if message_type == "error":
                    raise StreamEventError(
                        self.name, headers.get(":error-code", "error"), headers.get(":error-message", "")
                    )
                yield headers.get(":event-type", ""), payload

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        async for kind, payload in self._frames(response):
            if kind in STREAM_EXCEPTIONS:
                raise StreamEventError(self.name, kind, payload.get("message", ""))
            if kind == "messageStart":
                if payload.get("role") == "user":
                    raise InvariantError("Received a message from the 'user' role.")
                yield StreamStart()
            elif kind == "contentBlockStart":
                tool_use = (payload.get("start") or {}).get("toolUse")
                if tool_use is not None:
                    yield ToolCallFragment(
                        key=payload.get("contentBlockIndex"),
                        id=tool_use.get("toolUseId") or tool_use.get("name"),
                        name=tool_use.get("name"),
                        arguments="",
                    )
            elif kind == "contentBlockDelta":
                delta = payload.get("delta") or {}
                if "text" in delta:
                    yield TextDelta(delta["text"])
                elif "toolUse" in delta:
                    yield ToolCallFragment(
                        key=payload.get("contentBlockIndex"), arguments=delta["toolUse"].get("input", "")
                    )
            elif kind == "messageStop":
                yield StreamFinish(self._finish_reason(FINISH_REASONS, payload.get("stopReason")))
            elif kind == "metadata":
                usage = self._to_usage(payload.get("usage"))
                if usage is not None:
                    yield UsageReport(usage)
                yield StreamEnd()
            elif kind != "contentBlockStop":
                self._logger.debug("Ignoring Bedrock stream event: %s", kind)
