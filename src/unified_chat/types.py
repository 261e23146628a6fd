"""Provider-agnostic request/response models."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "function_call", "unknown"]
Role = Literal["system", "user", "assistant", "tool", "function"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextPart(_Frozen):
    """Plain text content part."""

    type: Literal["text"] = "text"
    text: str


class ImageURL(_Frozen):
    url: str
    detail: Literal["auto", "low", "high"] | None = None


class ImagePart(_Frozen):
    """Image reference; ``url`` is an http(s) URL or a base64 data URI."""

    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class FunctionCall(_Frozen):
    name: str
    # JSON encoded arguments, exactly as the model produced them
    arguments: str


class ToolCall(_Frozen):
    """Tool invocation issued by the assistant."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class SystemMessage(_Frozen):
    role: Literal["system"] = "system"
    content: str | list[TextPart]


class UserMessage(_Frozen):
    role: Literal["user"] = "user"
    content: str | list[ContentPart]


class AssistantMessage(_Frozen):
    role: Literal["assistant"] = "assistant"
    content: str | list[TextPart] | None = None
    tool_calls: list[ToolCall] | None = None


class ToolMessage(_Frozen):
    role: Literal["tool"] = "tool"
    content: str | list[TextPart]
    tool_call_id: str


class FunctionMessage(_Frozen):
    """Deprecated ``function`` role, kept only so it can be rejected explicitly."""

    role: Literal["function"] = "function"
    content: str | None = None
    name: str


Message = Annotated[
    Union[SystemMessage, UserMessage, AssistantMessage, ToolMessage, FunctionMessage],
    Field(discriminator="role"),
]


class FunctionDefinition(_Frozen):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class Tool(_Frozen):
    """JSON-schema tool declaration."""

    type: Literal["function"] = "function"
    function: FunctionDefinition


class FunctionName(_Frozen):
    name: str


class ToolChoiceFunction(_Frozen):
    type: Literal["function"] = "function"
    function: FunctionName


ToolChoice = Union[Literal["auto", "none", "required"], ToolChoiceFunction]


class ResponseFormat(_Frozen):
    type: Literal["text", "json_object"] = "text"


class ChatRequest(_Frozen):
    """Normalized request shared by all providers."""

    provider: str | None = None
    model: str
    messages: list[Message]
    temperature: float | None = None
    top_p: float | None = None
    stop: str | list[str] | None = None
    n: int | None = None
    max_tokens: int | None = None
    response_format: ResponseFormat | None = None
    tools: list[Tool] | None = None
    tool_choice: ToolChoice | None = None
    stream: bool = False


class Usage(_Frozen):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ResponseMessage(_Frozen):
    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class Choice(_Frozen):
    index: int = 0
    message: ResponseMessage
    finish_reason: FinishReason
    # no provider exposes logprobs through this layer
    logprobs: None = None


class ChatResponse(_Frozen):
    """Unified non-streaming completion."""

    id: str | None
    created: int
    model: str
    object: Literal["chat.completion"] = "chat.completion"
    usage: Usage | None = None
    choices: list[Choice]


class FunctionCallDelta(_Frozen):
    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(_Frozen):
    index: int
    id: str | None = None
    type: Literal["function"] | None = None
    function: FunctionCallDelta | None = None


class Delta(_Frozen):
    role: Literal["assistant"] | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


class ChunkChoice(_Frozen):
    index: int = 0
    delta: Delta
    finish_reason: FinishReason | None = None
    logprobs: None = None


class StreamChunk(_Frozen):
    """One incremental unit of a streamed completion."""

    id: str | None
    created: int
    model: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    usage: Usage | None = None
    choices: list[ChunkChoice]


def iter_text(content: str | list[Any] | None) -> list[str]:
    """Return the text fragments of a message content, ignoring images."""
    if content is None:
        return []
    if isinstance(content, str):
        return [content]
    return [part.text for part in content if isinstance(part, TextPart)]


def content_text(content: str | list[Any] | None, sep: str = "\n") -> str:
    return sep.join(iter_text(content))


def has_images(content: str | list[Any] | None) -> bool:
    return isinstance(content, list) and any(isinstance(part, ImagePart) for part in content)
