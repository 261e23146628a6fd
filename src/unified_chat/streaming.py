"""Stream normalization.

Every adapter translates its provider's event grammar into the small set of
internal events below; ``StreamNormalizer`` turns those into unified
``StreamChunk`` objects and enforces the stream contract:

* one initial chunk announcing ``role="assistant"`` before any content,
* content and tool-call deltas in arrival order, tool calls carrying a
  stable index and identifier,
* exactly one terminal chunk with a ``finish_reason``, emitted last.

State machine: ``idle -> started -> streaming -> finished -> closed``.
"""

from __future__ import annotations

import enum
import json
import logging
import uuid
from collections.abc import AsyncIterator, Hashable
from contextlib import aclosing
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Union

import httpx

from unified_chat.errors import InvariantError
from unified_chat.types import (
    ChunkChoice,
    Delta,
    FinishReason,
    FunctionCallDelta,
    StreamChunk,
    ToolCallDelta,
    Usage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamStart:
    id: str | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """Part of one tool call; ``key`` is the provider's own handle for the call."""

    key: Hashable
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class StreamFinish:
    reason: FinishReason
    usage: Usage | None = None


@dataclass(frozen=True)
class UsageReport:
    usage: Usage


@dataclass(frozen=True)
class StreamEnd:
    """The provider's own end-of-stream marker (``[DONE]``, ``message_stop``...)."""


StreamEvent = Union[StreamStart, TextDelta, ToolCallFragment, StreamFinish, UsageReport, StreamEnd]


class StreamState(enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    STREAMING = "streaming"
    FINISHED = "finished"
    CLOSED = "closed"


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class StreamNormalizer:
    """Converts internal stream events of one stream into unified chunks."""

    def __init__(self, *, model: str, created: int, id: str | None = None) -> None:
        self.model = model
        self.created = created
        self.id = id
        self.state = StreamState.IDLE
        self._ended = False
        self._finish_reason: FinishReason | None = None
        self._usage: Usage | None = None
        self._indexes: dict[Hashable, int] = {}
        self._ids: dict[int, str] = {}

    def feed(self, event: StreamEvent) -> list[StreamChunk]:
        if self._ended or self.state is StreamState.CLOSED:
            raise InvariantError("Received provider data after the end of the stream.")

        if isinstance(event, StreamStart):
            if self.state is not StreamState.IDLE:
                raise InvariantError("Received a second stream start event.")
            if event.id is not None:
                self.id = event.id
            return [self._role_chunk()]
        if isinstance(event, TextDelta):
            if not event.text:
                return []
            return self._delta(Delta(content=event.text))
        if isinstance(event, ToolCallFragment):
            return self._delta(Delta(tool_calls=[self._tool_call_delta(event)]))
        if isinstance(event, StreamFinish):
            self._finish_reason = event.reason
            if event.usage is not None:
                self._usage = event.usage
            chunks = self._ensure_started()
            self.state = StreamState.FINISHED
            return chunks
        if isinstance(event, UsageReport):
            self._usage = event.usage
            return []
        if isinstance(event, StreamEnd):
            self._ended = True
            return []
        raise InvariantError(f"Unknown stream event: {event!r}")

    def start(self, id: str | None = None) -> list[StreamChunk]:
        return self.feed(StreamStart(id))

    def content(self, text: str) -> list[StreamChunk]:
        return self.feed(TextDelta(text))

    def tool_call(
        self,
        key: Hashable,
        id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> list[StreamChunk]:
        return self.feed(ToolCallFragment(key, id=id, name=name, arguments=arguments))

    def finish(self, reason: FinishReason, usage: Usage | None = None) -> list[StreamChunk]:
        return self.feed(StreamFinish(reason, usage))

    def close(self) -> list[StreamChunk]:
        """Emit the terminal chunk; nothing may follow it."""
        if self.state is StreamState.CLOSED:
            raise InvariantError("The stream has already been closed.")
        chunks = self._ensure_started()
        reason = self._finish_reason
        if reason is None:
            logger.warning("Provider stream ended without a finish reason; reporting 'unknown'.")
            reason = "unknown"
        chunks.append(self._chunk(Delta(), finish_reason=reason, usage=self._usage))
        self.state = StreamState.CLOSED
        return chunks

    def _ensure_started(self) -> list[StreamChunk]:
        if self.state is StreamState.IDLE:
            return [self._role_chunk()]
        return []

    def _role_chunk(self) -> StreamChunk:
        self.state = StreamState.STARTED
        return self._chunk(Delta(role="assistant"))

    def _delta(self, delta: Delta) -> list[StreamChunk]:
        if self.state is StreamState.FINISHED:
            raise InvariantError("Received content after the provider signalled completion.")
        chunks = self._ensure_started()
        self.state = StreamState.STREAMING
        chunks.append(self._chunk(delta))
        return chunks

    def _tool_call_delta(self, event: ToolCallFragment) -> ToolCallDelta:
        index = self._indexes.get(event.key)
        if index is None:
            index = len(self._indexes)
            self._indexes[event.key] = index
            self._ids[index] = event.id or new_tool_call_id()
            return ToolCallDelta(
                index=index,
                id=self._ids[index],
                type="function",
                function=FunctionCallDelta(name=event.name, arguments=event.arguments or ""),
            )
        if event.id is not None and event.id != self._ids[index]:
            raise InvariantError(f"Tool call {index} changed its identifier mid-stream.")
        return ToolCallDelta(
            index=index,
            function=FunctionCallDelta(name=event.name, arguments=event.arguments),
        )

    def _chunk(
        self,
        delta: Delta,
        *,
        finish_reason: FinishReason | None = None,
        usage: Usage | None = None,
    ) -> StreamChunk:
        return StreamChunk(
            id=self.id,
            created=self.created,
            model=self.model,
            usage=usage,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
        )


async def normalize_events(
    events: AsyncIterator[StreamEvent],
    *,
    model: str,
    created: int,
    id: str | None = None,
) -> AsyncIterator[StreamChunk]:
    """Drive a ``StreamNormalizer`` over an adapter's internal event stream."""
    normalizer = StreamNormalizer(model=model, created=created, id=id)
    async with aclosing(events) as source:
        async for event in source:
            for chunk in normalizer.feed(event):
                yield chunk
    for chunk in normalizer.close():
        yield chunk


class ChatStream:
    """Forward-only async iterator over unified chunks.

    Closing the stream (explicitly, through ``async with`` or by abandoning
    iteration) releases the underlying HTTP connection.
    """

    def __init__(self, chunks: AsyncIterator[StreamChunk]) -> None:
        self._chunks = chunks

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> StreamChunk:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        await self._chunks.aclose()  # type: ignore[attr-defined]

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


@dataclass(frozen=True)
class SSEMessage:
    event: str | None
    data: str


async def iter_sse(response: httpx.Response) -> AsyncIterator[SSEMessage]:
    """Decode server-sent events from a streaming httpx response."""
    event: str | None = None
    data: list[str] = []
    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if not line:
            if data:
                yield SSEMessage(event=event, data="\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield SSEMessage(event=event, data="\n".join(data))


async def iter_json_lines(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Decode newline-delimited JSON objects from a streaming httpx response."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as exc:
            raise InvariantError(f"Received a malformed stream line: {line[:200]}") from exc
