"""Fake transports and wire-format builders shared by the test modules."""

from __future__ import annotations

import binascii
import json
import struct
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import httpx

from unified_chat.config import BedrockOptions, ConfigOptions


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return responder(request)

        super().__init__(_handler)

    def payload(self, position: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[position].content)


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records whether the client closed it."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def refuse(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected network call to {request.url}")


def json_response(payload: dict[str, Any], status_code: int = 200, **headers: str) -> Callable[..., httpx.Response]:
    return lambda request: httpx.Response(status_code, json=payload, headers=headers)


def body_response(body: bytes, content_type: str = "text/event-stream", **headers: str) -> Callable[..., httpx.Response]:
    return lambda request: httpx.Response(200, content=body, headers={"content-type": content_type, **headers})


def make_options(transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any) -> ConfigOptions:
    kwargs.setdefault("api_key", "test-key")
    return ConfigOptions(transport=transport or RecordingTransport(refuse), **kwargs)


def bedrock_options(transport: httpx.AsyncBaseTransport | None = None) -> ConfigOptions:
    return ConfigOptions(
        transport=transport or RecordingTransport(refuse),
        bedrock=BedrockOptions(region="us-east-1", access_key_id="AKIDEXAMPLE", secret_access_key="secret"),
    )


def sse(*events: Any) -> bytes:
    """Encode SSE frames; each event is a data object or an ``(event, data)`` pair."""
    frames = []
    for event in events:
        name, data = event if isinstance(event, tuple) else (None, event)
        text = data if isinstance(data, str) else json.dumps(data)
        prefix = f"event: {name}\n" if name else ""
        frames.append(f"{prefix}data: {text}\n\n")
    return "".join(frames).encode()


def json_lines(*events: dict[str, Any]) -> bytes:
    return "".join(json.dumps(event) + "\n" for event in events).encode()


def event_stream_frame(event_type: str, payload: dict[str, Any], message_type: str = "event") -> bytes:
    """Encode one AWS binary event-stream message."""
    type_header = ":exception-type" if message_type == "exception" else ":event-type"
    headers = {":message-type": message_type, type_header: event_type, ":content-type": "application/json"}
    encoded_headers = b""
    for name, value in headers.items():
        name_bytes, value_bytes = name.encode(), value.encode()
        encoded_headers += struct.pack("!B", len(name_bytes)) + name_bytes
        encoded_headers += struct.pack("!BH", 7, len(value_bytes)) + value_bytes
    body = json.dumps(payload).encode()
    total_length = 12 + len(encoded_headers) + len(body) + 4
    prelude = struct.pack("!II", total_length, len(encoded_headers))
    prelude += struct.pack("!I", binascii.crc32(prelude) & 0xFFFFFFFF)
    message = prelude + encoded_headers + body
    return message + struct.pack("!I", binascii.crc32(message) & 0xFFFFFFFF)


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    items = []
    async for item in stream:
        items.append(item)
    return items


def terminal_chunks(chunks: list[Any]) -> list[Any]:
    return [chunk for chunk in chunks if chunk.choices[0].finish_reason is not None]
