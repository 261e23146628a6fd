"""Image reference resolution shared by adapters that accept inline images."""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlsplit

import httpx

from unified_chat.errors import InputError

MIMEType = Literal["image/jpeg", "image/png", "image/gif", "image/webp"]
SUPPORTED_MIME_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

_DATA_URI = re.compile(r"^data:(?P<mime>image/[a-zA-Z0-9.+-]+);base64,(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class ParsedImage:
    """Base64 payload plus its validated MIME type."""

    data: str
    mime_type: MIMEType

    @property
    def raw(self) -> bytes:
        return base64.b64decode(self.data)


def is_url(value: str) -> bool:
    return urlsplit(value).scheme in ("http", "https")


def sniff_mime_type(raw: bytes) -> str | None:
    """Identify the supported image formats by their magic bytes."""
    if raw.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if raw.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if raw[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if raw[:4] == b"RIFF" and raw[8:12] == b"WEBP":
        return "image/webp"
    return None


def _validated(mime_type: str | None, source: str) -> MIMEType:
    if mime_type is None:
        raise InputError(f"Failed to determine the MIME type of the image: {source[:80]}")
    mime_type = mime_type.lower()
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise InputError(f"Unsupported MIME type: {mime_type}")
    return mime_type  # type: ignore[return-value]


def parse_data_uri(value: str) -> ParsedImage:
    """Split a ``data:image/...;base64,...`` URI into payload and MIME type.

    The decoded bytes win over the declared type when they carry a known
    signature.
    """
    match = _DATA_URI.match(value)
    if match is None:
        raise InputError("Invalid image URL.")
    data = match.group("data").strip()
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InputError("Invalid base64 image data.") from exc
    mime_type = _validated(sniff_mime_type(raw) or match.group("mime"), value)
    return ParsedImage(data=data, mime_type=mime_type)


async def fetch_image(url: str, client: httpx.AsyncClient) -> ParsedImage:
    """Download a remote image and return it base64 encoded."""
    response = await client.get(url, follow_redirects=True)
    response.raise_for_status()
    raw = response.content

    mime_type = sniff_mime_type(raw)
    if mime_type is None:
        header = response.headers.get("content-type", "").split(";")[0].strip()
        mime_type = header or mimetypes.guess_type(urlsplit(url).path)[0]
    return ParsedImage(data=base64.b64encode(raw).decode("ascii"), mime_type=_validated(mime_type, url))


async def resolve_image(url: str, client: httpx.AsyncClient) -> ParsedImage:
    """Resolve an image reference (remote URL or inline base64) for an adapter."""
    if is_url(url):
        return await fetch_image(url, client)
    if url.startswith("data:"):
        return parse_data_uri(url)
    raise InputError("Invalid image URL.")
