import asyncio
import base64
import unittest

import httpx

from unified_chat.errors import InputError
from unified_chat.images import ParsedImage, parse_data_uri, resolve_image, sniff_mime_type

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 8


def resolve(url: str, handler) -> ParsedImage:
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await resolve_image(url, client)

    return asyncio.run(_run())


class ImageTests(unittest.TestCase):
    def test_data_uri(self) -> None:
        image = parse_data_uri("data:image/png;base64," + base64.b64encode(PNG).decode())
        self.assertEqual(image.mime_type, "image/png")
        self.assertEqual(image.raw, PNG)

    def test_data_uri_prefers_magic_bytes(self) -> None:
        image = parse_data_uri("data:image/jpeg;base64," + base64.b64encode(PNG).decode())
        self.assertEqual(image.mime_type, "image/png")
        self.assertEqual(image.raw, PNG)

    def test_data_uri_errors(self) -> None:
        with self.assertRaisesRegex(InputError, "Unsupported MIME type"):
            parse_data_uri("data:image/tiff;base64,AAAA")
        with self.assertRaises(InputError):
            parse_data_uri("data:image/png;base64,***")
        with self.assertRaises(InputError):
            parse_data_uri("data:text/plain;base64,AAAA")

    def test_magic_bytes(self) -> None:
        self.assertEqual(sniff_mime_type(JPEG), "image/jpeg")
        self.assertEqual(sniff_mime_type(b"GIF89a..."), "image/gif")
        self.assertEqual(sniff_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 "), "image/webp")
        self.assertIsNone(sniff_mime_type(b"plain text"))

    def test_remote_image_prefers_magic_bytes(self) -> None:
        image = resolve(
            "https://example.com/cat",
            lambda request: httpx.Response(200, content=JPEG, headers={"content-type": "application/octet-stream"}),
        )
        self.assertEqual(image.mime_type, "image/jpeg")
        self.assertEqual(image.data, base64.b64encode(JPEG).decode())

    def test_remote_image_falls_back_to_headers(self) -> None:
        image = resolve(
            "https://example.com/cat",
            lambda request: httpx.Response(200, content=b"opaque", headers={"content-type": "image/webp"}),
        )
        self.assertEqual(image.mime_type, "image/webp")

    def test_unsupported_remote_format(self) -> None:
        with self.assertRaisesRegex(InputError, "Unsupported MIME type"):
            resolve(
                "https://example.com/cat.svg",
                lambda request: httpx.Response(200, content=b"<svg/>", headers={"content-type": "image/svg+xml"}),
            )

    def test_invalid_reference(self) -> None:
        with self.assertRaisesRegex(InputError, "Invalid image URL"):
            resolve("ftp://example.com/cat.png", lambda request: httpx.Response(500))


if __name__ == "__main__":
    unittest.main()
