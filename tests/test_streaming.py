import asyncio
import unittest

import httpx
from fakes import collect, json_lines, sse

from unified_chat.errors import InvariantError
from unified_chat.streaming import (
    ChatStream,
    StreamEnd,
    StreamFinish,
    StreamNormalizer,
    StreamStart,
    StreamState,
    TextDelta,
    iter_json_lines,
    iter_sse,
    normalize_events,
)
from unified_chat.types import Usage


def normalizer() -> StreamNormalizer:
    return StreamNormalizer(model="m", created=1, id="chunk-id")


class StreamNormalizerTests(unittest.TestCase):
    def test_role_chunk_precedes_content(self) -> None:
        stream = normalizer()
        chunks = stream.content("Hel")
        self.assertEqual(len(chunks), 2)
        self.assertEqual(chunks[0].choices[0].delta.role, "assistant")
        self.assertIsNone(chunks[0].choices[0].delta.content)
        self.assertEqual(chunks[1].choices[0].delta.content, "Hel")
        self.assertIs(stream.state, StreamState.STREAMING)

    def test_start_adopts_the_provider_id(self) -> None:
        stream = normalizer()
        [chunk] = stream.start("msg_1")
        self.assertEqual(chunk.id, "msg_1")
        self.assertEqual(stream.content("x")[0].id, "msg_1")

    def test_second_start_is_rejected(self) -> None:
        stream = normalizer()
        stream.start()
        with self.assertRaises(InvariantError):
            stream.start()

    def test_exactly_one_terminal_chunk(self) -> None:
        stream = normalizer()
        stream.start()
        stream.content("Hi")
        self.assertEqual(stream.finish("stop"), [])
        chunks = stream.close()
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].choices[0].finish_reason, "stop")
        self.assertIs(stream.state, StreamState.CLOSED)
        with self.assertRaises(InvariantError):
            stream.close()
        with self.assertRaises(InvariantError):
            stream.content("late")

    def test_content_after_finish_is_rejected(self) -> None:
        stream = normalizer()
        stream.finish("length")
        with self.assertRaises(InvariantError):
            stream.content("more")

    def test_usage_lands_on_the_terminal_chunk(self) -> None:
        stream = normalizer()
        stream.content("Hi")
        stream.finish("stop", Usage(prompt_tokens=2, completion_tokens=1, total_tokens=3))
        [terminal] = stream.close()
        self.assertEqual(terminal.usage.total_tokens, 3)

    def test_missing_finish_reason_reports_unknown(self) -> None:
        stream = normalizer()
        with self.assertLogs("unified_chat.streaming", level="WARNING"):
            chunks = stream.close()
        self.assertEqual([c.choices[0].delta.role for c in chunks], ["assistant", None])
        self.assertEqual(chunks[-1].choices[0].finish_reason, "unknown")

    def test_tool_call_indexes_and_ids(self) -> None:
        stream = normalizer()
        stream.start()
        [first] = stream.tool_call("a", id="call_a", name="lookup", arguments="")
        [more] = stream.tool_call("a", arguments='{"q":')
        [second] = stream.tool_call("b", name="other")

        self.assertEqual(first.choices[0].delta.tool_calls[0].index, 0)
        self.assertEqual(first.choices[0].delta.tool_calls[0].id, "call_a")
        self.assertEqual(first.choices[0].delta.tool_calls[0].function.name, "lookup")
        self.assertEqual(more.choices[0].delta.tool_calls[0].index, 0)
        self.assertIsNone(more.choices[0].delta.tool_calls[0].id)
        self.assertEqual(more.choices[0].delta.tool_calls[0].function.arguments, '{"q":')

        synthesized = second.choices[0].delta.tool_calls[0]
        self.assertEqual(synthesized.index, 1)
        self.assertRegex(synthesized.id, r"^call_[0-9a-f]{24}$")

    def test_tool_call_id_must_not_change(self) -> None:
        stream = normalizer()
        stream.tool_call(0, id="call_a", name="f")
        stream.tool_call(0, id="call_a", arguments="{}")
        with self.assertRaises(InvariantError):
            stream.tool_call(0, id="call_b")

    def test_data_after_provider_end_is_rejected(self) -> None:
        stream = normalizer()
        stream.content("Hi")
        stream.feed(StreamEnd())
        with self.assertRaises(InvariantError):
            stream.content("late")

    def test_empty_text_is_dropped(self) -> None:
        stream = normalizer()
        stream.start()
        self.assertEqual(stream.content(""), [])
        self.assertIs(stream.state, StreamState.STARTED)


class NormalizeEventsTests(unittest.TestCase):
    def test_terminal_chunk_is_emitted_once_the_source_ends(self) -> None:
        async def events():
            yield StreamStart(id="x")
            yield TextDelta("a")
            yield TextDelta("b")
            yield StreamFinish("stop")

        chunks = asyncio.run(collect(normalize_events(events(), model="m", created=5)))
        self.assertEqual([c.choices[0].delta.content for c in chunks], [None, "a", "b", None])
        self.assertEqual([c.choices[0].finish_reason for c in chunks], [None, None, None, "stop"])
        self.assertEqual({(c.id, c.model, c.created) for c in chunks}, {("x", "m", 5)})

    def test_closing_the_chat_stream_closes_the_source(self) -> None:
        closed = []

        async def events():
            try:
                yield TextDelta("a")
                yield TextDelta("b")
            finally:
                closed.append(True)

        async def scenario():
            async with ChatStream(normalize_events(events(), model="m", created=0)) as stream:
                async for chunk in stream:
                    if chunk.choices[0].delta.content == "a":
                        break

        asyncio.run(scenario())
        self.assertEqual(closed, [True])


class WireDecoderTests(unittest.TestCase):
    def _response(self, body: bytes) -> httpx.Response:
        return httpx.Response(200, content=body)

    async def _decode(self, decoder, body: bytes) -> list:
        return await collect(decoder(self._response(body)))

    def test_iter_sse(self) -> None:
        body = b": keep-alive\n\n" + sse(("message_start", {"a": 1}), {"b": 2}) + b"data: line1\ndata: line2\n\n"
        messages = asyncio.run(self._decode(iter_sse, body))
        self.assertEqual([m.event for m in messages], ["message_start", None, None])
        self.assertEqual(messages[0].data, '{"a": 1}')
        self.assertEqual(messages[2].data, "line1\nline2")

    def test_iter_sse_flushes_an_unterminated_event(self) -> None:
        messages = asyncio.run(self._decode(iter_sse, b"data: [DONE]"))
        self.assertEqual([m.data for m in messages], ["[DONE]"])

    def test_iter_json_lines(self) -> None:
        body = json_lines({"a": 1}, {"b": 2}) + b"\n"
        self.assertEqual(asyncio.run(self._decode(iter_json_lines, body)), [{"a": 1}, {"b": 2}])

    def test_iter_json_lines_rejects_garbage(self) -> None:
        with self.assertRaises(InvariantError):
            asyncio.run(self._decode(iter_json_lines, b"{not json}\n"))


if __name__ == "__main__":
    unittest.main()
