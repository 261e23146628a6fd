import asyncio
import unittest

from fakes import RecordingTransport, body_response, collect, json_lines, json_response, make_options

from unified_chat.errors import InputError, ProviderError, StreamEventError
from unified_chat.providers import CohereProvider
from unified_chat.providers.cohere import convert_tool, python_type_name
from unified_chat.types import (
    AssistantMessage,
    ChatRequest,
    FunctionCall,
    FunctionDefinition,
    FunctionName,
    SystemMessage,
    Tool,
    ToolCall,
    ToolChoiceFunction,
    ToolMessage,
    UserMessage,
)

MODEL = "command-r"
WEATHER = Tool(
    function=FunctionDefinition(
        name="weather",
        description="Current weather",
        parameters={
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name"},
                "days": {"type": "integer"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "options": {"type": "object", "properties": {"metric": {"type": "boolean"}}},
            },
            "required": ["city"],
        },
    )
)
TIME = Tool(function=FunctionDefinition(name="time"))

REPLY = {
    "text": "Hello",
    "generation_id": "gen-1",
    "finish_reason": "COMPLETE",
    "meta": {"billed_units": {"input_tokens": 3, "output_tokens": 2}},
}


def run(transport, **fields):
    fields.setdefault("messages", [UserMessage(content="Hi")])
    req = ChatRequest(provider="cohere", model=MODEL, **fields)
    return asyncio.run(CohereProvider(make_options(transport)).create(req))


class CohereToolSchemaTests(unittest.TestCase):
    def test_parameter_definitions(self) -> None:
        self.assertEqual(
            convert_tool(WEATHER),
            {
                "name": "weather",
                "description": "Current weather",
                "parameter_definitions": {
                    "city": {"type": "str", "required": True, "description": "City name"},
                    "days": {"type": "int", "required": False},
                    "tags": {"type": "List[str]", "required": False},
                    "options": {"type": "Dict", "required": False},
                },
            },
        )

    def test_conversion_is_stable(self) -> None:
        self.assertEqual(convert_tool(WEATHER), convert_tool(WEATHER))
        self.assertEqual(convert_tool(TIME), {"name": "time", "description": "", "parameter_definitions": {}})

    def test_type_names(self) -> None:
        self.assertEqual(python_type_name({"type": "number"}), "float")
        self.assertEqual(python_type_name({"type": "array"}), "List")
        self.assertEqual(
            python_type_name({"type": "object", "additionalProperties": {"type": "integer"}}),
            "Dict[str, int]",
        )

    def test_unsupported_types(self) -> None:
        with self.assertRaises(InputError):
            python_type_name({"type": "null"})
        with self.assertRaises(InputError):
            python_type_name({"type": "object", "properties": {"bad": {"anyOf": []}}})


class CohereRequestTests(unittest.TestCase):
    def test_chat_history_layout(self) -> None:
        transport = RecordingTransport(json_response(REPLY))
        messages = [
            SystemMessage(content="Be terse"),
            UserMessage(content="Hi"),
            AssistantMessage(content="Hello"),
            UserMessage(content="How are you?"),
        ]
        run(transport, messages=messages, temperature=1.0, top_p=0.9)

        self.assertEqual(str(transport.requests[0].url), "https://api.cohere.com/v1/chat")
        payload = transport.payload()
        self.assertEqual(payload["preamble"], "Be terse")
        self.assertEqual(payload["message"], "How are you?")
        self.assertEqual(
            payload["chat_history"],
            [{"role": "USER", "message": "Hi"}, {"role": "CHATBOT", "message": "Hello"}],
        )
        self.assertEqual(payload["temperature"], 0.5)
        self.assertEqual(payload["p"], 0.9)

    def test_trailing_tool_results(self) -> None:
        transport = RecordingTransport(json_response(REPLY))
        messages = [
            UserMessage(content="Weather in Paris?"),
            AssistantMessage(
                tool_calls=[ToolCall(id="c1", function=FunctionCall(name="weather", arguments='{"city":"Paris"}'))]
            ),
            ToolMessage(content='{"temp": 20}', tool_call_id="c1"),
        ]
        run(transport, messages=messages, tools=[WEATHER])

        payload = transport.payload()
        self.assertEqual(payload["message"], "")
        self.assertEqual(
            payload["tool_results"],
            [{"call": {"name": "weather", "parameters": {"city": "Paris"}}, "outputs": [{"temp": 20}]}],
        )
        self.assertEqual(
            payload["chat_history"],
            [
                {"role": "USER", "message": "Weather in Paris?"},
                {"role": "CHATBOT", "message": "", "tool_calls": [{"name": "weather", "parameters": {"city": "Paris"}}]},
            ],
        )

    def test_placeholder_message_when_history_ends_with_assistant(self) -> None:
        transport = RecordingTransport(json_response(REPLY))
        run(transport, messages=[UserMessage(content="Hi"), AssistantMessage(content="Hello")])
        payload = transport.payload()
        self.assertEqual(payload["message"], "Empty")
        self.assertEqual(len(payload["chat_history"]), 2)

    def test_tool_choice_filters_tools(self) -> None:
        transport = RecordingTransport(json_response(REPLY))
        run(transport, tools=[WEATHER, TIME], tool_choice=ToolChoiceFunction(function=FunctionName(name="time")))
        self.assertEqual([tool["name"] for tool in transport.payload()["tools"]], ["time"])

        run(transport, tools=[WEATHER, TIME], tool_choice="none")
        self.assertNotIn("tools", transport.payload())


class CohereResponseTests(unittest.TestCase):
    def test_text_response(self) -> None:
        resp = run(RecordingTransport(json_response(REPLY)))
        self.assertEqual(resp.id, "gen-1")
        self.assertEqual(resp.choices[0].message.content, "Hello")
        self.assertEqual(resp.choices[0].finish_reason, "stop")
        self.assertEqual(resp.usage.total_tokens, 5)

    def test_tool_calls_response(self) -> None:
        reply = dict(REPLY, text="", tool_calls=[{"name": "weather", "parameters": {"city": "Paris"}}])
        resp = run(RecordingTransport(json_response(reply)), tools=[WEATHER])
        choice = resp.choices[0]
        self.assertEqual(choice.finish_reason, "tool_calls")
        self.assertIsNone(choice.message.content)
        self.assertEqual(choice.message.tool_calls[0].function.arguments, '{"city": "Paris"}')

    def test_failed_generation(self) -> None:
        with self.assertRaises(ProviderError):
            run(RecordingTransport(json_response(dict(REPLY, finish_reason="ERROR_LIMIT"))))


class CohereStreamTests(unittest.TestCase):
    def _stream(self, body: bytes, **fields):
        transport = RecordingTransport(body_response(body, content_type="application/stream+json"))
        return asyncio.run(collect(run(transport, stream=True, **fields)))

    def test_text_and_tool_call_stream(self) -> None:
        body = json_lines(
            {"event_type": "stream-start", "generation_id": "gen-7", "is_finished": False},
            {"event_type": "text-generation", "text": "Hel", "is_finished": False},
            {"event_type": "tool-calls-chunk", "tool_call_delta": {"index": 0, "name": "weather"}},
            {"event_type": "tool-calls-chunk", "tool_call_delta": {"index": 0, "parameters": '{"city":"Paris"}'}},
            {"event_type": "tool-calls-generation", "tool_calls": [{"name": "weather", "parameters": {"city": "Paris"}}]},
            {
                "event_type": "stream-end",
                "finish_reason": "COMPLETE",
                "response": {"meta": {"billed_units": {"input_tokens": 3, "output_tokens": 4}}},
            },
        )
        chunks = self._stream(body, tools=[WEATHER])

        self.assertEqual({c.id for c in chunks}, {"gen-7"})
        self.assertEqual(chunks[1].choices[0].delta.content, "Hel")
        calls = [c.choices[0].delta.tool_calls[0] for c in chunks if c.choices[0].delta.tool_calls]
        self.assertEqual(len(calls), 2)
        self.assertEqual({call.index for call in calls}, {0})
        self.assertEqual(calls[0].function.name, "weather")
        self.assertTrue(calls[0].id.startswith("call_"))
        self.assertEqual(calls[1].function.arguments, '{"city":"Paris"}')
        self.assertEqual(chunks[-1].choices[0].finish_reason, "tool_calls")
        self.assertEqual(chunks[-1].usage.total_tokens, 7)

    def test_tool_plan_text_is_streamed_as_content(self) -> None:
        body = json_lines(
            {"event_type": "stream-start", "generation_id": "gen-8"},
            {"event_type": "tool-calls-chunk", "text": "I will check"},
            {"event_type": "tool-calls-chunk", "text": " the weather."},
            {"event_type": "tool-calls-chunk", "tool_call_delta": {"index": 0, "name": "weather"}},
            {"event_type": "stream-end", "finish_reason": "COMPLETE"},
        )
        chunks = self._stream(body, tools=[WEATHER])

        texts = [c.choices[0].delta.content for c in chunks if c.choices[0].delta.content]
        self.assertEqual(texts, ["I will check", " the weather."])
        self.assertEqual(chunks[3].choices[0].delta.tool_calls[0].function.name, "weather")
        self.assertEqual(chunks[-1].choices[0].finish_reason, "tool_calls")

    def test_failed_stream(self) -> None:
        body = json_lines(
            {"event_type": "stream-start", "generation_id": "gen-7"},
            {"event_type": "stream-end", "finish_reason": "ERROR"},
        )
        with self.assertRaises(StreamEventError) as ctx:
            self._stream(body)
        self.assertEqual(ctx.exception.kind, "ERROR")


if __name__ == "__main__":
    unittest.main()
