import asyncio
import json
import unittest
from typing import Any

import httpx

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import ErrorKind, InvalidRequest
from llm_gateway.providers import AnthropicProvider, BaseProvider, OllamaProvider, OpenAIProvider
from llm_gateway.types import (
    ChatRequest,
    Done,
    ErrorEvent,
    Message,
    NormalizedEvent,
    TokenDelta,
    ToolCallRequest,
    ToolDef,
    UsageReport,
)

from support import collect, tokens


def _descriptor(kind: str, **overrides: Any) -> ProviderDescriptor:
    fields: dict[str, Any] = {
        "name": f"{kind}-test",
        "kind": kind,
        "endpoint": "https://provider.test",
        "models": {"small": f"{kind}-small-001"},
    }
    fields.update(overrides)
    return ProviderDescriptor(**fields)


def _request(**fields: Any) -> ChatRequest:
    base: dict[str, Any] = {
        "user_id": "u1",
        "chat_id": "c1",
        "model": "small",
        "messages": [Message(role="user", content="hi")],
    }
    base.update(fields)
    return ChatRequest(**base)


def _sse(*payloads: Any) -> bytes:
    frames = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode()


def _ndjson(*objects: dict[str, Any]) -> bytes:
    return "".join(json.dumps(o) + "\n" for o in objects).encode()


class _Recorder:
    """MockTransport handler that returns one canned response."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


def _run(
    provider_cls: type[BaseProvider],
    descriptor: ProviderDescriptor,
    response: httpx.Response | Exception,
    req: ChatRequest | None = None,
    *,
    api_key: str | None = "sk-test",
    cancel: asyncio.Event | None = None,
) -> tuple[list[NormalizedEvent], _Recorder]:
    recorder = _Recorder(response)

    async def scenario() -> list[NormalizedEvent]:
        provider = provider_cls(descriptor, transport=httpx.MockTransport(recorder))
        try:
            wire = provider.translate(req or _request())
            return await collect(provider.dispatch(wire, api_key=api_key, cancel=cancel))
        finally:
            await provider.aclose()

    return asyncio.run(scenario()), recorder


class OpenAIProviderTests(unittest.TestCase):
    def test_streams_tokens_then_usage_then_done(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 2}},
            "[DONE]",
        )
        events, recorder = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body))

        self.assertEqual(tokens(events), "Hello")
        self.assertEqual([e.type for e in events], ["token_delta", "token_delta", "usage", "done"])
        self.assertEqual(events[-2], UsageReport(input_tokens=7, output_tokens=2))

        request = recorder.requests[0]
        self.assertEqual(request.url.path, "/v1/chat/completions")
        self.assertEqual(request.headers["authorization"], "Bearer sk-test")
        self.assertEqual(recorder.body["model"], "openai-small-001")
        self.assertTrue(recorder.body["stream"])
        self.assertEqual(recorder.body["stream_options"], {"include_usage": True})

    def test_sampling_fields_are_forwarded(self) -> None:
        provider = OpenAIProvider(_descriptor("openai"))
        wire = provider.translate(_request(temperature=0.2, top_p=0.9, max_tokens=64))
        asyncio.run(provider.aclose())

        self.assertEqual(wire.payload["temperature"], 0.2)
        self.assertEqual(wire.payload["top_p"], 0.9)
        self.assertEqual(wire.payload["max_tokens"], 64)

    def test_tool_call_fragments_are_assembled(self) -> None:
        body = _sse(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_1", "function": {"name": "lookup", "arguments": '{"q": '}}
                            ]
                        }
                    }
                ]
            },
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"paris"}'}}]}}]},
            "[DONE]",
        )
        req = _request(tools=[ToolDef(name="lookup")], tool_mode="required")
        events, recorder = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body), req)

        calls = [e for e in events if isinstance(e, ToolCallRequest)]
        self.assertEqual(calls, [ToolCallRequest(name="lookup", arguments={"q": "paris"}, call_id="call_1")])
        self.assertEqual(recorder.body["tool_choice"], "required")
        self.assertEqual(recorder.body["tools"][0]["function"]["name"], "lookup")
        self.assertIsInstance(events[-1], Done)

    def test_rate_limit_is_retryable_with_hint(self) -> None:
        response = httpx.Response(429, headers={"Retry-After": "3"}, text="slow down")
        events, _ = _run(OpenAIProvider, _descriptor("openai"), response)

        self.assertEqual([e.type for e in events], ["error", "done"])
        error = events[0]
        self.assertEqual(error.kind, ErrorKind.RATE_LIMITED)
        self.assertTrue(error.retryable)
        self.assertEqual(error.retry_after, 3.0)
        self.assertEqual(error.provider, "openai-test")

    def test_status_classification(self) -> None:
        cases = {
            401: (ErrorKind.AUTH_ERROR, False),
            400: (ErrorKind.INVALID_REQUEST, False),
            503: (ErrorKind.SERVER_ERROR, True),
        }
        for status, (kind, retryable) in cases.items():
            with self.subTest(status=status):
                events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(status, text="nope"))
                self.assertEqual(events[0].kind, kind)
                self.assertEqual(events[0].retryable, retryable)
                self.assertIsInstance(events[-1], Done)

    def test_transport_timeout_maps_to_network_timeout(self) -> None:
        events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.ReadTimeout("read timed out"))

        self.assertEqual(events[0].kind, ErrorKind.NETWORK_TIMEOUT)
        self.assertTrue(events[0].retryable)
        self.assertIsInstance(events[-1], Done)

    def test_in_band_error_frame(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"content": "par"}}]},
            {"error": {"type": "server_error", "message": "boom"}},
        )
        events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body))

        self.assertEqual([e.type for e in events], ["token_delta", "error", "done"])
        self.assertEqual(events[1].kind, ErrorKind.SERVER_ERROR)

    def test_cancel_before_dispatch_skips_network(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        events, recorder = _run(
            OpenAIProvider,
            _descriptor("openai"),
            httpx.Response(200, content=_sse("[DONE]")),
            cancel=cancel,
        )

        self.assertEqual(recorder.requests, [])
        self.assertEqual(events[0].kind, ErrorKind.CANCELLED)
        self.assertIsInstance(events[-1], Done)

    def test_cancel_mid_stream_stops_reading(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"content": "one"}}]},
            {"choices": [{"delta": {"content": "two"}}]},
            "[DONE]",
        )
        recorder = _Recorder(httpx.Response(200, content=body))

        async def scenario() -> list[NormalizedEvent]:
            cancel = asyncio.Event()
            provider = OpenAIProvider(_descriptor("openai"), transport=httpx.MockTransport(recorder))
            events: list[NormalizedEvent] = []
            async for event in provider.dispatch(provider.translate(_request()), api_key="k", cancel=cancel):
                events.append(event)
                if isinstance(event, TokenDelta):
                    cancel.set()
            await provider.aclose()
            return events

        events = asyncio.run(scenario())

        self.assertEqual(tokens(events), "one")
        self.assertEqual(events[1].kind, ErrorKind.CANCELLED)
        self.assertIsInstance(events[-1], Done)

    def test_non_stream_body(self) -> None:
        body = {
            "choices": [{"message": {"role": "assistant", "content": "Hi!"}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1},
        }
        events, recorder = _run(
            OpenAIProvider,
            _descriptor("openai"),
            httpx.Response(200, json=body),
            _request(stream=False),
        )

        self.assertFalse(recorder.body["stream"])
        self.assertNotIn("stream_options", recorder.body)
        self.assertEqual(events, [TokenDelta(text="Hi!"), UsageReport(input_tokens=3, output_tokens=1), Done()])

    def test_json_framing_downgrades_streaming(self) -> None:
        provider = OpenAIProvider(_descriptor("openai", framing="json"))
        wire = provider.translate(_request(stream=True))
        asyncio.run(provider.aclose())

        self.assertFalse(wire.stream)
        self.assertFalse(wire.payload["stream"])

    def test_unsupported_features_fail_translation(self) -> None:
        provider = OpenAIProvider(_descriptor("openai", supports_tools=False))
        with self.assertRaises(InvalidRequest):
            provider.translate(_request(tools=[ToolDef(name="math")], tool_mode="auto"))
        with self.assertRaises(InvalidRequest):
            provider.translate(_request(messages=[Message(role="user", content="see", attachments=["file-1"])]))
        asyncio.run(provider.aclose())

    def test_malformed_tool_arguments_are_a_server_error(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "f", "arguments": "{oops"}}]}}]},
            "[DONE]",
        )
        events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body))

        self.assertEqual(events[0].kind, ErrorKind.SERVER_ERROR)


class MalformedResponseTests(unittest.TestCase):
    def _assert_server_error(self, events: list[NormalizedEvent]) -> None:
        self.assertEqual([e.type for e in events][-2:], ["error", "done"])
        error = next(e for e in events if isinstance(e, ErrorEvent))
        self.assertEqual(error.kind, ErrorKind.SERVER_ERROR)
        self.assertTrue(error.retryable)

    def test_null_choice_is_reported_not_raised(self) -> None:
        body = _sse({"choices": [None]}, "[DONE]")
        events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body))
        self._assert_server_error(events)

    def test_non_numeric_usage_is_reported_not_raised(self) -> None:
        body = _sse({"choices": [], "usage": {"prompt_tokens": "n/a", "completion_tokens": 1}}, "[DONE]")
        events, _ = _run(OpenAIProvider, _descriptor("openai"), httpx.Response(200, content=body))
        self._assert_server_error(events)

    def test_undecodable_body_is_reported_not_raised(self) -> None:
        response = httpx.Response(200, content=b'{"choices": "\xff"}')
        events, _ = _run(OpenAIProvider, _descriptor("openai"), response, _request(stream=False))
        self.assertEqual([e.type for e in events], ["error", "done"])
        self.assertEqual(events[0].kind, ErrorKind.SERVER_ERROR)

    def test_string_tool_arguments_are_reported_not_raised(self) -> None:
        body = _ndjson({"message": {"tool_calls": [{"function": {"name": "f", "arguments": "oops"}}]}, "done": True})
        descriptor = _descriptor("ollama", auth_scheme="none", framing="ndjson")
        events, _ = _run(OllamaProvider, descriptor, httpx.Response(200, content=body), api_key=None)
        self._assert_server_error(events)


class AnthropicProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.descriptor = _descriptor("anthropic", auth_scheme="api_key_header")

    def test_translate_splits_system_prompt(self) -> None:
        provider = AnthropicProvider(self.descriptor)
        wire = provider.translate(
            _request(
                messages=[
                    Message(role="system", content="be brief"),
                    Message(role="user", content="hi"),
                ],
                tools=[ToolDef(name="lookup")],
                tool_mode="required",
            )
        )
        asyncio.run(provider.aclose())

        self.assertEqual(wire.path, "/v1/messages")
        self.assertEqual(wire.headers["anthropic-version"], "2023-06-01")
        self.assertEqual(wire.payload["system"], "be brief")
        self.assertEqual(wire.payload["max_tokens"], 512)
        self.assertEqual([m["role"] for m in wire.payload["messages"]], ["user"])
        self.assertEqual(wire.payload["tool_choice"], {"type": "any"})

    def test_tool_role_is_rejected(self) -> None:
        provider = AnthropicProvider(self.descriptor)
        with self.assertRaises(InvalidRequest):
            provider.translate(_request(messages=[Message(role="tool", content="42")]))
        asyncio.run(provider.aclose())

    def test_typed_event_stream(self) -> None:
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Bon"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "jour"}},
            {"type": "content_block_stop", "index": 0},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "tu_1", "name": "lookup"},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"q":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "x"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "usage": {"output_tokens": 9}},
            {"type": "message_stop"},
        )
        events, recorder = _run(AnthropicProvider, self.descriptor, httpx.Response(200, content=body))

        self.assertEqual(tokens(events), "Bonjour")
        self.assertIn(ToolCallRequest(name="lookup", arguments={"q": "x"}, call_id="tu_1"), events)
        self.assertEqual(events[-2], UsageReport(input_tokens=12, output_tokens=9))
        self.assertIsInstance(events[-1], Done)
        self.assertEqual(recorder.requests[0].headers["x-api-key"], "sk-test")
        self.assertNotIn("authorization", recorder.requests[0].headers)

    def test_overloaded_frame_is_retryable(self) -> None:
        body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        events, _ = _run(AnthropicProvider, self.descriptor, httpx.Response(200, content=body))

        self.assertIsInstance(events[0], ErrorEvent)
        self.assertEqual(events[0].kind, ErrorKind.SERVER_ERROR)
        self.assertTrue(events[0].retryable)

    def test_non_stream_body_with_tool_use(self) -> None:
        body = {
            "content": [
                {"type": "text", "text": "Looking"},
                {"type": "tool_use", "id": "tu_9", "name": "lookup", "input": {"q": "y"}},
            ],
            "usage": {"input_tokens": 4, "output_tokens": 6},
        }
        events, _ = _run(AnthropicProvider, self.descriptor, httpx.Response(200, json=body), _request(stream=False))

        self.assertEqual(
            events,
            [
                TokenDelta(text="Looking"),
                ToolCallRequest(name="lookup", arguments={"q": "y"}, call_id="tu_9"),
                UsageReport(input_tokens=4, output_tokens=6),
                Done(),
            ],
        )


class OllamaProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.descriptor = _descriptor("ollama", auth_scheme="none", framing="ndjson")

    def test_ndjson_stream_with_final_counts(self) -> None:
        body = _ndjson(
            {"message": {"role": "assistant", "content": "Hal"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 5, "eval_count": 2},
        )
        events, recorder = _run(
            OllamaProvider,
            self.descriptor,
            httpx.Response(200, content=body),
            _request(max_tokens=32, temperature=0.1),
            api_key=None,
        )

        self.assertEqual(tokens(events), "Hallo")
        self.assertEqual(events[-2], UsageReport(input_tokens=5, output_tokens=2))
        self.assertEqual(recorder.requests[0].url.path, "/api/chat")
        self.assertNotIn("authorization", recorder.requests[0].headers)
        self.assertEqual(recorder.body["options"], {"temperature": 0.1, "num_predict": 32})

    def test_error_object_ends_stream(self) -> None:
        body = _ndjson({"error": "model not loaded"})
        events, _ = _run(OllamaProvider, self.descriptor, httpx.Response(200, content=body), api_key=None)

        self.assertEqual([e.type for e in events], ["error", "done"])
        self.assertEqual(events[0].kind, ErrorKind.SERVER_ERROR)
        self.assertTrue(events[0].retryable)

    def test_unknown_model_error_is_permanent(self) -> None:
        body = _ndjson({"error": "model 'llama9' not found, try pulling it first"})
        events, _ = _run(OllamaProvider, self.descriptor, httpx.Response(200, content=body), api_key=None)

        self.assertEqual(events[0].kind, ErrorKind.INVALID_REQUEST)
        self.assertFalse(events[0].retryable)


if __name__ == "__main__":
    unittest.main()
