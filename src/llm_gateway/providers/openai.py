"""OpenAI-compatible chat completions adapter."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any

from llm_gateway.errors import GatewayError, ServerError, classify_status
from llm_gateway.providers.base import BaseProvider, StreamState, WireRequest, ensure_capabilities
from llm_gateway.types import ChatRequest, Message, NormalizedEvent, TokenDelta, ToolCallRequest, ToolDef

_CHAT_PATH = "/v1/chat/completions"

# in-band error frames carry a type name instead of an HTTP status
_ERROR_TYPE_STATUS = {
    "invalid_request_error": 400,
    "authentication_error": 401,
    "permission_error": 403,
    "rate_limit_error": 429,
    "rate_limit_exceeded": 429,
    "server_error": 500,
}


class OpenAIProvider(BaseProvider):
    """Adapter for the chat completions wire shape.

    Also used for aggregators that expose the same API under another
    endpoint; the descriptor supplies the base URL.
    """

    name = "openai"

    def translate(self, req: ChatRequest) -> WireRequest:
        ensure_capabilities(req, self.capabilities(req.model), self.descriptor.name)
        stream = self.stream_wanted(req)

        payload: dict[str, Any] = {
            "model": self.descriptor.provider_model(req.model),
            "messages": [self._serialize_message(m) for m in req.messages],
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens

        if req.tool_mode != "off" and req.tools:
            payload.update(self._serialize_tools(req.tools, req.tool_mode))

        return WireRequest(method="POST", path=_CHAT_PATH, payload=payload, stream=stream)

    def _parse_chunk(self, event: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        self._read_usage(event, state)

        choices = event.get("choices") or []
        if not choices:
            return
        delta = choices[0].get("delta") or {}

        content = delta.get("content")
        if isinstance(content, str) and content:
            yield TokenDelta(text=content)

        # Tool calls arrive as fragments keyed by index; arguments are a
        # JSON string split across chunks.
        for fragment in delta.get("tool_calls") or []:
            slot = state.tool_calls.setdefault(fragment.get("index", 0), {"name": "", "arguments": "", "id": None})
            if fragment.get("id"):
                slot["id"] = fragment["id"]
            function = fragment.get("function") or {}
            if function.get("name"):
                slot["name"] += function["name"]
            if function.get("arguments"):
                slot["arguments"] += function["arguments"]

    def _parse_body(self, data: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        self._read_usage(data, state)

        choices = data.get("choices") or []
        message = choices[0].get("message", {}) if choices else {}
        text = message.get("content") or ""
        if text:
            yield TokenDelta(text=text)

        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            yield ToolCallRequest(
                name=function.get("name", ""),
                arguments=self._decode_arguments(function.get("arguments")),
                call_id=call.get("id"),
            )

    def _finish(self, state: StreamState) -> Iterable[NormalizedEvent]:
        calls = [state.tool_calls[index] for index in sorted(state.tool_calls)]
        state.tool_calls.clear()
        return [
            ToolCallRequest(
                name=call["name"],
                arguments=self._decode_arguments(call["arguments"]),
                call_id=call["id"],
            )
            for call in calls
        ]

    def _frame_error(self, event: dict[str, Any]) -> GatewayError | None:
        error = event.get("error")
        if not isinstance(error, dict):
            return None
        message = error.get("message") or "provider error"
        code = error.get("code")
        status = code if isinstance(code, int) else _ERROR_TYPE_STATUS.get(error.get("type"))
        if status is None:
            return ServerError(message, provider=self.descriptor.name)
        return classify_status(self.descriptor.name, status, message)

    @staticmethod
    def _read_usage(event: dict[str, Any], state: StreamState) -> None:
        usage = event.get("usage")
        if not isinstance(usage, dict):
            return
        if usage.get("prompt_tokens") is not None:
            state.input_tokens = int(usage["prompt_tokens"])
        if usage.get("completion_tokens") is not None:
            state.output_tokens = int(usage["completion_tokens"])

    def _decode_arguments(self, raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ServerError(f"malformed tool call arguments: {raw!r}", provider=self.descriptor.name) from exc
        if not isinstance(decoded, dict):
            raise ServerError(f"tool call arguments are not an object: {raw!r}", provider=self.descriptor.name)
        return decoded

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _serialize_tools(tools: list[ToolDef], tool_mode: str) -> dict[str, Any]:
        tool_payload = [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description or "",
                    "parameters": t.json_schema,
                },
            }
            for t in tools
        ]

        payload: dict[str, Any] = {"tools": tool_payload}

        if tool_mode == "auto":
            payload["tool_choice"] = "auto"
        elif tool_mode == "required":
            payload["tool_choice"] = "required"

        return payload
