"""Anthropic messages adapter."""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from llm_gateway.errors import GatewayError, InvalidRequest, ServerError, classify_status
from llm_gateway.providers.base import BaseProvider, StreamState, WireRequest, ensure_capabilities
from llm_gateway.types import ChatRequest, Message, NormalizedEvent, TokenDelta, ToolCallRequest, ToolDef

_MESSAGES_PATH = "/v1/messages"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 512

_ERROR_TYPE_STATUS = {
    "invalid_request_error": 400,
    "authentication_error": 401,
    "permission_error": 403,
    "not_found_error": 404,
    "rate_limit_error": 429,
    "api_error": 500,
    "overloaded_error": 529,
}


class AnthropicProvider(BaseProvider):
    """Adapter for the messages API, streamed as typed server-sent events."""

    name = "anthropic"

    def translate(self, req: ChatRequest) -> WireRequest:
        ensure_capabilities(req, self.capabilities(req.model), self.descriptor.name)
        stream = self.stream_wanted(req)
        system_text, msgs = self._split_system(req.messages)

        payload: dict[str, Any] = {
            "model": self.descriptor.provider_model(req.model),
            "max_tokens": req.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": [self._serialize_message(m) for m in msgs],
            "stream": stream,
        }

        if system_text:
            payload["system"] = system_text
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p

        if req.tool_mode != "off" and req.tools:
            payload.update(self._serialize_tools(req.tools, req.tool_mode))

        return WireRequest(
            method="POST",
            path=_MESSAGES_PATH,
            payload=payload,
            stream=stream,
            headers={"anthropic-version": _API_VERSION},
        )

    def _parse_chunk(self, event: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        kind = event.get("type")

        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._read_usage(usage, state)
        elif kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                state.tool_calls[event.get("index", 0)] = {
                    "name": block.get("name", ""),
                    "id": block.get("id"),
                    "arguments": "",
                }
            elif block.get("type") == "text" and block.get("text"):
                yield TokenDelta(text=block["text"])
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                yield TokenDelta(text=delta["text"])
            elif delta.get("type") == "input_json_delta":
                call = state.tool_calls.get(event.get("index", 0))
                if call is not None:
                    call["arguments"] += delta.get("partial_json", "")
        elif kind == "content_block_stop":
            call = state.tool_calls.pop(event.get("index", 0), None)
            if call is not None:
                yield ToolCallRequest(
                    name=call["name"],
                    arguments=self._decode_arguments(call["arguments"]),
                    call_id=call["id"],
                )
        elif kind == "message_delta":
            self._read_usage(event.get("usage") or {}, state)

    def _parse_body(self, data: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        self._read_usage(data.get("usage") or {}, state)

        parts: list[str] = []
        calls: list[ToolCallRequest] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(
                    ToolCallRequest(
                        name=block.get("name", ""),
                        arguments=block.get("input") or {},
                        call_id=block.get("id"),
                    )
                )

        text = "".join(parts)
        if text:
            yield TokenDelta(text=text)
        yield from calls

    def _frame_error(self, event: dict[str, Any]) -> GatewayError | None:
        if event.get("type") != "error":
            return None
        error = event.get("error") or {}
        message = error.get("message") or "provider error"
        status = _ERROR_TYPE_STATUS.get(error.get("type"))
        if status is None:
            return ServerError(message, provider=self.descriptor.name)
        return classify_status(self.descriptor.name, status, message)

    @staticmethod
    def _read_usage(usage: dict[str, Any], state: StreamState) -> None:
        if usage.get("input_tokens") is not None:
            state.input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens") is not None:
            state.output_tokens = int(usage["output_tokens"])

    def _decode_arguments(self, raw: str) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ServerError(f"malformed tool input: {raw!r}", provider=self.descriptor.name) from exc
        return decoded if isinstance(decoded, dict) else {"value": decoded}

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[str, list[Message]]:
        system_parts: list[str] = []
        rest: list[Message] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                rest.append(m)
        return ("\n".join(system_parts), rest)

    def _serialize_message(self, message: Message) -> dict[str, Any]:
        # The messages API only accepts user/assistant turns here.
        if message.role not in ("user", "assistant"):
            raise InvalidRequest(f"Unsupported role: {message.role}", provider=self.descriptor.name)
        return {
            "role": message.role,
            "content": [{"type": "text", "text": message.content}],
        }

    @staticmethod
    def _serialize_tools(tools: list[ToolDef], tool_mode: str) -> dict[str, Any]:
        payload_tools = [
            {
                "name": t.name,
                "description": t.description or "",
                "input_schema": t.json_schema,
            }
            for t in tools
        ]
        payload: dict[str, Any] = {"tools": payload_tools}

        if tool_mode == "auto":
            payload["tool_choice"] = {"type": "auto"}
        elif tool_mode == "required":
            payload["tool_choice"] = {"type": "any"}

        return payload
