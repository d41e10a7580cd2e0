"""Ollama chat adapter (newline-delimited JSON stream)."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from llm_gateway.errors import GatewayError, ServerError, classify_status
from llm_gateway.providers.base import BaseProvider, StreamState, WireRequest, ensure_capabilities
from llm_gateway.types import ChatRequest, Message, NormalizedEvent, TokenDelta, ToolCallRequest

_CHAT_PATH = "/api/chat"

# in-band errors are plain strings; these phrases mark failures a retry cannot fix
_PERMANENT_ERROR_STATUS = (
    ("unauthorized", 401),
    ("not found", 404),
    ("does not support", 400),
    ("invalid", 400),
)


class OllamaProvider(BaseProvider):
    """Adapter for self-hosted models served through the Ollama chat API."""

    name = "ollama"

    def translate(self, req: ChatRequest) -> WireRequest:
        ensure_capabilities(req, self.capabilities(req.model), self.descriptor.name)
        stream = self.stream_wanted(req)

        payload: dict[str, Any] = {
            "model": self.descriptor.provider_model(req.model),
            "messages": [self._serialize_message(m) for m in req.messages],
            "stream": stream,
        }

        options: dict[str, Any] = {}
        if req.temperature is not None:
            options["temperature"] = req.temperature
        if req.top_p is not None:
            options["top_p"] = req.top_p
        if req.max_tokens is not None:
            options["num_predict"] = req.max_tokens
        if options:
            payload["options"] = options

        if req.tool_mode != "off" and req.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description or "",
                        "parameters": t.json_schema,
                    },
                }
                for t in req.tools
            ]

        return WireRequest(method="POST", path=_CHAT_PATH, payload=payload, stream=stream)

    def _parse_chunk(self, event: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        yield from self._parse_body(event, state)

    def _parse_body(self, data: dict[str, Any], state: StreamState) -> Iterator[NormalizedEvent]:
        message = data.get("message") or {}
        content = message.get("content")
        if isinstance(content, str) and content:
            yield TokenDelta(text=content)

        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            yield ToolCallRequest(name=function.get("name", ""), arguments=function.get("arguments") or {})

        # Counts only appear on the final object.
        if data.get("done"):
            if data.get("prompt_eval_count") is not None:
                state.input_tokens = int(data["prompt_eval_count"])
            if data.get("eval_count") is not None:
                state.output_tokens = int(data["eval_count"])

    def _frame_error(self, event: dict[str, Any]) -> GatewayError | None:
        error = event.get("error")
        if not error:
            return None
        message = str(error)
        lowered = message.lower()
        for marker, status in _PERMANENT_ERROR_STATUS:
            if marker in lowered:
                return classify_status(self.descriptor.name, status, message)
        return ServerError(message, provider=self.descriptor.name)

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}
