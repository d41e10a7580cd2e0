"""Provider-agnostic adapter interface and the shared HTTP dispatch loop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import (
    Cancelled,
    GatewayError,
    InvalidRequest,
    NetworkTimeout,
    ServerError,
    classify_status,
)
from llm_gateway.providers.framing import iter_ndjson, iter_sse
from llm_gateway.types import ChatRequest, Done, ErrorEvent, NormalizedEvent, UsageReport


@dataclass(frozen=True)
class ModelCapabilities:
    """Describes feature support for a provider model."""

    tools: bool
    streaming: bool
    attachments: bool


@dataclass(frozen=True)
class WireRequest:
    """Provider-shaped HTTP call produced by ``translate``."""

    method: str
    path: str
    payload: dict[str, Any]
    stream: bool
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class StreamState:
    """Mutable bookkeeping for a single dispatch."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    # provider index -> partially assembled tool call
    tool_calls: dict[Any, dict[str, Any]] = field(default_factory=dict)

    def usage_report(self) -> UsageReport | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return UsageReport(
            input_tokens=self.input_tokens or 0,
            output_tokens=self.output_tokens or 0,
            estimated=False,
        )


class BaseProvider(ABC):
    """Abstract base class for provider adapters.

    Subclasses implement ``translate`` plus the chunk/body decoders; the base
    class owns the HTTP transport, failure classification and the
    ``UsageReport``/``Done`` epilogue every dispatch ends with.
    """

    name: str
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.descriptor = descriptor
        self._client = httpx.AsyncClient(
            base_url=descriptor.endpoint,
            timeout=descriptor.timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def capabilities(self, model: str) -> ModelCapabilities:
        """Return capability flags for the given logical model."""
        return ModelCapabilities(
            tools=self.descriptor.supports_tools,
            streaming=self.descriptor.framing != "json",
            attachments=self.descriptor.supports_attachments,
        )

    @abstractmethod
    def translate(self, req: ChatRequest) -> WireRequest:
        """Map a unified request onto this provider's wire format."""
        raise NotImplementedError

    @abstractmethod
    def _parse_chunk(self, event: dict[str, Any], state: StreamState) -> Iterable[NormalizedEvent]:
        """Decode one streamed frame."""
        raise NotImplementedError

    @abstractmethod
    def _parse_body(self, data: dict[str, Any], state: StreamState) -> Iterable[NormalizedEvent]:
        """Decode a complete, non-streamed response body."""
        raise NotImplementedError

    def _frame_error(self, event: dict[str, Any]) -> GatewayError | None:
        """Return the failure carried by an in-band error frame, if any."""
        return None

    def _finish(self, state: StreamState) -> Iterable[NormalizedEvent]:
        """Flush anything assembled across frames once the stream ends."""
        return ()

    def _auth_headers(self, api_key: str | None) -> dict[str, str]:
        scheme = self.descriptor.auth_scheme
        if scheme == "none":
            return {}
        if not api_key:
            return {}
        if scheme == "bearer":
            return {"Authorization": f"Bearer {api_key}"}
        return {self.descriptor.auth_header: api_key}

    def stream_wanted(self, req: ChatRequest) -> bool:
        return req.stream and self.capabilities(req.model).streaming

    def dispatch(
        self,
        wire: WireRequest,
        *,
        api_key: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[NormalizedEvent, None]:
        """Return an async generator of normalized events for ``wire``.

        The generator never raises provider failures: they are reported as a
        single ``ErrorEvent``. It always finishes with an optional
        ``UsageReport`` followed by exactly one ``Done``.
        """

        async def _gen() -> AsyncGenerator[NormalizedEvent, None]:
            state = StreamState()
            failure: GatewayError | None = None
            try:
                async with contextlib.aclosing(self._exchange(wire, api_key, cancel, state)) as exchange:
                    async for event in exchange:
                        yield event
            except GatewayError as exc:
                failure = exc
            except httpx.TimeoutException as exc:
                failure = NetworkTimeout(f"timed out: {exc!r}", provider=self.descriptor.name)
            except httpx.TransportError as exc:
                failure = ServerError(f"transport failure: {exc!r}", provider=self.descriptor.name)
            except (ValueError, AttributeError, KeyError, TypeError) as exc:
                # ValueError also covers JSON, UTF-8 and pydantic validation failures
                failure = ServerError(f"malformed response: {exc!r}", provider=self.descriptor.name)

            if failure is not None:
                self._logger.warning("Dispatch to %s failed: %s", self.descriptor.name, failure)
                yield ErrorEvent.from_exception(failure)

            usage = state.usage_report()
            if usage is not None:
                yield usage
            yield Done()

        return _gen()

    async def _exchange(
        self,
        wire: WireRequest,
        api_key: str | None,
        cancel: asyncio.Event | None,
        state: StreamState,
    ) -> AsyncGenerator[NormalizedEvent, None]:
        self._check_cancel(cancel)
        headers = {
            "Content-Type": "application/json",
            **wire.headers,
            **self._auth_headers(api_key),
        }
        async with self._client.stream(
            wire.method,
            wire.path,
            headers=headers,
            json=wire.payload,
        ) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise classify_status(
                    self.descriptor.name,
                    response.status_code,
                    body.decode(errors="replace") or response.reason_phrase,
                    retry_after=response.headers.get("retry-after"),
                )

            if not wire.stream:
                body = await response.aread()
                self._check_cancel(cancel)
                data = json.loads(body)
                if isinstance(data, dict):
                    failure = self._frame_error(data)
                    if failure is not None:
                        raise failure
                    for event in self._parse_body(data, state):
                        yield event
                else:
                    raise ServerError("response body is not a JSON object", provider=self.descriptor.name)
            else:
                lines = self._lines(response, cancel)
                frames = iter_ndjson(lines) if self.descriptor.framing == "ndjson" else iter_sse(lines)
                async for frame in frames:
                    failure = self._frame_error(frame)
                    if failure is not None:
                        raise failure
                    for event in self._parse_chunk(frame, state):
                        yield event

            for event in self._finish(state):
                yield event

    async def _lines(self, response: httpx.Response, cancel: asyncio.Event | None) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            self._check_cancel(cancel)
            yield line

    def _check_cancel(self, cancel: asyncio.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled("request cancelled", provider=self.descriptor.name)


def ensure_capabilities(req: ChatRequest, caps: ModelCapabilities, provider: str) -> None:
    """Fail fast if the request asks for unsupported features."""

    if req.tool_mode != "off" and req.tools and not caps.tools:
        names = ", ".join(sorted({tool.name for tool in req.tools}))
        raise InvalidRequest(f"tool(s) not available: {names}", provider=provider)

    if not caps.attachments and any(m.attachments for m in req.messages):
        raise InvalidRequest("attachments are not supported", provider=provider)
