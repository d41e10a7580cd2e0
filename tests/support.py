"""Shared fakes for gateway tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Sequence
from decimal import Decimal
from typing import Any, Union

from llm_gateway.admission import AdmissionController
from llm_gateway.config import CostTable, ProviderDescriptor, QuotaLimits
from llm_gateway.errors import ErrorKind
from llm_gateway.gateway import Gateway
from llm_gateway.providers.base import BaseProvider, StreamState, WireRequest, ensure_capabilities
from llm_gateway.registry import ProviderRegistry
from llm_gateway.stores import InMemoryPersistenceStore, StaticCredentialStore
from llm_gateway.types import (
    ChatRequest,
    Done,
    ErrorEvent,
    Message,
    NormalizedEvent,
    TokenDelta,
    UsageReport,
)

# A script step is an event to yield, an Event to wait on, or a delay in seconds.
Step = Union[NormalizedEvent, asyncio.Event, float]


def make_descriptor(
    name: str,
    *,
    models: Sequence[str] = ("m1",),
    rate_in: str = "0.01",
    rate_out: str = "0.03",
    max_concurrency: int = 8,
    timeout_s: float = 5.0,
    **overrides: Any,
) -> ProviderDescriptor:
    return ProviderDescriptor(
        name=name,
        kind="openai",
        endpoint=f"https://{name.lower()}.example",
        models={m: f"{name.lower()}-{m}" for m in models},
        cost=CostTable(input_per_1k=Decimal(rate_in), output_per_1k=Decimal(rate_out)),
        max_concurrency=max_concurrency,
        timeout_s=timeout_s,
        **overrides,
    )


def text_script(*chunks: str, usage: tuple[int, int] | None = None) -> list[Step]:
    script: list[Step] = [TokenDelta(text=c) for c in chunks]
    if usage is not None:
        script.append(UsageReport(input_tokens=usage[0], output_tokens=usage[1]))
    script.append(Done())
    return script


def error_script(kind: ErrorKind, *, retryable: bool, prefix: Sequence[Step] = ()) -> list[Step]:
    return [*prefix, ErrorEvent(kind=kind, message=kind.value, retryable=retryable), Done()]


class ScriptedProvider(BaseProvider):
    """Adapter that replays canned event scripts, one script per dispatch."""

    name = "scripted"

    def __init__(self, descriptor: ProviderDescriptor, *scripts: list[Step]) -> None:
        super().__init__(descriptor)
        self._scripts = list(scripts) or [text_script("ok")]
        self.calls = 0
        self.yielded = 0
        self.api_keys: list[str | None] = []

    def translate(self, req: ChatRequest) -> WireRequest:
        ensure_capabilities(req, self.capabilities(req.model), self.descriptor.name)
        return WireRequest(
            method="POST",
            path="/scripted",
            payload={"model": self.descriptor.provider_model(req.model)},
            stream=req.stream,
        )

    def _parse_chunk(self, event: dict[str, Any], state: StreamState) -> list[NormalizedEvent]:
        return []

    def _parse_body(self, data: dict[str, Any], state: StreamState) -> list[NormalizedEvent]:
        return []

    def dispatch(
        self,
        wire: WireRequest,
        *,
        api_key: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[NormalizedEvent, None]:
        script = self._scripts[min(self.calls, len(self._scripts) - 1)]
        self.calls += 1
        self.api_keys.append(api_key)

        async def _gen() -> AsyncGenerator[NormalizedEvent, None]:
            for step in script:
                if isinstance(step, asyncio.Event):
                    await step.wait()
                    continue
                if isinstance(step, float):
                    await asyncio.sleep(step)
                    continue
                if cancel is not None and cancel.is_set():
                    yield ErrorEvent(kind=ErrorKind.CANCELLED, message="cancelled")
                    yield Done()
                    return
                self.yielded += 1
                yield step

        return _gen()


def make_gateway(
    *providers: BaseProvider,
    quota: QuotaLimits | None = None,
    queue_size: int = 64,
    keys: dict[str, str] | None = None,
    persistence: InMemoryPersistenceStore | None = None,
) -> Gateway:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider.descriptor, provider)
    if keys is None:
        keys = {p.descriptor.name: f"key-{p.descriptor.name}" for p in providers}
    return Gateway(
        registry,
        credentials=StaticCredentialStore(keys),
        admission=AdmissionController(quota or QuotaLimits(max_requests=100)),
        persistence=persistence,
        queue_size=queue_size,
    )


def make_request(
    *,
    chat_id: str = "chat-1",
    user_id: str = "user-1",
    model: str = "m1",
    text: str = "hello there",
    **fields: Any,
) -> ChatRequest:
    return ChatRequest(
        user_id=user_id,
        chat_id=chat_id,
        model=model,
        messages=[Message(role="user", content=text)],
        **fields,
    )


async def collect(stream: Any) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = []
    async for event in stream:
        events.append(event)
    return events


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def tokens(events: Sequence[NormalizedEvent]) -> str:
    return "".join(e.text for e in events if isinstance(e, TokenDelta))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
