"""Caller-facing gateway tying registry, admission and coordination together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from types import TracebackType

import httpx

from llm_gateway.accounting import UsageAccountant
from llm_gateway.admission import AdmissionController
from llm_gateway.config import GatewaySettings
from llm_gateway.coordinator import RequestCoordinator
from llm_gateway.errors import InternalError, InvalidRequest
from llm_gateway.registry import ProviderRegistry, build_registry
from llm_gateway.session import InFlightRequest, SessionRegistry
from llm_gateway.stores import CredentialStore, EnvCredentialStore, PersistenceStore
from llm_gateway.streaming import EventChannel
from llm_gateway.types import (
    ChatRequest,
    ChatResponse,
    Done,
    ErrorEvent,
    NormalizedEvent,
    RequestStatus,
    TokenDelta,
    ToolCallRequest,
    UsageReport,
)

logger = logging.getLogger(__name__)


class Gateway:
    """High-level coordinator for completions across configured providers.

    Every collaborator is an explicit object owned by this instance, so several
    gateways can coexist (e.g. in tests) without sharing state.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        credentials: CredentialStore,
        admission: AdmissionController | None = None,
        accountant: UsageAccountant | None = None,
        sessions: SessionRegistry | None = None,
        persistence: PersistenceStore | None = None,
        queue_size: int = 64,
        sweep_interval_s: float = 30.0,
    ) -> None:
        self.registry = registry
        self.admission = admission or AdmissionController()
        self.accountant = accountant or UsageAccountant(persistence)
        self.sessions = sessions or SessionRegistry()
        self._queue_size = queue_size
        self._sweep_interval_s = sweep_interval_s
        self._sweeper: asyncio.Task[None] | None = None
        self.coordinator = RequestCoordinator(
            admission=self.admission,
            accountant=self.accountant,
            credentials=credentials,
            persistence=persistence,
            clock=self.sessions.now,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        *,
        credentials: CredentialStore | None = None,
        persistence: PersistenceStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "Gateway":
        """Build a gateway whose registry is populated from ``settings``."""
        return cls(
            build_registry(settings, transport=transport),
            credentials=credentials or EnvCredentialStore(settings.providers),
            admission=AdmissionController(settings.quota, user_limits=settings.user_quotas),
            sessions=SessionRegistry(settings.retention_s),
            persistence=persistence,
            queue_size=settings.queue_size,
            sweep_interval_s=settings.sweep_interval_s,
        )

    async def submit_request(self, req: ChatRequest) -> str:
        """Admit ``req`` and start processing it in the background.

        Raises:
            ModelNotFound: No provider serves ``req.model``.
            QuotaExceeded: The user's quota window is used up.
            ProviderSaturated: Every candidate provider is at capacity.
            InvalidRequest: ``req.request_id`` is already in use.
        """
        candidates = self.registry.lookup(req.model)
        # Uniqueness is checked before admission so a duplicate consumes nothing.
        if req.request_id in self.sessions:
            raise InvalidRequest(f"request id '{req.request_id}' is already in use")
        reservation = self.admission.admit(req, candidates)

        inflight = InFlightRequest(
            request=req,
            candidates=candidates,
            channel=EventChannel(self._queue_size),
            started_at=self.sessions.now(),
            attempt_index=reservation.candidate_index,
            provider=candidates[reservation.candidate_index].name,
        )
        self.sessions.track(inflight)
        inflight.task = asyncio.create_task(
            self.coordinator.run(inflight, reservation),
            name=f"llm-gateway:{req.request_id}",
        )
        logger.info(
            "Submitted %s for chat %s (model=%s, first provider=%s)",
            req.request_id,
            req.chat_id,
            req.model,
            inflight.provider,
        )
        return req.request_id

    def subscribe(self, request_id: str) -> AsyncIterator[NormalizedEvent]:
        """Return the ordered event stream of a request, ending at ``Done``.

        Closing the iterator before ``Done`` cancels the request.
        """
        inflight = self.sessions.get(request_id)
        if inflight.subscribed:
            raise InvalidRequest(f"request '{request_id}' already has a subscriber")
        inflight.subscribed = True

        async def _gen() -> AsyncIterator[NormalizedEvent]:
            finished = False
            try:
                while True:
                    event = await inflight.channel.receive()
                    if event is None:
                        finished = True
                        return
                    yield event
                    if isinstance(event, Done):
                        finished = True
                        return
            finally:
                if not finished and not inflight.status.is_terminal:
                    inflight.cancel_event.set()

        return _gen()

    async def cancel(self, request_id: str) -> bool:
        """Ask a request to stop; True if it was still running."""
        return self.sessions.cancel(request_id)

    async def cancel_chat(self, chat_id: str) -> int:
        return self.sessions.cancel_all(chat_id)

    def status(self, request_id: str) -> RequestStatus:
        return self.sessions.get(request_id).status

    async def stream(self, req: ChatRequest) -> AsyncIterator[NormalizedEvent]:
        """Submit ``req`` and yield its events."""
        request_id = await self.submit_request(req)
        async for event in self.subscribe(request_id):
            yield event

    async def chat(self, req: ChatRequest) -> ChatResponse:
        """Execute a request and collect its output.

        Raises:
            GatewayError: The request ended ``Failed`` or ``Cancelled``.
        """
        request_id = await self.submit_request(req)
        parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        usage: UsageReport | None = None
        error: ErrorEvent | None = None
        status = RequestStatus.FAILED

        async for event in self.subscribe(request_id):
            if isinstance(event, TokenDelta):
                parts.append(event.text)
            elif isinstance(event, ToolCallRequest):
                tool_calls.append(event)
            elif isinstance(event, UsageReport):
                usage = event
            elif isinstance(event, ErrorEvent):
                error = event
            elif isinstance(event, Done) and event.status is not None:
                status = event.status

        if status is not RequestStatus.COMPLETED:
            if error is not None:
                raise error.to_exception()
            raise InternalError(f"request '{request_id}' ended {status.value}")

        return ChatResponse(
            request_id=request_id,
            provider=self.sessions.get(request_id).provider,
            model=req.model,
            text="".join(parts),
            status=status,
            tool_calls=tool_calls,
            usage=usage,
        )

    def start(self) -> None:
        """Start the periodic session sweeper."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self.sessions.run_sweeper(self._sweep_interval_s),
                name="llm-gateway:sweeper",
            )

    async def aclose(self) -> None:
        """Cancel running requests, wait for them to finish, close adapters."""
        # terminal requests may still be settling in their task, so wait on every live task
        running = [r for r in self.sessions if r.task is not None and not r.task.done()]
        for inflight in running:
            inflight.cancel_event.set()
        if running:
            await asyncio.gather(*(r.task for r in running if r.task is not None), return_exceptions=True)

        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        await self.registry.aclose()

    async def __aenter__(self) -> "Gateway":
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
