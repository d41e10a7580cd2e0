"""In-flight request records and the registry that tracks and expires them."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from llm_gateway.errors import InvalidRequest, RequestNotFound
from llm_gateway.registry import Candidate
from llm_gateway.streaming import EventChannel
from llm_gateway.types import ChatRequest, RequestStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class InFlightRequest:
    """Mutable state of one request; only its coordinator task writes to it."""

    request: ChatRequest
    candidates: tuple[Candidate, ...]
    channel: EventChannel
    started_at: float
    attempt_index: int = 0
    status: RequestStatus = RequestStatus.QUEUED
    has_emitted_token: bool = False
    output: list[str] = field(default_factory=list)
    output_length: int = 0
    provider: str | None = None
    finished_at: float | None = None
    subscribed: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def chat_id(self) -> str:
        return self.request.chat_id

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def text(self) -> str:
        return "".join(self.output)

    def append_output(self, text: str) -> None:
        self.output.append(text)
        self.output_length += len(text)


class SessionRegistry:
    """Lookup, cancellation and garbage collection of request records."""

    def __init__(self, retention_s: float = 300.0, *, clock: Clock = time.monotonic) -> None:
        self._retention_s = retention_s
        self._clock = clock
        self._requests: dict[str, InFlightRequest] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._requests

    def __iter__(self) -> Iterator[InFlightRequest]:
        return iter(list(self._requests.values()))

    def now(self) -> float:
        return self._clock()

    def track(self, inflight: InFlightRequest) -> None:
        if inflight.request_id in self._requests:
            raise InvalidRequest(f"request id '{inflight.request_id}' is already in use")
        self._requests[inflight.request_id] = inflight

    def get(self, request_id: str) -> InFlightRequest:
        try:
            return self._requests[request_id]
        except KeyError as exc:
            raise RequestNotFound(request_id) from exc

    def active(self) -> list[InFlightRequest]:
        return [r for r in self._requests.values() if not r.status.is_terminal]

    def cancel(self, request_id: str) -> bool:
        """Request cooperative cancellation.

        Returns False if the request already reached a terminal status.
        """
        inflight = self.get(request_id)
        if inflight.status.is_terminal:
            return False
        if not inflight.cancel_event.is_set():
            logger.info("Cancelling request %s", request_id)
            inflight.cancel_event.set()
        return True

    def cancel_all(self, chat_id: str) -> int:
        count = 0
        for inflight in list(self._requests.values()):
            if inflight.chat_id == chat_id and self.cancel(inflight.request_id):
                count += 1
        return count

    def sweep(self) -> int:
        """Drop terminal records older than the retention window."""
        cutoff = self._clock() - self._retention_s
        expired = [
            request_id
            for request_id, inflight in self._requests.items()
            if inflight.status.is_terminal and inflight.finished_at is not None and inflight.finished_at <= cutoff
        ]
        for request_id in expired:
            del self._requests[request_id]
        if expired:
            logger.debug("Swept %d finished request(s)", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_s: float) -> None:
        """Sweep forever every ``interval_s`` seconds; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()
