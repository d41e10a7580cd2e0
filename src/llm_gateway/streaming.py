"""Bounded, backpressure-aware event channel between coordinator and caller."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque

from llm_gateway.types import NormalizedEvent


class EventChannel:
    """Single-producer, single-consumer event pipe.

    ``send`` suspends while the buffer is full instead of dropping data, which
    in turn stops the coordinator from pulling more frames off the provider.
    Terminal events passed to ``close`` bypass the bound so that ``Done`` can
    always be delivered once the caller drains the buffer.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[NormalizedEvent] = asyncio.Queue(maxsize)
        self._tail: deque[NormalizedEvent] = deque()
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def pending(self) -> int:
        return self._queue.qsize() + len(self._tail)

    async def send(self, event: NormalizedEvent, cancel: asyncio.Event | None = None) -> bool:
        """Enqueue ``event``, waiting for room.

        Returns False, without enqueuing, if ``cancel`` fires while waiting.
        """
        if self._closed.is_set():
            raise RuntimeError("send on closed channel")
        if cancel is None:
            await self._queue.put(event)
            return True
        if cancel.is_set():
            return False
        if not self._queue.full():
            self._queue.put_nowait(event)
            return True

        put = asyncio.ensure_future(self._queue.put(event))
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({put, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not put.done():
                put.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await put
        return put.done() and not put.cancelled()

    def close(self, *final: NormalizedEvent) -> None:
        """Mark the stream finished; ``final`` events are delivered last."""
        if self._closed.is_set():
            raise RuntimeError("channel already closed")
        self._tail.extend(final)
        self._closed.set()

    async def receive(self) -> NormalizedEvent | None:
        """Return the next event, or None once the channel is drained."""
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed.is_set():
                return self._tail.popleft() if self._tail else None

            get = asyncio.ensure_future(self._queue.get())
            closed = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                closed.cancel()
                if not get.done():
                    get.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await get
            if get.done() and not get.cancelled():
                return get.result()
