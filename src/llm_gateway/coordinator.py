"""Per-request state machine: dispatch, fallback, cancellation and accounting."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

from llm_gateway.accounting import UsageAccountant, estimate_tokens
from llm_gateway.admission import AdmissionController, ProviderSlot, Reservation
from llm_gateway.errors import (
    Cancelled,
    ErrorKind,
    GatewayError,
    InternalError,
    NetworkTimeout,
    ProviderSaturated,
)
from llm_gateway.registry import Candidate
from llm_gateway.session import InFlightRequest
from llm_gateway.stores import CredentialStore, PersistenceStore
from llm_gateway.types import (
    Done,
    ErrorEvent,
    Message,
    NormalizedEvent,
    RequestStatus,
    TokenDelta,
    ToolCallRequest,
    UsageReport,
)

Clock = Callable[[], float]


class ChatLocks:
    """One lock per chat id, created on demand and dropped once unused."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._locks

    def locked(self, chat_id: str) -> bool:
        lock = self._locks.get(chat_id)
        return lock is not None and lock.locked()

    async def acquire(self, chat_id: str, cancel: asyncio.Event) -> bool:
        """Wait for the chat's slot. Returns False if ``cancel`` fires first."""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._users[chat_id] = self._users.get(chat_id, 0) + 1
        acquired = False
        try:
            if cancel.is_set():
                return False
            take = asyncio.ensure_future(lock.acquire())
            stop = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({take, stop}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                if take.done() and not take.cancelled():
                    lock.release()
                raise
            finally:
                stop.cancel()
                if not take.done():
                    take.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await take
            acquired = take.done() and not take.cancelled()
            return acquired
        finally:
            if not acquired:
                self._forget(chat_id)

    def release(self, chat_id: str) -> None:
        self._locks[chat_id].release()
        self._forget(chat_id)

    def _forget(self, chat_id: str) -> None:
        remaining = self._users.get(chat_id, 0) - 1
        if remaining <= 0:
            self._users.pop(chat_id, None)
            self._locks.pop(chat_id, None)
        else:
            self._users[chat_id] = remaining


@dataclass
class AttemptResult:
    """What one provider attempt ended with."""

    usage: UsageReport | None = None
    error: GatewayError | None = None
    cancelled: bool = False


class RequestCoordinator:
    """Drives each admitted request from ``Queued`` to a terminal status.

    Tokens are forwarded to the caller as they arrive. A retryable failure
    moves on to the next candidate only while nothing has reached the caller,
    so a fallback never duplicates or mixes output.
    """

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        admission: AdmissionController,
        accountant: UsageAccountant,
        credentials: CredentialStore,
        persistence: PersistenceStore | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._admission = admission
        self._accountant = accountant
        self._credentials = credentials
        self._persistence = persistence
        self._clock = clock
        self.chat_locks = ChatLocks()

    async def run(self, inflight: InFlightRequest, reservation: Reservation) -> None:
        """Process ``inflight`` to completion; always closes its channel."""
        chat_id = inflight.chat_id
        locked = False
        usage: UsageReport | None = None
        error: GatewayError | None = None
        interrupted = False
        try:
            try:
                locked = await self.chat_locks.acquire(chat_id, inflight.cancel_event)
                if locked:
                    usage, error = await self._attempts(inflight, reservation)
                else:
                    inflight.status = RequestStatus.CANCELLED
                    error = Cancelled("request cancelled while queued")
            except asyncio.CancelledError:
                # task cancelled from outside; still settle accounts and close the channel
                interrupted = True
                inflight.cancel_event.set()
                inflight.status = RequestStatus.CANCELLED
                error = Cancelled("request task cancelled")
            except Exception as exc:
                self._logger.exception("Request %s failed unexpectedly", inflight.request_id)
                error = InternalError(f"unexpected failure: {exc!r}")
                inflight.status = RequestStatus.FAILED
            finally:
                reservation.slot.release()

            if not inflight.status.is_terminal:
                inflight.status = RequestStatus.FAILED
            finishing = asyncio.ensure_future(self._finish(inflight, usage, error))
            try:
                await asyncio.shield(finishing)
            except asyncio.CancelledError:
                interrupted = True
                await finishing
            if interrupted:
                raise asyncio.CancelledError()
        finally:
            if locked:
                self.chat_locks.release(chat_id)

    async def _attempts(
        self,
        inflight: InFlightRequest,
        reservation: Reservation,
    ) -> tuple[UsageReport | None, GatewayError | None]:
        candidates = inflight.candidates
        slot: ProviderSlot | None = reservation.slot
        last_error: GatewayError | None = None
        last_usage: UsageReport | None = None

        for index in range(reservation.candidate_index, len(candidates)):
            candidate = candidates[index]
            if inflight.cancelled:
                inflight.status = RequestStatus.CANCELLED
                return last_usage, Cancelled("request cancelled")

            if slot is None:
                slot = self._admission.try_acquire(candidate.descriptor)
                if slot is None:
                    self._logger.warning(
                        "Skipping saturated provider %s for %s", candidate.name, inflight.request_id
                    )
                    last_error = last_error or ProviderSaturated(
                        "provider is saturated", provider=candidate.name
                    )
                    continue

            inflight.attempt_index = index
            inflight.provider = candidate.name
            inflight.status = RequestStatus.DISPATCHING
            with slot:
                result = await self._attempt(inflight, candidate)
            slot = None

            if result.cancelled:
                inflight.status = RequestStatus.CANCELLED
                return result.usage, Cancelled("request cancelled", provider=candidate.name)
            if result.error is None:
                inflight.status = RequestStatus.COMPLETED
                return result.usage, None

            last_error = result.error
            last_usage = result.usage
            if last_error.retryable and not inflight.has_emitted_token and index + 1 < len(candidates):
                inflight.status = RequestStatus.RETRYING
                self._logger.info(
                    "Request %s: %s failed before any output (%s), trying next provider",
                    inflight.request_id,
                    candidate.name,
                    last_error.kind.value,
                )
                continue
            break

        inflight.status = RequestStatus.FAILED
        return last_usage, last_error or ProviderSaturated("no provider could take the request")

    async def _attempt(self, inflight: InFlightRequest, candidate: Candidate) -> AttemptResult:
        req = inflight.request
        descriptor = candidate.descriptor
        result = AttemptResult()

        try:
            api_key: str | None = None
            if descriptor.auth_scheme != "none":
                api_key = await self._credentials.resolve_api_key(req.user_id, descriptor.name)
            wire = candidate.adapter.translate(req)
        except GatewayError as exc:
            result.error = exc
            return result

        events = candidate.adapter.dispatch(wire, api_key=api_key, cancel=inflight.cancel_event)
        budget = descriptor.timeout_s
        try:
            while True:
                started = self._clock()
                event = await self._next_event(events, inflight.cancel_event, budget, descriptor.name)
                budget -= self._clock() - started
                if event is None or isinstance(event, Done):
                    break
                if isinstance(event, (TokenDelta, ToolCallRequest)):
                    if not await inflight.channel.send(event, inflight.cancel_event):
                        break
                    if not inflight.has_emitted_token:
                        inflight.has_emitted_token = True
                        inflight.status = RequestStatus.STREAMING
                    if isinstance(event, TokenDelta):
                        inflight.append_output(event.text)
                elif isinstance(event, UsageReport):
                    result.usage = event
                elif isinstance(event, ErrorEvent):
                    if event.kind is not ErrorKind.CANCELLED:
                        result.error = event.to_exception()
        except Cancelled:
            pass
        except NetworkTimeout as exc:
            result.error = exc
        finally:
            await events.aclose()

        if inflight.cancelled:
            result.cancelled = True
        return result

    async def _next_event(
        self,
        events: AsyncGenerator[NormalizedEvent, None],
        cancel: asyncio.Event,
        timeout: float,
        provider: str,
    ) -> NormalizedEvent | None:
        """Read one event, racing the provider against cancellation and the deadline."""
        if cancel.is_set():
            raise Cancelled("request cancelled", provider=provider)
        if timeout <= 0:
            raise NetworkTimeout("attempt deadline exceeded", provider=provider)

        step = asyncio.ensure_future(_step(events))
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({step, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not step.done():
                step.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await step

        if step.done() and not step.cancelled():
            return step.result()
        if cancel.is_set():
            raise Cancelled("request cancelled", provider=provider)
        raise NetworkTimeout("attempt deadline exceeded", provider=provider)

    async def _finish(
        self,
        inflight: InFlightRequest,
        usage: UsageReport | None,
        error: GatewayError | None,
    ) -> None:
        req = inflight.request
        status = inflight.status
        report = self._final_usage(inflight, usage)
        finished_at = self._clock()
        candidate = inflight.candidates[inflight.attempt_index]

        final: list[NormalizedEvent] = []
        if status is not RequestStatus.COMPLETED:
            final.append(ErrorEvent.from_exception(error or InternalError("request failed")))
        final.append(report)
        final.append(Done(request_id=req.request_id, status=status))

        try:
            await self._accountant.record(
                request_id=req.request_id,
                user_id=req.user_id,
                provider=inflight.provider or candidate.name,
                model=req.model,
                rate=candidate.descriptor.rate_for(req.model),
                input_tokens=report.input_tokens,
                output_tokens=report.output_tokens,
                estimated=report.estimated,
                latency_ms=int((finished_at - inflight.started_at) * 1000),
                status=status,
            )
            self._admission.record_tokens(req.user_id, report.input_tokens + report.output_tokens)
            if inflight.text and self._persistence is not None:
                try:
                    await self._persistence.append_message(
                        req.chat_id, Message(role="assistant", content=inflight.text)
                    )
                except Exception:
                    self._logger.exception("Failed to persist reply for %s", req.request_id)
        finally:
            inflight.finished_at = finished_at
            inflight.channel.close(*final)
            self._logger.info(
                "Request %s finished: %s via %s", req.request_id, status.value, inflight.provider
            )

    @staticmethod
    def _final_usage(inflight: InFlightRequest, usage: UsageReport | None) -> UsageReport:
        """Real usage when reported, otherwise a deterministic estimate.

        Nothing is charged when no output was produced and the request did
        not complete.
        """
        if usage is not None:
            return usage
        text = inflight.text
        if not text and inflight.status is not RequestStatus.COMPLETED:
            return UsageReport(input_tokens=0, output_tokens=0, estimated=False)
        prompt = "\n".join(m.content for m in inflight.request.messages)
        return UsageReport(
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(text),
            estimated=True,
        )


async def _step(events: AsyncGenerator[NormalizedEvent, None]) -> NormalizedEvent | None:
    return await anext(events, None)
