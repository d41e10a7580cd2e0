"""Per-user quota and per-provider concurrency admission control.

Every counter update below runs without awaiting, so each check-and-update is
atomic with respect to other tasks on the event loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from llm_gateway.config import ProviderDescriptor, QuotaLimits
from llm_gateway.errors import ProviderSaturated, QuotaExceeded
from llm_gateway.registry import Candidate
from llm_gateway.types import ChatRequest

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class QuotaState:
    """Usage of one user within the current window."""

    window_start: float
    limits: QuotaLimits
    request_count: int = 0
    token_count: int = 0

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.limits.window_s

    def retry_after(self, now: float) -> float:
        return max(self.window_start + self.limits.window_s - now, 0.0)


class ProviderSlot:
    """One unit of a provider's concurrency budget.

    Release is idempotent: the counter is decremented exactly once no matter
    how many exit paths call ``release``.
    """

    def __init__(self, controller: "AdmissionController", provider: str) -> None:
        self._controller = controller
        self.provider = provider
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._controller._release(self.provider)

    def __enter__(self) -> "ProviderSlot":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


@dataclass
class Reservation:
    """Successful admission: where to start and the slot already held for it."""

    candidate_index: int
    slot: ProviderSlot


class AdmissionController:
    def __init__(
        self,
        default_limits: QuotaLimits | None = None,
        *,
        user_limits: dict[str, QuotaLimits] | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._default_limits = default_limits or QuotaLimits()
        self._user_limits = dict(user_limits or {})
        self._clock = clock
        self._quotas: dict[str, QuotaState] = {}
        self._in_flight: dict[str, int] = {}

    def limits_for(self, user_id: str) -> QuotaLimits:
        return self._user_limits.get(user_id, self._default_limits)

    def quota_state(self, user_id: str) -> QuotaState:
        """Return the user's live window, starting a fresh one if it expired."""
        now = self._clock()
        state = self._quotas.get(user_id)
        if state is None or state.expired(now):
            self.evict_expired()
            state = QuotaState(window_start=now, limits=self.limits_for(user_id))
            self._quotas[user_id] = state
        return state

    def evict_expired(self) -> int:
        """Forget users whose window has run out; they start afresh on return."""
        now = self._clock()
        stale = [user_id for user_id, state in self._quotas.items() if state.expired(now)]
        for user_id in stale:
            del self._quotas[user_id]
        return len(stale)

    def tracked_users(self) -> int:
        return len(self._quotas)

    def admit(self, request: ChatRequest, candidates: Sequence[Candidate]) -> Reservation:
        """Check quota then provider capacity; reserve a slot on success.

        Raises:
            QuotaExceeded: The user's window is used up.
            ProviderSaturated: Every candidate is at its concurrency ceiling.
        """
        state = self.quota_state(request.user_id)
        limits = state.limits
        now = self._clock()

        if state.request_count >= limits.max_requests:
            raise QuotaExceeded(
                f"request quota of {limits.max_requests} per {limits.window_s:g}s reached",
                retry_after=state.retry_after(now),
            )
        if limits.max_tokens is not None and state.token_count >= limits.max_tokens:
            raise QuotaExceeded(
                f"token quota of {limits.max_tokens} per {limits.window_s:g}s reached",
                retry_after=state.retry_after(now),
            )

        for index, candidate in enumerate(candidates):
            slot = self.try_acquire(candidate.descriptor)
            if slot is not None:
                state.request_count += 1
                logger.debug("Admitted %s on %s", request.request_id, candidate.name)
                return Reservation(candidate_index=index, slot=slot)

        names = ", ".join(c.name for c in candidates)
        raise ProviderSaturated(f"all providers for '{request.model}' are saturated: {names}")

    def try_acquire(self, descriptor: ProviderDescriptor) -> ProviderSlot | None:
        """Take a concurrency slot on ``descriptor`` if one is free."""
        current = self._in_flight.get(descriptor.name, 0)
        if current >= descriptor.max_concurrency:
            return None
        self._in_flight[descriptor.name] = current + 1
        return ProviderSlot(self, descriptor.name)

    def record_tokens(self, user_id: str, tokens: int) -> None:
        """Charge consumed tokens against the user's current window."""
        if tokens <= 0:
            return
        self.quota_state(user_id).token_count += tokens

    def in_flight(self, provider: str) -> int:
        return self._in_flight.get(provider, 0)

    def _release(self, provider: str) -> None:
        current = self._in_flight.get(provider, 0)
        if current <= 1:
            self._in_flight.pop(provider, None)
        else:
            self._in_flight[provider] = current - 1
