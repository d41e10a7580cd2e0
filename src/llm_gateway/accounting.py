"""Cost computation, usage estimation and the per-request ledger."""

from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal

from llm_gateway.config import CostTable
from llm_gateway.errors import InternalError
from llm_gateway.stores import PersistenceStore
from llm_gateway.types import RequestStatus, UsageRecord

logger = logging.getLogger(__name__)

COST_QUANTUM = Decimal("0.000001")

# Rough average for English text across common BPE tokenizers.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count as ``ceil(len(text) / 4)``.

    Deterministic by construction; used only when a provider reports no usage.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def compute_cost(input_tokens: int, output_tokens: int, rate: CostTable) -> Decimal:
    """Price token usage, rounded half-up to 6 decimal places.

    Args:
        input_tokens: Prompt tokens consumed.
        output_tokens: Completion tokens produced.
        rate: Prices per 1K input/output tokens.

    Returns:
        Cost as a ``Decimal`` quantized to ``0.000001``.
    """
    input_cost = Decimal(input_tokens) / Decimal(1000) * rate.input_per_1k
    output_cost = Decimal(output_tokens) / Decimal(1000) * rate.output_per_1k
    return (input_cost + output_cost).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class UsageAccountant:
    """Produces exactly one ``UsageRecord`` per request id."""

    def __init__(self, persistence: PersistenceStore | None = None) -> None:
        self._persistence = persistence
        self._records: dict[str, UsageRecord] = {}

    async def record(
        self,
        *,
        request_id: str,
        user_id: str,
        provider: str,
        model: str,
        rate: CostTable,
        input_tokens: int,
        output_tokens: int,
        estimated: bool,
        latency_ms: int,
        status: RequestStatus,
    ) -> UsageRecord:
        """Append the terminal usage entry for ``request_id``.

        Raises:
            InternalError: A record already exists for this request.
        """
        if request_id in self._records:
            raise InternalError(f"usage already recorded for request '{request_id}'")

        entry = UsageRecord(
            request_id=request_id,
            user_id=user_id,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=compute_cost(input_tokens, output_tokens, rate),
            estimated=estimated,
            latency_ms=latency_ms,
            success=status is RequestStatus.COMPLETED,
            status=status,
        )
        self._records[request_id] = entry
        logger.info(
            "Usage %s provider=%s in=%d out=%d cost=%s estimated=%s",
            request_id,
            provider,
            input_tokens,
            output_tokens,
            entry.cost,
            estimated,
        )

        if self._persistence is not None:
            try:
                await self._persistence.append_usage(entry)
            except Exception:
                # The in-memory ledger stays authoritative; the caller still gets Done.
                logger.exception("Failed to persist usage for %s", request_id)
        return entry

    def get(self, request_id: str) -> UsageRecord | None:
        return self._records.get(request_id)

    def records(self) -> list[UsageRecord]:
        return list(self._records.values())

    def total_cost(self, user_id: str | None = None) -> Decimal:
        return sum(
            (r.cost for r in self._records.values() if user_id is None or r.user_id == user_id),
            Decimal("0"),
        )
