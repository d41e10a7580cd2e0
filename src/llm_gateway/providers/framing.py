"""Decoders for the streaming framings providers use."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


def _load(data_str: str) -> dict[str, Any] | None:
    try:
        event = json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON streaming chunk: %s", data_str)
        return None
    if not isinstance(event, dict):
        logger.debug("Skipping non-object streaming chunk: %s", data_str)
        return None
    return event


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield JSON payloads from a server-sent event stream.

    ``data:`` lines are joined until a blank line ends the event. ``event:``,
    ``id:`` and comment lines are ignored; the provider repeats the event type
    inside the JSON payload. A ``[DONE]`` payload ends the stream.
    """
    buffer: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line.strip():
            if buffer:
                data_str = "\n".join(buffer)
                buffer = []
                if data_str.strip() == SSE_DONE:
                    return
                event = _load(data_str)
                if event is not None:
                    yield event
            continue

        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[len("data:") :].strip())

    # Some servers close the connection without a trailing blank line.
    if buffer:
        data_str = "\n".join(buffer)
        if data_str.strip() != SSE_DONE:
            event = _load(data_str)
            if event is not None:
                yield event


async def iter_ndjson(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield one JSON object per non-empty line."""
    async for raw in lines:
        line = raw.strip()
        if not line:
            continue
        event = _load(line)
        if event is not None:
            yield event
