"""Provider adapters for llm_gateway."""

from __future__ import annotations

import httpx

from llm_gateway.config import ProviderDescriptor

from .anthropic import AnthropicProvider
from .base import BaseProvider, ModelCapabilities, WireRequest
from .ollama import OllamaProvider
from .openai import OpenAIProvider

# Compiled-in adapter kinds; descriptors select one by ``kind``.
ADAPTERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "ollama": OllamaProvider,
}


def build_adapter(
    descriptor: ProviderDescriptor,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseProvider:
    """Instantiate the adapter for ``descriptor.kind``."""
    return ADAPTERS[descriptor.kind](descriptor, transport=transport)


__all__ = [
    "ADAPTERS",
    "AnthropicProvider",
    "BaseProvider",
    "ModelCapabilities",
    "OllamaProvider",
    "OpenAIProvider",
    "WireRequest",
    "build_adapter",
]
