"""Catalog mapping logical model names to ordered provider candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from llm_gateway.config import GatewaySettings, ProviderDescriptor
from llm_gateway.errors import InvalidRequest, ModelNotFound
from llm_gateway.providers import BaseProvider, build_adapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """One (descriptor, adapter) pair able to serve a model."""

    descriptor: ProviderDescriptor
    adapter: BaseProvider

    @property
    def name(self) -> str:
        return self.descriptor.name


class ProviderRegistry:
    """Registered providers in fallback priority order.

    ``lookup`` hands out immutable snapshots, so a request keeps the adapters it
    was given even if providers are registered or removed afterwards.
    """

    def __init__(self) -> None:
        self._candidates: dict[str, Candidate] = {}

    def register(self, descriptor: ProviderDescriptor, adapter: BaseProvider) -> None:
        if descriptor.name in self._candidates:
            raise InvalidRequest(f"provider '{descriptor.name}' is already registered")
        self._candidates[descriptor.name] = Candidate(descriptor=descriptor, adapter=adapter)
        logger.info("Registered provider %s serving %s", descriptor.name, sorted(descriptor.models))

    def unregister(self, name: str) -> BaseProvider:
        """Remove a provider and return its adapter so the caller may close it."""
        try:
            candidate = self._candidates.pop(name)
        except KeyError as exc:
            raise InvalidRequest(f"provider '{name}' is not registered") from exc
        logger.info("Unregistered provider %s", name)
        return candidate.adapter

    def get(self, name: str) -> Candidate:
        try:
            return self._candidates[name]
        except KeyError as exc:
            raise InvalidRequest(f"provider '{name}' is not registered") from exc

    def names(self) -> list[str]:
        return list(self._candidates)

    def lookup(self, model: str) -> tuple[Candidate, ...]:
        """Return the fallback list for ``model``, highest priority first."""
        candidates = tuple(c for c in self._candidates.values() if c.descriptor.serves(model))
        if not candidates:
            raise ModelNotFound(model)
        return candidates

    async def aclose(self) -> None:
        for candidate in self._candidates.values():
            await candidate.adapter.aclose()


def build_registry(
    settings: GatewaySettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Populate a registry from configured descriptors, in file order."""
    registry = ProviderRegistry()
    for descriptor in settings.providers:
        registry.register(descriptor, build_adapter(descriptor, transport=transport))
    return registry
