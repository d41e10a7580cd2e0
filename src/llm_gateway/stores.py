"""Collaborator interfaces the gateway consumes, with simple implementations."""

from __future__ import annotations

import os
from collections.abc import Iterable
from typing import Protocol

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import AuthError
from llm_gateway.types import Message, UsageRecord


class PersistenceStore(Protocol):
    async def append_message(self, chat_id: str, message: Message) -> None: ...

    async def append_usage(self, record: UsageRecord) -> None: ...


class CredentialStore(Protocol):
    async def resolve_api_key(self, user_id: str, provider: str) -> str: ...


class InMemoryPersistenceStore:
    """Keeps chat messages and usage records in process memory."""

    def __init__(self) -> None:
        self.messages: dict[str, list[Message]] = {}
        self.usage: list[UsageRecord] = []

    async def append_message(self, chat_id: str, message: Message) -> None:
        self.messages.setdefault(chat_id, []).append(message)

    async def append_usage(self, record: UsageRecord) -> None:
        self.usage.append(record)


class StaticCredentialStore:
    """Provider-wide keys with optional per-user overrides."""

    def __init__(
        self,
        keys: dict[str, str] | None = None,
        *,
        user_keys: dict[tuple[str, str], str] | None = None,
    ) -> None:
        self._keys = dict(keys or {})
        self._user_keys = dict(user_keys or {})

    async def resolve_api_key(self, user_id: str, provider: str) -> str:
        key = self._user_keys.get((user_id, provider)) or self._keys.get(provider)
        if not key:
            raise AuthError("no API key configured", provider=provider)
        return key


class EnvCredentialStore:
    """Reads each provider's key from the environment variable its descriptor names."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        self._env_vars = {d.name: d.api_key_env for d in descriptors if d.api_key_env}

    async def resolve_api_key(self, user_id: str, provider: str) -> str:
        env_var = self._env_vars.get(provider)
        key = os.environ.get(env_var) if env_var else None
        if not key:
            raise AuthError(f"API key variable {env_var or '<unset>'} is empty", provider=provider)
        return key
