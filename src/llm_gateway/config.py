"""Provider descriptors, quota limits and YAML settings loading."""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from llm_gateway.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LLM_GATEWAY_CONFIG"

AdapterKind = Literal["openai", "anthropic", "ollama"]
AuthScheme = Literal["bearer", "api_key_header", "none"]
Framing = Literal["sse", "ndjson", "json"]


class CostTable(BaseModel):
    """Price per 1K input and output tokens, in currency units."""

    input_per_1k: Decimal = Decimal("0")
    output_per_1k: Decimal = Decimal("0")

    @field_validator("input_per_1k", "output_per_1k")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("token prices must be >= 0")
        return value


class ProviderDescriptor(BaseModel):
    """Everything the gateway needs to know about one external provider."""

    name: str
    kind: AdapterKind
    endpoint: str
    auth_scheme: AuthScheme = "bearer"
    auth_header: str = "x-api-key"
    api_key_env: str | None = None
    # logical model alias -> provider-specific model id
    models: dict[str, str] = Field(default_factory=dict)
    cost: CostTable = Field(default_factory=CostTable)
    model_costs: dict[str, CostTable] = Field(default_factory=dict)
    max_concurrency: int = 8
    timeout_s: float = 60.0
    framing: Framing = "sse"
    supports_tools: bool = True
    supports_attachments: bool = False

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_concurrency must be > 0")
        return value

    @field_validator("timeout_s")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_s must be > 0")
        return value

    def serves(self, model: str) -> bool:
        return model in self.models

    def provider_model(self, model: str) -> str:
        """Return the provider's own identifier for a logical model alias."""
        return self.models.get(model, model)

    def rate_for(self, model: str) -> CostTable:
        return self.model_costs.get(model, self.cost)


class QuotaLimits(BaseModel):
    """Per-user admission limits over a fixed window."""

    max_requests: int = 60
    max_tokens: int | None = None
    window_s: float = 60.0

    @field_validator("max_requests")
    @classmethod
    def _non_negative_requests(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_requests must be >= 0")
        return value

    @field_validator("window_s")
    @classmethod
    def _positive_window(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("window_s must be > 0")
        return value


class GatewaySettings(BaseModel):
    """Top-level gateway configuration."""

    providers: list[ProviderDescriptor] = Field(default_factory=list)
    quota: QuotaLimits = Field(default_factory=QuotaLimits)
    user_quotas: dict[str, QuotaLimits] = Field(default_factory=dict)
    queue_size: int = 64
    retention_s: float = 300.0
    sweep_interval_s: float = 30.0

    @model_validator(mode="after")
    def _unique_provider_names(self) -> "GatewaySettings":
        seen: set[str] = set()
        for descriptor in self.providers:
            if descriptor.name in seen:
                raise ValueError(f"duplicate provider name: {descriptor.name}")
            seen.add(descriptor.name)
        if self.queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        return self


def load_settings(path: str | Path | None = None) -> GatewaySettings:
    """Load gateway settings from a YAML file.

    Args:
        path: Config file location. Falls back to ``$LLM_GATEWAY_CONFIG``.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
        if not path:
            raise ConfigError(f"no config path given and {CONFIG_ENV_VAR} is not set")

    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {config_path}")

    try:
        settings = GatewaySettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid config {config_path}: {exc}") from exc

    logger.info("Loaded %d provider(s) from %s", len(settings.providers), config_path)
    return settings
