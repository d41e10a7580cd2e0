"""Multi-provider LLM completion gateway."""

from llm_gateway.config import GatewaySettings, ProviderDescriptor, QuotaLimits, load_settings
from llm_gateway.gateway import Gateway
from llm_gateway.types import (
    ChatRequest,
    ChatResponse,
    Done,
    ErrorEvent,
    Message,
    RequestStatus,
    TokenDelta,
    ToolCallRequest,
    UsageRecord,
    UsageReport,
)

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "Done",
    "ErrorEvent",
    "Gateway",
    "GatewaySettings",
    "Message",
    "ProviderDescriptor",
    "QuotaLimits",
    "RequestStatus",
    "TokenDelta",
    "ToolCallRequest",
    "UsageRecord",
    "UsageReport",
    "load_settings",
]
