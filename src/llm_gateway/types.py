"""Provider-agnostic request, event and ledger models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from llm_gateway.errors import ErrorKind, GatewayError, error_for_kind

Role = Literal["system", "user", "assistant", "tool"]
ToolMode = Literal["off", "auto", "required"]


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str
    # opaque references resolved by the file store, never inlined here
    attachments: list[str] = Field(default_factory=list)


class ToolDef(BaseModel):
    """Simple JSON-schema tool definition."""

    name: str
    description: str | None = None
    json_schema: dict[str, Any] = Field(default_factory=dict)


def _new_request_id() -> str:
    return uuid.uuid4().hex


class ChatRequest(BaseModel):
    """Normalized request shared by all providers."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=_new_request_id)
    user_id: str
    chat_id: str
    model: str
    messages: list[Message]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stream: bool = True
    tools: list[ToolDef] = Field(default_factory=list)
    tool_mode: ToolMode = "off"


class RequestStatus(str, Enum):
    """Lifecycle states of a request handled by the coordinator."""

    QUEUED = "queued"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED)


class TokenDelta(BaseModel):
    type: Literal["token_delta"] = "token_delta"
    text: str


class ToolCallRequest(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = None


class UsageReport(BaseModel):
    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0
    estimated: bool = False


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    kind: ErrorKind
    message: str = ""
    retryable: bool = False
    retry_after: float | None = None
    provider: str | None = None

    @classmethod
    def from_exception(cls, exc: GatewayError) -> "ErrorEvent":
        return cls(
            kind=exc.kind,
            message=exc.message,
            retryable=exc.retryable,
            retry_after=exc.retry_after,
            provider=exc.provider,
        )

    def to_exception(self) -> GatewayError:
        """Rebuild the gateway exception this event describes."""
        exc = error_for_kind(
            self.kind,
            self.message,
            provider=self.provider,
            retry_after=self.retry_after,
        )
        # the adapter's classification wins over the kind's default
        exc.retryable = self.retryable
        return exc


class Done(BaseModel):
    """Terminal marker. Caller-facing instances carry the final status."""

    type: Literal["done"] = "done"
    request_id: str | None = None
    status: RequestStatus | None = None


NormalizedEvent = Annotated[
    Union[TokenDelta, ToolCallRequest, UsageReport, ErrorEvent, Done],
    Field(discriminator="type"),
]


class UsageRecord(BaseModel):
    """Immutable accounting entry, one per request."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    user_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: Decimal
    estimated: bool
    latency_ms: int
    success: bool
    status: RequestStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChatResponse(BaseModel):
    """Collected result of a completed request."""

    request_id: str
    provider: str | None
    model: str
    text: str
    status: RequestStatus
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    usage: UsageReport | None = None
