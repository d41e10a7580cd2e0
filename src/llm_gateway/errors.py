"""Gateway exception hierarchy and provider failure classification."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable names for every failure the gateway can report."""

    MODEL_NOT_FOUND = "ModelNotFound"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PROVIDER_SATURATED = "ProviderSaturated"
    AUTH_ERROR = "AuthError"
    INVALID_REQUEST = "InvalidRequest"
    RATE_LIMITED = "RateLimited"
    NETWORK_TIMEOUT = "NetworkTimeout"
    SERVER_ERROR = "ServerError"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"


class GatewayError(Exception):
    """Base exception for llm_gateway package."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        prefix = f"{provider}: " if provider else ""
        super().__init__(f"{prefix}{message}")
        self.message = message
        self.provider = provider
        self.retry_after = retry_after


class ModelNotFound(GatewayError):
    """Raised when no provider is configured for the requested model."""

    kind = ErrorKind.MODEL_NOT_FOUND

    def __init__(self, model: str) -> None:
        super().__init__(f"Model '{model}' is not available.")
        self.model = model


class QuotaExceeded(GatewayError):
    """Raised when a user has used up the current quota window."""

    kind = ErrorKind.QUOTA_EXCEEDED


class ProviderSaturated(GatewayError):
    """Raised when every candidate provider is at its concurrency ceiling."""

    kind = ErrorKind.PROVIDER_SATURATED


class AuthError(GatewayError):
    """Raised when credentials are missing or rejected by a provider."""

    kind = ErrorKind.AUTH_ERROR


class InvalidRequest(GatewayError):
    """Raised when a request is malformed or uses an unsupported feature."""

    kind = ErrorKind.INVALID_REQUEST


class RateLimited(GatewayError):
    """Raised when a provider throttles the request; may carry ``retry_after``."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True


class NetworkTimeout(GatewayError):
    """Raised when a provider does not answer within the attempt deadline."""

    kind = ErrorKind.NETWORK_TIMEOUT
    retryable = True


class ServerError(GatewayError):
    """Transient provider-side or transport failure."""

    kind = ErrorKind.SERVER_ERROR
    retryable = True


class Cancelled(GatewayError):
    """Raised when the caller cancels a request."""

    kind = ErrorKind.CANCELLED


class InternalError(GatewayError):
    """Raised on unexpected gateway-side failures."""

    kind = ErrorKind.INTERNAL_ERROR


class ConfigError(InternalError):
    """Raised when gateway configuration cannot be loaded or validated."""


class RequestNotFound(GatewayError):
    """Raised when a request id is unknown or has been swept."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request '{request_id}' is not tracked.")
        self.request_id = request_id


_ERRORS_BY_KIND: dict[ErrorKind, type[GatewayError]] = {
    ErrorKind.QUOTA_EXCEEDED: QuotaExceeded,
    ErrorKind.PROVIDER_SATURATED: ProviderSaturated,
    ErrorKind.AUTH_ERROR: AuthError,
    ErrorKind.INVALID_REQUEST: InvalidRequest,
    ErrorKind.RATE_LIMITED: RateLimited,
    ErrorKind.NETWORK_TIMEOUT: NetworkTimeout,
    ErrorKind.SERVER_ERROR: ServerError,
    ErrorKind.CANCELLED: Cancelled,
    ErrorKind.INTERNAL_ERROR: InternalError,
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    *,
    provider: str | None = None,
    retry_after: float | None = None,
) -> GatewayError:
    """Build the exception matching ``kind``."""
    if kind is ErrorKind.MODEL_NOT_FOUND:
        return ModelNotFound(message)
    cls = _ERRORS_BY_KIND.get(kind, InternalError)
    return cls(message, provider=provider, retry_after=retry_after)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        # HTTP-date form is not worth honouring for provider back-off hints.
        return None
    return max(seconds, 0.0)


def classify_status(
    provider: str,
    status_code: int,
    message: str,
    *,
    retry_after: str | None = None,
) -> GatewayError:
    """Map a provider HTTP status onto the gateway error taxonomy."""

    suffix = f"{message} (status {status_code})"
    if status_code in (401, 403):
        return AuthError(suffix, provider=provider)
    if status_code == 408:
        return NetworkTimeout(suffix, provider=provider)
    if status_code == 429:
        return RateLimited(suffix, provider=provider, retry_after=parse_retry_after(retry_after))
    if status_code >= 500:
        return ServerError(suffix, provider=provider, retry_after=parse_retry_after(retry_after))
    return InvalidRequest(suffix, provider=provider)
