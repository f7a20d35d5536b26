"""Error family shared by the gateway session, REST transport and dispatcher."""

from __future__ import annotations

import enum
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    """Coarse classification used for retry decisions."""

    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    SESSION_INVALID = "session_invalid"
    FATAL = "fatal"
    API = "api"


_RETRYABLE_KINDS = {ErrorKind.TRANSPORT, ErrorKind.RATE_LIMIT, ErrorKind.SESSION_INVALID}


class BotError(RuntimeError):
    """Base error for every failure raised by guildbot."""

    kind: ErrorKind = ErrorKind.FATAL
    default_retry_after: Optional[float] = None

    def is_retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def retry_after(self) -> Optional[float]:
        if not self.is_retryable():
            return None
        return self.default_retry_after


class TransportError(BotError):
    """Raised when a socket or HTTP connection fails."""

    kind = ErrorKind.TRANSPORT
    default_retry_after = 1.0


class RequestTimeoutError(TransportError):
    """Raised when a request or handshake does not complete in time."""

    default_retry_after = 3.0


class HeartbeatTimeout(TransportError):
    """Raised when the gateway stops acknowledging heartbeats."""


class GatewayClosed(TransportError):
    """Raised when the gateway socket is closed by the peer."""

    def __init__(self, message: str, *, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason


class ProtocolError(BotError):
    """Raised for malformed frames or unexpected op codes."""

    kind = ErrorKind.PROTOCOL


class EventDecodeError(ProtocolError):
    """Raised when a dispatch payload cannot be decoded into its event type."""

    def __init__(self, message: str, *, event_type: Optional[str] = None, payload: Any = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.payload = payload


class AuthenticationError(BotError):
    """Raised when credentials are rejected."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitError(BotError):
    """Raised when a caller would wait longer than the configured maximum."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, *, retry_after: float = 60.0, bucket: Optional[str] = None) -> None:
        super().__init__(message)
        self.bucket = bucket
        self._retry_after = float(retry_after)

    def retry_after(self) -> Optional[float]:
        return self._retry_after


class SessionInvalidError(BotError):
    """Raised when the gateway rejects a session; a fresh identify follows."""

    kind = ErrorKind.SESSION_INVALID


class FatalError(BotError):
    """Raised when the session cannot continue and must not be retried."""

    kind = ErrorKind.FATAL


class HandlerError(BotError):
    """Wraps an exception raised (or returned) by a user event handler."""

    kind = ErrorKind.FATAL

    def __init__(self, message: str, *, event_type: Optional[str] = None, original: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.original = original

    def is_retryable(self) -> bool:
        if isinstance(self.original, BotError):
            return self.original.is_retryable()
        return False

    def retry_after(self) -> Optional[float]:
        if isinstance(self.original, BotError):
            return self.original.retry_after()
        return None


class ApiError(BotError):
    """Raised when the REST API rejects a request."""

    kind = ErrorKind.API

    def __init__(
        self,
        message: str,
        *,
        status: int,
        code: Optional[int] = None,
        trace_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.trace_id = trace_id


class NotFoundError(ApiError):
    """Raised for 404 responses."""


class ForbiddenError(ApiError):
    """Raised for 403 responses."""


class MethodNotAllowedError(ApiError):
    """Raised for 405 responses."""


class ServerError(ApiError):
    """Raised for 5xx responses."""

    kind = ErrorKind.TRANSPORT
    default_retry_after = 1.0


def error_from_status(
    status: int,
    message: str,
    *,
    code: Optional[int] = None,
    trace_id: Optional[str] = None,
    retry_after: Optional[float] = None,
) -> BotError:
    """Map an HTTP status to the matching error instance."""

    if status == 401:
        return AuthenticationError(message)
    if status == 403:
        return ForbiddenError(message, status=status, code=code, trace_id=trace_id)
    if status == 404:
        return NotFoundError(message, status=status, code=code, trace_id=trace_id)
    if status == 405:
        return MethodNotAllowedError(message, status=status, code=code, trace_id=trace_id)
    if status == 429:
        return RateLimitError(message, retry_after=retry_after if retry_after is not None else 60.0)
    if 500 <= status < 600:
        return ServerError(message, status=status, code=code, trace_id=trace_id)
    return ApiError(message, status=status, code=code, trace_id=trace_id)


__all__ = [
    "ApiError",
    "AuthenticationError",
    "BotError",
    "ErrorKind",
    "EventDecodeError",
    "FatalError",
    "ForbiddenError",
    "GatewayClosed",
    "HandlerError",
    "HeartbeatTimeout",
    "MethodNotAllowedError",
    "NotFoundError",
    "ProtocolError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServerError",
    "SessionInvalidError",
    "TransportError",
    "error_from_status",
]
