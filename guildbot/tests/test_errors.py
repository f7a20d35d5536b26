import pytest

from guildbot.errors import (
    ApiError,
    AuthenticationError,
    ErrorKind,
    ForbiddenError,
    GatewayClosed,
    HandlerError,
    MethodNotAllowedError,
    NotFoundError,
    ProtocolError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    SessionInvalidError,
    TransportError,
    error_from_status,
)


def test_retryable_kinds_and_hints():
    assert TransportError("x").is_retryable()
    assert TransportError("x").retry_after() == 1.0
    assert RequestTimeoutError("x").retry_after() == 3.0
    assert RateLimitError("x", retry_after=12).retry_after() == 12.0
    assert SessionInvalidError("x").is_retryable()
    assert not AuthenticationError("x").is_retryable()
    assert AuthenticationError("x").retry_after() is None
    assert not ProtocolError("x").is_retryable()


def test_gateway_closed_keeps_code():
    error = GatewayClosed("closed", code=4009, reason="timeout")
    assert error.kind is ErrorKind.TRANSPORT
    assert (error.code, error.reason) == (4009, "timeout")


def test_handler_error_delegates_to_original():
    wrapped = HandlerError("failed", event_type="X", original=RateLimitError("slow", retry_after=4))
    assert wrapped.is_retryable()
    assert wrapped.retry_after() == 4.0
    plain = HandlerError("failed", original=ValueError("bad"))
    assert not plain.is_retryable()
    assert plain.retry_after() is None


@pytest.mark.parametrize(
    "status, expected",
    [
        (401, AuthenticationError),
        (403, ForbiddenError),
        (404, NotFoundError),
        (405, MethodNotAllowedError),
        (429, RateLimitError),
        (500, ServerError),
        (418, ApiError),
    ],
)
def test_error_from_status(status, expected):
    error = error_from_status(status, "failed", code=7, trace_id="t")
    assert type(error) is expected


def test_api_error_fields():
    error = error_from_status(404, "missing", code=11241, trace_id="trace")
    assert isinstance(error, ApiError)
    assert (error.status, error.code, error.trace_id, error.message) == (404, 11241, "trace", "missing")
    assert error_from_status(503, "down").is_retryable()
    assert error_from_status(429, "slow", retry_after=3).retry_after() == 3.0
