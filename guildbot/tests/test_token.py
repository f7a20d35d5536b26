import json

import pytest
import requests

from guildbot.config import BotSettings
from guildbot.errors import (
    ApiError,
    AuthenticationError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    TransportError,
)
from guildbot.token import AppCredentials, StaticToken, credentials_from_settings


class _FakeResponse:
    def __init__(self, status: int, body) -> None:
        self.status_code = status
        self._raw = body if isinstance(body, str) else json.dumps(body)

    def json(self):
        return json.loads(self._raw)


class _TokenEndpoint:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _Clock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


def _credentials(endpoint, clock=None, **kwargs) -> AppCredentials:
    return AppCredentials(
        "1024",
        "s3cr3t-value",
        token_url="https://bots.test/app/getAppAccessToken",
        session=endpoint,
        clock=clock or _Clock(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_token_is_fetched_once_and_cached():
    endpoint = _TokenEndpoint(_FakeResponse(200, {"access_token": "tok-1", "expires_in": "7200"}))
    credentials = _credentials(endpoint, timeout=5.0)

    assert await credentials.current_bearer_token() == "tok-1"
    assert await credentials.authorization_header() == "QQBot tok-1"
    assert len(endpoint.calls) == 1
    assert endpoint.calls[0]["json"] == {"appId": "1024", "clientSecret": "s3cr3t-value"}
    assert endpoint.calls[0]["timeout"] == 5.0
    assert credentials.expires_at == 10_000.0 + 7200


@pytest.mark.asyncio
async def test_token_refreshes_inside_margin():
    clock = _Clock()
    endpoint = _TokenEndpoint(
        _FakeResponse(200, {"access_token": "tok-1", "expires_in": 120}),
        _FakeResponse(200, {"access_token": "tok-2", "expires_in": 120}),
    )
    credentials = _credentials(endpoint, clock, refresh_margin=60.0)

    assert await credentials.current_bearer_token() == "tok-1"
    clock.now += 59
    assert await credentials.current_bearer_token() == "tok-1"
    clock.now += 2
    assert await credentials.current_bearer_token() == "tok-2"


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    endpoint = _TokenEndpoint(
        _FakeResponse(200, {"access_token": "tok-1", "expires_in": 7200}),
        _FakeResponse(200, {"access_token": "tok-2", "expires_in": 7200}),
    )
    credentials = _credentials(endpoint)
    await credentials.current_bearer_token()
    credentials.invalidate()
    assert await credentials.current_bearer_token() == "tok-2"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(400, {"message": "bad secret"}),
        _FakeResponse(401, {"message": "unauthorized"}),
        _FakeResponse(403, {"message": "forbidden"}),
        _FakeResponse(200, "not json"),
        _FakeResponse(200, ["unexpected"]),
        _FakeResponse(200, {"expires_in": 10}),
        _FakeResponse(200, {"access_token": "tok", "expires_in": "soon"}),
    ],
)
async def test_bad_token_responses_raise_authentication_error(response):
    credentials = _credentials(_TokenEndpoint(response))
    with pytest.raises(AuthenticationError):
        await credentials.current_bearer_token()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected",
    [(503, ServerError), (500, ServerError), (429, RateLimitError), (404, ApiError)],
)
async def test_server_side_failures_are_not_authentication_errors(status, expected):
    endpoint = _TokenEndpoint(
        _FakeResponse(status, {"message": "unavailable"}),
        _FakeResponse(200, {"access_token": "tok-1", "expires_in": 7200}),
    )
    credentials = _credentials(endpoint)

    with pytest.raises(expected) as excinfo:
        await credentials.current_bearer_token()
    assert not isinstance(excinfo.value, AuthenticationError)
    assert await credentials.current_bearer_token() == "tok-1"


@pytest.mark.asyncio
async def test_network_failures_map_to_transport_errors():
    credentials = _credentials(_TokenEndpoint(requests.Timeout("slow"), requests.ConnectionError("down")))
    with pytest.raises(RequestTimeoutError):
        await credentials.current_bearer_token()
    with pytest.raises(TransportError):
        await credentials.current_bearer_token()


def test_secret_is_masked():
    credentials = _credentials(_TokenEndpoint())
    assert "s3cr3t-value" not in repr(credentials)
    assert "s3cr****" in credentials.safe_display()
    assert "abc" not in repr(StaticToken("abc"))


def test_validate_rejects_blank_values():
    with pytest.raises(AuthenticationError):
        AppCredentials(" ", "secret").validate()
    with pytest.raises(AuthenticationError):
        StaticToken("")


def test_credentials_from_settings():
    assert isinstance(credentials_from_settings(BotSettings(bot_token="QQBot abc")), StaticToken)
    app = credentials_from_settings(BotSettings(app_id="1", client_secret="secret"))
    assert isinstance(app, AppCredentials)
    assert app.app_id == "1"
    with pytest.raises(AuthenticationError):
        credentials_from_settings(BotSettings(app_id="1"))
