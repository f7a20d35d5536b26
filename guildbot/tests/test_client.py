import asyncio
import json

import pytest

from guildbot.client import Client
from guildbot.config import BotSettings
from guildbot.dispatch import EventHandler
from guildbot.errors import FatalError, ProtocolError
from guildbot.http import HttpClient
from guildbot.network.session_state import SessionState
from guildbot.network.transport.dummy import DummyTransport
from guildbot.ratelimit import IDENTIFY_BUCKET
from guildbot.token import StaticToken


class _Handler(EventHandler):
    def __init__(self) -> None:
        self.ready = []
        self.messages = []
        self.errors = []

    async def on_ready(self, event, ctx):
        self.ready.append((event.session_id, ctx.session.session_id))

    async def on_message_create(self, event, ctx):
        if event.content == "boom":
            raise RuntimeError("handler failed")
        self.messages.append(event.content)

    async def on_error(self, error):
        self.errors.append(error)


class _FakeResponse:
    def __init__(self, status: int, body) -> None:
        self.status_code = status
        self.headers = {}
        self.content = json.dumps(body).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self):
        return json.loads(self.content)


class _FakeSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.urls = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.urls.append(url)
        return self.responses.pop(0)

    def close(self) -> None:
        return None


def _settings() -> BotSettings:
    return BotSettings(
        heartbeat_jitter_ratio=0.0,
        reconnect_base_delay_seconds=0.01,
        reconnect_jitter=0.0,
        close_timeout_seconds=0.2,
        stop_timeout_seconds=1.0,
    )


def _client(handler, transport: DummyTransport, **kwargs) -> Client:
    kwargs.setdefault("gateway_url", "wss://gateway.test/ws")
    return Client(
        handler,
        settings=_settings(),
        credentials=StaticToken("T1"),
        transport_factory=lambda _: transport,
        **kwargs,
    )


async def _wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.mark.asyncio
async def test_client_connects_dispatches_and_stops():
    handler = _Handler()
    transport = DummyTransport(auto_gateway=True, session_id="abc")
    client = _client(handler, transport, intents="GUILDS")
    assert client.session_info() is None

    task = asyncio.create_task(client.start())
    assert await _wait_for(client.is_connected)
    assert client.session_info().session_id == "abc"
    assert await _wait_for(lambda: handler.ready == [("abc", "abc")])

    transport.dispatch("AT_MESSAGE_CREATE", {"id": "m1", "content": "boom", "channel_id": "c1"})
    transport.dispatch("AT_MESSAGE_CREATE", {"id": "m2", "content": "hello", "channel_id": "c1"})
    assert await _wait_for(lambda: handler.messages == ["hello"])
    assert len(handler.errors) == 1

    identify = next(message for message in transport.sent if message["op"] == 2)
    assert identify["d"]["intents"] == 1

    await client.stop()
    await client.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert not client.is_connected()
    assert client.session_info() is None


@pytest.mark.asyncio
async def test_second_start_does_not_open_another_socket():
    transport = DummyTransport(auto_gateway=True)
    client = _client(_Handler(), transport)

    first = asyncio.create_task(client.start())
    assert await _wait_for(client.is_connected)
    second = asyncio.create_task(client.start())
    await asyncio.sleep(0.05)
    assert transport.connect_count == 1

    await client.stop()
    await asyncio.wait_for(asyncio.gather(first, second), timeout=1.0)


@pytest.mark.asyncio
async def test_async_context_manager_runs_in_background():
    transport = DummyTransport(auto_gateway=True)
    async with _client(_Handler(), transport) as client:
        assert await _wait_for(client.is_connected)
        assert client.session.state is SessionState.CONNECTED
    assert not client.is_connected()
    assert transport.close_code == 1000


@pytest.mark.asyncio
async def test_stop_before_start_is_safe():
    client = _client(_Handler(), DummyTransport(auto_gateway=True))
    await client.stop()
    assert client.session_info() is None


@pytest.mark.asyncio
async def test_gateway_url_discovery_seeds_identify_bucket():
    session = _FakeSession(
        _FakeResponse(
            200,
            {
                "url": "wss://discovered.test/websocket",
                "shards": 1,
                "session_start_limit": {"total": 1000, "remaining": 999, "reset_after": 86_400_000},
            },
        )
    )
    http = HttpClient(base_url="https://api.test", credentials=StaticToken("T1"), session=session)
    transport = DummyTransport(auto_gateway=True)
    client = _client(_Handler(), transport, http=http, gateway_url=None)

    task = asyncio.create_task(client.start())
    assert await _wait_for(client.is_connected)

    assert session.urls == ["https://api.test/gateway/bot"]
    assert transport.url == "wss://discovered.test/websocket"
    bucket = client.rate_limiter.bucket(IDENTIFY_BUCKET)
    assert bucket.limit == 1000
    assert bucket.remaining == 998
    assert bucket.window == 86_400.0

    await client.stop()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_session_errors_reach_handler():
    handler = _Handler()
    transport = DummyTransport(auto_gateway=True)
    client = _client(handler, transport)

    task = asyncio.create_task(client.start())
    assert await _wait_for(client.is_connected)
    transport.feed("garbage")
    assert await _wait_for(lambda: any(isinstance(error, ProtocolError) for error in handler.errors))
    assert client.is_connected()

    await client.stop()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_fatal_close_ends_start_with_error():
    transport = DummyTransport(auto_gateway=True)
    client = _client(_Handler(), transport)

    task = asyncio.create_task(client.start())
    assert await _wait_for(client.is_connected)
    transport.close_with(4915, "banned")

    with pytest.raises(FatalError):
        await asyncio.wait_for(task, timeout=1.0)
    assert client.session_info() is None
