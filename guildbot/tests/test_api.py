import pytest

from guildbot.api import BotApi, MessageParams
from guildbot.models.gateway import GatewayBotInfo


class _FakeHttp:
    def __init__(self, response=None) -> None:
        self.response = response
        self.calls = []

    async def get(self, path, *, params=None, bucket=None):
        self.calls.append(("GET", path, params))
        return self.response

    async def post(self, path, body=None, *, bucket=None):
        self.calls.append(("POST", path, body))
        return self.response

    async def delete(self, path, *, params=None, bucket=None):
        self.calls.append(("DELETE", path, params))
        return self.response


def test_message_params_builders_are_order_independent():
    first = MessageParams.text("hi").with_reply("m1").with_msg_seq(2)
    second = MessageParams(msg_seq=2).with_reply("m1").with_content("hi").with_msg_type(0)
    assert first == second
    assert first.to_body() == {"content": "hi", "msg_type": 0, "msg_id": "m1", "msg_seq": 2}


def test_message_params_reference():
    params = MessageParams().with_reference("m9").with_event_id("e1")
    assert params.to_body() == {
        "event_id": "e1",
        "message_reference": {"message_id": "m9", "ignore_get_message_error": True},
    }


@pytest.mark.asyncio
async def test_get_gateway_bot_parses_session_start_limit():
    http = _FakeHttp(
        {
            "url": "wss://api.sgroup.qq.com/websocket",
            "shards": 1,
            "session_start_limit": {"total": 1000, "remaining": 999, "reset_after": 86_400_000, "max_concurrency": 1},
        }
    )
    info = await BotApi(http).get_gateway_bot()

    assert isinstance(info, GatewayBotInfo)
    assert info.url == "wss://api.sgroup.qq.com/websocket"
    assert info.session_start_limit.remaining == 999
    assert http.calls == [("GET", "/gateway/bot", None)]


@pytest.mark.asyncio
async def test_post_routes():
    http = _FakeHttp({"id": "sent"})
    api = BotApi(http)
    params = MessageParams.text("hello")

    await api.post_message("c1", params)
    await api.post_group_message("G1", params)
    await api.post_c2c_message("U1", params)
    await api.post_dms("guild-1", params)

    assert [path for _, path, _ in http.calls] == [
        "/channels/c1/messages",
        "/v2/groups/G1/messages",
        "/v2/users/U1/messages",
        "/dms/guild-1/messages",
    ]
    assert all(body == {"content": "hello", "msg_type": 0} for _, _, body in http.calls)


@pytest.mark.asyncio
async def test_recall_message_hide_tip():
    http = _FakeHttp()
    api = BotApi(http)

    await api.recall_message("c1", "m1", hide_tip=True)
    await api.recall_message("c1", "m2")

    assert http.calls == [
        ("DELETE", "/channels/c1/messages/m1", {"hidetip": "true"}),
        ("DELETE", "/channels/c1/messages/m2", None),
    ]


@pytest.mark.asyncio
async def test_lookup_routes():
    http = _FakeHttp({"id": "x"})
    api = BotApi(http)

    assert await api.get_bot_info() == {"id": "x"}
    await api.get_guild("g1")
    await api.get_channel("c1")

    assert http.calls == [
        ("GET", "/users/@me", None),
        ("GET", "/guilds/g1", None),
        ("GET", "/channels/c1", None),
    ]
