import asyncio

import pytest

from guildbot.dispatch import Context, EventDispatcher, EventHandler
from guildbot.errors import EventDecodeError, HandlerError
from guildbot.models.events import C2CMessage, Guild, GroupMessage, Message, UnknownEvent
from guildbot.network.session import DispatchFrame
from guildbot.network.session_state import SessionInfo, SessionState
from guildbot.token import StaticToken

_INFO = SessionInfo(
    state=SessionState.CONNECTED,
    session_id="abc",
    sequence=1,
    shard_id=0,
    shard_count=1,
)


def _frame(event_type: str, data, seq: int = 1) -> DispatchFrame:
    return DispatchFrame(event_type=event_type, data=data, sequence=seq, session=_INFO)


def _context(frame: DispatchFrame, api=None) -> Context:
    return Context(
        api=api,
        credentials=StaticToken("T1"),
        session=frame.session,
        sequence=frame.sequence,
        event_type=frame.event_type,
    )


class _RecordingHandler(EventHandler):
    def __init__(self) -> None:
        self.calls = []
        self.errors = []

    async def on_message_create(self, event, ctx):
        self.calls.append(("message", event.id, ctx.sequence))
        if event.content == "boom":
            raise ValueError("handler exploded")
        if event.content == "fail":
            return RuntimeError("handler reported failure")
        return None

    async def on_guild_create(self, event, ctx):
        self.calls.append(("guild", event.id, ctx.sequence))

    async def on_unknown_event(self, event, ctx):
        self.calls.append(("unknown", event.event_type, ctx.sequence))

    async def on_error(self, error):
        self.errors.append(error)


async def _frames(*frames):
    for frame in frames:
        yield frame


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_later_events():
    handler = _RecordingHandler()
    dispatcher = EventDispatcher(handler, context_factory=_context)

    await dispatcher.run(
        _frames(
            _frame("AT_MESSAGE_CREATE", {"id": "m1", "content": "boom"}, seq=2),
            _frame("AT_MESSAGE_CREATE", {"id": "m2", "content": "hello"}, seq=3),
            _frame("GUILD_CREATE", {"id": "g1"}, seq=4),
        )
    )

    assert handler.calls == [("message", "m1", 2), ("message", "m2", 3), ("guild", "g1", 4)]
    assert len(handler.errors) == 1
    error = handler.errors[0]
    assert isinstance(error, HandlerError)
    assert error.event_type == "AT_MESSAGE_CREATE"
    assert isinstance(error.original, ValueError)
    assert error.__cause__ is error.original


@pytest.mark.asyncio
async def test_returned_exception_is_reported():
    handler = _RecordingHandler()
    dispatcher = EventDispatcher(handler, context_factory=_context)

    await dispatcher.dispatch(_frame("MESSAGE_CREATE", {"id": "m1", "content": "fail"}))

    assert len(handler.errors) == 1
    assert isinstance(handler.errors[0].original, RuntimeError)


@pytest.mark.asyncio
async def test_unknown_event_goes_to_catch_all_and_processing_continues():
    handler = _RecordingHandler()
    dispatcher = EventDispatcher(handler, context_factory=_context)

    await dispatcher.run(
        _frames(
            _frame("unknown_future_event", {"x": 1}, seq=5),
            _frame("GUILD_CREATE", {"id": "g1"}, seq=6),
        )
    )

    assert handler.calls == [("unknown", "unknown_future_event", 5), ("guild", "g1", 6)]
    assert handler.errors == []


@pytest.mark.asyncio
async def test_undecodable_payload_is_reported_and_skipped():
    handler = _RecordingHandler()
    dispatcher = EventDispatcher(handler, context_factory=_context)

    await dispatcher.run(
        _frames(
            _frame("AT_MESSAGE_CREATE", {"content": "missing id"}, seq=7),
            _frame("AT_MESSAGE_CREATE", "not an object", seq=8),
            _frame("GUILD_CREATE", {"id": "g1"}, seq=9),
        )
    )

    assert handler.calls == [("guild", "g1", 9)]
    assert [type(error) for error in handler.errors] == [EventDecodeError, EventDecodeError]
    assert handler.errors[1].payload == "not an object"


@pytest.mark.asyncio
async def test_missing_handler_method_is_ignored():
    class _Bare:
        def __init__(self) -> None:
            self.errors = []

        def on_error(self, error):
            self.errors.append(error)

    handler = _Bare()
    dispatcher = EventDispatcher(handler, context_factory=_context)
    await dispatcher.dispatch(_frame("GUILD_CREATE", {"id": "g1"}))
    assert handler.errors == []


@pytest.mark.asyncio
async def test_sync_handlers_are_supported():
    seen = []

    class _SyncHandler:
        def on_guild_create(self, event, ctx):
            seen.append(event)

    dispatcher = EventDispatcher(_SyncHandler(), context_factory=_context)
    await dispatcher.dispatch(_frame("GUILD_CREATE", {"id": "g1", "name": "guild"}))

    assert isinstance(seen[0], Guild)
    assert seen[0].name == "guild"


@pytest.mark.asyncio
async def test_concurrent_mode_runs_handlers_in_parallel():
    release = asyncio.Event()
    finished = []

    class _BlockingHandler(EventHandler):
        async def on_guild_create(self, event, ctx):
            await release.wait()
            finished.append(event.id)

        async def on_guild_update(self, event, ctx):
            release.set()
            finished.append(event.id)

    dispatcher = EventDispatcher(_BlockingHandler(), context_factory=_context, mode="concurrent")
    await dispatcher.dispatch(_frame("GUILD_CREATE", {"id": "first"}))
    await dispatcher.dispatch(_frame("GUILD_UPDATE", {"id": "second"}))
    assert dispatcher.inflight() >= 1

    await dispatcher.wait_inflight(timeout=1.0)
    assert finished == ["second", "first"]
    assert dispatcher.inflight() == 0


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        EventDispatcher(EventHandler(), context_factory=_context, mode="parallel")


class _FakeApi:
    def __init__(self) -> None:
        self.calls = []

    async def post_message(self, channel_id, params):
        self.calls.append(("channel", channel_id, params))
        return {"id": "r1"}

    async def post_dms(self, guild_id, params):
        self.calls.append(("dms", guild_id, params))
        return {"id": "r2"}

    async def post_group_message(self, group_openid, params):
        self.calls.append(("group", group_openid, params))
        return {"id": "r3"}

    async def post_c2c_message(self, openid, params):
        self.calls.append(("c2c", openid, params))
        return {"id": "r4"}


@pytest.mark.asyncio
async def test_context_reply_targets_the_source_surface():
    api = _FakeApi()
    ctx = _context(_frame("AT_MESSAGE_CREATE", {}), api=api)

    await ctx.reply(Message(id="m1", channel_id="c1"), "pong")
    await ctx.reply(GroupMessage(id="m2", group_openid="G1"), "pong")
    await ctx.reply(C2CMessage(id="m3", author={"user_openid": "U1"}), "pong")

    assert [(surface, target) for surface, target, _ in api.calls] == [
        ("channel", "c1"),
        ("group", "G1"),
        ("c2c", "U1"),
    ]
    params = api.calls[0][2]
    assert params.to_body() == {"content": "pong", "msg_type": 0, "msg_id": "m1"}


@pytest.mark.asyncio
async def test_context_reply_rejects_non_messages():
    ctx = _context(_frame("GUILD_CREATE", {}), api=_FakeApi())
    with pytest.raises(TypeError):
        await ctx.reply(Guild(id="g1"), "pong")
    with pytest.raises(ValueError):
        await ctx.reply(Message(id="m1"), "pong")


@pytest.mark.asyncio
async def test_context_authorization_uses_credentials():
    ctx = _context(_frame("READY", {}))
    assert await ctx.authorization() == "T1"


def test_unknown_event_keeps_raw_payload():
    event = UnknownEvent(event_type="X", data={"a": 1})
    assert event.data == {"a": 1}
