"""Event dispatcher: decodes dispatch frames and invokes user handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from guildbot.api import BotApi, MessageParams
from guildbot.errors import EventDecodeError, HandlerError
from guildbot.http import HttpClient
from guildbot.models.events import (
    C2CMessage,
    Channel,
    DirectMessage,
    Event,
    GroupMessage,
    Guild,
    Interaction,
    Member,
    Message,
    MessageAudit,
    MessageDelete,
    Reaction,
    Ready,
    Resumed,
    UnknownEvent,
    decode_event,
)
from guildbot.network.session import DispatchFrame
from guildbot.network.session_state import SessionInfo
from guildbot.token import CredentialProvider

LOGGER = logging.getLogger(__name__)

DispatchMode = Literal["sequential", "concurrent"]


@dataclass(frozen=True)
class Context:
    """Per-event bundle handed to handlers alongside the event."""

    api: BotApi
    credentials: CredentialProvider
    session: SessionInfo
    sequence: Optional[int] = None
    event_type: Optional[str] = None

    @property
    def http(self) -> HttpClient:
        return self.api.http

    async def authorization(self) -> str:
        return await self.credentials.authorization_header()

    async def reply(self, event: Event, content: Union[str, MessageParams]) -> dict[str, Any]:
        """Answer a message event on the surface it arrived from."""

        params = MessageParams.text(content) if isinstance(content, str) else content
        message_id = getattr(event, "id", None)
        if message_id and params.msg_id is None:
            params = params.with_reply(message_id)
        if isinstance(event, DirectMessage):
            if not event.guild_id:
                raise ValueError("Direct message has no guild_id to reply to")
            return await self.api.post_dms(event.guild_id, params)
        if isinstance(event, Message):
            if not event.channel_id:
                raise ValueError("Message has no channel_id to reply to")
            return await self.api.post_message(event.channel_id, params)
        if isinstance(event, GroupMessage):
            if not event.group_openid:
                raise ValueError("Group message has no group_openid to reply to")
            return await self.api.post_group_message(event.group_openid, params)
        if isinstance(event, C2CMessage):
            openid = event.author.user_openid if event.author else None
            if not openid:
                raise ValueError("C2C message has no author openid to reply to")
            return await self.api.post_c2c_message(openid, params)
        raise TypeError(f"Cannot reply to {type(event).__name__}")


class EventHandler:
    """Base class for bot handlers; override the ``on_*`` methods you need.

    Methods may be coroutines or plain functions. Raising, or returning an
    ``Exception`` instance, routes the failure to ``on_error``.
    """

    async def on_ready(self, event: Ready, ctx: Context) -> Any:
        return None

    async def on_resumed(self, event: Resumed, ctx: Context) -> Any:
        return None

    async def on_message_create(self, event: Message, ctx: Context) -> Any:
        return None

    async def on_direct_message_create(self, event: DirectMessage, ctx: Context) -> Any:
        return None

    async def on_group_message_create(self, event: GroupMessage, ctx: Context) -> Any:
        return None

    async def on_c2c_message_create(self, event: C2CMessage, ctx: Context) -> Any:
        return None

    async def on_message_delete(self, event: MessageDelete, ctx: Context) -> Any:
        return None

    async def on_guild_create(self, event: Guild, ctx: Context) -> Any:
        return None

    async def on_guild_update(self, event: Guild, ctx: Context) -> Any:
        return None

    async def on_guild_delete(self, event: Guild, ctx: Context) -> Any:
        return None

    async def on_channel_create(self, event: Channel, ctx: Context) -> Any:
        return None

    async def on_channel_update(self, event: Channel, ctx: Context) -> Any:
        return None

    async def on_channel_delete(self, event: Channel, ctx: Context) -> Any:
        return None

    async def on_guild_member_add(self, event: Member, ctx: Context) -> Any:
        return None

    async def on_guild_member_update(self, event: Member, ctx: Context) -> Any:
        return None

    async def on_guild_member_remove(self, event: Member, ctx: Context) -> Any:
        return None

    async def on_message_audit_pass(self, event: MessageAudit, ctx: Context) -> Any:
        return None

    async def on_message_audit_reject(self, event: MessageAudit, ctx: Context) -> Any:
        return None

    async def on_message_reaction_add(self, event: Reaction, ctx: Context) -> Any:
        return None

    async def on_message_reaction_remove(self, event: Reaction, ctx: Context) -> Any:
        return None

    async def on_interaction_create(self, event: Interaction, ctx: Context) -> Any:
        return None

    async def on_unknown_event(self, event: UnknownEvent, ctx: Context) -> Any:
        LOGGER.debug("Unhandled event type %s", event.event_type)
        return None

    async def on_error(self, error: BaseException) -> None:
        """Default error hook; logs and carries on."""

        LOGGER.error("Ignoring exception in event dispatch: %s", error, exc_info=error)


class EventDispatcher:
    """Routes dispatch frames to exactly one handler method each.

    In ``sequential`` mode handlers run one at a time in arrival order. In
    ``concurrent`` mode each handler runs in its own task and ordering across
    events is not guaranteed.
    """

    def __init__(
        self,
        handler: Any,
        *,
        context_factory: Callable[[DispatchFrame], Context],
        mode: DispatchMode = "sequential",
    ) -> None:
        if mode not in {"sequential", "concurrent"}:
            raise ValueError(f"Unknown dispatch mode: {mode}")
        self._handler = handler
        self._context_factory = context_factory
        self._mode = mode
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def mode(self) -> DispatchMode:
        return self._mode

    def inflight(self) -> int:
        return len(self._tasks)

    async def run(self, frames: AsyncIterator[DispatchFrame]) -> None:
        async for frame in frames:
            await self.dispatch(frame)

    async def dispatch(self, frame: DispatchFrame) -> None:
        try:
            event, method_name = decode_event(frame.event_type, frame.data)
        except EventDecodeError as exc:
            LOGGER.warning("Skipping undecodable %s frame (seq=%s): %s", frame.event_type, frame.sequence, exc)
            await self.report_error(exc)
            return

        method = getattr(self._handler, method_name, None)
        if method is None:
            LOGGER.debug("No handler method %s for %s", method_name, frame.event_type)
            return
        ctx = self._context_factory(frame)
        if self._mode == "concurrent":
            task = asyncio.create_task(
                self._invoke(method, event, ctx, frame.event_type),
                name=f"guildbot-handler-{method_name}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        await self._invoke(method, event, ctx, frame.event_type)

    async def wait_inflight(self, timeout: Optional[float] = None) -> None:
        """Wait for concurrent handlers to finish; they are never cancelled here."""

        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            LOGGER.warning("%s handler task(s) still running after %.1fs", len(pending), timeout or 0)

    async def report_error(self, error: BaseException) -> None:
        hook = getattr(self._handler, "on_error", None)
        if hook is None:
            LOGGER.error("Unhandled bot error: %s", error, exc_info=error)
            return
        try:
            result = hook(error)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error hook failed while handling %s", error)

    async def _invoke(self, method: Callable[..., Any], event: Event, ctx: Context, event_type: Optional[str]) -> None:
        name = getattr(method, "__name__", repr(method))
        try:
            result = method(event, ctx)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            error = HandlerError(f"Handler {name} failed for {event_type}: {exc}", event_type=event_type, original=exc)
            error.__cause__ = exc
            await self.report_error(error)
            return
        if isinstance(result, BaseException):
            error = HandlerError(
                f"Handler {name} returned an error for {event_type}: {result}",
                event_type=event_type,
                original=result,
            )
            error.__cause__ = result
            await self.report_error(error)


__all__ = ["Context", "DispatchMode", "EventDispatcher", "EventHandler"]
