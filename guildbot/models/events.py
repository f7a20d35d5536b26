"""Typed gateway events and the event-type registry used by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from guildbot.errors import EventDecodeError


class Event(BaseModel):
    """Base for every dispatched event; unknown fields are preserved."""

    model_config = ConfigDict(frozen=True, extra="allow")


class User(Event):
    id: Optional[str] = None
    username: Optional[str] = None
    avatar: Optional[str] = None
    bot: Optional[bool] = None
    member_openid: Optional[str] = None
    user_openid: Optional[str] = None


class MessageMember(Event):
    nick: Optional[str] = None
    roles: Optional[list[str]] = None
    joined_at: Optional[str] = None


class MessageReference(Event):
    message_id: Optional[str] = None


class Attachment(Event):
    id: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class Ready(Event):
    session_id: str
    version: Optional[int] = None
    user: Optional[User] = None
    shard: Optional[list[int]] = None


class Resumed(Event):
    pass


class Message(Event):
    """Guild channel message (``AT_MESSAGE_CREATE``/``MESSAGE_CREATE``)."""

    id: str
    content: Optional[str] = None
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None
    author: Optional[User] = None
    member: Optional[MessageMember] = None
    message_reference: Optional[MessageReference] = None
    mentions: list[User] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    seq: Optional[int] = None
    seq_in_channel: Optional[str] = None
    timestamp: Optional[str] = None
    event_id: Optional[str] = None


class DirectMessage(Message):
    direct_message: Optional[bool] = None
    src_guild_id: Optional[str] = None


class GroupMessage(Event):
    id: str
    content: Optional[str] = None
    group_openid: Optional[str] = None
    author: Optional[User] = None
    message_reference: Optional[MessageReference] = None
    mentions: list[User] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    msg_seq: Optional[int] = None
    timestamp: Optional[str] = None
    event_id: Optional[str] = None


class C2CMessage(Event):
    id: str
    content: Optional[str] = None
    author: Optional[User] = None
    message_reference: Optional[MessageReference] = None
    mentions: list[User] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    msg_seq: Optional[int] = None
    timestamp: Optional[str] = None
    event_id: Optional[str] = None


class MessageDelete(Event):
    message: dict[str, Any]
    op_user: Optional[User] = None


class Guild(Event):
    id: str
    name: Optional[str] = None
    icon: Optional[str] = None
    owner_id: Optional[str] = None
    owner: Optional[bool] = None
    member_count: Optional[int] = None
    max_members: Optional[int] = None
    description: Optional[str] = None
    joined_at: Optional[str] = None
    op_user_id: Optional[str] = None


class Channel(Event):
    id: str
    guild_id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[int] = None
    sub_type: Optional[int] = None
    position: Optional[int] = None
    parent_id: Optional[str] = None
    owner_id: Optional[str] = None
    op_user_id: Optional[str] = None


class Member(Event):
    guild_id: str
    user: Optional[User] = None
    nick: Optional[str] = None
    roles: Optional[list[str]] = None
    joined_at: Optional[str] = None
    op_user_id: Optional[str] = None


class MessageAudit(Event):
    audit_id: str
    message_id: Optional[str] = None
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None
    audit_time: Optional[str] = None
    create_time: Optional[str] = None
    seq_in_channel: Optional[str] = None


class Reaction(Event):
    user_id: str
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    target: Optional[dict[str, Any]] = None
    emoji: Optional[dict[str, Any]] = None


class Interaction(Event):
    id: str
    type: Optional[int] = None
    chat_type: Optional[int] = None
    data: Optional[dict[str, Any]] = None
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    group_openid: Optional[str] = None
    user_openid: Optional[str] = None
    application_id: Optional[str] = None
    version: Optional[int] = None


class UnknownEvent(Event):
    """Fallback for event types this library does not know yet."""

    event_type: str
    data: Any = None


@dataclass(frozen=True)
class EventRoute:
    model: type[Event]
    handler: str


EVENT_REGISTRY: dict[str, EventRoute] = {
    "READY": EventRoute(Ready, "on_ready"),
    "RESUMED": EventRoute(Resumed, "on_resumed"),
    "AT_MESSAGE_CREATE": EventRoute(Message, "on_message_create"),
    "MESSAGE_CREATE": EventRoute(Message, "on_message_create"),
    "DIRECT_MESSAGE_CREATE": EventRoute(DirectMessage, "on_direct_message_create"),
    "GROUP_AT_MESSAGE_CREATE": EventRoute(GroupMessage, "on_group_message_create"),
    "C2C_MESSAGE_CREATE": EventRoute(C2CMessage, "on_c2c_message_create"),
    "MESSAGE_DELETE": EventRoute(MessageDelete, "on_message_delete"),
    "PUBLIC_MESSAGE_DELETE": EventRoute(MessageDelete, "on_message_delete"),
    "DIRECT_MESSAGE_DELETE": EventRoute(MessageDelete, "on_message_delete"),
    "GUILD_CREATE": EventRoute(Guild, "on_guild_create"),
    "GUILD_UPDATE": EventRoute(Guild, "on_guild_update"),
    "GUILD_DELETE": EventRoute(Guild, "on_guild_delete"),
    "CHANNEL_CREATE": EventRoute(Channel, "on_channel_create"),
    "CHANNEL_UPDATE": EventRoute(Channel, "on_channel_update"),
    "CHANNEL_DELETE": EventRoute(Channel, "on_channel_delete"),
    "GUILD_MEMBER_ADD": EventRoute(Member, "on_guild_member_add"),
    "GUILD_MEMBER_UPDATE": EventRoute(Member, "on_guild_member_update"),
    "GUILD_MEMBER_REMOVE": EventRoute(Member, "on_guild_member_remove"),
    "MESSAGE_AUDIT_PASS": EventRoute(MessageAudit, "on_message_audit_pass"),
    "MESSAGE_AUDIT_REJECT": EventRoute(MessageAudit, "on_message_audit_reject"),
    "MESSAGE_REACTION_ADD": EventRoute(Reaction, "on_message_reaction_add"),
    "MESSAGE_REACTION_REMOVE": EventRoute(Reaction, "on_message_reaction_remove"),
    "INTERACTION_CREATE": EventRoute(Interaction, "on_interaction_create"),
}

UNKNOWN_HANDLER = "on_unknown_event"


def decode_event(event_type: Optional[str], data: Any) -> tuple[Event, str]:
    """Decode a dispatch payload into its typed event and handler method name."""

    route = EVENT_REGISTRY.get(event_type or "")
    if route is None:
        return UnknownEvent(event_type=event_type or "", data=data), UNKNOWN_HANDLER
    if route.model is Resumed:
        return Resumed(), route.handler
    if not isinstance(data, dict):
        raise EventDecodeError(
            f"{event_type} payload must be an object, got {type(data).__name__}",
            event_type=event_type,
            payload=data,
        )
    try:
        return route.model.model_validate(data), route.handler
    except ValidationError as exc:
        raise EventDecodeError(
            f"Failed to decode {event_type}: {exc.error_count()} validation error(s)",
            event_type=event_type,
            payload=data,
        ) from exc


__all__ = [
    "Attachment",
    "C2CMessage",
    "Channel",
    "DirectMessage",
    "EVENT_REGISTRY",
    "Event",
    "EventRoute",
    "GroupMessage",
    "Guild",
    "Interaction",
    "Member",
    "Message",
    "MessageAudit",
    "MessageDelete",
    "MessageMember",
    "MessageReference",
    "Reaction",
    "Ready",
    "Resumed",
    "UNKNOWN_HANDLER",
    "UnknownEvent",
    "User",
    "decode_event",
]
