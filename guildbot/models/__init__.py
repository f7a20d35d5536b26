from .events import (
    C2CMessage,
    Channel,
    DirectMessage,
    EVENT_REGISTRY,
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
    User,
    decode_event,
)
from .gateway import (
    GatewayBotInfo,
    GatewayPayload,
    HelloPayload,
    IdentifyPayload,
    IdentifyProperties,
    OpCode,
    ReadyPayload,
    ResumePayload,
    SessionStartLimit,
)

__all__ = [
    "C2CMessage",
    "Channel",
    "DirectMessage",
    "EVENT_REGISTRY",
    "Event",
    "GatewayBotInfo",
    "GatewayPayload",
    "GroupMessage",
    "Guild",
    "HelloPayload",
    "IdentifyPayload",
    "IdentifyProperties",
    "Interaction",
    "Member",
    "Message",
    "MessageAudit",
    "MessageDelete",
    "OpCode",
    "Reaction",
    "Ready",
    "ReadyPayload",
    "ResumePayload",
    "Resumed",
    "SessionStartLimit",
    "UnknownEvent",
    "User",
    "decode_event",
]
