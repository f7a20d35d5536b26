"""Gateway frame models (op/d/s/t envelope and control payloads)."""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class OpCode(enum.IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


class GatewayPayload(BaseModel):
    """A single decoded gateway frame."""

    model_config = ConfigDict(extra="ignore")

    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @property
    def opcode(self) -> Optional[OpCode]:
        try:
            return OpCode(self.op)
        except ValueError:
            return None

    @property
    def sequence(self) -> Optional[int]:
        return self.s

    @property
    def event_type(self) -> Optional[str]:
        return self.t


class HelloPayload(BaseModel):
    """Payload of the hello frame; ``heartbeat_interval`` is in milliseconds."""

    model_config = ConfigDict(extra="allow")

    heartbeat_interval: int = Field(gt=0)


class IdentifyProperties(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    os: str = Field(alias="$os")
    browser: str = Field(alias="$browser")
    device: str = Field(alias="$device")


class IdentifyPayload(BaseModel):
    token: str
    intents: int
    shard: list[int]
    properties: IdentifyProperties


class ResumePayload(BaseModel):
    token: str
    session_id: str
    seq: int


class ReadyUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    username: Optional[str] = None
    bot: Optional[bool] = None


class ReadyPayload(BaseModel):
    """Payload of the READY dispatch confirming identify."""

    model_config = ConfigDict(extra="allow")

    session_id: str
    version: Optional[int] = None
    user: Optional[ReadyUser] = None
    shard: Optional[list[int]] = None


class SessionStartLimit(BaseModel):
    model_config = ConfigDict(extra="allow")

    total: int
    remaining: int
    reset_after: int
    max_concurrency: int = 1


class GatewayBotInfo(BaseModel):
    """Response of ``GET /gateway/bot``."""

    model_config = ConfigDict(extra="allow")

    url: str
    shards: int = 1
    session_start_limit: Optional[SessionStartLimit] = None


def heartbeat_frame(sequence: Optional[int]) -> dict[str, Any]:
    return {"op": int(OpCode.HEARTBEAT), "d": sequence}


def identify_frame(payload: IdentifyPayload) -> dict[str, Any]:
    return {"op": int(OpCode.IDENTIFY), "d": payload.model_dump(by_alias=True)}


def resume_frame(payload: ResumePayload) -> dict[str, Any]:
    return {"op": int(OpCode.RESUME), "d": payload.model_dump()}
