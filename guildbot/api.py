"""Thin REST helpers used by the gateway client and event handlers."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from guildbot.http import HttpClient
from guildbot.models.gateway import GatewayBotInfo

LOGGER = logging.getLogger(__name__)


class MessageParams(BaseModel):
    """Parameters for an outbound message; unset fields are omitted from the request."""

    model_config = ConfigDict(frozen=True)

    content: Optional[str] = None
    msg_type: Optional[int] = None
    msg_id: Optional[str] = None
    event_id: Optional[str] = None
    msg_seq: Optional[int] = None
    message_reference: Optional[dict[str, Any]] = None

    @classmethod
    def text(cls, content: str) -> MessageParams:
        return cls(content=content, msg_type=0)

    def with_content(self, content: str) -> MessageParams:
        return self.model_copy(update={"content": content})

    def with_msg_type(self, msg_type: int) -> MessageParams:
        return self.model_copy(update={"msg_type": msg_type})

    def with_reply(self, msg_id: str) -> MessageParams:
        return self.model_copy(update={"msg_id": msg_id})

    def with_event_id(self, event_id: str) -> MessageParams:
        return self.model_copy(update={"event_id": event_id})

    def with_msg_seq(self, msg_seq: int) -> MessageParams:
        return self.model_copy(update={"msg_seq": msg_seq})

    def with_reference(self, message_id: str, *, ignore_error: bool = True) -> MessageParams:
        reference = {"message_id": message_id, "ignore_get_message_error": ignore_error}
        return self.model_copy(update={"message_reference": reference})

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BotApi:
    """Small set of REST calls; anything else goes through ``HttpClient.call``."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    @property
    def http(self) -> HttpClient:
        return self._http

    async def get_bot_info(self) -> dict[str, Any]:
        return await self._http.get("/users/@me")

    async def get_gateway_bot(self) -> GatewayBotInfo:
        data = await self._http.get("/gateway/bot")
        return GatewayBotInfo.model_validate(data)

    async def post_message(self, channel_id: str, params: MessageParams) -> dict[str, Any]:
        LOGGER.debug("Posting message to channel %s", channel_id)
        return await self._http.post(f"/channels/{channel_id}/messages", params.to_body())

    async def post_group_message(self, group_openid: str, params: MessageParams) -> dict[str, Any]:
        return await self._http.post(f"/v2/groups/{group_openid}/messages", params.to_body())

    async def post_c2c_message(self, openid: str, params: MessageParams) -> dict[str, Any]:
        return await self._http.post(f"/v2/users/{openid}/messages", params.to_body())

    async def post_dms(self, guild_id: str, params: MessageParams) -> dict[str, Any]:
        return await self._http.post(f"/dms/{guild_id}/messages", params.to_body())

    async def recall_message(self, channel_id: str, message_id: str, *, hide_tip: Optional[bool] = None) -> None:
        params: Optional[dict[str, object]] = None
        if hide_tip is not None:
            params = {"hidetip": "true" if hide_tip else "false"}
        await self._http.delete(f"/channels/{channel_id}/messages/{message_id}", params=params)

    async def get_guild(self, guild_id: str) -> dict[str, Any]:
        return await self._http.get(f"/guilds/{guild_id}")

    async def get_channel(self, channel_id: str) -> dict[str, Any]:
        return await self._http.get(f"/channels/{channel_id}")


__all__ = ["BotApi", "MessageParams"]
