"""In-memory transport for offline runs and tests."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from guildbot.errors import GatewayClosed, TransportError
from guildbot.models.gateway import OpCode
from guildbot.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)

Responder = Callable[["DummyTransport", dict[str, Any]], Optional[Awaitable[None]]]


@dataclass(frozen=True)
class _Close:
    code: int
    reason: str = ""


class DummyTransport(BaseTransport):
    """Scripted gateway peer.

    Frames passed to ``feed`` are returned by ``receive`` in order; ``close_with``
    makes the next ``receive`` raise ``GatewayClosed``. Every frame the client
    sends is recorded in ``sent``. With ``auto_gateway`` enabled the transport
    behaves like a minimal gateway: hello on connect, READY for identify,
    RESUMED for resume and an ack for every heartbeat.
    """

    def __init__(
        self,
        settings: Any = None,
        *,
        auto_gateway: bool = False,
        heartbeat_interval_ms: int = 45_000,
        session_id: str = "dummy-session",
        ack_heartbeats: bool = True,
        responder: Optional[Responder] = None,
    ) -> None:
        self._settings = settings
        self.auto_gateway = auto_gateway
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.session_id = session_id
        self.ack_heartbeats = ack_heartbeats
        self.responder = responder
        self.inbound: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.url: Optional[str] = None
        self.connected = False
        self.connect_count = 0
        self.close_code: Optional[int] = None
        self.aborted = False
        self._sequence = 0

    async def connect(self, url: str) -> None:
        LOGGER.debug("Dummy transport connect(%s)", url)
        self.url = url
        self.connected = True
        self.connect_count += 1
        self.close_code = None
        self.aborted = False
        if self.auto_gateway:
            # Frames left over from a dropped socket never reach the new one.
            while not self.inbound.empty():
                self.inbound.get_nowait()
            self.feed({"op": int(OpCode.HELLO), "d": {"heartbeat_interval": self.heartbeat_interval_ms}})

    def feed(self, frame: Any) -> None:
        self.inbound.put_nowait(frame)

    def dispatch(self, event_type: str, data: Any, *, seq: Optional[int] = None) -> int:
        """Queue a dispatch frame, numbering it after the last one when ``seq`` is omitted."""

        self._sequence = seq if seq is not None else self._sequence + 1
        self.feed({"op": int(OpCode.DISPATCH), "s": self._sequence, "t": event_type, "d": data})
        return self._sequence

    def close_with(self, code: int, reason: str = "") -> None:
        self.inbound.put_nowait(_Close(code, reason))

    def fail_with(self, exc: BaseException) -> None:
        self.inbound.put_nowait(exc)

    def sent_ops(self) -> list[int]:
        return [int(message.get("op", -1)) for message in self.sent]

    async def send(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise TransportError("Dummy transport not connected")
        LOGGER.debug("Dummy transport send(): op=%s", message.get("op"))
        self.sent.append(message)
        if self.auto_gateway:
            self._auto_respond(message)
        if self.responder is not None:
            result = self.responder(self, message)
            if inspect.isawaitable(result):
                await result

    async def receive(self) -> Any:
        item = await self.inbound.get()
        if isinstance(item, _Close):
            self.connected = False
            raise GatewayClosed(f"Dummy gateway closed (code={item.code})", code=item.code, reason=item.reason)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        LOGGER.debug("Dummy transport close(%s)", code)
        self.connected = False
        self.close_code = code

    def abort(self) -> None:
        self.connected = False
        self.aborted = True

    def _auto_respond(self, message: dict[str, Any]) -> None:
        op = message.get("op")
        if op == OpCode.HEARTBEAT:
            if self.ack_heartbeats:
                self.feed({"op": int(OpCode.HEARTBEAT_ACK)})
        elif op == OpCode.IDENTIFY:
            shard = (message.get("d") or {}).get("shard") or [0, 1]
            self.dispatch(
                "READY",
                {
                    "version": 1,
                    "session_id": self.session_id,
                    "user": {"id": "0", "username": "dummy-bot", "bot": True},
                    "shard": shard,
                },
            )
        elif op == OpCode.RESUME:
            self.dispatch("RESUMED", "")
