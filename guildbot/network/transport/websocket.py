"""WebSocket transport implementation."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

from guildbot.config import BotSettings
from guildbot.errors import AuthenticationError, GatewayClosed, ProtocolError, TransportError
from guildbot.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)


class WebSocketTransport(BaseTransport):
    """WebSocket-based gateway transport."""

    def __init__(self, settings: Optional[BotSettings] = None) -> None:
        self._settings = settings
        self._ws: Any = None

    async def connect(self, url: str) -> None:
        LOGGER.info("Connecting to gateway WebSocket at %s", url)
        close_timeout = float(self._settings.close_timeout_seconds) if self._settings else 2.0
        try:
            self._ws = await websockets.connect(url, close_timeout=close_timeout, max_size=None)
        except InvalidHandshake as exc:
            status = getattr(exc, "status_code", None) or getattr(getattr(exc, "response", None), "status_code", None)
            if status in {401, 403}:
                raise AuthenticationError(f"Gateway rejected the connection ({status})") from exc
            raise TransportError(f"Gateway handshake failed: {exc}") from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Failed to connect to gateway: {exc}") from exc

    async def send(self, message: dict[str, Any]) -> None:
        if not self._ws:
            raise TransportError("WebSocket transport not connected")
        payload = json.dumps(message)
        LOGGER.debug("WebSocket send op=%s", message.get("op"))
        try:
            await self._ws.send(payload)
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"WebSocket send failed: {exc}") from exc

    async def receive(self) -> Any:
        if not self._ws:
            raise TransportError("WebSocket transport not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"WebSocket receive failed: {exc}") from exc
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        LOGGER.debug("WebSocket receive: %s", raw)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Gateway sent a non-JSON frame: {exc}") from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ws = self._ws
        if ws is None:
            return
        LOGGER.info("Closing WebSocket transport (code=%s)", code)
        try:
            await ws.close(code=code, reason=reason)
        except (OSError, WebSocketException):
            LOGGER.debug("Suppress WebSocket close error", exc_info=True)
        # abort() needs the socket until the close handshake finishes.
        self._ws = None

    def abort(self) -> None:
        ws = self._ws
        self._ws = None
        transport = getattr(ws, "transport", None)
        if transport is not None:
            transport.abort()

    @staticmethod
    def _closed_error(exc: ConnectionClosed) -> GatewayClosed:
        frame = exc.rcvd
        code = frame.code if frame is not None else None
        reason = frame.reason if frame is not None else ""
        return GatewayClosed(f"Gateway closed the connection (code={code})", code=code, reason=reason)
