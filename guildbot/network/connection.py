"""Connection wrapper that owns one gateway socket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from guildbot.errors import AuthenticationError, BotError, ProtocolError, RequestTimeoutError, TransportError
from guildbot.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)


class Connection:
    """Opens, uses and closes a single transport; never reconnects by itself."""

    def __init__(self, transport: BaseTransport, *, close_timeout: float = 2.0) -> None:
        self._transport = transport
        self._close_timeout = close_timeout
        self._send_lock = asyncio.Lock()
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    async def open(self, url: str) -> None:
        try:
            await self._transport.connect(url)
        except BotError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._classify_error(exc) from exc
        self._open = True

    async def send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            if not self.is_open:
                raise TransportError("Gateway connection is not open")
            try:
                await self._transport.send(message)
            except BotError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise self._classify_error(exc) from exc

    async def receive(self) -> Any:
        if not self.is_open:
            raise TransportError("Gateway connection is not open")
        try:
            return await self._transport.receive()
        except BotError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._classify_error(exc) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Send a close frame, aborting the socket if the peer does not answer in time."""

        if self._closed:
            return
        self._closed = True
        if not self._open:
            return
        try:
            await asyncio.wait_for(self._transport.close(code, reason), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Gateway close handshake timed out after %.1fs; aborting socket", self._close_timeout)
            self.abort()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport close error", exc_info=True)
            self.abort()

    def abort(self) -> None:
        self._closed = True
        try:
            self._transport.abort()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport abort error", exc_info=True)

    @staticmethod
    def _classify_error(exc: Exception) -> BotError:
        status_code = getattr(exc, "status_code", None)
        if status_code is None:
            status_code = getattr(exc, "code", None)
        if status_code in {401, 403}:
            return AuthenticationError(str(exc))
        if status_code in {400, 404, 426}:
            return ProtocolError(str(exc))
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return RequestTimeoutError(str(exc) or "Gateway operation timed out")
        message = str(exc).lower()
        if any(token in message for token in ("unauthorized", "forbidden", "invalid token")):
            return AuthenticationError(str(exc))
        if any(token in message for token in ("timeout", "timed out")):
            return RequestTimeoutError(str(exc))
        return TransportError(str(exc))
