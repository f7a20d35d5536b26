"""Transport abstraction for the gateway socket."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BaseTransport(ABC):
    """Abstract WebSocket-like transport carrying JSON gateway frames.

    ``receive`` raises ``GatewayClosed`` when the peer closes the socket and
    ``ProtocolError`` for a frame that is not valid JSON; the socket stays usable
    after a protocol error.
    """

    @abstractmethod
    async def connect(self, url: str) -> None:
        ...

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def receive(self) -> Any:
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    def abort(self) -> None:
        """Drop the connection without a close handshake."""
