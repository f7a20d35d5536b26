"""Gateway transports."""

from __future__ import annotations

from guildbot.config import BotSettings

from .base import BaseTransport
from .dummy import DummyTransport
from .websocket import WebSocketTransport


def create_transport(settings: BotSettings) -> BaseTransport:
    """Build the transport selected by ``settings.transport``."""

    if settings.transport == "dummy":
        return DummyTransport(settings, auto_gateway=True)
    return WebSocketTransport(settings)


__all__ = ["BaseTransport", "DummyTransport", "WebSocketTransport", "create_transport"]
