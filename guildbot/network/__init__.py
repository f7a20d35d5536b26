"""Gateway networking: session state machine, socket wrapper and transports."""

from .backoff import Backoff
from .connection import Connection
from .session import DispatchFrame, Disconnect, DisconnectReason, GatewaySession
from .session_state import HeartbeatState, SessionInfo, SessionState, SessionTracker

__all__ = [
    "Backoff",
    "Connection",
    "Disconnect",
    "DisconnectReason",
    "DispatchFrame",
    "GatewaySession",
    "HeartbeatState",
    "SessionInfo",
    "SessionState",
    "SessionTracker",
]
