"""Async client for guild chat bot gateways and REST APIs."""

from guildbot.intents import Intents
from guildbot.errors import (
    ApiError,
    AuthenticationError,
    BotError,
    ErrorKind,
    EventDecodeError,
    FatalError,
    HandlerError,
    ProtocolError,
    RateLimitError,
    SessionInvalidError,
    TransportError,
)
from guildbot.config import BotSettings, get_settings
from guildbot.token import AppCredentials, CredentialProvider, StaticToken, credentials_from_settings
from guildbot.ratelimit import RateLimiter
from guildbot.http import HttpClient
from guildbot.api import BotApi, MessageParams
from guildbot.network import GatewaySession, SessionInfo, SessionState
from guildbot.dispatch import Context, EventDispatcher, EventHandler
from guildbot.client import Client

__version__ = "0.1.0"

__all__ = [
    "ApiError",
    "AppCredentials",
    "AuthenticationError",
    "BotApi",
    "BotError",
    "BotSettings",
    "Client",
    "Context",
    "CredentialProvider",
    "ErrorKind",
    "EventDecodeError",
    "EventDispatcher",
    "EventHandler",
    "FatalError",
    "GatewaySession",
    "HandlerError",
    "HttpClient",
    "Intents",
    "MessageParams",
    "ProtocolError",
    "RateLimitError",
    "RateLimiter",
    "SessionInfo",
    "SessionInvalidError",
    "SessionState",
    "StaticToken",
    "TransportError",
    "credentials_from_settings",
    "get_settings",
    "__version__",
]
