"""Credential providers producing the authorization header for gateway and REST calls."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import requests

from guildbot.config import BotSettings
from guildbot.errors import AuthenticationError, RequestTimeoutError, TransportError, error_from_status

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://bots.qq.com/app/getAppAccessToken"
TOKEN_SCHEME = "QQBot"
CREDENTIAL_REJECTED_STATUSES = frozenset({400, 401, 403})


class CredentialProvider(ABC):
    """Produces a bearer string on demand."""

    can_refresh: bool = False

    @abstractmethod
    async def current_bearer_token(self) -> str:
        """Return the raw token, refreshing it first when necessary."""

    async def authorization_header(self) -> str:
        return await self.current_bearer_token()

    def invalidate(self) -> None:
        """Drop any cached token so the next call fetches a fresh one."""


class StaticToken(CredentialProvider):
    """Pre-issued bearer string used verbatim; cannot be refreshed."""

    def __init__(self, token: str) -> None:
        if not token:
            raise AuthenticationError("Static bot token must not be empty")
        self._token = token

    async def current_bearer_token(self) -> str:
        return self._token

    def __repr__(self) -> str:
        return "StaticToken(token=***)"


class AppCredentials(CredentialProvider):
    """Exchanges an app id/secret pair for short-lived access tokens."""

    can_refresh = True

    def __init__(
        self,
        app_id: str,
        secret: str,
        *,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: float = 20.0,
        refresh_margin: float = 60.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id
        self._secret = secret
        self._token_url = token_url
        self._timeout = timeout
        self._refresh_margin = refresh_margin
        self._session = session
        self._clock = clock
        self._access_token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: BotSettings, **kwargs: Any) -> AppCredentials:
        if not settings.app_id or not settings.client_secret:
            raise AuthenticationError("app_id and client_secret must be configured")
        return cls(
            settings.app_id,
            settings.client_secret,
            token_url=str(settings.token_url),
            timeout=float(settings.http_timeout_seconds),
            refresh_margin=float(settings.token_refresh_margin_seconds),
            **kwargs,
        )

    def validate(self) -> None:
        if not self.app_id or not self.app_id.strip():
            raise AuthenticationError("App ID cannot be empty")
        if not self._secret or not self._secret.strip():
            raise AuthenticationError("Secret cannot be empty")

    def safe_display(self) -> str:
        secret = self._secret or ""
        masked = f"{secret[:4]}****" if len(secret) > 4 else "****"
        return f"AppCredentials(app_id={self.app_id}, secret={masked})"

    def __repr__(self) -> str:
        return self.safe_display()

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at

    def _is_fresh(self) -> bool:
        if self._access_token is None or self._expires_at is None:
            return False
        return self._clock() < self._expires_at - self._refresh_margin

    async def current_bearer_token(self) -> str:
        if self._is_fresh():
            assert self._access_token is not None
            return self._access_token
        async with self._lock:
            # Another caller may have refreshed while we waited for the lock.
            if not self._is_fresh():
                await self._refresh()
            assert self._access_token is not None
            return self._access_token

    async def authorization_header(self) -> str:
        token = await self.current_bearer_token()
        return f"{TOKEN_SCHEME} {token}"

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = None

    async def _refresh(self) -> None:
        self.validate()
        LOGGER.debug("Requesting access token for app %s", self.app_id)
        requested_at = self._clock()
        body = await asyncio.to_thread(self._request_token)
        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthenticationError("No access_token in token response")
        try:
            expires_in = int(body.get("expires_in"))
        except (TypeError, ValueError) as exc:
            raise AuthenticationError("No expires_in in token response") from exc
        self._access_token = access_token
        self._expires_at = requested_at + expires_in
        LOGGER.info("Access token refreshed for app %s (expires in %ss)", self.app_id, expires_in)

    def _request_token(self) -> dict[str, Any]:
        payload = {"appId": self.app_id, "clientSecret": self._secret}
        sender = self._session or requests
        try:
            response = sender.post(self._token_url, json=payload, timeout=self._timeout)
        except requests.Timeout as exc:
            raise RequestTimeoutError("Access token request timed out") from exc
        except requests.RequestException as exc:
            raise TransportError(f"Failed to request access token: {exc}") from exc
        status = response.status_code
        if status in CREDENTIAL_REJECTED_STATUSES:
            raise AuthenticationError(f"Token request rejected with status {status}")
        if status >= 400:
            raise error_from_status(status, f"Token request failed with status {status}")
        try:
            body = response.json()
        except ValueError as exc:
            raise AuthenticationError("Token endpoint returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise AuthenticationError("Token endpoint returned an unexpected payload")
        return body


def credentials_from_settings(settings: BotSettings) -> CredentialProvider:
    """Pick the credential provider the settings describe."""

    if settings.bot_token:
        return StaticToken(settings.bot_token)
    return AppCredentials.from_settings(settings)


__all__ = [
    "AppCredentials",
    "CredentialProvider",
    "StaticToken",
    "credentials_from_settings",
]
