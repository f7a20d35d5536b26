"""HTTP transport for the bot REST API."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode, urljoin

import requests

from guildbot.config import BotSettings
from guildbot.errors import BotError, RateLimitError, RequestTimeoutError, TransportError, error_from_status
from guildbot.ratelimit import RateLimiter
from guildbot.token import CredentialProvider

LOGGER = logging.getLogger(__name__)

MAJOR_COLLECTIONS = frozenset({"channels", "guilds", "groups", "users", "dms"})
TRACE_ID_HEADER = "x-tps-trace-id"
_LITERAL_SEGMENT = re.compile(r"^(?:v\d+|[a-z_@-]+)$")


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


def route_bucket(method: str, path: str) -> str:
    """Derive a rate-limit bucket key from a request route.

    Ids following a major collection are kept so each channel/guild/group gets
    its own bucket; any other id is collapsed into ``{id}``.
    """

    segments = [segment for segment in path.split("?", 1)[0].split("/") if segment]
    parts: list[str] = []
    previous = ""
    for segment in segments:
        if _LITERAL_SEGMENT.match(segment) or previous in MAJOR_COLLECTIONS:
            parts.append(segment)
        else:
            parts.append("{id}")
        previous = segment
    return f"{method.upper()} /{'/'.join(parts)}"


class HttpClient:
    """Executes REST calls with auth, rate limiting and retries."""

    def __init__(
        self,
        *,
        base_url: str,
        credentials: CredentialProvider,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._rate_limiter = rate_limiter
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: BotSettings,
        credentials: CredentialProvider,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
    ) -> HttpClient:
        return cls(
            base_url=settings.rest_base_url,
            credentials=credentials,
            rate_limiter=rate_limiter,
            timeout_seconds=float(settings.http_timeout_seconds),
            max_retries=int(settings.http_max_retries),
            retry_base_delay=float(settings.http_retry_base_delay_seconds),
            session=session,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def credentials(self) -> CredentialProvider:
        return self._credentials

    @property
    def rate_limiter(self) -> Optional[RateLimiter]:
        return self._rate_limiter

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, object]] = None,
        body: Optional[Any] = None,
        bucket: Optional[str] = None,
    ) -> HttpResponse:
        """Perform a request and return the response, raising ``BotError`` on failure.

        5xx responses and timeouts are retried with exponential delay, a 429
        penalises the bucket and waits for it, and a 401 is retried once with a
        refreshed token when the credential provider can refresh.
        """

        key = bucket or route_bucket(method, path)
        url = self._build_url(path, params=params)
        attempt = 0
        auth_retried = False
        while True:
            authorization = await self._credentials.authorization_header()
            headers = self._build_headers(authorization)
            limit = self._rate_limiter.limit(key) if self._rate_limiter else contextlib.nullcontext()
            try:
                async with limit:
                    response = await asyncio.to_thread(self._send, method, url, headers, body)
            except (RequestTimeoutError, TransportError) as exc:
                if attempt < self._max_retries:
                    attempt += 1
                    delay = self._retry_delay(attempt, exc)
                    LOGGER.warning("%s %s failed (%s); retrying in %.2fs", method, path, exc, delay)
                    await self._sleep(delay)
                    continue
                raise

            if self._rate_limiter is not None:
                self._rate_limiter.update_from_headers(key, response.headers)

            if response.status == 429:
                retry_after = RateLimiter.retry_after_from_headers(response.headers)
                if self._rate_limiter is not None:
                    self._rate_limiter.penalize(key, retry_after)
                if attempt < self._max_retries:
                    attempt += 1
                    if self._rate_limiter is None:
                        await self._sleep(retry_after)
                    continue
                raise RateLimitError(f"{method} {path} rate limited", retry_after=retry_after, bucket=key)

            if response.status == 401 and self._credentials.can_refresh and not auth_retried:
                LOGGER.info("%s %s returned 401; refreshing credentials", method, path)
                self._credentials.invalidate()
                auth_retried = True
                continue

            if response.status >= 500 and attempt < self._max_retries:
                attempt += 1
                delay = self._retry_delay(attempt, None)
                LOGGER.warning("%s %s returned %s; retrying in %.2fs", method, path, response.status, delay)
                await self._sleep(delay)
                continue

            if response.status >= 400:
                raise self._error_for(method, path, response)
            return response

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, object]] = None,
        body: Optional[Any] = None,
        bucket: Optional[str] = None,
    ) -> Any:
        response = await self.call(method, path, params=params, body=body, bucket=bucket)
        return response.body

    async def get(self, path: str, *, params: Optional[dict[str, object]] = None, bucket: Optional[str] = None) -> Any:
        return await self.request_json("GET", path, params=params, bucket=bucket)

    async def post(self, path: str, body: Optional[Any] = None, *, bucket: Optional[str] = None) -> Any:
        return await self.request_json("POST", path, body=body, bucket=bucket)

    async def put(self, path: str, body: Optional[Any] = None, *, bucket: Optional[str] = None) -> Any:
        return await self.request_json("PUT", path, body=body, bucket=bucket)

    async def delete(
        self,
        path: str,
        *,
        params: Optional[dict[str, object]] = None,
        bucket: Optional[str] = None,
    ) -> Any:
        return await self.request_json("DELETE", path, params=params, bucket=bucket)

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _send(self, method: str, url: str, headers: dict[str, str], body: Optional[Any]) -> HttpResponse:
        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                json=body,
                timeout=self._timeout_seconds,
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError(f"{method} {url} timed out") from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=self._parse_body(response),
        )

    @staticmethod
    def _parse_body(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _build_headers(self, authorization: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": authorization,
        }

    def _build_url(self, path: str, *, params: Optional[dict[str, object]] = None) -> str:
        url = urljoin(f"{self._base_url}/", path.lstrip("/"))
        if params:
            query = urlencode({key: value for key, value in params.items() if value is not None})
            if query:
                return f"{url}?{query}"
        return url

    def _retry_delay(self, attempt: int, error: Optional[BotError]) -> float:
        delay = self._retry_base_delay * (2 ** (attempt - 1))
        hint = error.retry_after() if error is not None else None
        if hint is not None:
            delay = min(delay, hint)
        return delay

    @staticmethod
    def _error_for(method: str, path: str, response: HttpResponse) -> BotError:
        code: Optional[int] = None
        message = f"{method} {path} failed with status {response.status}"
        if isinstance(response.body, dict):
            raw_code = response.body.get("code")
            if isinstance(raw_code, int):
                code = raw_code
            if response.body.get("message"):
                message = f"{message}: {response.body['message']}"
        elif isinstance(response.body, str) and response.body:
            message = f"{message}: {response.body[:200]}"
        return error_from_status(
            response.status,
            message,
            code=code,
            trace_id=response.header(TRACE_ID_HEADER),
            retry_after=RateLimiter.retry_after_from_headers(response.headers) if response.status == 429 else None,
        )


__all__ = ["HttpClient", "HttpResponse", "route_bucket"]
