"""Per-bucket request governor shared by the REST transport and the gateway session."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Optional

from guildbot.errors import RateLimitError

LOGGER = logging.getLogger(__name__)

IDENTIFY_BUCKET = "gateway:identify"
DEFAULT_RETRY_AFTER = 60.0


@dataclass
class RateLimitBucket:
    """Token bucket state for one quota scope.

    ``reset_at`` is expressed on the limiter's monotonic clock. A bucket whose
    window has not started yet has ``reset_at`` set to ``None``; the first
    admission opens a new window of ``window`` seconds.
    """

    key: str
    limit: int
    remaining: int
    window: float
    reset_at: Optional[float] = None
    server_bucket: Optional[str] = None

    def refresh(self, now: float) -> None:
        if self.reset_at is not None and now >= self.reset_at:
            self.remaining = self.limit
            self.reset_at = None

    def try_admit(self, now: float) -> Optional[float]:
        """Admit one call and return ``None``, or return the seconds to wait."""

        self.refresh(now)
        if self.remaining > 0:
            self.remaining -= 1
            if self.reset_at is None:
                self.reset_at = now + self.window
            return None
        if self.reset_at is None:
            self.reset_at = now + self.window
        return max(0.0, self.reset_at - now)


class RateLimiter:
    """Admits calls against named buckets, suspending callers until quota frees up."""

    def __init__(
        self,
        *,
        max_wait: float = 300.0,
        max_inflight: int = 0,
        default_window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._max_wait = float(max_wait)
        self._default_window = float(default_window)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(max_inflight) if max_inflight > 0 else None
        )

    @classmethod
    def from_settings(cls, settings) -> RateLimiter:
        limiter = cls(
            max_wait=float(settings.ratelimit_max_wait_seconds),
            max_inflight=int(settings.ratelimit_max_inflight or 0),
            default_window=float(settings.ratelimit_default_window_seconds),
        )
        limiter.configure(
            IDENTIFY_BUCKET,
            limit=int(settings.identify_limit),
            window=float(settings.identify_window_seconds),
        )
        return limiter

    def configure(
        self,
        key: str,
        *,
        limit: int,
        window: Optional[float] = None,
        remaining: Optional[int] = None,
        reset_after: Optional[float] = None,
    ) -> RateLimitBucket:
        """Create or overwrite a bucket."""

        if limit < 1:
            raise ValueError(f"Bucket {key} limit must be positive")
        now = self._clock()
        bucket = RateLimitBucket(
            key=key,
            limit=limit,
            remaining=limit if remaining is None else max(0, min(remaining, limit)),
            window=float(window if window is not None else self._default_window),
            reset_at=now + reset_after if reset_after is not None else None,
        )
        self._buckets[key] = bucket
        return bucket

    def bucket(self, key: str) -> Optional[RateLimitBucket]:
        """Return a copy of the bucket state, or ``None`` for unknown keys."""

        current = self._buckets.get(key)
        if current is None:
            return None
        return dataclasses.replace(current)

    async def acquire(self, key: str, *, max_wait: Optional[float] = None) -> None:
        """Wait until the bucket admits one call.

        Unknown buckets are admitted immediately. Raises ``RateLimitError`` when
        the required wait would exceed ``max_wait``.
        """

        budget = self._max_wait if max_wait is None else float(max_wait)
        deadline = self._clock() + budget
        while True:
            async with self._lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    return
                now = self._clock()
                wait = bucket.try_admit(now)
                if wait is None:
                    return
            if now + wait > deadline:
                raise RateLimitError(
                    f"Rate limit for {key} requires waiting {wait:.2f}s",
                    retry_after=wait,
                    bucket=key,
                )
            LOGGER.debug("Bucket %s exhausted; waiting %.2fs", key, wait)
            await self._sleep(wait)

    @contextlib.asynccontextmanager
    async def limit(self, key: Optional[str], *, max_wait: Optional[float] = None) -> AsyncIterator[None]:
        """Admit one call against ``key`` and hold a global in-flight slot for its duration."""

        if key is not None:
            await self.acquire(key, max_wait=max_wait)
        if self._inflight is None:
            yield
            return
        async with self._inflight:
            yield

    def penalize(self, key: str, retry_after: float) -> None:
        """Force a bucket into deficit for ``retry_after`` seconds."""

        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self.configure(key, limit=1, remaining=0)
        bucket.remaining = 0
        reset_at = now + max(0.0, float(retry_after))
        if bucket.reset_at is None or bucket.reset_at < reset_at:
            bucket.reset_at = reset_at
        LOGGER.warning("Bucket %s rate limited by server; retry after %.2fs", key, retry_after)

    def update_from_headers(self, key: str, headers: Mapping[str, str]) -> None:
        """Apply X-RateLimit-* headers from a response to the bucket."""

        lowered = {str(name).lower(): value for name, value in headers.items()}
        limit = _parse_int(lowered.get("x-ratelimit-limit"))
        remaining = _parse_int(lowered.get("x-ratelimit-remaining"))
        reset_after = _parse_float(lowered.get("x-ratelimit-reset-after"))
        reset_epoch = _parse_float(lowered.get("x-ratelimit-reset"))
        server_bucket = lowered.get("x-ratelimit-bucket")
        if limit is None and remaining is None:
            return

        now = self._clock()
        if reset_after is None and reset_epoch is not None:
            reset_after = max(0.0, reset_epoch - self._wall_clock())

        bucket = self._buckets.get(key)
        if bucket is None:
            if limit is None or limit < 1:
                return
            bucket = self.configure(key, limit=limit)
        if limit is not None and limit > 0:
            bucket.limit = limit
        if remaining is not None:
            bucket.remaining = max(0, min(remaining, bucket.limit))
        if reset_after is not None:
            bucket.reset_at = now + reset_after
        if server_bucket:
            bucket.server_bucket = server_bucket

    @staticmethod
    def retry_after_from_headers(headers: Mapping[str, str]) -> float:
        lowered = {str(name).lower(): value for name, value in headers.items()}
        value = _parse_float(lowered.get("retry-after"))
        return DEFAULT_RETRY_AFTER if value is None else value


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["IDENTIFY_BUCKET", "RateLimitBucket", "RateLimiter"]
