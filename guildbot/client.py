"""Client facade composing the gateway session, REST transport and dispatcher."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Optional

from guildbot.api import BotApi
from guildbot.config import BotSettings, get_settings
from guildbot.dispatch import Context, EventDispatcher
from guildbot.errors import BotError
from guildbot.http import HttpClient
from guildbot.intents import Intents
from guildbot.network.session import DispatchFrame, GatewaySession
from guildbot.network.session_state import SessionInfo, SessionState
from guildbot.network.transport import BaseTransport, create_transport
from guildbot.ratelimit import IDENTIFY_BUCKET, RateLimiter
from guildbot.token import CredentialProvider, credentials_from_settings

LOGGER = logging.getLogger(__name__)


class Client:
    """Lifetime root for one bot shard.

    ``start()`` runs until ``stop()`` is called or the session fails for good;
    reconnection happens inside the gateway session, never here.
    """

    def __init__(
        self,
        handler: Any,
        *,
        settings: Optional[BotSettings] = None,
        credentials: Optional[CredentialProvider] = None,
        intents: Any = None,
        transport_factory: Optional[Callable[[BotSettings], BaseTransport]] = None,
        http: Optional[HttpClient] = None,
        gateway_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.credentials = credentials or (http.credentials if http else credentials_from_settings(self.settings))
        if rate_limiter is None:
            rate_limiter = http.rate_limiter if http and http.rate_limiter else RateLimiter.from_settings(self.settings)
        self.rate_limiter = rate_limiter
        self._owns_http = http is None
        self.http = http or HttpClient.from_settings(self.settings, self.credentials, rate_limiter=self.rate_limiter)
        self.api = BotApi(self.http)
        self.handler = handler
        self.intents = Intents.parse(intents) if intents is not None else Intents(self.settings.intents)
        self._transport_factory = transport_factory or create_transport
        self._gateway_url = gateway_url or (str(self.settings.gateway_url) if self.settings.gateway_url else None)
        self._dispatcher = EventDispatcher(
            handler,
            context_factory=self._make_context,
            mode=self.settings.dispatch_mode,
        )
        self._session: Optional[GatewaySession] = None
        self._start_task: Optional[asyncio.Task[None]] = None
        self._router_task: Optional[asyncio.Task[None]] = None
        self._background: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def session(self) -> Optional[GatewaySession]:
        return self._session

    async def start(self) -> None:
        """Connect and process events until stopped.

        Calling ``start`` while already running waits on the existing run.
        """

        task = self._start_task
        if task is not None and not task.done():
            await asyncio.shield(task)
            return
        self._closing = False
        task = asyncio.create_task(self._run(), name="guildbot-client")
        self._start_task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await self.stop()
            raise

    async def stop(self) -> None:
        """Request a graceful shutdown; safe to call repeatedly and concurrently with ``start``."""

        self._closing = True
        session = self._session
        if session is not None:
            await session.stop()
        task = self._start_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        if session is None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=float(self.settings.stop_timeout_seconds))
        except asyncio.TimeoutError:
            LOGGER.warning("Client did not stop in time; cancelling")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except BotError:
            LOGGER.debug("Client run ended with an error during stop", exc_info=True)

    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.state is SessionState.CONNECTED

    def session_info(self) -> Optional[SessionInfo]:
        session = self._session
        if session is None:
            return None
        info = session.snapshot()
        if info.state is SessionState.DISCONNECTED:
            return None
        return info

    def run(self) -> None:
        """Blocking helper: run until interrupted."""

        try:
            asyncio.run(self.start())
        except KeyboardInterrupt:
            LOGGER.info("Interrupted; bot stopped")

    async def __aenter__(self) -> Client:
        self._background = asyncio.create_task(self.start(), name="guildbot-client-background")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
        background = self._background
        self._background = None
        if background is not None:
            try:
                await background
            except asyncio.CancelledError:
                pass
            except BotError:
                if exc_type is None:
                    raise
                LOGGER.exception("Bot client failed while exiting context")
        if self._owns_http:
            self.http.close()

    async def _run(self) -> None:
        gateway_url = await self._resolve_gateway_url()
        session = GatewaySession(
            settings=self.settings,
            credentials=self.credentials,
            gateway_url=gateway_url,
            transport_factory=self._transport_factory,
            rate_limiter=self.rate_limiter,
            intents=int(self.intents),
            on_error=self._dispatcher.report_error,
        )
        self._session = session
        if self._closing:
            return
        router = asyncio.create_task(self._route_loop(session), name="guildbot-router")
        self._router_task = router
        try:
            await session.run()
        finally:
            await self._finish_router(router)

    async def _route_loop(self, session: GatewaySession) -> None:
        try:
            await self._dispatcher.run(session.events())
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Event routing loop crashed")

    async def _finish_router(self, router: asyncio.Task[None]) -> None:
        # The session queues an end marker on exit, so the router drains what is left.
        try:
            await asyncio.wait_for(asyncio.shield(router), timeout=float(self.settings.stop_timeout_seconds))
        except asyncio.TimeoutError:
            LOGGER.warning("Event router still busy at shutdown; cancelling")
            router.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await router
        finally:
            self._router_task = None

    async def _resolve_gateway_url(self) -> str:
        if self._gateway_url:
            return self._gateway_url
        info = await self.api.get_gateway_bot()
        limit = info.session_start_limit
        if limit is not None and limit.total > 0:
            self.rate_limiter.configure(
                IDENTIFY_BUCKET,
                limit=limit.total,
                remaining=limit.remaining,
                window=limit.reset_after / 1000.0,
                reset_after=limit.reset_after / 1000.0 if limit.remaining <= 0 else None,
            )
            LOGGER.info(
                "Session start limit: %s/%s remaining (reset in %.0fs)",
                limit.remaining,
                limit.total,
                limit.reset_after / 1000.0,
            )
        LOGGER.info("Discovered gateway URL %s", info.url)
        return info.url

    def _make_context(self, frame: DispatchFrame) -> Context:
        return Context(
            api=self.api,
            credentials=self.credentials,
            session=frame.session,
            sequence=frame.sequence,
            event_type=frame.event_type,
        )


__all__ = ["Client"]
