"""Gateway session: handshake, heartbeat, sequence tracking and reconnection.

The session is driven by a single loop (``_drive``) that owns every state
change:

- open a socket, wait for hello, then identify (fresh) or resume
- run the receive loop and heartbeat loop until the socket ends
- classify why it ended and pick resume, fresh identify, or a fatal stop
- wait out the reconnect backoff and go again

Outside callers only see immutable ``SessionInfo`` snapshots and stop the loop
through an event, never by touching loop-owned state.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import platform
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from guildbot.config import BotSettings
from guildbot.errors import (
    AuthenticationError,
    BotError,
    FatalError,
    GatewayClosed,
    HeartbeatTimeout,
    ProtocolError,
    RateLimitError,
    RequestTimeoutError,
    SessionInvalidError,
    TransportError,
)
from guildbot.models.gateway import (
    GatewayPayload,
    HelloPayload,
    IdentifyPayload,
    IdentifyProperties,
    OpCode,
    ReadyPayload,
    ResumePayload,
    heartbeat_frame,
    identify_frame,
    resume_frame,
)
from guildbot.network.backoff import Backoff
from guildbot.network.connection import Connection
from guildbot.network.session_state import HeartbeatState, SessionInfo, SessionState, SessionTracker
from guildbot.network.transport.base import BaseTransport
from guildbot.ratelimit import IDENTIFY_BUCKET, RateLimiter
from guildbot.token import CredentialProvider

LOGGER = logging.getLogger(__name__)

AUTH_FAILED_CLOSE_CODE = 4004
NON_RESUMABLE_CLOSE_CODES = frozenset({4006, 4007, 9001, 9005})
FATAL_CLOSE_CODES = frozenset({4010, 4011, 4012, 4013, 4014, 4914, 4915})
NORMAL_CLOSE_CODE = 1000
RESUMABLE_CLOSE_CODE = 4000
DEAD_CHECK_GRACE_SECONDS = 0.05

ErrorHook = Callable[[BaseException], Optional[Awaitable[None]]]


class DisconnectReason(enum.Enum):
    STOPPED = "stopped"
    TRANSPORT = "transport"
    CLOSED = "closed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    SERVER_RECONNECT = "server_reconnect"
    INVALID_SESSION = "invalid_session"
    AUTH_FAILED = "auth_failed"
    PROTOCOL = "protocol"


@dataclass
class Disconnect:
    """Why one socket ended and whether the session may be resumed."""

    reason: DisconnectReason
    error: Optional[BaseException] = None
    close_code: Optional[int] = None
    resumable: bool = True


@dataclass(frozen=True)
class DispatchFrame:
    """A dispatch frame queued for the event dispatcher."""

    event_type: Optional[str]
    data: Any
    sequence: Optional[int]
    session: SessionInfo


@dataclass
class GatewaySession:
    """Owns the gateway socket and the session state machine."""

    settings: BotSettings
    credentials: CredentialProvider
    gateway_url: str
    transport_factory: Callable[[BotSettings], BaseTransport]
    rate_limiter: Optional[RateLimiter] = None
    intents: Optional[int] = None
    on_error: Optional[ErrorHook] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    tracker: SessionTracker = field(init=False)
    _connection: Optional[Connection] = field(default=None, init=False, repr=False)
    _run_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, init=False, repr=False)
    _stop_event: Optional[asyncio.Event] = field(default=None, init=False, repr=False)
    _dispatch_queue: Optional[asyncio.Queue[Optional[DispatchFrame]]] = field(default=None, init=False, repr=False)
    _heartbeat: Optional[HeartbeatState] = field(default=None, init=False, repr=False)
    _connected_since: Optional[float] = field(default=None, init=False, repr=False)
    _auth_failures: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self.tracker = SessionTracker(shard_id=self.settings.shard_id, shard_count=self.settings.shard_count)
        if self.intents is None:
            self.intents = int(self.settings.intents)

    # ------------------------------------------------------------------ public surface

    def snapshot(self) -> SessionInfo:
        return self.tracker.snapshot()

    @property
    def state(self) -> SessionState:
        return self.tracker.snapshot().state

    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def run(self) -> None:
        """Run the session until stopped or an unrecoverable error occurs.

        A second call while the session is running waits on the same run instead
        of opening another socket.
        """

        task = self._run_task
        if task is not None and not task.done():
            await asyncio.shield(task)
            return
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._ensure_queue()
        task = asyncio.create_task(self._drive(), name="gateway-session")
        self._run_task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await self.stop()
            raise

    def request_stop(self) -> None:
        """Ask the session loop to stop; safe to call from any thread."""

        loop = self._loop
        event = self._stop_event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    async def stop(self) -> None:
        """Close the socket gracefully and wait for the loop to finish.

        The wait is bounded by ``stop_timeout_seconds``; after that the loop is
        cancelled and the socket aborted. Calling ``stop`` more than once is safe.
        """

        task = self._run_task
        self.request_stop()
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        timeout = float(self.settings.stop_timeout_seconds)
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Gateway session did not stop within %.1fs; forcing teardown", timeout)
            if self._connection is not None:
                self._connection.abort()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        except BotError:
            LOGGER.debug("Gateway session ended with an error during stop", exc_info=True)

    async def events(self) -> AsyncIterator[DispatchFrame]:
        """Yield dispatch frames in arrival order until the session ends."""

        queue = self._ensure_queue()
        while True:
            frame = await queue.get()
            if frame is None:
                return
            yield frame

    # ------------------------------------------------------------------ driver loop

    async def _drive(self) -> None:
        assert self._stop_event is not None
        backoff = Backoff.from_settings(self.settings, rng=self.rng)
        max_failures = int(self.settings.reconnect_max_attempts)
        failures = 0
        resume = False
        self._auth_failures = 0
        self.tracker.transition(SessionState.CONNECTING)
        try:
            while not self._stop_event.is_set():
                outcome = await self._run_until_disconnect(resume=resume)
                if outcome.reason is DisconnectReason.STOPPED:
                    break

                connected_for = self._consume_connected_period()
                if connected_for is not None:
                    failures = 0
                    if connected_for >= float(self.settings.reconnect_reset_after_seconds):
                        backoff.reset()
                else:
                    failures += 1

                if outcome.reason is DisconnectReason.AUTH_FAILED:
                    self._handle_auth_failure(outcome)

                state = self.tracker.snapshot().state
                if outcome.error is not None:
                    await self._report(outcome.error)

                if outcome.reason is DisconnectReason.INVALID_SESSION and state is SessionState.RESUMING:
                    LOGGER.info("Resume rejected; identifying with a fresh session")
                    self.tracker.clear_session()
                    self.tracker.transition(SessionState.CONNECTING)
                    resume = False
                    continue

                self.tracker.transition(SessionState.RECONNECTING)
                if max_failures and failures >= max_failures:
                    raise TransportError(
                        f"Gateway connection failed {failures} consecutive time(s); giving up"
                    ) from outcome.error

                delay = backoff.next_delay()
                LOGGER.warning(
                    "Gateway disconnected (%s, code=%s); reconnecting in %.2fs",
                    outcome.reason.value,
                    outcome.close_code,
                    delay,
                )
                if await self._wait_for_stop(delay):
                    break

                if outcome.resumable and self.tracker.can_resume():
                    self.tracker.transition(SessionState.RESUMING)
                    resume = True
                else:
                    self.tracker.clear_session()
                    self.tracker.transition(SessionState.CONNECTING)
                    resume = False
        finally:
            await self._finish()

    def _handle_auth_failure(self, outcome: Disconnect) -> None:
        self.credentials.invalidate()
        self._auth_failures += 1
        if not self.credentials.can_refresh or self._auth_failures > 1:
            raise AuthenticationError(
                f"Gateway rejected credentials (code={outcome.close_code})"
            ) from outcome.error
        LOGGER.warning("Gateway rejected credentials; retrying with a refreshed token")

    async def _run_until_disconnect(self, *, resume: bool) -> Disconnect:
        assert self._stop_event is not None
        conn_task = asyncio.create_task(self._run_connection(resume=resume), name="gateway-connection")
        stop_task = asyncio.create_task(self._stop_event.wait(), name="gateway-stop-wait")
        try:
            done, _ = await asyncio.wait({conn_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            conn_task.cancel()
            stop_task.cancel()
            raise
        if conn_task in done:
            stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task
            outcome = conn_task.result()
            await self._close_connection(NORMAL_CLOSE_CODE if not outcome.resumable else RESUMABLE_CLOSE_CODE)
            return outcome

        LOGGER.info("Stop requested; closing gateway connection")
        await self._close_connection(NORMAL_CLOSE_CODE)
        conn_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await conn_task
        return Disconnect(DisconnectReason.STOPPED, resumable=False)

    async def _wait_for_stop(self, delay: float) -> bool:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _finish(self) -> None:
        if self._connection is not None:
            self._connection.abort()
            self._connection = None
        self._heartbeat = None
        self._connected_since = None
        if self.tracker.state is not SessionState.CLOSING:
            self._try_transition(SessionState.CLOSING)
        self._try_transition(SessionState.DISCONNECTED)
        self.tracker.reset()
        LOGGER.info("Gateway session disconnected")
        queue = self._dispatch_queue
        self._dispatch_queue = None
        if queue is not None:
            await self._close_queue(queue)

    async def _close_queue(self, queue: asyncio.Queue[Optional[DispatchFrame]]) -> None:
        # The end marker goes after every queued frame, so a full queue is waited on.
        if not queue.full():
            queue.put_nowait(None)
            return
        timeout = float(self.settings.stop_timeout_seconds)
        try:
            await asyncio.wait_for(queue.put(None), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Dispatch consumer did not drain within %.1fs; %s frame(s) left undelivered",
                timeout,
                queue.qsize(),
            )

    # ------------------------------------------------------------------ one socket

    async def _run_connection(self, *, resume: bool) -> Disconnect:
        try:
            token = await self.credentials.authorization_header()
        except AuthenticationError:
            raise
        except BotError as exc:
            return Disconnect(DisconnectReason.TRANSPORT, exc)

        if self.rate_limiter is not None:
            try:
                await self.rate_limiter.acquire(IDENTIFY_BUCKET)
            except RateLimitError as exc:
                return Disconnect(DisconnectReason.TRANSPORT, exc, resumable=resume)

        connection = Connection(
            self.transport_factory(self.settings),
            close_timeout=float(self.settings.close_timeout_seconds),
        )
        self._connection = connection
        try:
            await connection.open(self.gateway_url)
            hello = await self._await_hello(connection)
        except AuthenticationError:
            raise
        except BotError as exc:
            return Disconnect(DisconnectReason.TRANSPORT, exc, resumable=resume)

        interval = self._heartbeat_interval(hello)
        heartbeat = HeartbeatState(
            interval=interval,
            timeout_factor=float(self.settings.heartbeat_timeout_factor),
            clock=self.clock,
        )
        self._heartbeat = heartbeat
        LOGGER.debug("Gateway hello received (heartbeat interval %.2fs)", interval)

        try:
            if resume:
                await self._send_resume(connection, token)
            else:
                self.tracker.transition(SessionState.IDENTIFYING)
                await self._send_identify(connection, token)
        except BotError as exc:
            return Disconnect(DisconnectReason.TRANSPORT, exc, resumable=resume)

        receive_task = asyncio.create_task(self._receive_loop(connection, heartbeat), name="gateway-receive")
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection, heartbeat), name="gateway-heartbeat")
        tasks = {receive_task, heartbeat_task}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finished = receive_task if receive_task in done else heartbeat_task
            return finished.result()
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _await_hello(self, connection: Connection) -> HelloPayload:
        timeout = float(self.settings.hello_timeout_seconds)
        try:
            raw = await asyncio.wait_for(connection.receive(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(f"No hello frame within {timeout:.1f}s") from exc
        try:
            payload = GatewayPayload.model_validate(raw)
        except ValidationError as exc:
            raise ProtocolError("Malformed frame while waiting for hello") from exc
        if payload.op != OpCode.HELLO:
            raise ProtocolError(f"Expected hello, got op {payload.op}")
        try:
            return HelloPayload.model_validate(payload.d)
        except ValidationError as exc:
            raise ProtocolError("Malformed hello payload") from exc

    def _heartbeat_interval(self, hello: HelloPayload) -> float:
        override = self.settings.heartbeat_interval_override_seconds
        if override:
            return float(override)
        return hello.heartbeat_interval / 1000.0

    async def _send_identify(self, connection: Connection, token: str) -> None:
        name = self.settings.client_name
        payload = IdentifyPayload(
            token=token,
            intents=int(self.intents or 0),
            shard=[self.settings.shard_id, self.settings.shard_count],
            properties=IdentifyProperties(os=platform.system().lower() or "unknown", browser=name, device=name),
        )
        LOGGER.info(
            "Identifying shard %s/%s with intents %s",
            self.settings.shard_id,
            self.settings.shard_count,
            payload.intents,
        )
        await connection.send(identify_frame(payload))

    async def _send_resume(self, connection: Connection, token: str) -> None:
        info = self.tracker.snapshot()
        if not info.session_id or info.sequence is None:
            raise SessionInvalidError("No session to resume")
        LOGGER.info("Resuming session %s at sequence %s", info.session_id, info.sequence)
        await connection.send(resume_frame(ResumePayload(token=token, session_id=info.session_id, seq=info.sequence)))

    # ------------------------------------------------------------------ loops

    async def _receive_loop(self, connection: Connection, heartbeat: HeartbeatState) -> Disconnect:
        threshold = int(self.settings.protocol_error_threshold)
        protocol_errors = 0
        while True:
            try:
                raw = await connection.receive()
                payload = self._decode_frame(raw)
                outcome = await self._handle_frame(connection, heartbeat, payload)
            except GatewayClosed as exc:
                return self._classify_close(exc)
            except ProtocolError as exc:
                protocol_errors += 1
                LOGGER.warning("Gateway protocol error (%s/%s): %s", protocol_errors, threshold, exc)
                if protocol_errors >= threshold:
                    return Disconnect(DisconnectReason.PROTOCOL, exc)
                await self._report(exc)
                continue
            except (AuthenticationError, FatalError):
                raise
            except BotError as exc:
                return Disconnect(DisconnectReason.TRANSPORT, exc)
            protocol_errors = 0
            if outcome is not None:
                return outcome

    async def _heartbeat_loop(self, connection: Connection, heartbeat: HeartbeatState) -> Disconnect:
        ratio = float(self.settings.heartbeat_jitter_ratio)
        next_beat = self.clock() + heartbeat.interval * self.rng.uniform(0, ratio)
        while True:
            now = self.clock()
            if heartbeat.is_dead(now):
                error = HeartbeatTimeout(
                    f"No heartbeat ack within {heartbeat.deadline:.2f}s"
                )
                return Disconnect(DisconnectReason.HEARTBEAT_TIMEOUT, error)
            if now >= next_beat:
                try:
                    await self._send_heartbeat(connection, heartbeat)
                except BotError as exc:
                    return Disconnect(DisconnectReason.TRANSPORT, exc)
                next_beat = now + heartbeat.interval * (1 - self.rng.uniform(0, ratio))
                continue
            wait = next_beat - now
            until_dead = heartbeat.seconds_until_dead(now)
            if until_dead is not None:
                wait = min(wait, until_dead + DEAD_CHECK_GRACE_SECONDS)
            await asyncio.sleep(wait)

    async def _send_heartbeat(self, connection: Connection, heartbeat: HeartbeatState) -> None:
        sequence = self.tracker.snapshot().sequence
        await connection.send(heartbeat_frame(sequence))
        heartbeat.mark_sent()
        LOGGER.debug("Heartbeat sent (seq=%s)", sequence)

    # ------------------------------------------------------------------ frames

    @staticmethod
    def _decode_frame(raw: Any) -> GatewayPayload:
        if not isinstance(raw, dict):
            raise ProtocolError(f"Gateway frame must be an object, got {type(raw).__name__}")
        try:
            return GatewayPayload.model_validate(raw)
        except ValidationError as exc:
            raise ProtocolError(f"Malformed gateway frame: {exc.error_count()} error(s)") from exc

    async def _handle_frame(
        self,
        connection: Connection,
        heartbeat: HeartbeatState,
        payload: GatewayPayload,
    ) -> Optional[Disconnect]:
        op = payload.opcode
        if op is OpCode.HEARTBEAT_ACK:
            heartbeat.mark_ack()
            return None
        if op is OpCode.HEARTBEAT:
            await self._send_heartbeat(connection, heartbeat)
            return None
        if op is OpCode.DISPATCH:
            await self._handle_dispatch(payload)
            return None
        if op is OpCode.RECONNECT:
            LOGGER.info("Gateway requested reconnect")
            return Disconnect(DisconnectReason.SERVER_RECONNECT, resumable=True)
        if op is OpCode.INVALID_SESSION:
            LOGGER.warning("Gateway invalidated the session")
            return Disconnect(
                DisconnectReason.INVALID_SESSION,
                SessionInvalidError("Gateway invalidated the session"),
                resumable=False,
            )
        if op is OpCode.HELLO:
            LOGGER.debug("Ignoring repeated hello frame")
            return None
        raise ProtocolError(f"Unexpected gateway op code {payload.op}")

    async def _handle_dispatch(self, payload: GatewayPayload) -> None:
        state = self.tracker.snapshot().state
        self.tracker.update_sequence(payload.s, resuming=state is SessionState.RESUMING)

        if payload.t == "READY":
            try:
                ready = ReadyPayload.model_validate(payload.d)
            except ValidationError as exc:
                raise ProtocolError("Malformed READY payload") from exc
            self.tracker.record_ready(ready.session_id, payload.s)
            self._mark_connected()
            LOGGER.info("Gateway session ready (session_id=%s)", ready.session_id)
        elif payload.t == "RESUMED":
            self._mark_connected()
            LOGGER.info("Gateway session resumed at sequence %s", self.tracker.snapshot().sequence)

        frame = DispatchFrame(
            event_type=payload.t,
            data=payload.d,
            sequence=payload.s,
            session=self.tracker.snapshot(),
        )
        assert self._dispatch_queue is not None
        await self._dispatch_queue.put(frame)

    def _mark_connected(self) -> None:
        if self.tracker.snapshot().state is SessionState.CONNECTED:
            return
        self._try_transition(SessionState.CONNECTED)
        self._connected_since = self.clock()
        self._auth_failures = 0

    def _consume_connected_period(self) -> Optional[float]:
        since = self._connected_since
        self._connected_since = None
        if since is None:
            return None
        return self.clock() - since

    def _classify_close(self, exc: GatewayClosed) -> Disconnect:
        code = exc.code
        if code == AUTH_FAILED_CLOSE_CODE:
            return Disconnect(
                DisconnectReason.AUTH_FAILED,
                AuthenticationError(f"Gateway authentication failed (code={code})"),
                close_code=code,
                resumable=False,
            )
        if code in FATAL_CLOSE_CODES:
            raise FatalError(f"Gateway closed the session permanently (code={code}): {exc.reason}") from exc
        if code in NON_RESUMABLE_CLOSE_CODES:
            return Disconnect(
                DisconnectReason.INVALID_SESSION,
                SessionInvalidError(f"Gateway session cannot be resumed (code={code})"),
                close_code=code,
                resumable=False,
            )
        return Disconnect(DisconnectReason.CLOSED, exc, close_code=code, resumable=True)

    # ------------------------------------------------------------------ helpers

    def _ensure_queue(self) -> asyncio.Queue[Optional[DispatchFrame]]:
        if self._dispatch_queue is None:
            self._dispatch_queue = asyncio.Queue(maxsize=int(self.settings.dispatch_queue_max or 0))
        return self._dispatch_queue

    async def _close_connection(self, code: int) -> None:
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close(code)

    def _try_transition(self, state: SessionState) -> None:
        try:
            self.tracker.transition(state)
        except ValueError:
            LOGGER.debug(
                "Ignoring invalid session transition %s -> %s",
                self.tracker.state.value,
                state.value,
            )

    async def _report(self, error: BaseException) -> None:
        hook = self.on_error
        if hook is None:
            return
        try:
            result = hook(error)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress session error hook failure", exc_info=True)
