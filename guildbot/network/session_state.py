"""Gateway session state machine and the snapshot cell shared with outside readers."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


class SessionState(enum.Enum):
    """Lifecycle of one logical gateway connection."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    IDENTIFYING = "IDENTIFYING"
    CONNECTED = "CONNECTED"
    RESUMING = "RESUMING"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"


_ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING, SessionState.CLOSING},
    SessionState.CONNECTING: {SessionState.IDENTIFYING, SessionState.RECONNECTING, SessionState.CLOSING},
    SessionState.IDENTIFYING: {SessionState.CONNECTED, SessionState.RECONNECTING, SessionState.CLOSING},
    SessionState.CONNECTED: {SessionState.RECONNECTING, SessionState.CLOSING},
    SessionState.RECONNECTING: {SessionState.RESUMING, SessionState.CONNECTING, SessionState.CLOSING},
    SessionState.RESUMING: {
        SessionState.CONNECTED,
        SessionState.CONNECTING,
        SessionState.RECONNECTING,
        SessionState.CLOSING,
    },
    SessionState.CLOSING: {SessionState.DISCONNECTED},
}


class InvalidTransition(ValueError):
    """Raised when a state change is not part of the state machine."""


@dataclass(frozen=True)
class SessionInfo:
    """Immutable copy of the session fields handed to outside readers."""

    state: SessionState
    session_id: Optional[str]
    sequence: Optional[int]
    shard_id: int
    shard_count: int
    connected_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def can_resume(self) -> bool:
        return bool(self.session_id) and self.sequence is not None


@dataclass
class SessionTracker:
    """Session fields mutated by the gateway loop and published as snapshots.

    Every mutation swaps in a fresh ``SessionInfo`` under a lock, so readers on
    any thread only ever see a complete snapshot.
    """

    shard_id: int = 0
    shard_count: int = 1
    state: SessionState = SessionState.DISCONNECTED
    session_id: Optional[str] = None
    sequence: Optional[int] = None
    connected_at: Optional[datetime] = None
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _snapshot: SessionInfo = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._publish()

    def snapshot(self) -> SessionInfo:
        with self._lock:
            return self._snapshot

    def transition(self, next_state: SessionState) -> None:
        """Move the session into a new state, validating allowed transitions."""

        with self._lock:
            if next_state not in _ALLOWED_TRANSITIONS.get(self.state, set()):
                raise InvalidTransition(f"Invalid transition {self.state.value} -> {next_state.value}")
            LOGGER.debug("Session state %s -> %s", self.state.value, next_state.value)
            self.state = next_state
            self.last_transition_at = datetime.now(tz=timezone.utc)
            self.connected_at = self.last_transition_at if next_state is SessionState.CONNECTED else None
            self._publish_locked()

    def record_ready(self, session_id: str, sequence: Optional[int]) -> None:
        with self._lock:
            self.session_id = session_id
            if sequence is not None and (self.sequence is None or sequence > self.sequence):
                self.sequence = sequence
            self._publish_locked()

    def update_sequence(self, sequence: Optional[int], *, resuming: bool = False) -> bool:
        """Store ``sequence`` if it advances the session; return whether it was stored.

        Gaps are accepted. A lower value on a non-resume frame is logged and ignored.
        """

        if sequence is None:
            return False
        with self._lock:
            current = self.sequence
            if current is None or sequence > current:
                self.sequence = sequence
                self._publish_locked()
                return True
        if sequence < current and not resuming:
            LOGGER.warning("Ignoring sequence decrease %s -> %s", current, sequence)
        return False

    def clear_session(self) -> None:
        """Forget the resumable session so the next connection identifies fresh."""

        with self._lock:
            self.session_id = None
            self.sequence = None
            self._publish_locked()

    def reset(self) -> None:
        """Clear every field after stop or an unrecoverable error."""

        with self._lock:
            self.session_id = None
            self.sequence = None
            self.connected_at = None
            self._publish_locked()

    def can_resume(self) -> bool:
        with self._lock:
            return bool(self.session_id) and self.sequence is not None

    def _publish(self) -> None:
        with self._lock:
            self._publish_locked()

    def _publish_locked(self) -> None:
        self._snapshot = SessionInfo(
            state=self.state,
            session_id=self.session_id,
            sequence=self.sequence,
            shard_id=self.shard_id,
            shard_count=self.shard_count,
            connected_at=self.connected_at,
        )


@dataclass
class HeartbeatState:
    """Liveness bookkeeping for one socket."""

    interval: float
    timeout_factor: float = 2.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    last_sent_at: Optional[float] = None
    last_ack_received_at: Optional[float] = None
    outstanding: bool = False

    def __post_init__(self) -> None:
        # The hello frame counts as the first sign of life.
        if self.last_ack_received_at is None:
            self.last_ack_received_at = self.clock()

    @property
    def deadline(self) -> float:
        return self.timeout_factor * self.interval

    def mark_sent(self) -> None:
        self.last_sent_at = self.clock()
        self.outstanding = True

    def mark_ack(self) -> None:
        self.last_ack_received_at = self.clock()
        self.outstanding = False

    def is_dead(self, now: Optional[float] = None) -> bool:
        if not self.outstanding:
            return False
        current = self.clock() if now is None else now
        reference = self.last_ack_received_at if self.last_ack_received_at is not None else self.last_sent_at
        if reference is None:
            return False
        return current - reference > self.deadline

    def seconds_until_dead(self, now: Optional[float] = None) -> Optional[float]:
        if not self.outstanding:
            return None
        current = self.clock() if now is None else now
        reference = self.last_ack_received_at if self.last_ack_received_at is not None else self.last_sent_at
        if reference is None:
            return None
        return max(0.0, reference + self.deadline - current)
