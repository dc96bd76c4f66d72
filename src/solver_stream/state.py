"""
Published stream state.

StreamState is owned by one StreamingConnectionManager and mutated only
through its transition methods, on the event loop. Everything else reads
immutable StreamSnapshot copies, either on demand or via listeners.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Mapping, Optional, Tuple

from solver_stream.contracts import (
    CompleteFrame,
    IterationFrame,
    IterationMeta,
    ShapeSnapshot,
)

logger = logging.getLogger(__name__)

GENERIC_SOCKET_ERROR = "WebSocket connection error"


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    COMPLETED = "completed"
    CLOSED = "closed"
    ERRORED = "errored"


_ANY = frozenset(ConnectionState)

# Allowed source states per target state.
_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.CONNECTING: _ANY,
    ConnectionState.OPEN: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.COMPLETED: frozenset({
        ConnectionState.OPEN, ConnectionState.CONNECTING,
        ConnectionState.ERRORED, ConnectionState.COMPLETED,
    }),
    ConnectionState.ERRORED: frozenset({
        ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.ERRORED,
        ConnectionState.COMPLETED, ConnectionState.CLOSED,
    }),
    ConnectionState.CLOSED: _ANY,
    ConnectionState.IDLE: frozenset(),
}


@dataclass(frozen=True)
class StreamSnapshot:
    """Read-only view of StreamState at one point in time."""

    connection: ConnectionState
    connected: bool
    is_complete: bool
    error: Optional[str]
    session_id: Optional[str]
    current_meta: Optional[IterationMeta]
    current_shape: Optional[ShapeSnapshot]
    completed: Optional[CompleteFrame]
    history: Tuple[IterationMeta, ...]
    reconnect_attempts: int
    latest_frame: Optional[Dict[str, Any]] = None

    @property
    def progress(self) -> float:
        """Fraction of iterations (or simulation steps) received.

        0.0 before the first frame.
        """
        if self.is_complete:
            return 1.0
        meta = self.current_meta
        if meta is not None:
            if not meta.total_iterations:
                return 0.0
            return min(1.0, meta.iteration / float(meta.total_iterations))
        return _step_progress(self.latest_frame)


def _step_progress(frame: Optional[Dict[str, Any]]) -> float:
    meta = frame.get("meta") if frame else None
    if not isinstance(meta, dict):
        return 0.0
    step, total = meta.get("step"), meta.get("total_steps")
    for value in (step, total):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
    if total <= 0:
        return 0.0
    return max(0.0, min(1.0, step / float(total)))


Listener = Callable[[StreamSnapshot], None]


@dataclass
class StreamState:
    """Mutable connection state plus the data streamed for one session."""

    history_limit: Optional[int] = None
    connection: ConnectionState = ConnectionState.IDLE
    connected: bool = False
    is_complete: bool = False
    error: Optional[str] = None
    session_id: Optional[str] = None
    current_meta: Optional[IterationMeta] = None
    current_shape: Optional[ShapeSnapshot] = None
    completed: Optional[CompleteFrame] = None
    reconnect_attempts: int = 0
    latest_frame: Optional[Dict[str, Any]] = None
    history: Deque[IterationMeta] = field(init=False)
    _listeners: List[Listener] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self.history = deque(maxlen=self.history_limit)

    # -- observation -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(
            connection=self.connection,
            connected=self.connected,
            is_complete=self.is_complete,
            error=self.error,
            session_id=self.session_id,
            current_meta=self.current_meta,
            current_shape=self.current_shape,
            completed=self.completed,
            history=tuple(self.history),
            reconnect_attempts=self.reconnect_attempts,
            latest_frame=self.latest_frame,
        )

    @property
    def progress(self) -> float:
        return self.snapshot().progress

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Stream state listener failed")

    def _move(self, target: ConnectionState) -> bool:
        if self.connection not in _TRANSITIONS[target]:
            logger.warning(
                "Ignoring transition %s -> %s", self.connection.value, target.value
            )
            return False
        if self.connection is not target:
            logger.debug("Stream %s -> %s", self.connection.value, target.value)
        self.connection = target
        return True

    # -- transitions -------------------------------------------------------

    def begin_session(self, keep_error: bool = False) -> None:
        """Reset per-session data and enter CONNECTING.

        A reconnect keeps the previous error visible until the new socket
        opens.
        """
        self._move(ConnectionState.CONNECTING)
        self.connected = False
        self.is_complete = False
        if not keep_error:
            self.error = None
        self.session_id = None
        self.current_meta = None
        self.current_shape = None
        self.completed = None
        self.latest_frame = None
        self.history.clear()
        self._notify()

    def attach_session(self, session_id: str) -> None:
        self.session_id = session_id
        self._notify()

    def mark_open(self) -> None:
        if self._move(ConnectionState.OPEN):
            self.connected = True
            self.error = None
            self._notify()

    def record_iteration(self, frame: IterationFrame) -> None:
        if self.connection is ConnectionState.COMPLETED:
            logger.debug("Dropping iteration %s received after completion",
                         frame.meta.iteration)
            return
        self.current_meta = frame.meta
        self.current_shape = frame.shape
        self.history.append(frame.meta)
        self._notify()

    def record_raw_frame(self, payload: Mapping[str, Any]) -> None:
        """Keep the latest untyped frame; metrics and history are untouched."""
        if self.connection is ConnectionState.COMPLETED:
            return
        self.latest_frame = dict(payload)
        self._notify()

    def mark_complete(self, frame: Optional[CompleteFrame] = None) -> None:
        if self._move(ConnectionState.COMPLETED):
            if frame is not None:
                self.completed = frame
            self.is_complete = True
            self.connected = False
            self._notify()

    def mark_error(self, message: str = GENERIC_SOCKET_ERROR) -> None:
        if self._move(ConnectionState.ERRORED):
            self.error = message
            self.connected = False
            self._notify()

    def mark_reconnecting(self) -> None:
        self._move(ConnectionState.CONNECTING)
        self.connected = False
        self.reconnect_attempts += 1
        self._notify()

    def mark_closed(self) -> None:
        self._move(ConnectionState.CLOSED)
        self.connected = False
        self._notify()

    def reset_reconnects(self) -> None:
        self.reconnect_attempts = 0
