"""
Streaming connection manager: one solver session and one WebSocket at a time.

State machine (see StreamState):

    IDLE -> CONNECTING      start(): negotiate, then open the socket
    CONNECTING -> OPEN      socket opened
    OPEN -> OPEN            each message goes through FrameDispatcher
    OPEN -> COMPLETED       ``complete`` frame (or clean close, per policy)
    * -> ERRORED            transport error; the close that follows decides
    * -> CLOSED             clean close, cancel(), or config change
    * -> CONNECTING         unclean close: one reconnect after a fixed delay

A close we initiated ourselves carries a CloseReason on the session run, so
the close handler never mistakes it for a dropped connection.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from solver_stream.config import (
    MANUAL_CLOSE_CODE,
    MANUAL_CLOSE_REASON,
    SolverEndpoints,
    StreamPolicy,
)
from solver_stream.contracts import CompletionPolicy, Mode, SessionRequest
from solver_stream.errors import (
    ConfigError,
    NegotiationError,
    ProtocolError,
    SolverStreamError,
    StreamConnectionError,
)
from solver_stream.frames import FrameDispatcher
from solver_stream.negotiator import SessionNegotiator
from solver_stream.state import ConnectionState, StreamSnapshot, StreamState

logger = logging.getLogger(__name__)

ABNORMAL_CLOSE_CODE = 1006

Connector = Callable[[str], Awaitable[Any]]


class CloseReason(Enum):
    """Why the manager itself closed a socket."""
    CANCELLED = "cancelled"
    CONFIG_CHANGE = "config_change"


@dataclass(frozen=True)
class CloseEvent:
    code: int
    reason: str
    was_clean: bool

    @classmethod
    def from_exception(cls, exc: ConnectionClosed) -> "CloseEvent":
        """A close is clean when both close frames were exchanged."""
        rcvd = exc.rcvd
        return cls(
            code=rcvd.code if rcvd is not None else ABNORMAL_CLOSE_CODE,
            reason=rcvd.reason if rcvd is not None else "",
            was_clean=exc.rcvd is not None and exc.sent is not None,
        )


class _SessionRun:
    """One negotiation plus the lifetime of its socket."""

    def __init__(self, request: SessionRequest):
        self.request = request
        self.session_id: Optional[str] = None
        self.socket: Any = None
        self.task: Optional[asyncio.Task] = None
        self.expected_close: Optional[CloseReason] = None


class StreamingConnectionManager:
    """Owns the solver WebSocket and drives the connection state machine.

    All methods must be called from the event loop that runs the manager.
    Failures after ``start`` are published on ``state``; they are never
    raised into the caller.
    """

    def __init__(self, negotiator: SessionNegotiator, endpoints: SolverEndpoints,
                 mode: Mode, policy: Optional[StreamPolicy] = None,
                 connect: Optional[Connector] = None):
        self.negotiator = negotiator
        self.endpoints = endpoints
        self.mode = mode
        self.policy = policy or StreamPolicy()
        self.completion = self.policy.completion_for(mode)
        self.state = StreamState(history_limit=self.policy.history_limit)
        self.dispatcher = FrameDispatcher(self.state)
        self._connect = connect or ws_connect
        self._run: Optional[_SessionRun] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self.last_error: Optional[SolverStreamError] = None
        self._mounted = True
        self._settled = asyncio.Event()
        self._settled.set()

    # -- public API --------------------------------------------------------

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def snapshot(self) -> StreamSnapshot:
        return self.state.snapshot()

    async def start(self, request: SessionRequest) -> None:
        """Close any current session, then negotiate and stream ``request``.

        Returns once the new session has been launched; negotiation and
        streaming continue in a background task.

        Raises:
            ConfigError: ``request`` is for a different mode.
            RuntimeError: The manager has been shut down.
        """
        if not self._mounted:
            raise RuntimeError("StreamingConnectionManager has been shut down")
        if request.mode is not self.mode:
            raise ConfigError(
                f"{request.mode.value} request sent to a {self.mode.value} stream"
            )
        await self._stop_run(CloseReason.CONFIG_CHANGE, MANUAL_CLOSE_REASON)
        self.state.reset_reconnects()
        self._launch(request)

    async def cancel(self, reason: str = MANUAL_CLOSE_REASON) -> None:
        """Stop the current session without reconnecting. Idempotent."""
        if self._run is None and self._reconnect_handle is None:
            return
        logger.info("Cancelling %s stream: %s", self.mode.value, reason)
        await self._stop_run(CloseReason.CANCELLED, reason)
        if self.state.connection is not ConnectionState.COMPLETED:
            self.state.mark_closed()
        self._settled.set()

    async def shutdown(self) -> None:
        """Cancel and refuse further starts or reconnects."""
        self._mounted = False
        await self.cancel()

    async def wait_until_settled(self, timeout: Optional[float] = None) -> StreamSnapshot:
        """Wait until the stream is complete, closed for good, or failed.

        Raises:
            asyncio.TimeoutError: ``timeout`` elapsed first.
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.state.snapshot()

    async def __aenter__(self) -> "StreamingConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # -- session lifecycle -------------------------------------------------

    def _launch(self, request: SessionRequest, reconnect: bool = False) -> None:
        if not reconnect:
            self.last_error = None
        run = _SessionRun(request)
        self._run = run
        self._settled.clear()
        self.state.begin_session(keep_error=reconnect)
        run.task = asyncio.get_running_loop().create_task(self._run_session(run))
        run.task.add_done_callback(lambda task: self._on_task_done(run, task))

    async def _stop_run(self, reason: CloseReason, close_text: str) -> None:
        self._cancel_reconnect()
        run = self._run
        if run is None:
            return
        self._run = None
        run.expected_close = reason

        socket = run.socket
        if socket is not None:
            try:
                await socket.close(code=MANUAL_CLOSE_CODE, reason=close_text)
            except (WebSocketException, OSError) as e:
                logger.debug("Error while closing WebSocket: %s", e)

        task = run.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            if socket is None:
                # Still negotiating or connecting.
                task.cancel()
            await asyncio.wait([task])

    async def _run_session(self, run: _SessionRun) -> None:
        try:
            handle = await asyncio.to_thread(self.negotiator.negotiate, run.request)
        except (NegotiationError, ProtocolError) as e:
            if run.expected_close is None:
                logger.error("Failed to start %s session: %s", self.mode.value, e)
                self.last_error = e
                self.state.mark_error(str(e))
                self._finish(run)
            return
        if run.expected_close is not None:
            return

        run.session_id = handle.session_id
        self.state.attach_session(handle.session_id)
        url = self.endpoints.socket_url(self.mode, handle.session_id)
        logger.info("Connecting to WebSocket: %s", url)

        try:
            socket = await self._connect(url)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            if run.expected_close is None:
                self._handle_error(run, e)
                self._handle_close(run, CloseEvent(ABNORMAL_CLOSE_CODE, str(e), False))
            return

        run.socket = socket
        if run.expected_close is not None:
            await socket.close(code=MANUAL_CLOSE_CODE, reason=MANUAL_CLOSE_REASON)
            return

        self._handle_open(run)
        while True:
            try:
                message = await socket.recv()
            except ConnectionClosed as e:
                event = CloseEvent.from_exception(e)
                if not event.was_clean:
                    self._handle_error(run, e)
                self._handle_close(run, event)
                return
            self._handle_message(run, message)

    # -- socket event handlers ---------------------------------------------

    def _handle_open(self, run: _SessionRun) -> None:
        if run is not self._run:
            return
        logger.info("WebSocket connected (session %s)", run.session_id)
        self.state.mark_open()

    def _handle_message(self, run: _SessionRun, message) -> None:
        if run is not self._run:
            return
        self.dispatcher.dispatch(message)
        if self.state.connection is ConnectionState.COMPLETED:
            # Results are final; the server's close only tidies up.
            self._settled.set()

    def _handle_error(self, run: _SessionRun, exc: BaseException) -> None:
        if run.expected_close is not None or run is not self._run:
            return
        if self.state.connection is ConnectionState.COMPLETED:
            logger.debug("Ignoring transport error after completion: %s", exc)
            return
        logger.error("WebSocket error (session %s): %s", run.session_id, exc)
        self.last_error = StreamConnectionError(f"WebSocket error: {exc}")
        self.state.mark_error()

    def _handle_close(self, run: _SessionRun, event: CloseEvent) -> None:
        logger.info(
            "WebSocket closed (session %s): code=%s reason=%r clean=%s",
            run.session_id, event.code, event.reason, event.was_clean,
        )
        run.socket = None
        if run.expected_close is not None:
            if self.state.connection is not ConnectionState.COMPLETED:
                self.state.mark_closed()
            return
        if run is not self._run:
            return

        if self.state.connection is ConnectionState.COMPLETED:
            self._finish(run)
            return

        if event.was_clean:
            if self.completion is CompletionPolicy.CLEAN_CLOSE:
                self.state.mark_complete()
            else:
                self.state.mark_closed()
            self._finish(run)
            return

        if not self._mounted:
            self.state.mark_closed()
            self._finish(run)
            return

        limit = self.policy.max_reconnects
        if limit is not None and self.state.reconnect_attempts >= limit:
            logger.error("Giving up after %d reconnect attempts", limit)
            message = f"Connection lost; gave up after {limit} reconnect attempts"
            self.last_error = StreamConnectionError(message)
            self.state.mark_error(message)
            self.state.mark_closed()
            self._finish(run)
            return

        self._schedule_reconnect(run)

    # -- reconnection ------------------------------------------------------

    def _schedule_reconnect(self, run: _SessionRun) -> None:
        delay = self.policy.reconnect_delay_s
        logger.warning("Attempting to reconnect in %.1f seconds...", delay)
        self._run = None
        self.state.mark_reconnecting()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect, run.request)

    def _reconnect(self, request: SessionRequest) -> None:
        self._reconnect_handle = None
        if not self._mounted or self._run is not None:
            return
        logger.info("Reconnecting %s stream", self.mode.value)
        self._launch(request, reconnect=True)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _finish(self, run: _SessionRun) -> None:
        if run is self._run:
            self._run = None
        self._settled.set()

    def _on_task_done(self, run: _SessionRun, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("Stream task failed", exc_info=exc)
        if run is self._run:
            self.state.mark_error(f"Stream failed: {exc}")
            self._finish(run)
