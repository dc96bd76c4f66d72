"""
Shared fixtures and fakes for the solver streaming tests.

FakeNegotiator and FakeConnector stand in for the HTTP solver and the
WebSocket server; both append to a shared ``events`` list so tests can
assert on the ordering of negotiations, connects and closes.
"""
import asyncio
import itertools
import json
import sys
from pathlib import Path

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from solver_stream.config import SolverEndpoints, StreamPolicy
from solver_stream.contracts import Mode, SessionHandle
from solver_stream.errors import NegotiationError
from solver_stream.manager import StreamingConnectionManager

CST_UPPER = [0.18, 0.22, 0.2]
CST_LOWER = [-0.1, -0.08, -0.06]


# ── HTTP fakes ──────────────────────────────────────────────────────────────

_NO_JSON = object()


class FakeResponse:
    def __init__(self, status_code=200, json_data=_NO_JSON, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text or json_data is _NO_JSON else json.dumps(json_data)

    def json(self):
        if self._json is _NO_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeHttpSession:
    """Records POSTs and replays queued responses (or raises queued errors)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers,
                           "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeNegotiator:
    """Hands out session ids in order; an Exception in the list is raised."""

    def __init__(self, events, session_ids=None):
        self.events = events
        self.outcomes = list(session_ids) if session_ids is not None else None
        self._counter = itertools.count(1)
        self.requests = []

    def negotiate(self, request):
        self.requests.append(request)
        if self.outcomes is not None:
            outcome = self.outcomes.pop(0)
        else:
            outcome = f"session-{next(self._counter)}"
        self.events.append(("negotiate", outcome if isinstance(outcome, str) else None))
        if isinstance(outcome, Exception):
            raise outcome
        return SessionHandle(session_id=outcome, config={"echo": True})


# ── WebSocket fakes ─────────────────────────────────────────────────────────

class FakeSocket:
    """Server-side script for one client socket."""

    def __init__(self, url, events):
        self.url = url
        self.events = events
        self.inbox = asyncio.Queue()
        self.closed_with = None

    def push(self, message):
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self.inbox.put_nowait(("message", message))

    def drop(self):
        """Connection lost without a closing handshake."""
        self.events.append(("drop", self.url))
        self.inbox.put_nowait(("closed", ConnectionClosedError(None, None)))

    def server_close(self, code=1000, reason="done"):
        frame = Close(code, reason)
        closed = ConnectionClosedOK(frame, frame, rcvd_then_sent=True)
        self.inbox.put_nowait(("closed", closed))

    async def recv(self):
        kind, value = await self.inbox.get()
        if kind == "closed":
            raise value
        return value

    async def close(self, code=1000, reason=""):
        if self.closed_with is not None:
            return
        self.closed_with = (code, reason)
        self.events.append(("close", self.url))
        frame = Close(code, reason)
        closed = ConnectionClosedOK(frame, frame, rcvd_then_sent=True)
        self.inbox.put_nowait(("closed", closed))


class FakeConnector:
    def __init__(self, events, fail=0):
        self.events = events
        self.sockets = []
        self.fail = fail

    async def __call__(self, url):
        if self.fail:
            self.fail -= 1
            self.events.append(("connect_failed", url))
            raise OSError("Connection refused")
        socket = FakeSocket(url, self.events)
        self.sockets.append(socket)
        self.events.append(("connect", url))
        return socket

    @property
    def open_sockets(self):
        return [s for s in self.sockets if s.closed_with is None]


# ── Frame builders ──────────────────────────────────────────────────────────

def iteration_frame(k, total=3):
    return {
        "type": "iteration",
        "meta": {
            "iteration": k,
            "total_iterations": total,
            "loss": 1.0 / k,
            "cl": 0.5 + 0.01 * k,
            "cd": 0.02,
            "cl_cd": (0.5 + 0.01 * k) / 0.02,
            "lift_force": 10.0 * k,
            "drag_force": 0.4,
        },
        "shape": {
            "cst_upper": CST_UPPER,
            "cst_lower": CST_LOWER,
            "airfoil_x": [0.0, 0.5, 1.0],
            "airfoil_y_upper": [0.0, 0.06, 0.0],
            "airfoil_y_lower": [0.0, -0.04, 0.0],
        },
    }


def complete_frame(total=3):
    return {
        "type": "complete",
        "meta": {
            "total_iterations": total,
            "final_cl": 0.53,
            "final_cd": 0.02,
            "final_cl_cd": 26.5,
            "final_drag": 0.4,
            "final_loss": 0.33,
        },
        "shape": iteration_frame(total, total)["shape"],
        "initial_shape": {"cst_upper": CST_UPPER, "cst_lower": CST_LOWER},
    }


async def wait_for(predicate, timeout=2.0):
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def endpoints():
    return SolverEndpoints(http_base="http://solver.test", ws_base="ws://solver.test")


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_manager(endpoints, events):
    """Factory for a manager wired to fakes; call inside a running loop."""

    def _make(mode=Mode.OPTIMIZATION, session_ids=None, fail_connects=0, **policy):
        policy.setdefault("reconnect_delay_s", 0.02)
        negotiator = FakeNegotiator(events, session_ids)
        connector = FakeConnector(events, fail=fail_connects)
        manager = StreamingConnectionManager(
            negotiator, endpoints, mode, StreamPolicy(**policy), connect=connector,
        )
        return manager, negotiator, connector

    return _make


@pytest.fixture
def optimization_config():
    return {
        "fidelity": "medium",
        "cst_upper": list(CST_UPPER),
        "cst_lower": list(CST_LOWER),
        "num_iterations": 3,
    }


@pytest.fixture
def negotiation_error():
    return NegotiationError(500, "solver busy")
