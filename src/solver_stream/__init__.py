"""Streaming client for remote airfoil simulation and optimization runs."""

from solver_stream.config import (
    SolverEndpoints,
    StreamPolicy,
    normalize_request,
    request_fingerprint,
)
from solver_stream.contracts import (
    CompletionPolicy,
    Fidelity,
    Mode,
    SessionHandle,
    SessionRequest,
)
from solver_stream.errors import (
    ConfigError,
    NegotiationError,
    ProtocolError,
    SolverStreamError,
    StreamConnectionError,
)
from solver_stream.guard import ConfigChangeGuard
from solver_stream.manager import StreamingConnectionManager
from solver_stream.negotiator import SessionNegotiator
from solver_stream.state import ConnectionState, StreamSnapshot, StreamState

__all__ = [
    "CompletionPolicy",
    "ConfigChangeGuard",
    "ConfigError",
    "ConnectionState",
    "Fidelity",
    "Mode",
    "NegotiationError",
    "ProtocolError",
    "SessionHandle",
    "SessionNegotiator",
    "SessionRequest",
    "SolverEndpoints",
    "SolverStreamError",
    "StreamConnectionError",
    "StreamPolicy",
    "StreamSnapshot",
    "StreamState",
    "StreamingConnectionManager",
    "normalize_request",
    "request_fingerprint",
]
