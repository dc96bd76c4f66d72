"""
Exception hierarchy for the solver streaming client.

Only ConfigError is raised into caller code once a session has been
requested; everything that happens after start lands in StreamState.error.
"""
from typing import Optional


class SolverStreamError(Exception):
    """Base exception for solver streaming errors."""
    pass


class ConfigError(SolverStreamError):
    """Caller-supplied configuration is missing or invalid."""
    pass


class NegotiationError(SolverStreamError):
    """Session negotiation returned a non-success HTTP response."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        if status is None:
            super().__init__(message)
        else:
            super().__init__(f"Session creation failed ({status}): {message}")


class ProtocolError(SolverStreamError):
    """Solver response or stream frame violates the wire contract."""
    pass


class StreamConnectionError(SolverStreamError):
    """WebSocket transport reported an error."""
    pass
