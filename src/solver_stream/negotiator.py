"""
Session negotiation with the remote solver.

One POST per session via requests; the solver answers with
``{"session_id": ..., "config": {...}}``. No retries happen here.
"""
import logging
from typing import Any, Optional

import requests

from solver_stream.config import SolverEndpoints
from solver_stream.contracts import SessionHandle, SessionRequest
from solver_stream.errors import NegotiationError, ProtocolError

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Session creation failed"


def error_message(resp) -> str:
    """Best-effort human-readable message from a failed solver response.

    Prefers a JSON ``detail`` or ``message`` field, then the raw body text,
    then a generic message.
    """
    try:
        body = resp.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("detail", "message"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)

    text = (resp.text or "").strip()
    if text:
        return text
    return f"{GENERIC_FAILURE_MESSAGE} (HTTP {resp.status_code})"


def check_response(resp) -> None:
    """Raise NegotiationError for any non-2xx response."""
    if not 200 <= resp.status_code < 300:
        raise NegotiationError(resp.status_code, error_message(resp))


class SessionNegotiator:
    """Turns a canonical SessionRequest into a SessionHandle."""

    def __init__(self, endpoints: SolverEndpoints,
                 session: Optional[requests.Session] = None,
                 timeout_seconds: float = 30.0):
        self.endpoints = endpoints
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def negotiate(self, request: SessionRequest) -> SessionHandle:
        """POST the request to the mode's session endpoint.

        Raises:
            NegotiationError: Non-2xx status, or the request never reached
                the solver (status is None in that case).
            ProtocolError: 2xx response without a usable session id.
        """
        url = self.endpoints.session_url(request.mode)
        logger.info("Creating %s session at %s", request.mode.value, url)
        try:
            resp = self.session.post(
                url,
                json=request.to_payload(),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise NegotiationError(None, f"{GENERIC_FAILURE_MESSAGE}: {e}") from e

        check_response(resp)
        return self._parse_handle(resp)

    def _parse_handle(self, resp) -> SessionHandle:
        try:
            data: Any = resp.json()
        except ValueError as e:
            raise ProtocolError(f"Session response is not JSON: {resp.text!r}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Session response is not an object: {data!r}")

        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ProtocolError(f"Session response has no session_id: {data!r}")

        config = data.get("config")
        logger.info("Session created: %s", session_id)
        return SessionHandle(
            session_id=session_id,
            config=dict(config) if isinstance(config, dict) else {},
        )
