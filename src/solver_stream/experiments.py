"""
Persist a finished solver session as a named experiment on the backend.

POST {base}/save_experiment/{session_id} with name, user id and whether the
session was an optimization run.
"""
import logging
from typing import Any, Dict, Optional

import requests

from solver_stream.config import SolverEndpoints
from solver_stream.errors import ConfigError, NegotiationError
from solver_stream.negotiator import check_response

logger = logging.getLogger(__name__)


def save_experiment(endpoints: SolverEndpoints, session_id: str, name: str,
                    user_id: str = "anonymous", is_optimized: bool = False,
                    session: Optional[requests.Session] = None,
                    timeout_seconds: float = 30.0) -> Dict[str, Any]:
    """Save a session under ``name``.

    Returns:
        The backend's JSON reply, or an empty dict if it sent none.

    Raises:
        ConfigError: No session id or an empty name.
        NegotiationError: The backend rejected the request or was unreachable.
    """
    if not session_id:
        raise ConfigError("No active session to save")
    if not name or not name.strip():
        raise ConfigError("Experiment name must not be empty")

    http = session or requests
    url = endpoints.experiment_url(session_id)
    payload = {
        "name": name.strip(),
        "user_id": user_id or "anonymous",
        "is_optimized": bool(is_optimized),
    }
    logger.info("Saving experiment %r for session %s", payload["name"], session_id)
    try:
        resp = http.post(url, json=payload, timeout=timeout_seconds)
    except requests.RequestException as e:
        raise NegotiationError(None, f"Failed to save experiment: {e}") from e

    check_response(resp)
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"result": data}
