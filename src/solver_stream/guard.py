"""Entry point that only restarts the solver session when the config changes."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from solver_stream.config import normalize_request, request_fingerprint
from solver_stream.contracts import SessionRequest
from solver_stream.manager import StreamingConnectionManager

logger = logging.getLogger(__name__)


class ConfigChangeGuard:
    """Compares each submitted config against the one that started the
    tracked session and starts a new session only on a change.

    Resubmitting a value-identical config is a no-op. To force a rerun with
    the same parameters, change ``run_id`` in the config.
    """

    def __init__(self, manager: StreamingConnectionManager):
        self.manager = manager
        self._fingerprint: Optional[str] = None
        self._request: Optional[SessionRequest] = None

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    @property
    def request(self) -> Optional[SessionRequest]:
        return self._request

    async def submit(self, config: Mapping[str, Any]) -> bool:
        """Normalize ``config`` and start a session if it differs.

        Returns:
            True if a new session was started.

        Raises:
            ConfigError: ``config`` cannot be normalized; nothing is started
                and the current session is left alone.
        """
        request = normalize_request(config, mode=self.manager.mode)
        return await self.submit_request(request)

    async def submit_request(self, request: SessionRequest) -> bool:
        fingerprint = request_fingerprint(request)
        if fingerprint == self._fingerprint:
            logger.debug("Config unchanged; keeping current session")
            return False

        logger.info("Config changed; starting new %s session", request.mode.value)
        await self.manager.start(request)
        # Only a session that actually started is tracked.
        self._fingerprint = fingerprint
        self._request = request
        return True

    async def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the session and forget its config, so resubmitting it reruns."""
        self._fingerprint = None
        self._request = None
        if reason is None:
            await self.manager.cancel()
        else:
            await self.manager.cancel(reason)
