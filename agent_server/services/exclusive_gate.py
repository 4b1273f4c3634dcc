"""Exclusive Mode Gate — process-wide admission control allowing one running query.

Invariants:
    - When disabled, every request is admitted and nothing is recorded
    - When enabled, at most one query holds the slot; a second claim is rejected even
      from the session that already holds it
    - A session can only release a slot it holds
    - An occupied slot is a hard rejection (409), never a queue

Design Decisions:
    - Plain attribute, no lock: asyncio is single-threaded and claim() does not await
      between the check and the write
"""

import logging

from agent_server.core.errors import ExclusiveModeBusyError

logger = logging.getLogger(__name__)


class ExclusiveModeGate:
    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._running_session_id: str | None = None

    @property
    def running_session_id(self) -> str | None:
        return self._running_session_id

    def can_accept_new_request(self) -> bool:
        return not self.enabled or self._running_session_id is None

    def claim(self, session_id: str) -> None:
        """Take the slot for `session_id` or raise ExclusiveModeBusyError."""
        if not self.enabled:
            return
        current = self._running_session_id
        if current is not None:
            raise ExclusiveModeBusyError(current)
        self._running_session_id = session_id
        logger.debug(
            f"Exclusive slot claimed by {session_id}", extra={"session_id": session_id},
        )

    def release(self, session_id: str) -> bool:
        """Free the slot if `session_id` holds it. Returns whether it did."""
        if self._running_session_id != session_id:
            return False
        self._running_session_id = None
        logger.debug(
            f"Exclusive slot released by {session_id}", extra={"session_id": session_id},
        )
        return True
