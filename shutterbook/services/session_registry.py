"""
Shutterbook Notifications — Stream Session Registry
=====================================================

Process-wide table of open stream sessions, used for observability (the
health endpoint reports `active_streams`) and for closing every stream at
shutdown. Events never pass through here: each session holds its own
change feed subscription.
"""

import logging
import uuid
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from shutterbook.services.stream_session import StreamSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Non-owning lookup of active sessions keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, "StreamSession"] = {}

    def register(self, session: "StreamSession") -> None:
        self._sessions[session.session_id] = session
        logger.debug(
            "Registered stream %s for user %s (%d active)",
            session.session_id,
            session.user_id,
            len(self._sessions),
        )

    def unregister(self, session_id: str) -> None:
        """Remove a session. Unknown ids are ignored."""
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Unregistered stream %s (%d active)", session_id, len(self._sessions))

    def get(self, session_id: str) -> Optional["StreamSession"]:
        return self._sessions.get(session_id)

    def sessions_for_user(self, user_id: uuid.UUID) -> List["StreamSession"]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def shutdown_all(self) -> int:
        """
        Close every registered session exactly once.

        Sessions unregister themselves while closing, so iteration runs over
        a snapshot. Returns the number of sessions closed.
        """
        sessions = list(self._sessions.values())
        for session in sessions:
            try:
                session.close()
            except Exception:
                logger.exception("Failed to close stream %s during shutdown", session.session_id)
                self._sessions.pop(session.session_id, None)
        if sessions:
            logger.info("Closed %d notification stream(s) on shutdown", len(sessions))
        return len(sessions)
