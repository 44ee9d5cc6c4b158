"""
In-memory map of online users to their real-time sessions.

The registry lives only in process memory. After a restart it is empty until
clients register again; messages sent meanwhile reach their receivers on the
next conversation fetch instead of in real time.
"""

import logging
from typing import Any, Dict, Optional

from pigeon.metrics import set_realtime_connections

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self):
        # user_id -> session_id
        self._sessions: Dict[int, str] = {}
        # session_id -> socket
        self._sockets: Dict[str, Any] = {}

    def register(self, user_id: int, session_id: str, socket: Any) -> None:
        previous = self._sessions.get(user_id)
        if previous is not None and previous != session_id:
            logger.info(f"User {user_id} re-registered, replacing session {previous}")
            self._sockets.pop(previous, None)
        self._sessions[user_id] = session_id
        self._sockets[session_id] = socket
        set_realtime_connections(len(self._sessions))
        logger.info(f"User {user_id} registered with session {session_id}")

    def lookup(self, user_id: int) -> Optional[str]:
        return self._sessions.get(user_id)

    def is_online(self, user_id: int) -> bool:
        return user_id in self._sessions

    def remove(self, user_id: int) -> None:
        session_id = self._sessions.pop(user_id, None)
        if session_id is not None:
            self._sockets.pop(session_id, None)
            set_realtime_connections(len(self._sessions))
            logger.info(f"User {user_id} removed from registry")

    def remove_session(self, session_id: str) -> Optional[int]:
        """
        Drop whichever user is mapped to session_id.

        Returns:
            The user id that was removed, or None
        """
        self._sockets.pop(session_id, None)
        for user_id, sid in list(self._sessions.items()):
            if sid == session_id:
                self.remove(user_id)
                return user_id
        return None

    def user_for_session(self, session_id: str) -> Optional[int]:
        for user_id, sid in self._sessions.items():
            if sid == session_id:
                return user_id
        return None

    @property
    def online_count(self) -> int:
        return len(self._sessions)

    async def send(self, user_id: int, event: str, data: dict) -> bool:
        """
        Push one event to a user's session, fire-and-forget.

        Returns:
            True if the frame was handed to the socket, False if the user is
            offline or the socket turned out to be dead (it is then dropped).
        """
        session_id = self._sessions.get(user_id)
        if session_id is None:
            return False
        socket = self._sockets.get(session_id)
        if socket is None:
            return False
        try:
            await socket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.warning(f"Dropping dead session {session_id} for user {user_id}: {e}")
            self.remove(user_id)
            return False
