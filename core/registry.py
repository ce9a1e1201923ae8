import threading
from typing import Callable, Dict, List, Optional, Tuple

from core.session import RoomSession
from logging_config import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """
    Owns exactly one RoomSession per room id.

    Lookup and creation happen under one lock and the new session is
    published before the lock is released, so concurrent first accesses to
    the same room always end up with the same instance. The lock is never
    held across an await.
    """

    def __init__(self, session_factory: Optional[Callable[[str], RoomSession]] = None):
        self._lock = threading.Lock()
        self._sessions: Dict[str, RoomSession] = {}
        self._session_factory = session_factory or RoomSession

    def get_or_create(self, room_id: str) -> Tuple[RoomSession, bool]:
        """Return (session, created)."""
        with self._lock:
            session = self._sessions.get(room_id)
            if session is not None:
                return session, False
            session = self._session_factory(room_id)
            self._sessions[room_id] = session
        logger.info(f"Created session for room {room_id}")
        return session, True

    def get(self, room_id: str) -> Optional[RoomSession]:
        with self._lock:
            return self._sessions.get(room_id)

    def remove(self, room_id: str) -> Optional[RoomSession]:
        with self._lock:
            session = self._sessions.pop(room_id, None)
        if session is not None:
            logger.info(f"Evicted session for room {room_id}")
        return session

    def room_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def __contains__(self, room_id) -> bool:
        with self._lock:
            return room_id in self._sessions
