import threading
from typing import Dict, FrozenSet, NamedTuple, Optional, Set

from core.exceptions import DuplicateRegistration
from logging_config import get_logger

logger = get_logger(__name__)


class Binding(NamedTuple):
    room_id: str
    member_id: str


class ConnectionRegistry:
    """
    Tracks live transport connections and the room/member each one belongs to.

    Keeps both directions so broadcasts can be addressed by room and
    disconnects can be resolved from a bare connection id.
    In-memory and per process; every method is safe to call from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # Format: {connection_id: Binding}
        self._bindings: Dict[str, Binding] = {}
        # Format: {room_id: {connection_id, ...}}
        self._room_connections: Dict[str, Set[str]] = {}

    def register(self, connection_id: str, room_id: str, member_id: str) -> bool:
        """Bind a connection to a room/member pair.

        Returns True when a new binding was made and False when the exact same
        binding already existed. A connection can only ever be bound to one
        pair; rebinding it elsewhere raises DuplicateRegistration.
        """
        binding = Binding(room_id, member_id)
        with self._lock:
            existing = self._bindings.get(connection_id)
            if existing is not None:
                if existing == binding:
                    logger.debug(f"Connection {connection_id} already registered to room {room_id}")
                    return False
                raise DuplicateRegistration(connection_id, existing)
            self._bindings[connection_id] = binding
            self._room_connections.setdefault(room_id, set()).add(connection_id)
        logger.debug(f"Registered connection {connection_id} to room {room_id} as {member_id}")
        return True

    def unregister(self, connection_id: str) -> Optional[Binding]:
        """Remove a binding. Returns it, or None if it was already gone."""
        with self._lock:
            binding = self._bindings.pop(connection_id, None)
            if binding is None:
                return None
            connections = self._room_connections.get(binding.room_id)
            if connections is not None:
                connections.discard(connection_id)
                if not connections:
                    del self._room_connections[binding.room_id]
        logger.debug(f"Unregistered connection {connection_id} from room {binding.room_id}")
        return binding

    def connections_for(self, room_id: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._room_connections.get(room_id, ()))

    def binding_for(self, connection_id: str) -> Optional[Binding]:
        with self._lock:
            return self._bindings.get(connection_id)

    def count(self) -> int:
        with self._lock:
            return len(self._bindings)
