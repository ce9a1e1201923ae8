"""
Room synchronization errors.

All errors raised by the core derive from RoomSyncError so the transport
layers (WebSocket loop, HTTP router) can translate them in one place.
"""


class RoomSyncError(Exception):
    """Base class for every room synchronization error"""
    code = "error"


# ============ Validation errors ============

class InvalidVote(RoomSyncError):
    """Vote value is not part of the deck"""
    code = "invalid-vote"

    def __init__(self, value, deck=None):
        self.value = value
        detail = f"Vote {value!r} is not in the deck"
        if deck:
            detail += f" ({', '.join(deck)})"
        super().__init__(detail)


class InvalidMember(RoomSyncError):
    """Member id missing or empty"""
    code = "invalid-member"


# ============ Lookup errors ============

class NotFound(RoomSyncError):
    """Unknown room or member for an operation that requires one"""
    code = "not-found"


class RoomNotFound(NotFound):
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class MemberNotFound(NotFound):
    def __init__(self, room_id, member_id):
        self.room_id = room_id
        self.member_id = member_id
        super().__init__(f"Member {member_id} not found in room {room_id}")


# ============ Connection errors ============

class DuplicateRegistration(RoomSyncError):
    """Connection is already bound to a different room/member pair"""
    code = "duplicate-registration"

    def __init__(self, connection_id, binding):
        self.connection_id = connection_id
        self.binding = binding
        super().__init__(
            f"Connection {connection_id} already bound to room {binding.room_id} as {binding.member_id}"
        )


# ============ Persistence errors ============

class PersistenceUnavailable(RoomSyncError):
    """Durable read or write failed"""
    code = "persistence-unavailable"
