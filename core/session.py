"""
RoomSession: the authoritative state of one estimation room.

States:
    Empty    -> no members
    Active   -> at least one member, votes hidden
    Revealed -> votes disclosed as captured at the last reveal

Every mutation runs under the session's lock, bumps ``version`` exactly once
and returns a MutationResult describing what to broadcast and which document
fields to mirror. Nothing in here performs I/O. The result is handed to the
optional commit hook before the lock is released, so hooks see results in
version order.
"""
import asyncio
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from core.deck import Deck, default_deck
from core.exceptions import InvalidMember, InvalidVote, MemberNotFound
from logging_config import get_logger
from schemas.events import (
    MemberJoinedEvent,
    OutboundEvent,
    PresenceEvent,
    ResetEvent,
    RevealedEvent,
    VoteCastEvent,
    WelcomeEvent,
)

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RoomPhase(str, enum.Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    REVEALED = "revealed"


# ============ Snapshots ============

class MemberSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    vote: Optional[str] = None
    connections: FrozenSet[str] = frozenset()

    @property
    def online(self) -> bool:
        return bool(self.connections)

    @property
    def has_voted(self) -> bool:
        return self.vote is not None


class Snapshot(BaseModel):
    """Immutable, versioned copy of a room's state."""
    model_config = ConfigDict(frozen=True)

    room_id: str
    members: Dict[str, MemberSnapshot]
    revealed: bool = False
    revealed_votes: Optional[Dict[str, Optional[str]]] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def phase(self) -> RoomPhase:
        if not self.members:
            return RoomPhase.EMPTY
        return RoomPhase.REVEALED if self.revealed else RoomPhase.ACTIVE

    @property
    def votes(self) -> Dict[str, Optional[str]]:
        return {member_id: member.vote for member_id, member in self.members.items()}

    def public(self) -> Dict[str, Any]:
        """Consumer view: vote values only appear as captured by the last reveal."""
        members = {}
        for member_id, member in self.members.items():
            vote = None
            if self.revealed and self.revealed_votes is not None:
                vote = self.revealed_votes.get(member_id)
            members[member_id] = {
                "displayName": member.display_name,
                "online": member.online,
                "hasVoted": member.has_voted,
                "vote": vote,
            }
        return {
            "roomId": self.room_id,
            "members": members,
            "revealed": self.revealed,
            "version": self.version,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def to_document(self) -> Dict[str, Any]:
        """Durable layout: members.<id>.{displayName, vote}, revealed, version, timestamps."""
        return {
            "members": {
                member_id: {"displayName": member.display_name, "vote": member.vote}
                for member_id, member in self.members.items()
            },
            "revealed": self.revealed,
            "revealedVotes": dict(self.revealed_votes) if self.revealed_votes is not None else None,
            "version": self.version,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, room_id: str, document: Dict[str, Any]) -> "Snapshot":
        now = utc_now()
        members = {}
        for member_id, data in (document.get("members") or {}).items():
            data = data or {}
            members[member_id] = MemberSnapshot(
                id=member_id,
                display_name=data.get("displayName") or member_id,
                vote=data.get("vote"),
            )
        revealed = bool(document.get("revealed", False))
        revealed_votes = document.get("revealedVotes")
        if revealed and revealed_votes is None:
            revealed_votes = {member_id: member.vote for member_id, member in members.items()}
        return cls(
            room_id=room_id,
            members=members,
            revealed=revealed,
            revealed_votes=revealed_votes if revealed else None,
            version=int(document.get("version") or 0),
            created_at=document.get("createdAt") or now,
            updated_at=document.get("updatedAt") or now,
        )


# ============ Mutation results ============

class Addressing(str, enum.Enum):
    UNICAST = "unicast"   # the originating connection only
    OTHERS = "others"     # every room connection except the originator
    ALL = "all"           # every room connection, originator included


@dataclass(frozen=True)
class Delivery:
    addressing: Addressing
    event: OutboundEvent
    origin: Optional[str] = None


@dataclass(frozen=True)
class FieldWrite:
    path: str
    value: Any = None


@dataclass(frozen=True)
class MutationResult:
    snapshot: Snapshot
    deliveries: Tuple[Delivery, ...] = ()
    writes: Tuple[FieldWrite, ...] = ()
    # Resolves once the deliveries have been handed to every target connection
    delivered: Optional[Awaitable[Any]] = field(default=None, compare=False, repr=False)


@dataclass
class Member:
    id: str
    display_name: str
    vote: Optional[str] = None
    connections: Set[str] = field(default_factory=set)


def member_path(member_id: str, name: str) -> str:
    return f"members.{member_id}.{name}"


# ============ Session ============

# Called with every accepted mutation while the room lock is still held.
# Whatever it returns is attached to the result as ``delivered``.
CommitHook = Callable[[MutationResult], Optional[Awaitable[Any]]]


class RoomSession:
    """Single-writer state machine for one room."""

    def __init__(self, room_id: str, deck: Optional[Deck] = None, ready: bool = True,
                 on_commit: Optional[CommitHook] = None):
        self.room_id = room_id
        self.deck = deck or default_deck
        self.on_commit = on_commit
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        if ready:
            self._ready.set()

        self._members: Dict[str, Member] = {}
        self._revealed = False
        self._revealed_votes: Optional[Dict[str, Optional[str]]] = None
        self._version = 0
        self._created_at = utc_now()
        self._updated_at = self._created_at

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def snapshot(self) -> Snapshot:
        return Snapshot(
            room_id=self.room_id,
            members={
                member_id: MemberSnapshot(
                    id=member.id,
                    display_name=member.display_name,
                    vote=member.vote,
                    connections=frozenset(member.connections),
                )
                for member_id, member in self._members.items()
            },
            revealed=self._revealed,
            revealed_votes=dict(self._revealed_votes) if self._revealed_votes is not None else None,
            version=self._version,
            created_at=self._created_at,
            updated_at=self._updated_at,
        )

    def hydrate(self, snapshot: Optional[Snapshot]) -> bool:
        """Adopt a previously persisted snapshot and open the session for mutations.

        Only applies to a session that has not accepted any mutation yet.
        Connections are never restored; every loaded member starts offline.
        """
        applied = False
        try:
            if snapshot is not None and self._version == 0 and not self._members:
                self._members = {
                    member_id: Member(id=member_id, display_name=member.display_name, vote=member.vote)
                    for member_id, member in snapshot.members.items()
                }
                self._revealed = snapshot.revealed
                self._revealed_votes = dict(snapshot.revealed_votes) if snapshot.revealed_votes is not None else None
                self._version = snapshot.version
                self._created_at = snapshot.created_at
                self._updated_at = snapshot.updated_at
                applied = True
                logger.info(f"Room {self.room_id} hydrated at version {self._version} with {len(self._members)} members")
        finally:
            self._ready.set()
        return applied

    async def wait_ready(self):
        await self._ready.wait()

    def _bump(self) -> List[FieldWrite]:
        self._version += 1
        self._updated_at = utc_now()
        return [
            FieldWrite("version", self._version),
            FieldWrite("updatedAt", self._updated_at.isoformat()),
        ]

    def _commit(self, snapshot: Snapshot, deliveries: Tuple[Delivery, ...],
                writes: List[FieldWrite]) -> MutationResult:
        # Must run under self._lock so results reach on_commit in version order
        result = MutationResult(snapshot, deliveries, tuple(writes))
        if self.on_commit is not None:
            result = replace(result, delivered=self.on_commit(result))
        return result

    async def join(self, member_id: str, display_name: Optional[str] = None,
                   connection_id: Optional[str] = None) -> MutationResult:
        """Insert or update a member and attach the connection.

        A repeated join for the same member id keeps the member's current vote.
        It refreshes the display name only when a non-blank one is given.
        """
        if not member_id:
            raise InvalidMember("Member id must not be empty")
        requested_name = (display_name or "").strip()

        await self.wait_ready()
        async with self._lock:
            member = self._members.get(member_id)
            is_new = member is None
            if is_new:
                member = Member(id=member_id, display_name=requested_name or member_id)
                self._members[member_id] = member
            elif requested_name:
                member.display_name = requested_name
            if connection_id:
                member.connections.add(connection_id)

            writes = [FieldWrite(member_path(member_id, "displayName"), member.display_name)]
            if is_new:
                writes.append(FieldWrite(member_path(member_id, "vote"), None))
            writes.extend(self._bump())
            snapshot = self.snapshot()
            deliveries = (
                Delivery(
                    Addressing.UNICAST,
                    WelcomeEvent(
                        room_id=self.room_id,
                        version=snapshot.version,
                        message=f"Welcome to room {self.room_id}, {member.display_name}",
                        snapshot=snapshot.public(),
                    ),
                    origin=connection_id,
                ),
                Delivery(
                    Addressing.OTHERS,
                    MemberJoinedEvent(
                        room_id=self.room_id,
                        version=snapshot.version,
                        member_id=member_id,
                        display_name=member.display_name,
                    ),
                    origin=connection_id,
                ),
            )
            result = self._commit(snapshot, deliveries, writes)

        logger.info(
            f"{member.display_name} ({member_id}) {'joined' if is_new else 'rejoined'} room {self.room_id} "
            f"at version {snapshot.version}"
        )
        return result

    async def vote(self, member_id: str, value: str, connection_id: Optional[str] = None) -> MutationResult:
        """Record a member's vote. The value itself is never broadcast here."""
        if not self.deck.is_valid_vote(value):
            raise InvalidVote(value, self.deck.values)

        await self.wait_ready()
        async with self._lock:
            member = self._members.get(member_id)
            if member is None:
                raise MemberNotFound(self.room_id, member_id)
            member.vote = value
            writes = [FieldWrite(member_path(member_id, "vote"), value)]
            writes.extend(self._bump())
            snapshot = self.snapshot()
            delivery = Delivery(
                Addressing.ALL,
                VoteCastEvent(room_id=self.room_id, version=snapshot.version, member_id=member_id, has_voted=True),
                origin=connection_id,
            )
            result = self._commit(snapshot, (delivery,), writes)

        if snapshot.revealed:
            logger.debug(f"Vote from {member_id} in revealed room {self.room_id} recorded for the next reveal")
        logger.debug(f"Member {member_id} voted in room {self.room_id} at version {snapshot.version}")
        return result

    async def reveal(self, connection_id: Optional[str] = None) -> MutationResult:
        """Capture every member's current vote and disclose it. Re-revealing re-captures."""
        await self.wait_ready()
        async with self._lock:
            self._revealed = True
            self._revealed_votes = {member_id: member.vote for member_id, member in self._members.items()}
            writes = [
                FieldWrite("revealed", True),
                FieldWrite("revealedVotes", dict(self._revealed_votes)),
            ]
            writes.extend(self._bump())
            snapshot = self.snapshot()
            delivery = Delivery(
                Addressing.ALL,
                RevealedEvent(room_id=self.room_id, version=snapshot.version, votes=dict(snapshot.revealed_votes)),
                origin=connection_id,
            )
            result = self._commit(snapshot, (delivery,), writes)

        logger.info(f"Room {self.room_id} revealed at version {snapshot.version}")
        return result

    async def reset(self, connection_id: Optional[str] = None) -> MutationResult:
        await self.wait_ready()
        async with self._lock:
            writes = []
            for member_id, member in self._members.items():
                member.vote = None
                writes.append(FieldWrite(member_path(member_id, "vote"), None))
            self._revealed = False
            self._revealed_votes = None
            writes.append(FieldWrite("revealed", False))
            writes.append(FieldWrite("revealedVotes", None))
            writes.extend(self._bump())
            snapshot = self.snapshot()
            delivery = Delivery(
                Addressing.ALL,
                ResetEvent(room_id=self.room_id, version=snapshot.version),
                origin=connection_id,
            )
            result = self._commit(snapshot, (delivery,), writes)

        logger.info(f"Room {self.room_id} reset at version {snapshot.version}")
        return result

    async def leave_connection(self, connection_id: str, member_id: str) -> Optional[MutationResult]:
        """Detach one connection from a member.

        The member stays on the roster with its vote even when no connection is
        left. Returns None when there was nothing to detach.
        """
        await self.wait_ready()
        async with self._lock:
            member = self._members.get(member_id)
            if member is None or connection_id not in member.connections:
                return None
            member.connections.discard(connection_id)
            online = bool(member.connections)
            writes = self._bump()
            snapshot = self.snapshot()
            delivery = Delivery(
                Addressing.OTHERS,
                PresenceEvent(room_id=self.room_id, version=snapshot.version, member_id=member_id, online=online),
                origin=connection_id,
            )
            result = self._commit(snapshot, (delivery,), writes)

        logger.info(
            f"Connection {connection_id} of {member_id} left room {self.room_id}"
            f"{'' if online else ' (member now offline)'}"
        )
        return result
