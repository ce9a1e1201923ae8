"""
RoomService: the explicitly owned service context of the synchronization engine.

Transport layers (WebSocket endpoint, HTTP router) talk to this object only.
It resolves the room, applies the mutation through the room's session,
and the session hands the result to the room's outbox and the write-behind
queue before it releases the lock. Sending and store I/O happen afterwards,
off the lock, in version order.
"""
import asyncio
from typing import Any, Dict, Optional, Tuple

from constants import INSTANCE_ID
from core.broadcast import BroadcastRouter, RoomOutbox, Transport
from core.connections import ConnectionRegistry
from core.deck import Deck, default_deck
from core.exceptions import DuplicateRegistration, InvalidMember, PersistenceUnavailable, RoomNotFound
from core.persistence import MEMBERS_PREFIX, PersistenceAdapter, PersistenceWriter, Unsubscribe
from core.registry import RoomRegistry
from core.session import FieldWrite, MutationResult, RoomSession, Snapshot
from logging_config import get_logger
from schemas.events import (
    ClosedEvent,
    JoinRoomMessage,
    ResetMessage,
    RevealMessage,
    SyncEvent,
    VoteMessage,
)

logger = get_logger(__name__)


def public_change(path: str, value: Any) -> Tuple[str, Any]:
    """Rewrite a stored field change into what any room member may see.

    A member's vote becomes ``members.<id>.hasVoted``. Captured votes under
    ``revealedVotes`` are only ever non-null after a reveal, so they pass through.
    """
    if path.startswith(MEMBERS_PREFIX) and path.endswith(".vote"):
        member_id = path[len(MEMBERS_PREFIX):-len(".vote")]
        return f"{MEMBERS_PREFIX}{member_id}.hasVoted", value is not None
    return path, value


class RoomService:
    def __init__(self, transport: Transport, persistence: Optional[PersistenceAdapter] = None,
                 deck: Optional[Deck] = None, sync_via_store: bool = False,
                 instance_id: str = INSTANCE_ID, writer: Optional[PersistenceWriter] = None):
        self.deck = deck or default_deck
        self.persistence = persistence
        self.instance_id = instance_id
        self.sync_via_store = sync_via_store and persistence is not None
        self.connections = ConnectionRegistry()
        self.rooms = RoomRegistry(self._new_session)
        self.router = BroadcastRouter(self.connections, transport)
        self.writer = writer or (PersistenceWriter(persistence) if persistence is not None else None)
        # Format: {room_id: unsubscribe}
        self._watchers: Dict[str, Unsubscribe] = {}
        # Format: {room_id: outbox}
        self._outboxes: Dict[str, RoomOutbox] = {}

    def _new_session(self, room_id: str) -> RoomSession:
        outbox = RoomOutbox(room_id, self.router)
        self._outboxes[room_id] = outbox

        def commit(result: MutationResult):
            if self.writer is not None:
                self.writer.submit(room_id, result.writes, result.snapshot.version)
            return outbox.enqueue(result.deliveries)

        # Opened for mutations once hydration from the store has finished
        return RoomSession(room_id, deck=self.deck, ready=False, on_commit=commit)

    # ============ Room resolution ============

    async def _load(self, room_id: str) -> Optional[Snapshot]:
        if self.persistence is None:
            return None
        try:
            return await self.persistence.load(room_id)
        except PersistenceUnavailable as e:
            logger.error(f"Could not load room {room_id} from store, starting empty: {e}")
            return None

    async def _session(self, room_id: str, create: bool) -> RoomSession:
        if not room_id:
            raise RoomNotFound(room_id)
        session = self.rooms.get(room_id)
        if session is not None:
            return session

        stored = None
        if not create:
            stored = await self._load(room_id)
            if stored is None:
                raise RoomNotFound(room_id)

        session, created = self.rooms.get_or_create(room_id)
        if created:
            try:
                if create:
                    stored = await self._load(room_id)
            finally:
                session.hydrate(stored)
            if stored is None and self.writer is not None:
                fresh = session.snapshot()
                self.writer.submit(room_id, (
                    FieldWrite("createdAt", fresh.created_at.isoformat()),
                    FieldWrite("updatedAt", fresh.updated_at.isoformat()),
                    FieldWrite("version", fresh.version),
                    FieldWrite("revealed", fresh.revealed),
                ), fresh.version)
        return session

    async def _publish(self, room_id: str, result: MutationResult):
        """Wait for the outbox to send the result. Cancelling the caller does not cancel the send."""
        if result.delivered is not None:
            await asyncio.shield(self._settle(room_id, result.delivered))

    async def _settle(self, room_id: str, delivered):
        failed = await delivered
        for connection_id in failed:
            logger.info(f"Dropping unreachable connection {connection_id} from room {room_id}")
            await self.disconnect(connection_id)

    # ============ Operations ============

    async def create_room(self, room_id: str) -> Snapshot:
        session = await self._session(room_id, create=True)
        await session.wait_ready()
        return session.snapshot()

    async def snapshot(self, room_id: str) -> Snapshot:
        session = await self._session(room_id, create=False)
        await session.wait_ready()
        return session.snapshot()

    async def join(self, room_id: str, member_id: str, display_name: Optional[str] = None,
                   connection_id: Optional[str] = None) -> Optional[MutationResult]:
        if not member_id:
            raise InvalidMember("Member id must not be empty")
        session = await self._session(room_id, create=True)

        registered = False
        if connection_id:
            try:
                registered = self.connections.register(connection_id, room_id, member_id)
            except DuplicateRegistration as e:
                logger.warning(f"Ignoring join on already bound connection: {e}")
                return None
        try:
            result = await session.join(member_id, display_name, connection_id)
        except BaseException:
            if registered:
                self.connections.unregister(connection_id)
            raise

        if registered and self.sync_via_store:
            await self._watch(room_id)
        await self._publish(room_id, result)
        return result

    async def vote(self, room_id: str, member_id: str, value: str,
                   connection_id: Optional[str] = None) -> MutationResult:
        session = await self._session(room_id, create=False)
        result = await session.vote(member_id, value, connection_id)
        await self._publish(room_id, result)
        return result

    async def reveal(self, room_id: str, connection_id: Optional[str] = None) -> MutationResult:
        session = await self._session(room_id, create=False)
        result = await session.reveal(connection_id)
        await self._publish(room_id, result)
        return result

    async def reset(self, room_id: str, connection_id: Optional[str] = None) -> MutationResult:
        session = await self._session(room_id, create=False)
        result = await session.reset(connection_id)
        await self._publish(room_id, result)
        return result

    async def disconnect(self, connection_id: str) -> Optional[MutationResult]:
        """Detach a connection. Safe to call any number of times."""
        binding = self.connections.unregister(connection_id)
        if binding is None:
            logger.debug(f"Connection {connection_id} already disconnected")
            return None
        if not self.connections.connections_for(binding.room_id):
            await self._unwatch(binding.room_id)
        session = self.rooms.get(binding.room_id)
        if session is None:
            return None
        result = await session.leave_connection(connection_id, binding.member_id)
        if result is not None:
            await self._publish(binding.room_id, result)
        return result

    async def handle(self, connection_id: Optional[str], message) -> Optional[MutationResult]:
        """Dispatch a validated inbound message."""
        if isinstance(message, JoinRoomMessage):
            return await self.join(message.room_id, message.member_id, message.display_name, connection_id)
        if isinstance(message, VoteMessage):
            return await self.vote(message.room_id, message.member_id, message.value, connection_id)
        if isinstance(message, RevealMessage):
            return await self.reveal(message.room_id, connection_id)
        if isinstance(message, ResetMessage):
            return await self.reset(message.room_id, connection_id)
        raise TypeError(f"Unsupported message {type(message).__name__}")

    async def evict(self, room_id: str, purge: bool = False) -> bool:
        """Drop a room from memory, optionally deleting its durable document.

        Connections still bound to the room are told it closed and unbound.
        """
        session = self.rooms.remove(room_id)
        version = session.version if session is not None else 0
        outbox = self._outboxes.pop(room_id, None)
        if outbox is not None:
            await outbox.close()
        for connection_id in sorted(self.connections.connections_for(room_id)):
            self.connections.unregister(connection_id)
            await self.router.send_to(connection_id, ClosedEvent(
                room_id=room_id, version=version, message="Room has been closed",
            ).payload())
        await self._unwatch(room_id)

        existed = session is not None
        if purge and self.persistence is not None:
            if self.writer is not None:
                await self.writer.flush()
            try:
                await self.persistence.delete(room_id)
                existed = True
            except PersistenceUnavailable as e:
                logger.error(f"Could not delete room {room_id} from store: {e}")
        return existed

    # ============ Store change feed ============

    async def _watch(self, room_id: str):
        if room_id in self._watchers:
            return
        try:
            self._watchers[room_id] = await self.persistence.subscribe(
                room_id, lambda notice: self._relay(room_id, notice)
            )
            logger.debug(f"Watching store changes for room {room_id}")
        except PersistenceUnavailable as e:
            logger.error(f"Could not watch store changes for room {room_id}: {e}")

    async def _unwatch(self, room_id: str):
        unsubscribe = self._watchers.pop(room_id, None)
        if unsubscribe is not None:
            await unsubscribe()
            logger.debug(f"Stopped watching store changes for room {room_id}")

    async def _relay(self, room_id: str, notice: Dict[str, Any]):
        source = notice.get("instance")
        if source == self.instance_id:
            return
        path, value = public_change(str(notice.get("path", "")), notice.get("value"))
        event = SyncEvent(
            room_id=room_id,
            version=int(notice.get("version") or 0),
            path=path,
            value=value,
            source=str(source),
        )
        await self.router.broadcast(room_id, event.payload())

    # ============ Lifecycle ============

    async def flush(self):
        """Wait until every queued delivery has been sent and every pending write applied."""
        for outbox in list(self._outboxes.values()):
            await outbox.flush()
        if self.writer is not None:
            await self.writer.flush()

    def stats(self) -> Dict[str, int]:
        return {"rooms": len(self.rooms), "connections": self.connections.count()}

    async def close(self):
        for room_id in list(self._watchers):
            await self._unwatch(room_id)
        for outbox in list(self._outboxes.values()):
            await outbox.close()
        self._outboxes.clear()
        if self.writer is not None:
            await self.writer.close()
        if self.persistence is not None:
            await self.persistence.close()
        logger.info("Room service closed")
