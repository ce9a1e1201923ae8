"""
Durable mirror of room state.

The core only needs three things from a store: a best-effort read of the
last document, a field-scoped merge write, and (optionally) a change feed.
Writes are never whole-document overwrites, so two writers touching
different fields of the same room cannot clobber each other.
"""
import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from constants import INSTANCE_ID, PERSIST_MAX_RETRIES, PERSIST_RETRY_BASE_DELAY
from core.exceptions import PersistenceUnavailable
from core.session import FieldWrite, Snapshot
from logging_config import get_logger

logger = get_logger(__name__)

ChangeHandler = Callable[[Dict[str, Any]], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]

MEMBERS_PREFIX = "members."


class PersistenceAdapter(Protocol):
    async def load(self, room_id: str) -> Optional[Snapshot]:
        ...

    async def merge_field(self, room_id: str, path: str, value: Any, version: int) -> None:
        ...

    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Unsubscribe:
        ...

    async def delete(self, room_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


def document_from_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Fold flat ``path -> value`` fields back into the nested room document.

    Member ids may themselves contain dots; the attribute is always the last segment.
    """
    document: Dict[str, Any] = {"members": {}}
    for path, value in fields.items():
        if path.startswith(MEMBERS_PREFIX):
            member_id, _, attribute = path[len(MEMBERS_PREFIX):].rpartition(".")
            if not member_id:
                continue
            document["members"].setdefault(member_id, {})[attribute] = value
        else:
            document[path] = value
    return document


def change_notice(room_id: str, path: str, value: Any, version: int, instance: str) -> Dict[str, Any]:
    return {"instance": instance, "roomId": room_id, "path": path, "value": value, "version": version}


class InMemoryPersistence:
    """Process-local store with the same field-scoped semantics as the Redis backend."""

    def __init__(self, instance_id: str = INSTANCE_ID):
        self.instance_id = instance_id
        self._lock = threading.Lock()
        # Format: {room_id: {path: value}}
        self._rooms: Dict[str, Dict[str, Any]] = {}
        # Format: {room_id: [handler, ...]}
        self._subscribers: Dict[str, List[ChangeHandler]] = {}

    async def load(self, room_id: str) -> Optional[Snapshot]:
        with self._lock:
            fields = dict(self._rooms.get(room_id, {}))
        if not fields:
            return None
        return Snapshot.from_document(room_id, document_from_fields(fields))

    async def merge_field(self, room_id: str, path: str, value: Any, version: int) -> None:
        with self._lock:
            self._rooms.setdefault(room_id, {})[path] = value
            handlers = list(self._subscribers.get(room_id, ()))
        notice = change_notice(room_id, path, value, version, self.instance_id)
        for handler in handlers:
            try:
                await handler(notice)
            except Exception as e:
                logger.error(f"Change handler failed for room {room_id}: {e}", exc_info=True)

    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(room_id, []).append(on_change)

        async def unsubscribe():
            with self._lock:
                handlers = self._subscribers.get(room_id, [])
                if on_change in handlers:
                    handlers.remove(on_change)
                if not handlers:
                    self._subscribers.pop(room_id, None)

        return unsubscribe

    async def delete(self, room_id: str) -> None:
        with self._lock:
            self._rooms.pop(room_id, None)

    async def close(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def fields(self, room_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._rooms.get(room_id, {}))


class PersistenceWriter:
    """
    Write-behind queue in front of a PersistenceAdapter.

    Sessions submit their field writes while they hold the room lock, and a
    single worker applies them in submission order. Pending writes are
    coalesced per ``(room, path)``: a newer value for a field that has not been
    written yet replaces the older one, so a long store outage holds at most
    one pending write per field. A failing store is retried with exponential
    backoff, then the write is logged and dropped. In-memory state is never
    rolled back.
    """

    def __init__(self, adapter: PersistenceAdapter, max_retries: int = PERSIST_MAX_RETRIES,
                 base_delay: float = PERSIST_RETRY_BASE_DELAY):
        self.adapter = adapter
        self.max_retries = max_retries
        self.base_delay = base_delay
        # Format: {(room_id, path): (value, version)}, in submission order
        self._pending: Dict[Tuple[str, str], Tuple[Any, int]] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0
        self.coalesced = 0

    def __len__(self):
        return len(self._pending)

    def start(self):
        if self._task is None or self._task.done():
            if self._wakeup is None:
                self._wakeup = asyncio.Event()
                self._idle = asyncio.Event()
            self._task = asyncio.create_task(self._run())
            logger.debug("Persistence writer started")

    def submit(self, room_id: str, writes: Iterable[FieldWrite], version: int):
        writes = tuple(writes)
        if not writes:
            return
        self.start()
        for write in writes:
            key = (room_id, write.path)
            if key in self._pending:
                self.coalesced += 1
            self._pending[key] = (write.value, version)
        self._idle.clear()
        self._wakeup.set()

    async def _run(self):
        while True:
            if not self._pending:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            key = next(iter(self._pending))
            value, version = self._pending.pop(key)
            room_id, path = key
            try:
                await self._write(room_id, FieldWrite(path, value), version)
            except Exception as e:
                logger.error(f"Unexpected error persisting room {room_id} at version {version}: {e}", exc_info=True)

    async def _write(self, room_id: str, write: FieldWrite, version: int):
        attempt = 0
        while True:
            try:
                await self.adapter.merge_field(room_id, write.path, write.value, version)
                return
            except PersistenceUnavailable as e:
                attempt += 1
                if attempt > self.max_retries:
                    self.dropped += 1
                    logger.error(
                        f"Giving up on {write.path} for room {room_id} at version {version} "
                        f"after {attempt} attempts: {e}"
                    )
                    return
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Persisting {write.path} for room {room_id} failed (attempt {attempt}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def flush(self):
        if self._task is not None and not self._task.done():
            await self._idle.wait()

    async def close(self):
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.debug("Persistence writer stopped")
