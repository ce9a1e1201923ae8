import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional, Protocol

from fastapi import WebSocket

from core.connections import ConnectionRegistry
from core.session import Addressing, Delivery
from logging_config import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        ...


class WebSocketTransport:
    """Delivers payloads to the WebSockets accepted by this instance."""

    def __init__(self):
        # Format: {connection_id: websocket}
        self._sockets: Dict[str, WebSocket] = {}

    def attach(self, connection_id: str, websocket: WebSocket):
        self._sockets[connection_id] = websocket

    def detach(self, connection_id: str) -> Optional[WebSocket]:
        return self._sockets.pop(connection_id, None)

    def __len__(self):
        return len(self._sockets)

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            raise ConnectionError(f"No open socket for connection {connection_id}")
        await websocket.send_text(json.dumps(payload))


class BroadcastRouter:
    """
    Resolves who receives each delivery and pushes it out.

    - UNICAST: only the originating connection
    - OTHERS: every connection in the room except the originator
    - ALL: every connection in the room

    Sends to different connections run concurrently; deliveries from one
    mutation are sent one after another so each connection sees them in order.
    Ordering across mutations is kept by RoomOutbox.
    """

    def __init__(self, connections: ConnectionRegistry, transport: Transport):
        self.connections = connections
        self.transport = transport

    def targets(self, room_id: str, delivery: Delivery) -> List[str]:
        if delivery.addressing is Addressing.UNICAST:
            return [delivery.origin] if delivery.origin else []
        members = self.connections.connections_for(room_id)
        if delivery.addressing is Addressing.OTHERS:
            return sorted(conn_id for conn_id in members if conn_id != delivery.origin)
        return sorted(members)

    async def deliver(self, room_id: str, delivery: Delivery) -> List[str]:
        """Send one delivery. Returns the connection ids the send failed for."""
        return await self._send_many(self.targets(room_id, delivery), delivery.event.payload(), room_id)

    async def dispatch(self, room_id: str, deliveries: Iterable[Delivery]) -> List[str]:
        failed = []
        for delivery in deliveries:
            for conn_id in await self.deliver(room_id, delivery):
                if conn_id not in failed:
                    failed.append(conn_id)
        return failed

    async def broadcast(self, room_id: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> List[str]:
        targets = sorted(c for c in self.connections.connections_for(room_id) if c != exclude)
        return await self._send_many(targets, payload, room_id)

    async def send_to(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        failed = await self._send_many([connection_id], payload, None)
        return not failed

    async def _send_many(self, targets: List[str], payload: Dict[str, Any], room_id: Optional[str]) -> List[str]:
        if not targets:
            return []
        results = await asyncio.gather(
            *(self.transport.send(conn_id, payload) for conn_id in targets),
            return_exceptions=True,
        )
        failed = []
        for conn_id, result in zip(targets, results):
            if isinstance(result, BaseException):
                failed.append(conn_id)
                logger.warning(f"Error sending {payload.get('type', 'unknown')} to connection {conn_id} in room {room_id}: {result}")
        logger.debug(
            f"Delivered {payload.get('type', 'unknown')} to {len(targets) - len(failed)}/{len(targets)} connections in room {room_id}"
        )
        return failed


class RoomOutbox:
    """
    Ordered outbound queue for one room.

    Sessions enqueue each accepted mutation's deliveries while the room lock
    is still held, so the queue order is the version order. One sender task
    drains it: every connection sees a room's events in version order, and a
    delivery still goes out when the task that produced it is cancelled.
    """

    def __init__(self, room_id: str, router: BroadcastRouter):
        self.room_id = room_id
        self.router = router
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def enqueue(self, deliveries: Iterable[Delivery]) -> asyncio.Future:
        """Queue deliveries. The future resolves with the connection ids that could not be reached."""
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((tuple(deliveries), future))
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return future

    async def _run(self):
        while True:
            deliveries, future = await self._queue.get()
            try:
                failed = await self.router.dispatch(self.room_id, deliveries)
            except Exception as e:
                logger.error(f"Unexpected error delivering to room {self.room_id}: {e}", exc_info=True)
                failed = []
            if not future.done():
                future.set_result(failed)
            self._queue.task_done()

    async def flush(self):
        if self._task is not None and not self._task.done():
            await self._queue.join()

    async def close(self):
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
