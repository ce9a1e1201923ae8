from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from pydantic import ValidationError
from routers.rooms import rooms_router
from core.broadcast import WebSocketTransport
from core.exceptions import PersistenceUnavailable, RoomSyncError
from core.persistence import InMemoryPersistence
from core.service import RoomService
from schemas.events import ErrorEvent, JoinRoomMessage, parse_inbound_message
from constants import INSTANCE_ID, LOG_FILE, LOG_LEVEL, PERSISTENCE_BACKEND, SYNC_VIA_STORE
from logging_config import get_logger, setup_logging
import asyncio
import uuid
import json

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_persistence(backend: str = PERSISTENCE_BACKEND):
    """Build the durable mirror selected by PERSISTENCE_BACKEND; None disables it."""
    if backend == "redis":
        from backend import RedisBackend
        try:
            return RedisBackend.connect()
        except PersistenceUnavailable as e:
            logger.error(f"Redis persistence unavailable, continuing in memory only: {e}")
            return None
    if backend == "memory":
        return InMemoryPersistence()
    if backend not in ("none", ""):
        logger.warning(f"Unknown PERSISTENCE_BACKEND {backend!r}, persistence disabled")
    return None


def create_service(backend: str = PERSISTENCE_BACKEND, sync_via_store: bool = SYNC_VIA_STORE) -> RoomService:
    transport = WebSocketTransport()
    persistence = create_persistence(backend)
    service = RoomService(transport, persistence=persistence, sync_via_store=sync_via_store)
    logger.info(
        f"Room service ready on instance {INSTANCE_ID}: persistence={type(persistence).__name__ if persistence else 'none'}, "
        f"sync_via_store={service.sync_via_store}"
    )
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.service = create_service()
    yield
    await app.state.service.close()


app = FastAPI(
    title="Estimation Rooms API",
    description="Real-time planning poker rooms: join, vote, reveal, reset",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.get("/health")
def health():
    service: RoomService = app.state.service
    return {"status": "healthy", **service.stats()}


async def send_error(service: RoomService, connection_id: str, code: str, detail, room_id: str = None):
    await service.router.send_to(connection_id, ErrorEvent(code=code, detail=detail, room_id=room_id).payload())


@app.websocket("/rooms/{room_id}/ws")
async def websocket_endpoint(room_id: str, websocket: WebSocket, member_id: str = None, display_name: str = None):
    """WebSocket endpoint for one room.

    Query parameters:
    - member_id: joins immediately when given; otherwise the client sends a join-room message
    - display_name: optional display name for the member
    """
    service: RoomService = websocket.app.state.service
    transport: WebSocketTransport = service.router.transport
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection attempt for room: {room_id}, member_id: {member_id}")

    await websocket.accept()
    transport.attach(connection_id, websocket)
    logger.info(f"WebSocket connection {connection_id} accepted for room: {room_id}")

    try:
        if member_id and member_id.strip():
            try:
                await service.join(room_id, member_id.strip(), display_name, connection_id)
            except RoomSyncError as e:
                logger.warning(f"Join rejected for connection {connection_id} in room {room_id}: {e}")
                await send_error(service, connection_id, e.code, str(e), room_id)

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id} in room {room_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id} in room {room_id}")

            try:
                raw = json.loads(data)
                if isinstance(raw, dict):
                    raw.setdefault("roomId", room_id)
                message = parse_inbound_message(raw)
            except json.JSONDecodeError:
                await send_error(service, connection_id, "invalid-json", "Messages must be JSON objects", room_id)
                continue
            except ValidationError as e:
                logger.warning(f"Rejected malformed message from connection {connection_id}: {e.error_count()} errors")
                await send_error(service, connection_id, "invalid-message", json.loads(e.json()), room_id)
                continue

            if message.room_id != room_id:
                await send_error(service, connection_id, "wrong-room", f"This socket is bound to room {room_id}", room_id)
                continue

            binding = service.connections.binding_for(connection_id)
            if binding is None and not isinstance(message, JoinRoomMessage):
                await send_error(service, connection_id, "not-joined", "Send join-room first", room_id)
                continue
            member = getattr(message, "member_id", None)
            if binding is not None and member is not None and member != binding.member_id:
                await send_error(service, connection_id, "invalid-member",
                                 f"Connection is bound to member {binding.member_id}", room_id)
                continue

            try:
                await service.handle(connection_id, message)
            except RoomSyncError as e:
                logger.warning(f"Rejected {message.type} from connection {connection_id} in room {room_id}: {e}")
                await send_error(service, connection_id, e.code, str(e), room_id)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id} in room {room_id}: {e}", exc_info=True)
    finally:
        # Cleanup on disconnect
        transport.detach(connection_id)
        # The endpoint may already be cancelled; the presence update must still go out
        await asyncio.shield(service.disconnect(connection_id))
        logger.info(f"Connection {connection_id} left room {room_id}")
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
