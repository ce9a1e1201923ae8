from fastapi import APIRouter, Depends, HTTPException, Request
from schemas.rooms import CastVoteRequest, DeckResponse, RevealResponse, RoomDetailsResponse, VersionResponse
from core.exceptions import InvalidMember, InvalidVote, NotFound
from core.service import RoomService
from core.session import Snapshot
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_service(request: Request) -> RoomService:
    return request.app.state.service


def room_details(snapshot: Snapshot) -> RoomDetailsResponse:
    return RoomDetailsResponse.model_validate(snapshot.public())


@rooms_router.get("/deck", response_model=DeckResponse)
async def get_deck(service: RoomService = Depends(get_service)):
    return DeckResponse(values=list(service.deck.values))


@rooms_router.post("/{room_id}", response_model=RoomDetailsResponse, response_model_by_alias=True)
async def create_room(room_id: str, request: Request, service: RoomService = Depends(get_service)):
    # Idempotent: an existing room is returned as is
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request for {room_id} from {client_host}")
    snapshot = await service.create_room(room_id)
    return room_details(snapshot)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse, response_model_by_alias=True)
async def get_room_details(room_id: str, service: RoomService = Depends(get_service)):
    """
    Get the public view of a room.

    Vote values are only included once the room has been revealed; before
    that each member only reports whether it has voted.
    """
    try:
        snapshot = await service.snapshot(room_id)
    except NotFound as e:
        logger.warning(f"Room details failed: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    return room_details(snapshot)


@rooms_router.post("/{room_id}/vote", response_model=VersionResponse, response_model_by_alias=True)
async def cast_vote(room_id: str, vote_request: CastVoteRequest, service: RoomService = Depends(get_service)):
    try:
        result = await service.vote(room_id, vote_request.member_id, vote_request.value)
    except (InvalidVote, InvalidMember) as e:
        logger.warning(f"Vote rejected in room {room_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        logger.warning(f"Vote rejected in room {room_id}: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    return VersionResponse(room_id=room_id, version=result.snapshot.version)


@rooms_router.post("/{room_id}/reveal", response_model=RevealResponse, response_model_by_alias=True)
async def reveal_votes(room_id: str, service: RoomService = Depends(get_service)):
    try:
        result = await service.reveal(room_id)
    except NotFound as e:
        logger.warning(f"Reveal failed: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    snapshot = result.snapshot
    return RevealResponse(room_id=room_id, votes=dict(snapshot.revealed_votes or {}), version=snapshot.version)


@rooms_router.post("/{room_id}/reset", response_model=VersionResponse, response_model_by_alias=True)
async def reset_votes(room_id: str, service: RoomService = Depends(get_service)):
    try:
        result = await service.reset(room_id)
    except NotFound as e:
        logger.warning(f"Reset failed: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    return VersionResponse(room_id=room_id, version=result.snapshot.version)


@rooms_router.delete("/{room_id}")
async def close_room(room_id: str, purge: bool = False, service: RoomService = Depends(get_service)):
    # - Session is dropped from memory, bound connections are told the room closed
    # - purge=true also deletes the durable document
    logger.info(f"Close room request for {room_id} (purge={purge})")
    if not await service.evict(room_id, purge=purge):
        raise HTTPException(status_code=404, detail=f"Room {room_id} not found")
    return {"message": "Room closed successfully"}
