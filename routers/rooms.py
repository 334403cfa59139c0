from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from schemas.rooms import HealthResponse, RoomDetailsResponse
from errors import RoomNotFound
from constants import APP_NAME, ROOM_NOT_FOUND
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/", response_class=PlainTextResponse)
async def root():
    # Hosting platforms poll this to keep the instance awake
    return f"{APP_NAME} Server is Running."


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    dispatcher = request.app.state.dispatcher
    return HealthResponse(
        status="ok",
        rooms=len(request.app.state.registry),
        connections=len(dispatcher.connections),
    )


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get room details.

    Returns:
    - room_id: Room code
    - member_count: Number of connections currently in the room
    - current_url: Last shared navigation target, if any
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    registry = request.app.state.registry
    try:
        room = registry.get_room(room_id.upper())
    except RoomNotFound:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail=ROOM_NOT_FOUND)

    return RoomDetailsResponse(
        room_id=room.room_id,
        member_count=len(room.members),
        current_url=room.current_url,
    )
