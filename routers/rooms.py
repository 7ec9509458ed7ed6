from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import HealthResponse, RoomDetailsResponse, RoomMember
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the live membership of a room.

    Returns:
    - room_id: Room identifier
    - online_users_count: Number of signaling channels currently joined
    - members: User id and connection time of each member
    """
    relay = request.app.state.relay
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    if not relay.rooms.exists(room_id):
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    members = []
    for handle in relay.rooms.members(room_id):
        session = relay.sessions.get(handle)
        if session:
            members.append(RoomMember(user_id=session.user_id, connected_at=session.connected_at))

    return RoomDetailsResponse(
        room_id=room_id,
        online_users_count=len(members),
        members=members,
    )


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    relay = request.app.state.relay
    return HealthResponse(
        status="ok",
        rooms=len(relay.rooms),
        connections=len(relay.sessions),
        peers=len(request.app.state.peer_relay.peers),
    )
