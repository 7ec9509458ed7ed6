from pydantic import BaseModel
from typing import Optional


class RoomMember(BaseModel):
    user_id: Optional[str]
    connected_at: str


class RoomDetailsResponse(BaseModel):
    room_id: str
    online_users_count: int
    members: Optional[list[RoomMember]] = None


class HealthResponse(BaseModel):
    status: str
    rooms: int
    connections: int
    peers: int
