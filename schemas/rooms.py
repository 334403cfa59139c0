from pydantic import BaseModel
from typing import Optional


class RoomDetailsResponse(BaseModel):
    room_id: str
    member_count: int
    current_url: Optional[str]


class HealthResponse(BaseModel):
    status: str
    rooms: int
    connections: int
