from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Literal, Optional
from datetime import datetime

# Event names carried in Envelope.event
CREATE_ROOM = "create_room"
JOIN_ROOM = "join_room"
SYNC_ACTION = "sync_action"
SYNC_SHORTS = "sync_shorts"
SIGNAL_PEER = "signal_peer"
CHAT_MESSAGE = "chat_message"
UPDATE_AVATAR = "update_avatar"
USER_JOINED = "user_joined"
USER_LEFT = "user_left"
PING = "ping"
ACK = "ack"

PLAYBACK_TYPES = ("play", "pause", "seeked")


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Envelope(WireModel):
    """One JSON text frame. Frames with an ``id`` expect an ack carrying the same id."""
    event: str
    data: Any = None
    id: Optional[int] = None


class RoomResponse(WireModel):
    success: bool
    room_id: Optional[str] = Field(default=None, alias="roomId")
    current_url: Optional[str] = Field(default=None, alias="currentUrl")
    error: Optional[str] = None


class SyncAction(WireModel):
    type: Literal["play", "pause", "seeked"]
    current_time: float = Field(alias="currentTime")
    rate: float = 1.0


class ShortsSync(WireModel):
    url: str
    force: Optional[bool] = None


class ChatMessage(WireModel):
    text: str
    avatar: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    # Set only in locally stored history, never sent
    is_me: Optional[bool] = Field(default=None, alias="isMe")

    def for_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"is_me"})


class AvatarUpdate(WireModel):
    avatar: str
    user_id: Optional[str] = Field(default=None, alias="userId")


class UserPresence(WireModel):
    user_id: str = Field(alias="userId")


class SessionStatus(WireModel):
    connected: bool
    room_id: Optional[str] = Field(default=None, alias="roomId")


class SessionState(WireModel):
    """Client state that outlives a single relay connection."""
    current_room_id: Optional[str] = Field(default=None, alias="currentRoomId")
    chat_history: List[ChatMessage] = Field(default_factory=list, alias="chatHistory")
