import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from errors import HandlerFault
from logging_config import get_logger
from registry import RoomRegistry
from schemas.events import (
    ACK,
    CHAT_MESSAGE,
    CREATE_ROOM,
    JOIN_ROOM,
    PING,
    SIGNAL_PEER,
    SYNC_ACTION,
    SYNC_SHORTS,
    UPDATE_AVATAR,
    USER_JOINED,
    USER_LEFT,
    AvatarUpdate,
    Envelope,
    RoomResponse,
    UserPresence,
)
from constants import ROOM_NOT_FOUND

logger = get_logger(__name__)

Handler = Callable[[str, Any], Awaitable[Optional[dict]]]


class RelayDispatcher:
    """Routes events between the members of a room.

    Payloads are forwarded verbatim to every other member of the sender's
    room. Only ``create_room``/``join_room`` are answered, and only
    ``sync_shorts`` leaves a trace in the registry (the room's current url).
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        # Format: {connection_id: websocket}
        self.connections: Dict[str, Any] = {}
        self._handlers: Dict[str, Handler] = {
            CREATE_ROOM: self.on_create_room,
            JOIN_ROOM: self.on_join_room,
            SYNC_ACTION: self.on_sync_action,
            SYNC_SHORTS: self.on_sync_shorts,
            SIGNAL_PEER: self.on_signal_peer,
            CHAT_MESSAGE: self.on_chat_message,
            UPDATE_AVATAR: self.on_update_avatar,
            PING: self.on_ping,
        }

    def connect(self, connection_id: str, websocket) -> None:
        self.connections[connection_id] = websocket
        logger.info(f"New Client Connected: {connection_id} ({len(self.connections)} connections)")

    async def disconnect(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        logger.info(f"Client Disconnected: {connection_id}")
        try:
            await self._leave_current_room(connection_id)
        except Exception as e:
            logger.error(f"{HandlerFault('disconnect', connection_id, e)}", exc_info=True)

    async def handle_text(self, connection_id: str, text: str) -> None:
        try:
            envelope = Envelope.model_validate_json(text)
        except ValidationError as e:
            fault = HandlerFault("<malformed>", connection_id, e)
            logger.error(f"Dropping frame: {fault}")
            return
        await self.dispatch(connection_id, envelope)

    async def dispatch(self, connection_id: str, envelope: Envelope) -> None:
        handler = self._handlers.get(envelope.event)
        if handler is None:
            logger.debug(f"Ignoring unknown event {envelope.event} from {connection_id}")
            return

        try:
            response = await handler(connection_id, envelope.data)
        except Exception as e:
            fault = HandlerFault(envelope.event, connection_id, e)
            logger.error(f"{fault}", exc_info=True)
            return

        if envelope.id is not None and response is not None:
            ack = Envelope(event=ACK, id=envelope.id, data=response)
            await self.send(connection_id, ack.to_wire())

    async def send(self, connection_id: str, message: dict) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Error sending to connection {connection_id}: {e}")
            return False

    async def emit_to_room(self, room_id: str, event: str, data: Any, exclude: Optional[str] = None) -> int:
        """Send one event to every member of ``room_id`` except ``exclude``.

        Delivery is best effort: a failed send to one member does not stop the
        others. Returns the number of recipients attempted.
        """
        recipients = [
            conn_id for conn_id in self.registry.members(room_id)
            if conn_id != exclude and conn_id in self.connections
        ]
        if not recipients:
            return 0
        message = {"event": event, "data": data}
        await asyncio.gather(*(self.send(conn_id, message) for conn_id in recipients))
        logger.debug(f"Relayed {event} to {len(recipients)} members of room {room_id}")
        return len(recipients)

    async def _leave_current_room(self, connection_id: str) -> None:
        room_id, deleted = self.registry.leave(connection_id)
        await self._announce_left(connection_id, room_id, deleted)

    async def _announce_left(self, connection_id: str, room_id: Optional[str], deleted: bool) -> None:
        if room_id and not deleted:
            await self.emit_to_room(room_id, USER_LEFT, UserPresence(user_id=connection_id).to_wire())

    def _sender_room(self, connection_id: str, event: str) -> Optional[str]:
        room_id = self.registry.room_of(connection_id)
        if room_id is None:
            logger.debug(f"Ignoring {event} from {connection_id}: not in a room")
        return room_id

    async def on_create_room(self, connection_id: str, data: Any) -> dict:
        previous, deleted = self.registry.leave(connection_id)
        room_id = self.registry.create_room(connection_id)
        await self._announce_left(connection_id, previous, deleted)
        return RoomResponse(success=True, room_id=room_id).to_wire()

    async def on_join_room(self, connection_id: str, data: Any) -> dict:
        if isinstance(data, dict):
            data = data.get("roomId")
        room_id = str(data or "").strip().upper()

        if room_id not in self.registry:
            logger.warning(f"Join Failed: Room {room_id} not found")
            return RoomResponse(success=False, error=ROOM_NOT_FOUND).to_wire()

        # Registry changes happen before the first await so the room cannot
        # vanish between the lookup above and the join
        previous, deleted = None, False
        if self.registry.room_of(connection_id) != room_id:
            previous, deleted = self.registry.leave(connection_id)
        room = self.registry.join_room(room_id, connection_id)
        current_url = room.current_url

        await self._announce_left(connection_id, previous, deleted)
        await self.emit_to_room(room_id, USER_JOINED, UserPresence(user_id=connection_id).to_wire(), exclude=connection_id)
        return RoomResponse(success=True, room_id=room_id, current_url=current_url).to_wire()

    async def on_sync_action(self, connection_id: str, data: Any) -> None:
        room_id = self._sender_room(connection_id, SYNC_ACTION)
        if room_id is None:
            return
        await self.emit_to_room(room_id, SYNC_ACTION, data, exclude=connection_id)
        logger.info(f"Action in {room_id}: {data.get('type') if isinstance(data, dict) else data} from {connection_id}")

    async def on_sync_shorts(self, connection_id: str, data: Any) -> None:
        room_id = self._sender_room(connection_id, SYNC_SHORTS)
        if room_id is None:
            return
        url = data["url"]
        self.registry.set_current_url(room_id, url)
        await self.emit_to_room(room_id, SYNC_SHORTS, data, exclude=connection_id)
        logger.info(f"Shorts Sync in {room_id}: {url}")

    async def on_signal_peer(self, connection_id: str, data: Any) -> None:
        room_id = self._sender_room(connection_id, SIGNAL_PEER)
        if room_id is None:
            return
        await self.emit_to_room(room_id, SIGNAL_PEER, data, exclude=connection_id)

    async def on_chat_message(self, connection_id: str, data: Any) -> None:
        room_id = self._sender_room(connection_id, CHAT_MESSAGE)
        if room_id is None:
            return
        await self.emit_to_room(room_id, CHAT_MESSAGE, data, exclude=connection_id)
        logger.debug(f"Chat in {room_id} from {connection_id}")

    async def on_update_avatar(self, connection_id: str, data: Any) -> None:
        room_id = self._sender_room(connection_id, UPDATE_AVATAR)
        if room_id is None:
            return
        payload = AvatarUpdate(user_id=connection_id, avatar=data["avatar"]).to_wire()
        await self.emit_to_room(room_id, UPDATE_AVATAR, payload, exclude=connection_id)

    async def on_ping(self, connection_id: str, data: Any) -> None:
        logger.debug(f"Heartbeat from {connection_id}")
