import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional, Set, Tuple

from constants import ROOM_ID_LENGTH
from errors import RoomNotFound
from logging_config import get_logger

logger = get_logger(__name__)


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    """Short uppercase hex code from a CSPRNG, e.g. ``A1B2C3``."""
    return secrets.token_hex((length + 1) // 2).upper()[:length]


@dataclass
class Room:
    room_id: str
    members: Set[str] = field(default_factory=set)
    current_url: Optional[str] = None


class RoomRegistry:
    """In-memory table of live rooms and which room each connection is in.

    A room is present exactly while it has members: the leave that empties a
    room deletes it on the spot. Every method runs to completion without
    awaiting, so callers on one event loop never see a half-applied change.
    """

    def __init__(self, id_factory: Callable[[], str] = generate_room_id):
        self._id_factory = id_factory
        self._rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}  # connection id -> room id
        logger.info("Initializing RoomRegistry")

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._rooms))

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def members(self, room_id: str) -> Set[str]:
        room = self._rooms.get(room_id)
        return set(room.members) if room else set()

    def _fresh_room_id(self) -> str:
        while True:
            room_id = self._id_factory()
            if room_id not in self._rooms:
                return room_id
            logger.debug(f"Room id collision on {room_id}, regenerating")

    def create_room(self, requester_id: str) -> str:
        room_id = self._fresh_room_id()
        self._rooms[room_id] = Room(room_id=room_id, members={requester_id})
        self._membership[requester_id] = room_id
        logger.info(f"Room Created: {room_id} by {requester_id}")
        return room_id

    def join_room(self, room_id: str, requester_id: str) -> Room:
        """Add ``requester_id`` to an existing room.

        Raises RoomNotFound without touching any state when the id is unknown.
        The caller is expected to have made the requester leave any other
        room first.
        """
        room = self._rooms.get(room_id)
        if room is None:
            logger.warning(f"Join Failed: Room {room_id} not found")
            raise RoomNotFound(room_id)
        room.members.add(requester_id)
        self._membership[requester_id] = room_id
        logger.info(f"User {requester_id} joined Room: {room_id} ({len(room.members)} members)")
        return room

    def leave(self, requester_id: str) -> Tuple[Optional[str], bool]:
        """Remove a connection from its room.

        Returns ``(room_id, deleted)``; ``room_id`` is None when the connection
        was in no room.
        """
        room_id = self._membership.pop(requester_id, None)
        if room_id is None:
            return None, False
        room = self._rooms.get(room_id)
        if room is None:
            return room_id, False
        room.members.discard(requester_id)
        logger.info(f"User {requester_id} left Room: {room_id}")
        if not room.members:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} Deleted (Empty)")
            return room_id, True
        return room_id, False

    def set_current_url(self, room_id: str, url: str) -> None:
        self.get_room(room_id).current_url = url
        logger.debug(f"Room {room_id} current url set to {url}")
