from constants import ROOM_NOT_FOUND


class RoomNotFound(Exception):
    """Raised for a room id that is unknown or was already deleted."""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"{ROOM_NOT_FOUND}: {room_id}")


class TransportDisconnected(Exception):
    """The link to the relay was lost or never came up."""


class HandlerFault(Exception):
    """Unexpected failure while handling one inbound event.

    The event is dropped; the connection and room state are left as they were.
    """

    def __init__(self, event: str, connection_id: str, cause: BaseException):
        self.event = event
        self.connection_id = connection_id
        self.cause = cause
        super().__init__(f"Exception in {event} from {connection_id}: {cause}")
