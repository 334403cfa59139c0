import redis
import json
from typing import Iterable, List, Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, SESSION_BACKEND, SESSION_ID, SESSION_TTL
from redis_keys import REDIS_SESSION_ROOM_KEY, REDIS_SESSION_CHAT_KEY
from schemas.events import ChatMessage, SessionState
from logging_config import get_logger

logger = get_logger(__name__)

CURRENT_ROOM_ID = "currentRoomId"
CHAT_HISTORY = "chatHistory"


def create_redis_client() -> redis.Redis:
    try:
        client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise


def _as_messages(history: Iterable) -> List[ChatMessage]:
    return [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in history]


class MemorySessionBackend:
    """Session state kept in the client process. Lost when the process exits."""

    def __init__(self):
        self._room_id: Optional[str] = None
        self._history: List[ChatMessage] = []

    def get_state(self) -> SessionState:
        return SessionState(current_room_id=self._room_id, chat_history=list(self._history))

    def save_state(self, updates: dict) -> None:
        if CURRENT_ROOM_ID in updates:
            self._room_id = updates[CURRENT_ROOM_ID]
        if CHAT_HISTORY in updates:
            self._history = _as_messages(updates[CHAT_HISTORY] or [])

    def append_message(self, message: ChatMessage) -> None:
        self._history.append(message)

    def clear(self) -> None:
        self.save_state({CURRENT_ROOM_ID: None, CHAT_HISTORY: []})


class RedisSessionBackend:
    """Session state in redis, keyed per browser session.

    Survives the client process being suspended or restarted; an explicit
    exit clears it and the TTL bounds it otherwise.
    """

    def __init__(self, session_id: str, redis_client: Optional[redis.Redis] = None, ttl: int = SESSION_TTL):
        self.session_id = session_id
        self.redis_client = redis_client if redis_client is not None else create_redis_client()
        self.ttl = ttl
        self.room_key = REDIS_SESSION_ROOM_KEY.format(session_id=session_id)
        self.chat_key = REDIS_SESSION_CHAT_KEY.format(session_id=session_id)
        logger.info(f"Initializing RedisSessionBackend for session {session_id}")

    def _touch(self):
        if self.ttl:
            self.redis_client.expire(self.room_key, self.ttl)
            self.redis_client.expire(self.chat_key, self.ttl)

    def get_state(self) -> SessionState:
        room_id = self.redis_client.get(self.room_key)
        history = []
        for raw in self.redis_client.lrange(self.chat_key, 0, -1):
            try:
                history.append(ChatMessage.model_validate(json.loads(raw)))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Skipping unreadable chat entry in session {self.session_id}: {e}")
        logger.debug(f"Session {self.session_id} loaded: room={room_id}, {len(history)} messages")
        return SessionState(current_room_id=room_id or None, chat_history=history)

    def save_state(self, updates: dict) -> None:
        if CURRENT_ROOM_ID in updates:
            room_id = updates[CURRENT_ROOM_ID]
            if room_id:
                self.redis_client.set(self.room_key, room_id)
            else:
                self.redis_client.delete(self.room_key)
        if CHAT_HISTORY in updates:
            self.redis_client.delete(self.chat_key)
            messages = _as_messages(updates[CHAT_HISTORY] or [])
            if messages:
                self.redis_client.rpush(self.chat_key, *(json.dumps(m.to_wire()) for m in messages))
        self._touch()
        logger.debug(f"Session {self.session_id} saved: {sorted(updates)}")

    def append_message(self, message: ChatMessage) -> None:
        self.redis_client.rpush(self.chat_key, json.dumps(message.to_wire()))
        self._touch()

    def clear(self) -> None:
        self.redis_client.delete(self.room_key, self.chat_key)
        logger.debug(f"Session {self.session_id} cleared")


def create_session_store(backend: str = SESSION_BACKEND, session_id: str = SESSION_ID):
    if backend == "redis":
        return RedisSessionBackend(session_id)
    if backend != "memory":
        logger.warning(f"Unknown session backend {backend}, using memory")
    return MemorySessionBackend()
