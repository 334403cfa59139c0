import asyncio
import inspect
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets
from websockets.exceptions import WebSocketException
from pydantic import ValidationError

from backend import CHAT_HISTORY, CURRENT_ROOM_ID, create_session_store
from constants import (
    HEARTBEAT_INTERVAL,
    RECONNECT_ATTEMPTS,
    RECONNECT_DELAY,
    REQUEST_TIMEOUT,
    ROOM_ID_LENGTH,
    ROOM_NOT_FOUND,
    SERVER_URL,
    WATCHED_HOST,
)
from errors import TransportDisconnected
from logging_config import get_logger
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
    ChatMessage,
    Envelope,
    RoomResponse,
    SessionStatus,
    ShortsSync,
    SyncAction,
)

logger = get_logger(__name__)

# Local events raised for the page side, next to the relayed ones
ROOM_ENTERED = "room_entered"
ROOM_EXITED = "room_exited"
STATE_CHANGED = "state_changed"

TRANSPORT_ERRORS = (WebSocketException, OSError, asyncio.TimeoutError, TransportDisconnected)

Listener = Callable[[Any], Optional[Awaitable[None]]]
Confirm = Callable[[], Union[bool, Awaitable[bool]]]


class ConnectionState:
    """Connection state constants."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def normalize_room_code(room_id: str) -> Optional[str]:
    code = (room_id or "").strip().upper()
    if len(code) != ROOM_ID_LENGTH:
        return None
    return code


def encode_frame(event: str, data: Any = None, request_id: Optional[int] = None) -> str:
    frame = {"event": event}
    if data is not None:
        frame["data"] = data
    if request_id is not None:
        frame["id"] = request_id
    return json.dumps(frame)


class SessionManager:
    """Client end of the relay protocol.

    ``connect`` is awaited with the server url and must return a transport
    exposing ``send(text)``, ``recv()`` and ``close()``; it defaults to
    ``websockets.connect``.
    """

    def __init__(
        self,
        store=None,
        server_url: str = SERVER_URL,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        request_timeout: float = REQUEST_TIMEOUT,
        watched_host: str = WATCHED_HOST,
    ):
        self._store = store if store is not None else create_session_store()
        self._server_url = server_url
        self._connect = connect or websockets.connect
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._heartbeat_interval = heartbeat_interval
        self._request_timeout = request_timeout
        self._watched_host = watched_host

        self._state = ConnectionState.DISCONNECTED
        self._connected = asyncio.Event()
        self._transport = None
        self._outbox: Optional[asyncio.Queue] = None

        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._request_ids = itertools.count(1)

        # Tasks
        self._connection_task: Optional[asyncio.Task] = None
        self._background: List[asyncio.Task] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def current_room_id(self) -> Optional[str]:
        return self._store.get_state().current_room_id

    @property
    def chat_history(self) -> List[ChatMessage]:
        return self._store.get_state().chat_history

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    async def _emit_local(self, event: str, data: Any = None) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} listener: {e}", exc_info=True)

    def _set_state(self, state: str) -> None:
        if state == self._state:
            return
        logger.debug(f"Connection state: {self._state} -> {state}")
        self._state = state
        for listener in list(self._listeners.get(STATE_CHANGED, [])):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Error in {STATE_CHANGED} listener: {e}", exc_info=True)

    def start(self) -> asyncio.Task:
        """Begin connecting unless a connection cycle is already running."""
        if self._connection_task is None or self._connection_task.done():
            self._connection_task = asyncio.create_task(self._connection_loop())
        return self._connection_task

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        self.start()
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _connection_loop(self) -> None:
        failures = 0
        while failures <= self._reconnect_attempts:
            self._set_state(ConnectionState.CONNECTING)
            logger.info(f"Connecting to relay: {self._server_url}")
            try:
                transport = await self._connect(self._server_url)
            except TRANSPORT_ERRORS as e:
                failures += 1
                self._set_state(ConnectionState.DISCONNECTED)
                logger.warning(f"Connection attempt {failures} failed: {e}")
                if failures > self._reconnect_attempts:
                    break
                await asyncio.sleep(self._reconnect_delay)
                continue

            failures = 0
            await self._run_connection(transport)
            logger.info(f"Reconnecting in {self._reconnect_delay:.1f} seconds...")
            await asyncio.sleep(self._reconnect_delay)

        logger.warning("Reconnection attempts exhausted, staying disconnected")

    async def _run_connection(self, transport) -> None:
        self._transport = transport
        self._outbox = asyncio.Queue()
        writer = asyncio.create_task(self._writer_loop(transport, self._outbox))
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        self._connected.set()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to relay")

        room_id = self.current_room_id
        if room_id:
            # Rejoin needs its ack, which only this loop can read
            self._spawn(self._rejoin(room_id))

        try:
            while True:
                raw = await transport.recv()
                await self._handle_frame(raw)
        except TRANSPORT_ERRORS as e:
            logger.info(f"Disconnected from relay: {e}")
        finally:
            self._connected.clear()
            self._transport = None
            self._outbox = None
            for task in (writer, heartbeat):
                task.cancel()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportDisconnected("connection lost"))
            self._set_state(ConnectionState.DISCONNECTED)

    async def _writer_loop(self, transport, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            try:
                await transport.send(frame)
            except TRANSPORT_ERRORS as e:
                logger.warning(f"Send failed, dropping frame: {e}")
                return

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            self.emit(PING)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.append(task)
        task.add_done_callback(self._background.remove)
        return task

    async def _rejoin(self, room_id: str) -> None:
        logger.info(f"Rejoining Room: {room_id}")
        response = await self.request(JOIN_ROOM, room_id)
        if response.success:
            if response.current_url:
                await self._emit_local(SYNC_SHORTS, ShortsSync(url=response.current_url, force=True).to_wire())
            return
        logger.warning(f"Rejoin of {room_id} failed: {response.error}")
        if response.error == ROOM_NOT_FOUND:
            # The room emptied while we were away; it will not come back
            self._store.clear()
            await self._emit_local(ROOM_EXITED)

    async def disconnect(self) -> None:
        """Close the transport and stop any reconnection cycle."""
        task = self._connection_task
        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing transport: {e}")
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connection_task = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        await self.disconnect()
        for task in list(self._background):
            task.cancel()

    async def _handle_frame(self, raw) -> None:
        try:
            envelope = Envelope.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Dropping malformed frame from relay: {e}")
            return

        if envelope.event == ACK:
            future = self._pending.get(envelope.id)
            if future is not None and not future.done():
                future.set_result(envelope.data)
            return

        if envelope.event == CHAT_MESSAGE:
            try:
                self._store.append_message(ChatMessage.model_validate(envelope.data))
            except ValidationError as e:
                logger.warning(f"Dropping malformed chat message: {e}")
                return

        logger.debug(f"Received {envelope.event} from relay")
        await self._emit_local(envelope.event, envelope.data)

    def emit(self, event: str, data: Any = None) -> bool:
        """Queue a fire-and-forget event. Dropped when not connected."""
        if self._outbox is None:
            logger.debug(f"Not connected, dropping {event}")
            self.start()
            return False
        self._outbox.put_nowait(encode_frame(event, data))
        return True

    async def request(self, event: str, data: Any = None, timeout: Optional[float] = None) -> RoomResponse:
        """Send an event and wait for its acknowledgement."""
        timeout = self._request_timeout if timeout is None else timeout
        if not await self.wait_connected(timeout):
            return RoomResponse(success=False, error="Not connected")

        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._outbox.put_nowait(encode_frame(event, data, request_id))
        try:
            payload = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{event} timed out after {timeout}s")
            return RoomResponse(success=False, error="Timed out")
        except TransportDisconnected:
            return RoomResponse(success=False, error="Disconnected")
        finally:
            self._pending.pop(request_id, None)
        return RoomResponse.model_validate(payload)

    async def create_room(self) -> RoomResponse:
        response = await self.request(CREATE_ROOM)
        if response.success:
            self._store.save_state({CURRENT_ROOM_ID: response.room_id, CHAT_HISTORY: []})
            logger.info(f"Created room {response.room_id}")
            await self._emit_local(ROOM_ENTERED, {"roomId": response.room_id, "history": []})
        return response

    async def join_room(self, room_id: str) -> RoomResponse:
        code = normalize_room_code(room_id)
        if code is None:
            return RoomResponse(success=False, error="Invalid room code")

        response = await self.request(JOIN_ROOM, code)
        if not response.success:
            logger.info(f"Join of {code} failed: {response.error}")
            return response

        self._store.save_state({CURRENT_ROOM_ID: code, CHAT_HISTORY: []})
        logger.info(f"Joined room {code}")
        await self._emit_local(ROOM_ENTERED, {"roomId": code, "history": []})
        if response.current_url:
            await self._emit_local(SYNC_SHORTS, ShortsSync(url=response.current_url, force=True).to_wire())
        return response

    async def exit_room(self, confirm: Optional[Confirm] = None) -> bool:
        """Leave the room for good and get ready for the next one.

        When ``confirm`` is given nothing happens until it answers; a
        negative answer cancels the exit.
        """
        if confirm is not None:
            answer = confirm()
            if inspect.isawaitable(answer):
                answer = await answer
            if not answer:
                return False

        await self.disconnect()
        self._store.clear()
        logger.info("Exited room")
        await self._emit_local(ROOM_EXITED)
        self.start()
        return True

    def status(self) -> SessionStatus:
        room_id = self.current_room_id
        return SessionStatus(connected=self.is_connected and room_id is not None, room_id=room_id)

    async def page_loaded(self, url: str) -> bool:
        """Host page finished loading; bring the room UI back if one is held."""
        if self._watched_host not in (url or ""):
            return False
        state = self._store.get_state()
        if not state.current_room_id:
            return False
        logger.info("Tab Updated - Reinjecting Chat State")
        await self._emit_local(ROOM_ENTERED, {"roomId": state.current_room_id, "history": state.chat_history})
        return True

    async def watched_tabs_closed(self) -> None:
        logger.info("No watched tabs open. Cleaning up session.")
        await self.exit_room()

    def send_playback(self, action: SyncAction) -> bool:
        return self.emit(SYNC_ACTION, action.to_wire())

    def send_navigation(self, url: str) -> bool:
        return self.emit(SYNC_SHORTS, ShortsSync(url=url).to_wire())

    def send_signal(self, payload: Any) -> bool:
        return self.emit(SIGNAL_PEER, payload)

    def send_chat(self, message: ChatMessage) -> bool:
        self._store.append_message(message.model_copy(update={"is_me": True}))
        return self.emit(CHAT_MESSAGE, message.for_wire())

    def update_avatar(self, avatar: str) -> bool:
        return self.emit(UPDATE_AVATAR, {"avatar": avatar})
