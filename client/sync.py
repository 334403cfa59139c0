import asyncio
import math
import time
from typing import Any, Callable, List, Optional

from client.collaborators import ChatView, MediaPlayer, Navigator, PlayerProvider, SignalHandler
from client.session import ROOM_ENTERED, ROOM_EXITED, SessionManager
from constants import (
    DEFAULT_AVATAR,
    NAVIGATION_SETTLE_SECONDS,
    PLAYBACK_SETTLE_SECONDS,
    PLAY_TIMEOUT_SECONDS,
    PLAYER_ATTACH_INTERVAL,
    SEEK_TOLERANCE,
    SESSION_RECOVERY_INTERVAL,
)
from logging_config import get_logger
from schemas.events import (
    CHAT_MESSAGE,
    PLAYBACK_TYPES,
    SIGNAL_PEER,
    SYNC_ACTION,
    SYNC_SHORTS,
    ChatMessage,
    SyncAction,
)

logger = get_logger(__name__)


def normalize_url(url: str) -> str:
    return (url or "").rstrip("/")


class SuppressionLatch:
    """A flag that clears itself once its expiry time has passed."""

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._expires_at = 0.0

    def hold(self, seconds: Optional[float] = None) -> None:
        """Hold for ``seconds`` from now, or until re-held when None."""
        self._expires_at = math.inf if seconds is None else self._clock() + seconds

    def release(self) -> None:
        self._expires_at = 0.0

    @property
    def active(self) -> bool:
        return self._clock() < self._expires_at


class SyncStateMachine:
    def __init__(
        self,
        session: SessionManager,
        navigator: Navigator,
        view: ChatView,
        player_provider: Optional[PlayerProvider] = None,
        signal_handler: Optional[SignalHandler] = None,
        clock: Callable[[], float] = time.monotonic,
        avatar: str = DEFAULT_AVATAR,
        playback_settle: float = PLAYBACK_SETTLE_SECONDS,
        navigation_settle: float = NAVIGATION_SETTLE_SECONDS,
        play_timeout: float = PLAY_TIMEOUT_SECONDS,
    ):
        self._session = session
        self._navigator = navigator
        self._view = view
        self._player_provider = player_provider or (lambda: None)
        self._signal_handler = signal_handler
        self._playback_settle = playback_settle
        self._navigation_settle = navigation_settle
        self._play_timeout = play_timeout

        self.playback_latch = SuppressionLatch("playback", clock)
        self.navigation_latch = SuppressionLatch("navigation", clock)
        self.avatar = avatar
        self.room_id: Optional[str] = None

        self._attached_player: Optional[MediaPlayer] = None
        self._tasks: List[asyncio.Task] = []

        session.on(SYNC_ACTION, self.apply_remote_playback)
        session.on(SYNC_SHORTS, self.apply_remote_navigation)
        session.on(CHAT_MESSAGE, self.on_remote_chat)
        session.on(SIGNAL_PEER, self.on_signal)
        session.on(ROOM_ENTERED, self.enter_room)
        session.on(ROOM_EXITED, self.leave_room)

    async def apply_remote_playback(self, data: Any) -> bool:
        action = SyncAction.model_validate(data)
        player = self._player_provider()
        if player is None:
            logger.debug(f"No media element, dropping remote {action.type}")
            return False

        self.playback_latch.hold(self._playback_settle)
        try:
            if abs(player.current_time - action.current_time) > SEEK_TOLERANCE:
                player.current_time = action.current_time
            if action.rate and player.playback_rate != action.rate:
                player.playback_rate = action.rate
            if action.type == "play":
                self.playback_latch.hold(self._play_timeout + self._playback_settle)
                try:
                    await asyncio.wait_for(player.play(), self._play_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Remote play not settled after {self._play_timeout}s")
                except Exception as e:
                    logger.warning(f"Remote play refused by player: {e}")
            elif action.type == "pause":
                player.pause()
        finally:
            # Give the player time to fire its own events for this change
            self.playback_latch.hold(self._playback_settle)
        return True

    def on_local_playback(self, event_type: str) -> Optional[SyncAction]:
        if self.playback_latch.active:
            return None
        player = self._player_provider()
        if player is None:
            return None
        action = SyncAction(type=event_type, current_time=player.current_time, rate=player.playback_rate)
        logger.debug(f"Local Event: {event_type} at {action.current_time:.2f}")
        self._session.send_playback(action)
        return action

    def attach_player(self) -> bool:
        """Hook the current media element once; the host swaps it on navigation."""
        player = self._player_provider()
        if player is None or player is self._attached_player:
            return False
        for event_type in PLAYBACK_TYPES:
            player.add_listener(event_type, self.on_local_playback)
        self._attached_player = player
        logger.info("Attached to Video Element")
        return True

    def apply_remote_navigation(self, data: Any) -> bool:
        target = data["url"] if isinstance(data, dict) else str(data)
        if normalize_url(self._navigator.current_url) == normalize_url(target):
            logger.debug("Already on target URL. Ignoring nav.")
            return False

        logger.info(f"Navigating from {self._navigator.current_url} to {target}")
        self.navigation_latch.hold(self._navigation_settle)
        self._navigator.navigate(target)
        return True

    def on_local_navigation(self, url: Optional[str] = None) -> bool:
        if self.navigation_latch.active:
            return False
        url = url or self._navigator.current_url
        logger.debug(f"URL Changed detected: {url}")
        self._session.send_navigation(url)
        return True

    def enter_room(self, data: Any) -> None:
        """Show the room UI and replay the stored history into it."""
        self.room_id = data["roomId"]
        history = [ChatMessage.model_validate(m) if isinstance(m, dict) else m for m in data.get("history") or []]
        self._view.open(self.room_id)
        self._view.clear()
        for message in history:
            self._view.render(message, mine=bool(message.is_me))
        logger.info(f"Entered room {self.room_id} with {len(history)} messages")

    def leave_room(self, data: Any = None) -> None:
        self.room_id = None
        self._view.close()

    def send_chat(self, text: str) -> Optional[ChatMessage]:
        text = (text or "").strip()
        if not text:
            return None
        message = ChatMessage(text=text, avatar=self.avatar)
        self._session.send_chat(message)
        self._view.render(message, mine=True)
        return message

    def on_remote_chat(self, data: Any) -> None:
        self._view.render(ChatMessage.model_validate(data), mine=False)

    def set_avatar(self, avatar: str) -> None:
        self.avatar = avatar
        self._session.update_avatar(avatar)

    def send_signal(self, payload: Any) -> bool:
        return self._session.send_signal(payload)

    def on_signal(self, data: Any) -> None:
        if self._signal_handler is None:
            logger.debug("No signal handler, dropping peer signal")
            return
        self._signal_handler(data)

    def recover(self) -> bool:
        """Re-enter a held room when the page lost its UI (e.g. it reloaded)."""
        if self._view.active:
            return False
        status = self._session.status()
        if not (status.connected and status.room_id):
            return False
        logger.info("Recovering Session...")
        self.enter_room({"roomId": status.room_id, "history": self._session.chat_history})
        return True

    def start(self) -> None:
        self.attach_player()
        self._tasks = [
            asyncio.create_task(self._every(PLAYER_ATTACH_INTERVAL, self.attach_player)),
            asyncio.create_task(self._every(SESSION_RECOVERY_INTERVAL, self.recover)),
        ]

    def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    async def _every(self, interval: float, func: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                func()
            except Exception as e:
                logger.error(f"Error in periodic {func.__name__}: {e}", exc_info=True)
