from typing import Any, Awaitable, Callable, Optional, Protocol

from schemas.events import ChatMessage

PlaybackListener = Callable[[str], Any]
SignalHandler = Callable[[Any], Any]


class MediaPlayer(Protocol):
    current_time: float
    playback_rate: float

    def play(self) -> Awaitable[None]:
        """Start playback. May be refused by the host (autoplay policy)."""

    def pause(self) -> None: ...

    def add_listener(self, event: str, callback: PlaybackListener) -> None:
        """Call ``callback(event)`` whenever ``event`` fires on this element."""


class Navigator(Protocol):
    @property
    def current_url(self) -> str: ...

    def navigate(self, url: str) -> None: ...


class ChatView(Protocol):
    @property
    def active(self) -> bool:
        """Whether the room UI is currently shown on the page."""

    def open(self, room_id: str) -> None: ...

    def close(self) -> None: ...

    def clear(self) -> None: ...

    def render(self, message: ChatMessage, mine: bool) -> None: ...


PlayerProvider = Callable[[], Optional[MediaPlayer]]
