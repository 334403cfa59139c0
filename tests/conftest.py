import asyncio
import itertools
import json

import pytest

from errors import TransportDisconnected
from registry import RoomRegistry
from relay import RelayDispatcher

_CLOSED = object()


class FakeSocket:
    """Server-side stand-in for a WebSocket: records what the relay sends."""

    def __init__(self):
        self.sent = []
        self.broken = False

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(text))

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


class LoopbackTransport:
    """Client transport wired straight into an in-process RelayDispatcher."""

    def __init__(self, network, connection_id):
        self.network = network
        self.connection_id = connection_id
        self.inbox = asyncio.Queue()
        self.closed = False
        self.sent = []

    # relay -> client
    async def send_text(self, text):
        if self.closed:
            raise TransportDisconnected("closed")
        await self.inbox.put(text)

    # client -> relay
    async def send(self, text):
        if self.closed:
            raise TransportDisconnected("closed")
        self.sent.append(json.loads(text))
        await self.network.dispatcher.handle_text(self.connection_id, text)

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise TransportDisconnected("closed")
        return item

    async def close(self):
        await self.drop()

    async def drop(self):
        if self.closed:
            return
        self.closed = True
        self.inbox.put_nowait(_CLOSED)
        await self.network.dispatcher.disconnect(self.connection_id)

    def events(self, name):
        return [m for m in self.sent if m["event"] == name]


class LoopbackNetwork:
    def __init__(self, registry=None):
        self.registry = registry or RoomRegistry()
        self.dispatcher = RelayDispatcher(self.registry)
        self.up = True
        self.transports = []
        self.attempts = 0
        self._ids = itertools.count(1)

    async def connect(self, url):
        self.attempts += 1
        if not self.up:
            raise TransportDisconnected("relay unreachable")
        transport = LoopbackTransport(self, f"conn-{next(self._ids)}")
        self.dispatcher.connect(transport.connection_id, transport)
        self.transports.append(transport)
        return transport


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakePlayer:
    def __init__(self, current_time=0.0, playback_rate=1.0):
        self.current_time = current_time
        self.playback_rate = playback_rate
        self.playing = False
        self.listeners = {}
        self.refuse_play = False

    async def play(self):
        if self.refuse_play:
            raise RuntimeError("NotAllowedError")
        self.playing = True

    def pause(self):
        self.playing = False

    def add_listener(self, event, callback):
        self.listeners.setdefault(event, []).append(callback)

    def fire(self, event):
        return [callback(event) for callback in self.listeners.get(event, [])]


class FakeNavigator:
    def __init__(self, current_url="https://www.youtube.com/"):
        self.current_url = current_url
        self.navigations = []

    def navigate(self, url):
        self.navigations.append(url)
        self.current_url = url


class FakeView:
    def __init__(self):
        self.active = False
        self.room_id = None
        self.rendered = []

    def open(self, room_id):
        self.active = True
        self.room_id = room_id

    def close(self):
        self.active = False
        self.room_id = None

    def clear(self):
        self.rendered = []

    def render(self, message, mine):
        self.rendered.append((message.text, mine))


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def dispatcher(registry):
    return RelayDispatcher(registry)


@pytest.fixture
def clock():
    return FakeClock()
