import asyncio
import json

from conftest import FakeSocket


def frame(event, data=None, id=None):
    message = {"event": event, "data": data}
    if id is not None:
        message["id"] = id
    return json.dumps(message)


def ack_of(socket, id):
    return next(m["data"] for m in socket.events("ack") if m["id"] == id)


def connect(dispatcher, *names):
    sockets = {}
    for name in names:
        sockets[name] = FakeSocket()
        dispatcher.connect(name, sockets[name])
    return sockets


def test_create_and_join(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        created = ack_of(s["a"], 1)
        assert created["success"] is True
        room_id = created["roomId"]

        await dispatcher.handle_text("b", frame("join_room", room_id.lower(), id=7))
        joined = ack_of(s["b"], 7)
        assert joined == {"success": True, "roomId": room_id}
        assert registry.members(room_id) == {"a", "b"}
        assert s["a"].events("user_joined")[0]["data"] == {"userId": "b"}
        assert s["b"].events("user_joined") == []

    asyncio.run(scenario())


def test_join_unknown_room_fails_without_side_effects(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]

        await dispatcher.handle_text("a", frame("join_room", "NOPE00", id=2))
        assert ack_of(s["a"], 2) == {"success": False, "error": "Room not found"}
        # Still in the original room
        assert registry.room_of("a") == room_id
        assert list(registry) == [room_id]

    asyncio.run(scenario())


def test_relay_reaches_everyone_but_sender(dispatcher):
    async def scenario():
        s = connect(dispatcher, "a", "b", "c", "outsider")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))
        await dispatcher.handle_text("c", frame("join_room", room_id, id=1))
        await dispatcher.handle_text("outsider", frame("create_room", id=1))

        payload = {"type": "pause", "currentTime": 42.5, "rate": 1.25, "extra": [1, None]}
        await dispatcher.handle_text("b", frame("sync_action", payload))

        assert s["a"].events("sync_action")[0]["data"] == payload
        assert s["c"].events("sync_action")[0]["data"] == payload
        assert s["b"].events("sync_action") == []
        assert s["outsider"].events("sync_action") == []

    asyncio.run(scenario())


def test_navigation_updates_room_and_late_joiner_converges(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b", "late")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))

        await dispatcher.handle_text("a", frame("sync_shorts", {"url": "https://x/shorts/1"}))
        assert s["b"].events("sync_shorts")[0]["data"] == {"url": "https://x/shorts/1"}
        assert registry.get_room(room_id).current_url == "https://x/shorts/1"

        await dispatcher.handle_text("late", frame("join_room", room_id, id=3))
        assert ack_of(s["late"], 3)["currentUrl"] == "https://x/shorts/1"

    asyncio.run(scenario())


def test_avatar_update_is_attributed(dispatcher):
    async def scenario():
        s = connect(dispatcher, "a", "b")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))

        await dispatcher.handle_text("b", frame("update_avatar", {"avatar": "X"}))
        assert s["a"].events("update_avatar")[0]["data"] == {"userId": "b", "avatar": "X"}

    asyncio.run(scenario())


def test_events_outside_a_room_are_ignored(dispatcher):
    async def scenario():
        s = connect(dispatcher, "a")
        await dispatcher.handle_text("a", frame("chat_message", {"text": "hi"}))
        await dispatcher.handle_text("a", frame("ping"))
        assert s["a"].sent == []

    asyncio.run(scenario())


def test_faulty_events_are_dropped_and_connection_survives(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b")
        await dispatcher.handle_text("a", "this is not json")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))

        # Missing url: handler fails, nothing relayed, nothing changed
        await dispatcher.handle_text("a", frame("sync_shorts", {"href": "x"}))
        assert s["b"].events("sync_shorts") == []
        assert registry.get_room(room_id).current_url is None

        await dispatcher.handle_text("a", frame("chat_message", {"text": "still here"}))
        assert s["b"].events("chat_message")[0]["data"] == {"text": "still here"}

    asyncio.run(scenario())


def test_broken_member_does_not_stop_fan_out(dispatcher):
    async def scenario():
        s = connect(dispatcher, "a", "b", "c")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))
        await dispatcher.handle_text("c", frame("join_room", room_id, id=1))

        s["b"].broken = True
        await dispatcher.handle_text("a", frame("signal_peer", {"type": "PEER_ID", "peerId": "p"}))
        assert s["c"].events("signal_peer")[0]["data"] == {"type": "PEER_ID", "peerId": "p"}

    asyncio.run(scenario())


def test_disconnect_notifies_and_cleans_up(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        room_id = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", room_id, id=1))

        await dispatcher.disconnect("b")
        assert registry.members(room_id) == {"a"}
        assert s["a"].events("user_left")[0]["data"] == {"userId": "b"}

        await dispatcher.disconnect("a")
        assert room_id not in registry
        assert len(registry) == 0

    asyncio.run(scenario())


def test_joining_another_room_leaves_the_first(dispatcher, registry):
    async def scenario():
        s = connect(dispatcher, "a", "b", "c")
        await dispatcher.handle_text("a", frame("create_room", id=1))
        first = ack_of(s["a"], 1)["roomId"]
        await dispatcher.handle_text("b", frame("join_room", first, id=1))
        await dispatcher.handle_text("c", frame("create_room", id=1))
        second = ack_of(s["c"], 1)["roomId"]

        await dispatcher.handle_text("b", frame("join_room", second, id=2))
        assert registry.members(first) == {"a"}
        assert registry.members(second) == {"b", "c"}
        assert s["a"].events("user_left")[0]["data"] == {"userId": "b"}

        # Rejoining the current room keeps membership as is
        await dispatcher.handle_text("b", frame("join_room", second, id=3))
        assert ack_of(s["b"], 3)["success"] is True
        assert registry.members(second) == {"b", "c"}

    asyncio.run(scenario())
