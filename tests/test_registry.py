import asyncio
import random

from registry import IdentityAllocator, RoomRegistry, SessionRegistry
from signaling import DISCONNECT, JOIN, SET_ID, SignalEvent, SignalingRelay
from fakes import RecordingSocket


def test_generated_user_ids_are_unique():
    sessions = SessionRegistry()
    identities = IdentityAllocator()
    ids = set()
    for _ in range(200):
        user_id, generated, evicted = identities.assign(sessions.open())
        assert generated and evicted is None
        ids.add(user_id)
    assert len(ids) == 200


def test_provided_id_is_reassociated_and_evicts_stale_owner():
    sessions = SessionRegistry()
    identities = IdentityAllocator()
    old, new = sessions.open(), sessions.open()
    identities.assign(old, "user-1")

    user_id, generated, evicted = identities.assign(new, "user-1")

    assert (user_id, generated, evicted) == ("user-1", False, old.handle)
    assert identities.owner_of("user-1") == new.handle
    assert not identities.release(old)
    assert identities.release(new)
    assert identities.owner_of("user-1") is None


def test_room_survives_reaching_zero_members():
    rooms = RoomRegistry()
    assert rooms.join("room-1", "a")
    assert not rooms.join("room-1", "a")
    assert rooms.leave("room-1", "a")
    assert not rooms.leave("room-1", "a")
    assert rooms.exists("room-1")
    assert rooms.members("room-1") == set()
    rooms.remove("room-1")
    assert not rooms.exists("room-1")


def test_new_room_ids_do_not_collide_with_existing_rooms():
    rooms = RoomRegistry()
    for _ in range(100):
        rooms.join(rooms.new_room_id(), "a")
    assert len(rooms) == 100


def _member_user_ids(relay, room_id):
    return {relay.sessions.get(h).user_id for h in relay.rooms.members(room_id)}


def test_membership_matches_open_joined_channels_under_random_interleavings():
    async def scenario(seed):
        rng = random.Random(seed)
        relay = SignalingRelay()
        rooms = ["aaaa-aaaa", "cccc-cccc"]
        open_handles = {}
        expected = {room: set() for room in rooms}

        for _ in range(300):
            op = rng.choice(["connect", "join", "disconnect"])
            if op == "connect" or not open_handles:
                session = relay.register(RecordingSocket())
                await relay.handle_event(SignalEvent(session.handle, SET_ID, {}))
                open_handles[session.handle] = None
            elif op == "join":
                handle = rng.choice(list(open_handles))
                room = rng.choice(rooms)
                await relay.handle_event(SignalEvent(handle, JOIN, {"room": room, "myBroadcast": rng.random() < 0.2}))
                previous = open_handles[handle]
                if previous:
                    expected[previous].discard(relay.sessions.get(handle).user_id)
                open_handles[handle] = room
                expected[room].add(relay.sessions.get(handle).user_id)
            else:
                handle = rng.choice(list(open_handles))
                user_id = relay.sessions.get(handle).user_id
                room = open_handles.pop(handle)
                await relay.handle_event(SignalEvent(handle, DISCONNECT))
                if room:
                    expected[room].discard(user_id)

            for room in rooms:
                assert _member_user_ids(relay, room) == expected[room]

    for seed in range(5):
        asyncio.run(scenario(seed))


def test_each_leave_is_announced_exactly_once():
    async def scenario():
        relay = SignalingRelay()
        watcher_socket = RecordingSocket()
        watcher = relay.register(watcher_socket)
        leaver = relay.register(RecordingSocket())
        for session in (watcher, leaver):
            await relay.handle_event(SignalEvent(session.handle, SET_ID, {}))
            await relay.handle_event(SignalEvent(session.handle, JOIN, {"room": "aaaa-aaaa"}))

        await relay.handle_event(SignalEvent(leaver.handle, DISCONNECT))
        await relay.handle_event(SignalEvent(leaver.handle, DISCONNECT))

        left = watcher_socket.messages("user left room")
        assert len(left) == 1
        assert left[0]["user"] == leaver.user_id

    asyncio.run(scenario())


def test_rejoining_another_room_leaves_the_previous_one():
    async def scenario():
        relay = SignalingRelay()
        watcher_socket = RecordingSocket()
        watcher = relay.register(watcher_socket)
        mover = relay.register(RecordingSocket())
        for session in (watcher, mover):
            await relay.handle_event(SignalEvent(session.handle, SET_ID, {}))
            await relay.handle_event(SignalEvent(session.handle, JOIN, {"room": "aaaa-aaaa"}))

        await relay.handle_event(SignalEvent(mover.handle, JOIN, {"room": "cccc-cccc"}))

        assert relay.rooms.members("aaaa-aaaa") == {watcher.handle}
        assert relay.rooms.members("cccc-cccc") == {mover.handle}
        assert watcher_socket.messages("user left room")[0]["user"] == mover.user_id

    asyncio.run(scenario())


def test_evicted_session_leaves_room_silently():
    async def scenario():
        relay = SignalingRelay()
        watcher_socket = RecordingSocket()
        watcher = relay.register(watcher_socket)
        stale = relay.register(RecordingSocket())
        fresh = relay.register(RecordingSocket())
        await relay.handle_event(SignalEvent(watcher.handle, SET_ID, {}))
        await relay.handle_event(SignalEvent(watcher.handle, JOIN, {"room": "aaaa-aaaa"}))
        await relay.handle_event(SignalEvent(stale.handle, SET_ID, {"id": "user-1"}))
        await relay.handle_event(SignalEvent(stale.handle, JOIN, {"room": "aaaa-aaaa"}))

        await relay.handle_event(SignalEvent(fresh.handle, SET_ID, {"id": "user-1"}))
        await relay.handle_event(SignalEvent(stale.handle, DISCONNECT))

        assert relay.identities.owner_of("user-1") == fresh.handle
        assert relay.rooms.members("aaaa-aaaa") == {watcher.handle}
        assert watcher_socket.messages("user left room") == []

    asyncio.run(scenario())
