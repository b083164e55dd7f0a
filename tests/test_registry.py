from __future__ import annotations

import asyncio

from bson import ObjectId
from conftest import RecordingSession
from schemas import CreateRoomEvent


def test_connected_session_is_inert(registry):
    session = RecordingSession()
    registry.connect(session)
    assert registry.session_count == 1
    assert registry.channels_for(session) == set()


def test_join_subscribes_inbox_and_rooms(registry, rooms):
    alice, bob = str(ObjectId()), str(ObjectId())
    room = rooms.create(CreateRoomEvent(name="T", creator=alice, members=[bob]))
    other = rooms.create(CreateRoomEvent(name="U", creator=bob, members=[]))

    session = RecordingSession()
    registry.connect(session)
    channels = asyncio.run(registry.join(session, alice))

    assert channels == {alice, room["id"]}
    assert other["id"] not in registry.channels_for(session)
    assert registry.sessions_for(room["id"]) == [session]


def test_join_is_idempotent(registry, rooms):
    alice = str(ObjectId())
    rooms.create(CreateRoomEvent(name="T", creator=alice, members=[]))
    session = RecordingSession()
    registry.connect(session)

    once = asyncio.run(registry.join(session, alice))
    twice = asyncio.run(registry.join(session, alice))

    assert once == twice
    assert registry.sessions_for(alice) == [session]


def test_join_with_malformed_id_is_ignored(registry):
    session = RecordingSession()
    registry.connect(session)
    assert asyncio.run(registry.join(session, "12345")) == set()
    assert registry.channels_for(session) == set()


def test_every_device_of_a_user_listens(registry):
    alice = str(ObjectId())
    phone, laptop = RecordingSession(), RecordingSession()
    for session in (phone, laptop):
        registry.connect(session)
        asyncio.run(registry.join(session, alice))
    assert {s.sid for s in registry.sessions_for(alice)} == {phone.sid, laptop.sid}


def test_join_room_after_connect(registry):
    room_id = str(ObjectId())
    session = RecordingSession()
    registry.connect(session)
    registry.join_room(session, room_id)
    assert registry.channels_for(session) == {room_id}


def test_disconnect_clears_subscriptions(registry):
    alice = str(ObjectId())
    session = RecordingSession()
    registry.connect(session)
    asyncio.run(registry.join(session, alice))

    registry.disconnect(session)

    assert registry.session_count == 0
    assert registry.sessions_for(alice) == []
    assert registry.channels_for(session) == set()


def test_subscribe_after_disconnect_is_ignored(registry):
    session = RecordingSession()
    registry.connect(session)
    registry.disconnect(session)
    registry.join_room(session, str(ObjectId()))
    assert registry.channels_for(session) == set()
