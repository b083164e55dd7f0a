from __future__ import annotations


def _register(client, name: str, password: str) -> dict:
    resp = client.post(
        "/api/auth/register",
        json={"name": name, "email": f"{name.lower()}@x.com", "password": password},
    )
    assert resp.status_code == 201
    return resp.json()


def _send(ws, event: str, data) -> None:
    ws.send_json({"event": event, "data": data})


def _settle(ws, user_id: str) -> None:
    """Round-trip a request_result to ourselves so earlier frames are processed."""
    _send(ws, "respond_request", {"accepted": True, "senderId": user_id, "receiverName": "sync"})
    frame = ws.receive_json()
    assert frame == {"event": "request_result", "data": {"accepted": True, "receiverName": "sync"}}


def test_direct_message_round_trip(client):
    alice = _register(client, "Alice", "pw1")
    bob = _register(client, "Bob", "pw2")

    with client.websocket_connect("/ws") as alice_ws, client.websocket_connect("/ws") as bob_ws:
        _send(alice_ws, "join", alice["id"])
        _send(bob_ws, "join", {"userId": bob["id"]})
        _settle(alice_ws, alice["id"])
        _settle(bob_ws, bob["id"])

        _send(alice_ws, "send_message", {
            "sender": alice["id"], "receiver": bob["id"], "text": "hello", "senderName": "Alice",
        })

        received = bob_ws.receive_json()
        echoed = alice_ws.receive_json()
        assert received["event"] == "receive_message"
        assert received["data"]["text"] == "hello"
        assert received["data"]["senderName"] == "Alice"
        assert received["data"]["isRoom"] is False
        assert echoed == received


def test_malformed_frames_keep_the_connection_open(client):
    alice = _register(client, "Alice", "pw1")
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_bytes(b"\x00\x01")
        _send(ws, "send_message", {"sender": "1", "receiver": "2", "text": "x"})
        _send(ws, "join", alice["id"])
        _settle(ws, alice["id"])


def test_room_scenario(client):
    alice = _register(client, "Alice", "pw1")
    bob = _register(client, "Bob", "pw2")

    assert client.post("/api/auth/login", json={"email": "alice@x.com", "password": "pw1"}).status_code == 200
    assert client.post("/api/auth/login", json={"email": "alice@x.com", "password": "pw2"}).status_code == 401

    with client.websocket_connect("/ws") as alice_ws, client.websocket_connect("/ws") as bob_ws:
        _send(alice_ws, "join", alice["id"])
        _send(bob_ws, "join", bob["id"])
        _settle(alice_ws, alice["id"])
        _settle(bob_ws, bob["id"])

        _send(alice_ws, "create_room", {"name": "T", "creator": alice["id"], "members": [bob["id"]]})
        created = bob_ws.receive_json()
        assert created["event"] == "room_created"
        assert alice_ws.receive_json() == created
        room = created["data"]

        _send(bob_ws, "join_room", room["id"])
        _settle(bob_ws, bob["id"])

        _send(alice_ws, "send_message", {
            "sender": alice["id"], "receiver": room["id"], "text": "welcome", "isRoom": True,
        })
        assert bob_ws.receive_json()["data"]["text"] == "welcome"

    listed = client.get(f"/api/rooms/{bob['id']}").json()
    assert [r["name"] for r in listed] == ["T"]
    assert listed[0]["members"] == [alice["id"], bob["id"]]
