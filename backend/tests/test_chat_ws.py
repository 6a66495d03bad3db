"""Tests for the WebSocket chat endpoint and HTTP query routes.

Protocol reminder:
1. On connect, the server sends {type: "connected", connectionId: "<uuid>"}
2. After {type: "join"} the joiner receives users_online, available_rooms
   and message_history, in that order
"""
import httpx
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from huddle.auth.service import IdentityVerifier
from huddle.config import AppSettings, AuthSettings, ServerSettings
from huddle.main import create_app


def receive_connected(ws) -> str:
    """Helper to receive the backend-assigned connection id."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    return connected["connectionId"]


def join(ws, name: str, **extra) -> dict:
    """Send a join and consume the joiner's three snapshot frames.

    Returns:
        Dict with the three frames keyed by type.
    """
    ws.send_json({
        "type": "join",
        "displayName": name,
        "persistentIdentity": f"user-{name.lower()}",
        **extra,
    })
    frames = [ws.receive_json() for _ in range(3)]
    assert [f["type"] for f in frames] == ["users_online", "available_rooms", "message_history"]
    return {f["type"]: f for f in frames}


def expect_peer_join(ws, name: str) -> None:
    """Consume the user_joined + users_online pair an existing member sees."""
    joined = ws.receive_json()
    assert joined["type"] == "user_joined"
    assert joined["user"]["displayName"] == name
    assert ws.receive_json()["type"] == "users_online"


def test_join_sends_snapshots(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        connection_id = receive_connected(ws)
        frames = join(ws, "Alice", email="alice@example.com")

        users = frames["users_online"]["users"]
        assert users[0]["connectionId"] == connection_id
        assert users[0]["email"] == "alice@example.com"
        assert frames["available_rooms"]["rooms"] == ["general", "random", "help"]
        assert frames["message_history"]["roomId"] == "general"
        assert frames["message_history"]["messages"] == []


def test_new_member_receives_history(api_client):
    with api_client.websocket_connect("/ws/chat") as ws1:
        alice_id = receive_connected(ws1)
        join(ws1, "Alice")

        ws1.send_json({"type": "send_message", "content": "hi"})
        echoed = ws1.receive_json()
        assert echoed["type"] == "room_message"
        assert echoed["content"] == "hi"

        with api_client.websocket_connect("/ws/chat") as ws2:
            receive_connected(ws2)
            frames = join(ws2, "Bob")

            messages = frames["message_history"]["messages"]
            assert len(messages) == 1
            assert messages[0]["content"] == "hi"
            assert messages[0]["senderId"] == alice_id
            assert messages[0]["senderName"] == "Alice"

            expect_peer_join(ws1, "Bob")


def test_private_message_echoed_to_sender_and_recipient(api_client):
    with api_client.websocket_connect("/ws/chat") as ws1, \
         api_client.websocket_connect("/ws/chat") as ws2:
        receive_connected(ws1)
        bob_id = receive_connected(ws2)
        join(ws1, "Alice")
        join(ws2, "Bob")
        expect_peer_join(ws1, "Bob")

        ws1.send_json({"type": "send_private_message", "content": "hey", "recipientId": bob_id})

        to_alice = ws1.receive_json()
        to_bob = ws2.receive_json()
        assert to_alice["type"] == to_bob["type"] == "private_message"
        assert to_alice["id"] == to_bob["id"]
        assert to_bob["recipientIdentity"] == "user-bob"

        # Bob reads it; only Alice hears about it
        ws2.send_json({"type": "mark_read", "scopeId": "private:user-alice", "messageIds": [to_bob["id"]]})
        receipt = ws1.receive_json()
        assert receipt["type"] == "message_read"
        assert receipt["messageIds"] == [to_bob["id"]]
        assert receipt["readerIdentity"] == "user-bob"


def test_typing_stop_arrives_before_message(api_client):
    with api_client.websocket_connect("/ws/chat") as ws1, \
         api_client.websocket_connect("/ws/chat") as ws2:
        alice_id = receive_connected(ws1)
        receive_connected(ws2)
        join(ws1, "Alice")
        join(ws2, "Bob")
        expect_peer_join(ws1, "Bob")

        ws1.send_json({"type": "typing_start"})
        typing = ws2.receive_json()
        assert typing == {
            "type": "user_typing",
            "userId": alice_id,
            "displayName": "Alice",
            "avatar": None,
            "roomId": "general",
        }

        ws1.send_json({"type": "send_message", "content": "done"})
        assert ws2.receive_json()["type"] == "user_stopped_typing"
        assert ws2.receive_json()["type"] == "room_message"


def test_switch_room_resends_history(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        join(ws, "Alice")

        ws.send_json({"type": "switch_room", "roomName": "random"})
        history = ws.receive_json()
        assert history["type"] == "message_history"
        assert history["roomId"] == "random"

        ws.send_json({"type": "send_message", "content": "in random"})
        message = ws.receive_json()
        assert message["roomId"] == "random"


def test_invalid_events_get_error_frames(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)

        ws.send_json({"type": "join", "displayName": "NoIdentity"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert "persistentIdentity" in error["error"]

        join(ws, "Alice")

        ws.send_json({"type": "send_message", "content": "   "})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "shout"})
        unknown = ws.receive_json()
        assert unknown["type"] == "error"
        assert "Unknown event type" in unknown["error"]

        ws.send_json(["not", "an", "object"])
        assert ws.receive_json()["type"] == "error"


def test_not_found_events_are_silent(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        join(ws, "Alice")

        ws.send_json({"type": "send_private_message", "content": "hey", "recipientId": "nobody"})
        # The next reply must be for the following request, not the no-op above
        ws.send_json({"type": "switch_room", "roomName": "help"})
        assert ws.receive_json()["type"] == "message_history"


@pytest.mark.parametrize("limit", ["1e400", "2.5", '"ten"'])
def test_bad_history_limit_keeps_connection_open(api_client, limit):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        join(ws, "Alice")

        # 1e400 parses to float infinity
        ws.send_text(f'{{"type": "private_history", "peerIdentity": "user-bob", "limit": {limit}}}')
        error = ws.receive_json()
        assert error["type"] == "error"
        assert "limit" in error["error"]

        ws.send_json({"type": "switch_room", "roomName": "random"})
        assert ws.receive_json()["type"] == "message_history"


def test_private_prefixed_room_name_is_rejected(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        join(ws, "Alice")

        ws.send_json({"type": "switch_room", "roomName": "private:ops"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert "private:" in error["error"]

    assert "private:ops" not in api_client.get("/api/rooms").json()


def _origin_client() -> TestClient:
    settings = AppSettings(server=ServerSettings(allowed_origins=["http://chat.example.com"]))
    return TestClient(create_app(settings))


def test_websocket_from_unlisted_origin_is_refused():
    client = _origin_client()
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/chat", headers={"origin": "http://evil.example.com"}):
            pass
    assert exc_info.value.code == 1008


def test_websocket_from_listed_origin_or_no_origin_is_accepted():
    client = _origin_client()
    with client.websocket_connect("/ws/chat", headers={"origin": "http://chat.example.com"}) as ws:
        receive_connected(ws)
    with client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)


def test_disconnect_broadcasts_user_left(api_client):
    with api_client.websocket_connect("/ws/chat") as ws1:
        receive_connected(ws1)
        join(ws1, "Alice")

        with api_client.websocket_connect("/ws/chat") as ws2:
            bob_id = receive_connected(ws2)
            join(ws2, "Bob")
            expect_peer_join(ws1, "Bob")

        left = ws1.receive_json()
        assert left["type"] == "user_left"
        assert left["user"]["connectionId"] == bob_id
        online = ws1.receive_json()
        assert online["type"] == "users_online"
        assert [u["displayName"] for u in online["users"]] == ["Alice"]


def test_http_query_surface(api_client):
    with api_client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        join(ws, "Alice")
        ws.send_json({"type": "send_message", "content": "hello http"})
        ws.receive_json()

        messages = api_client.get("/api/messages", params={"room": "general"}).json()
        assert [m["content"] for m in messages] == ["hello http"]

        users = api_client.get("/api/users/online").json()
        assert [u["displayName"] for u in users] == ["Alice"]

    assert api_client.get("/api/rooms").json() == ["general", "random", "help"]
    assert api_client.get("/api/messages", params={"room": "random"}).json() == []

    health = api_client.get("/health").json()
    assert health["status"] == "ok"
    assert health["rooms"] == ["general", "random", "help"]
    assert health["totalMessages"] == 1
    assert health["totalPrivateChats"] == 0


def _auth_client(handler) -> TestClient:
    app = create_app(AppSettings(auth=AuthSettings(enabled=True, userinfo_url="https://id.example.com/userinfo")))
    app.state.verifier = IdentityVerifier(
        userinfo_url="https://id.example.com/userinfo",
        transport=httpx.MockTransport(handler),
    )
    return TestClient(app)


def test_verified_token_overrides_identity():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer good-token"
        return httpx.Response(200, json={
            "sub": "idp|42",
            "name": "Alice Verified",
            "email": "alice@idp.example.com",
            "picture": "https://img.example.com/a.png",
        })

    client = _auth_client(handler)
    with client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        frames = join(ws, "Alice", authToken="good-token")

        me = frames["users_online"]["users"][0]
        assert me["persistentIdentity"] == "idp|42"
        assert me["displayName"] == "Alice Verified"
        assert me["avatar"] == "https://img.example.com/a.png"
        assert me["authenticated"] is True


def test_rejected_token_degrades_to_unauthenticated():
    client = _auth_client(lambda request: httpx.Response(401, json={"error": "invalid"}))
    with client.websocket_connect("/ws/chat") as ws:
        receive_connected(ws)
        frames = join(ws, "Alice", authToken="bad-token")

        me = frames["users_online"]["users"][0]
        assert me["persistentIdentity"] == "user-alice"
        assert me["authenticated"] is False
