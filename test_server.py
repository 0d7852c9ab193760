"""
End-to-end tests of the relay over its WebSocket and HTTP interface.
"""

import asyncio
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from client.party import ChatParty
from server.config import Settings
from server.main import build_share_link, create_app
from server.sessions import SessionRegistry, generate_session_id


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(expiry=timedelta(hours=24), clock=clock)


@pytest.fixture
def client(registry):
    app = create_app(Settings(), registry)
    with TestClient(app) as client:
        yield client


def step(party: ChatParty, ws, frame: dict):
    """Feed one relay frame to a party and send whatever it answers"""
    for reply in asyncio.run(party.handle(frame)):
        ws.send_json(reply)


def test_end_to_end_chat(client, registry):
    alice, bob = ChatParty(), ChatParty()

    with client.websocket_connect("/ws") as a:
        a.send_json(alice.create_request())
        created = a.receive_json()
        assert created["type"] == "session_created"
        assert created["role"] == "initiator"
        session_id = created["session_id"]
        assert created["link"] == f"http://testserver/chat/{session_id}"
        step(alice, a, created)

        with client.websocket_connect("/ws") as b:
            b.send_json(bob.join_request(session_id))
            joined = b.receive_json()
            assert joined["type"] == "session_joined"
            assert joined["role"] == "joiner"
            assert joined["link"] is None
            step(bob, b, joined)

            peer_joined = a.receive_json()
            assert peer_joined == {"type": "peer_joined", "peer_id": joined["peer_id"]}
            step(alice, a, peer_joined)

            bobs_key = a.receive_json()
            assert bobs_key["type"] == "key_exchange"
            step(alice, a, bobs_key)

            alices_key = b.receive_json()
            assert alices_key["type"] == "key_exchange"
            step(bob, b, alices_key)

            assert alice.engine.is_ready() and bob.engine.is_ready()

            a.send_json(asyncio.run(alice.compose("hello")))
            delivered = b.receive_json()
            assert delivered["type"] == "message"
            assert "relay_timestamp" in delivered
            step(bob, b, delivered)
            assert ("message", "hello") in bob.drain_notices()

            b.send_json(asyncio.run(bob.compose("hi there")))
            step(alice, a, a.receive_json())
            assert ("message", "hi there") in alice.drain_notices()

        left = a.receive_json()
        assert left == {"type": "peer_left", "peer_id": joined["peer_id"]}
        assert session_id in registry
        assert len(registry.participants(session_id)) == 1

    assert session_id not in registry


def test_third_party_rejected(client):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b, \
            client.websocket_connect("/ws") as c:
        a.send_json({"type": "create_session"})
        session_id = a.receive_json()["session_id"]

        b.send_json({"type": "join_session", "session_id": session_id})
        assert b.receive_json()["role"] == "joiner"

        c.send_json({"type": "join_session", "session_id": session_id})
        error = c.receive_json()
        assert error == {
            "type": "error",
            "code": "session_unavailable",
            "message": "Session not available or expired",
        }

        # Connection stays usable after a rejected join
        c.send_json({"type": "ping"})
        assert c.receive_json() == {"type": "pong"}


def test_first_joiner_of_http_created_session_gets_link(client, registry):
    response = client.get("/chat/new", follow_redirects=False)
    assert response.status_code == 302
    session_id = response.headers["location"].rsplit("/", 1)[-1]
    assert session_id in registry

    with client.websocket_connect("/ws", headers={"x-forwarded-proto": "https"}) as a:
        a.send_json({"type": "join_session", "session_id": session_id})
        joined = a.receive_json()
        assert joined["type"] == "session_joined"
        assert joined["role"] == "initiator"
        assert joined["link"] == f"https://testserver/chat/{session_id}"


def test_expired_session_rejects_join_and_relay(client, clock):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        a.send_json({"type": "create_session"})
        session_id = a.receive_json()["session_id"]

        clock.now += timedelta(hours=24, seconds=1)

        b.send_json({"type": "join_session", "session_id": session_id})
        assert b.receive_json()["message"] == "Session not available or expired"

        a.send_json({"type": "message", "ciphertext": "", "nonce": "AAAAAAAAAAAAAAAA",
                     "auth_tag": "AAAAAAAAAAAAAAAAAAAAAA=="})
        assert a.receive_json()["code"] == "session_invalid"


def test_invalid_session_token(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "join_session", "session_id": "not-a-token"})
        assert ws.receive_json() == {
            "type": "error", "code": "invalid_session_id", "message": "Invalid session ID"
        }

        ws.send_json({"type": "join_session", "session_id": generate_session_id()})
        assert ws.receive_json()["code"] == "session_unavailable"


def test_malformed_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{not json")
        assert ws.receive_json()["code"] == "invalid_event"

        ws.send_json({"type": "bogus"})
        assert ws.receive_json()["code"] == "invalid_event"

        ws.send_json({"type": "message", "ciphertext": "!!", "nonce": "AA==", "auth_tag": "AA=="})
        assert ws.receive_json()["code"] == "invalid_event"

        ws.send_json({"type": "message", "ciphertext": "", "nonce": "AAAAAAAAAAAAAAAA",
                      "auth_tag": "AAAAAAAAAAAAAAAAAAAAAA=="})
        assert ws.receive_json()["code"] == "no_session"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_tampered_message_is_dropped_by_receiver(client):
    """The relay forwards blindly; the receiving party rejects the forgery"""
    alice, bob = ChatParty(), ChatParty()
    with client.websocket_connect("/ws") as a:
        a.send_json(alice.create_request())
        created = a.receive_json()
        step(alice, a, created)
        with client.websocket_connect("/ws") as b:
            b.send_json(bob.join_request(created["session_id"]))
            step(bob, b, b.receive_json())
            step(alice, a, a.receive_json())   # peer_joined
            step(alice, a, a.receive_json())   # bob's key
            step(bob, b, b.receive_json())     # alice's key

            frame = asyncio.run(alice.compose("secret"))
            frame["auth_tag"] = "A" * 22 + "=="
            a.send_json(frame)
            step(bob, b, b.receive_json())
            notices = bob.drain_notices()
            assert ("warning", "Failed to decrypt a message") in notices
            assert not any(kind == "message" for kind, _ in notices)


def test_typing_forwarded(client):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        a.send_json({"type": "create_session"})
        session_id = a.receive_json()["session_id"]
        b.send_json({"type": "join_session", "session_id": session_id})
        joined = b.receive_json()
        a.receive_json()  # peer_joined

        b.send_json({"type": "typing", "is_typing": True})
        assert a.receive_json() == {"type": "peer_typing", "peer_id": joined["peer_id"], "is_typing": True}


def test_http_routes(client):
    assert client.get("/chat/bad-id").status_code == 400
    assert client.get(f"/chat/{generate_session_id()}").status_code == 200
    assert client.get("/").status_code == 200

    health = client.get("/health").json()
    assert health == {"status": "ok", "sessions": 0}


def test_build_share_link():
    session_id = generate_session_id()

    configured = Settings(base_url="https://chat.example.org/")
    assert build_share_link(configured, {"host": "ignored"}, "ws", session_id) == \
        f"https://chat.example.org/chat/{session_id}"

    settings = Settings(port=4000)
    assert build_share_link(settings, {}, "ws", session_id) == f"http://localhost:4000/chat/{session_id}"
    assert build_share_link(settings, {"host": "h:1"}, "wss", session_id) == f"https://h:1/chat/{session_id}"
    assert build_share_link(settings, {"host": "h", "x-forwarded-proto": "https, http"}, "ws", session_id) == \
        f"https://h/chat/{session_id}"


def _chatting_pair(client, stack: ExitStack):
    """Open two connections admitted to one fresh session"""
    a = stack.enter_context(client.websocket_connect("/ws"))
    b = stack.enter_context(client.websocket_connect("/ws"))
    a.send_json({"type": "create_session"})
    created = a.receive_json()
    b.send_json({"type": "join_session", "session_id": created["session_id"]})
    joined = b.receive_json()
    assert a.receive_json()["type"] == "peer_joined"
    return a, b, created, joined


@pytest.mark.parametrize("target", ["not-a-token", "unknown", "full"])
def test_rejected_join_keeps_current_session(client, registry, target):
    with ExitStack() as stack:
        a, b, created, _ = _chatting_pair(client, stack)

        if target == "not-a-token":
            bad_id = "not-a-token"
        elif target == "unknown":
            bad_id = generate_session_id()
        else:
            _, _, other, _ = _chatting_pair(client, stack)
            bad_id = other["session_id"]

        b.send_json({"type": "join_session", "session_id": bad_id})
        assert b.receive_json()["type"] == "error"
        assert len(registry.participants(created["session_id"])) == 2

        # Still relaying in the original session, and A saw no peer_left
        b.send_json({"type": "typing", "is_typing": True})
        assert a.receive_json()["type"] == "peer_typing"


def test_rejoining_same_session_is_quiet(client, registry):
    with ExitStack() as stack:
        a, b, created, joined = _chatting_pair(client, stack)

        b.send_json({"type": "join_session", "session_id": created["session_id"]})
        again = b.receive_json()
        assert again["type"] == "session_joined"
        assert again["peer_id"] == joined["peer_id"]
        assert again["role"] == "joiner"

        # No second peer_joined: the next thing A sees is B's typing notice
        b.send_json({"type": "typing", "is_typing": False})
        assert a.receive_json() == {"type": "peer_typing", "peer_id": joined["peer_id"], "is_typing": False}
        assert len(registry.participants(created["session_id"])) == 2


def test_switching_sessions_leaves_the_old_one(client, registry):
    with ExitStack() as stack:
        a, b, created, joined = _chatting_pair(client, stack)
        c = stack.enter_context(client.websocket_connect("/ws"))
        c.send_json({"type": "create_session"})
        other_id = c.receive_json()["session_id"]

        b.send_json({"type": "join_session", "session_id": other_id})
        assert b.receive_json()["role"] == "joiner"
        assert a.receive_json() == {"type": "peer_left", "peer_id": joined["peer_id"]}
        assert c.receive_json()["type"] == "peer_joined"
        assert len(registry.participants(created["session_id"])) == 1


def test_binary_frame_is_rejected_not_fatal(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_json()["code"] == "invalid_event"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
