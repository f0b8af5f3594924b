"""Realtime chat flows over the ``/ws/chat`` socket."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketTestSession
from starlette.websockets import WebSocketDisconnect

from app.core.security import create_access_token
from app.monitoring.metrics import messages_sent_total


def sign_up(client: TestClient, login: str) -> tuple[int, str]:
    response = client.post(
        "/api/auth/register",
        json={"login": login, "password": "password123", "display_name": login.title()},
    )
    assert response.status_code == 201, response.text
    user_id = response.json()["id"]
    return user_id, create_access_token({"sub": str(user_id)})


def headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def join(connection: WebSocketTestSession, conversation_id: int) -> dict[str, Any]:
    connection.send_json({"type": "join_room", "conversation_id": conversation_id})
    assert connection.receive_json() == {"type": "joined", "conversation_id": conversation_id}
    presence = connection.receive_json()
    assert presence["type"] == "presence"
    return presence


def assert_quiet(connection: WebSocketTestSession) -> None:
    """Nothing else is queued: the next frame is the reply to our ping."""

    connection.send_json({"type": "ping"})
    assert connection.receive_json() == {"type": "pong"}


@pytest.fixture()
def pair(client: TestClient) -> dict[str, Any]:
    alice_id, alice_token = sign_up(client, "alice")
    bob_id, bob_token = sign_up(client, "bob")
    response = client.post(
        "/api/conversations", json={"participant_ids": [bob_id]}, headers=headers(alice_token)
    )
    return {
        "alice": (alice_id, alice_token),
        "bob": (bob_id, bob_token),
        "conversation_id": response.json()["id"],
    }


def test_message_flow_with_presence_delivery_typing_and_reads(client: TestClient, pair):
    alice_id, alice_token = pair["alice"]
    bob_id, bob_token = pair["bob"]
    conversation_id = pair["conversation_id"]
    messages_sent_total._samples.clear()

    with client.websocket_connect(f"/ws/chat?token={alice_token}") as alice:
        assert join(alice, conversation_id)["online"] == [{"user_id": alice_id, "display_name": "Alice"}]

        with client.websocket_connect(f"/ws/chat?token={bob_token}") as bob:
            online = join(bob, conversation_id)["online"]
            assert [entry["user_id"] for entry in online] == [alice_id, bob_id]
            assert alice.receive_json()["online"] == online

            alice.send_json(
                {"type": "send_message", "conversation_id": conversation_id, "content": "hi bob"}
            )
            for connection in (alice, bob):
                received = connection.receive_json()
                assert received["type"] == "message_received"
                assert received["message"]["content"] == "hi bob"
                assert received["message"]["sender_id"] == alice_id
                delivered = connection.receive_json()
                assert delivered["type"] == "message_delivered"
                assert delivered["user_id"] == bob_id
            message_id = received["message"]["id"]
            assert messages_sent_total.value("text") == 1.0

            bob.send_json({"type": "typing_start", "conversation_id": conversation_id})
            typing = alice.receive_json()
            assert typing["type"] == "user_typing"
            assert typing["user_id"] == bob_id
            assert typing["expires_in"] == 6.0
            assert_quiet(bob)

            bob.send_json({"type": "mark_read", "message_id": message_id})
            for connection in (alice, bob):
                read = connection.receive_json()
                assert read["type"] == "message_read"
                assert (read["message_id"], read["user_id"]) == (message_id, bob_id)

            bob.send_json({"type": "add_reaction", "message_id": message_id, "emoji": "👍"})
            for connection in (alice, bob):
                reaction = connection.receive_json()
                assert reaction == {
                    "type": "reaction_changed",
                    "conversation_id": conversation_id,
                    "message_id": message_id,
                    "reactions": [{"emoji": "👍", "user_id": bob_id}],
                    "seq": 1,
                }

        stopped = alice.receive_json()
        assert stopped == {
            "type": "user_stopped_typing",
            "conversation_id": conversation_id,
            "user_id": bob_id,
        }
        assert alice.receive_json()["online"] == [{"user_id": alice_id, "display_name": "Alice"}]

    history = client.get(
        f"/api/conversations/{conversation_id}/messages", headers=headers(alice_token)
    ).json()
    assert [r["user_id"] for r in history[0]["delivered_to"]] == [bob_id]
    assert [r["user_id"] for r in history[0]["read_by"]] == [bob_id]


def test_http_messages_reach_members_outside_the_room(client: TestClient, pair):
    alice_id, alice_token = pair["alice"]
    bob_id, bob_token = pair["bob"]
    conversation_id = pair["conversation_id"]

    with client.websocket_connect(f"/ws/chat?token={bob_token}") as bob:
        response = client.post(
            "/api/messages",
            json={"conversation_id": conversation_id, "content": "are you there?"},
            headers=headers(alice_token),
        )
        assert response.status_code == 201

        received = bob.receive_json()
        assert received["type"] == "message_received"
        assert received["conversation_id"] == conversation_id
        assert response.json()["delivered_to"][0]["user_id"] == bob_id

        message_id = received["message"]["id"]
        client.patch(
            f"/api/messages/{message_id}", json={"content": "still there?"}, headers=headers(alice_token)
        )
        assert_quiet(bob)

        join(bob, conversation_id)
        client.delete(f"/api/messages/{message_id}", headers=headers(alice_token))
        assert bob.receive_json() == {
            "type": "message_deleted",
            "conversation_id": conversation_id,
            "message_id": message_id,
        }


def test_typing_stops_when_the_typist_sends(client: TestClient, pair):
    _, alice_token = pair["alice"]
    bob_id, bob_token = pair["bob"]
    conversation_id = pair["conversation_id"]

    with client.websocket_connect(f"/ws/chat?token={alice_token}") as alice:
        join(alice, conversation_id)
        with client.websocket_connect(f"/ws/chat?token={bob_token}") as bob:
            join(bob, conversation_id)
            alice.receive_json()

            bob.send_json({"type": "typing_start", "conversation_id": conversation_id})
            assert alice.receive_json()["type"] == "user_typing"
            bob.send_json({"type": "send_message", "conversation_id": conversation_id, "content": "done"})

            assert [alice.receive_json()["type"] for _ in range(3)] == [
                "user_stopped_typing",
                "message_received",
                "message_delivered",
            ]


def test_error_frames_keep_the_socket_open(client: TestClient, pair):
    _, alice_token = pair["alice"]
    _, eve_token = sign_up(client, "eve")
    conversation_id = pair["conversation_id"]

    with client.websocket_connect(f"/ws/chat?token={eve_token}") as eve:
        eve.send_text("not json")
        assert eve.receive_json() == {"type": "error", "detail": "Invalid message format"}

        eve.send_json(["join_room"])
        assert eve.receive_json()["detail"] == "Message payload must be a JSON object"

        eve.send_json({"type": "shout"})
        assert eve.receive_json()["detail"] == "Unsupported event type"

        eve.send_json({"type": "join_room", "conversation_id": conversation_id})
        assert eve.receive_json()["detail"] == "Not a conversation participant"

        eve.send_json({"type": "join_room"})
        assert eve.receive_json()["detail"] == "Field 'conversation_id' is required"

        eve.send_json({"type": "typing_start", "conversation_id": conversation_id})
        assert eve.receive_json()["detail"] == "Join the conversation first"

        eve.send_json({"type": "send_message", "conversation_id": conversation_id, "content": "hi"})
        assert eve.receive_json()["detail"] == "Not a conversation participant"

        assert_quiet(eve)

    with client.websocket_connect(f"/ws/chat?token={alice_token}") as alice:
        join(alice, conversation_id)
        alice.send_json({"type": "send_message", "conversation_id": conversation_id, "content": "  "})
        assert alice.receive_json() == {"type": "error", "detail": "Message is empty"}
        alice.send_json({"type": "mark_read", "message_id": 9999})
        assert alice.receive_json() == {"type": "error", "detail": "Message not found"}


@pytest.mark.parametrize("query", ["", "?token=not-a-jwt"])
def test_bad_credentials_close_with_policy_violation(client: TestClient, query):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/chat{query}"):
            pass

    assert exc.value.code == 1008


def test_bearer_header_is_accepted(client: TestClient, pair):
    _, alice_token = pair["alice"]

    with client.websocket_connect("/ws/chat", headers=headers(alice_token)) as alice:
        assert_quiet(alice)
