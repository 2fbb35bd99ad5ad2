import pytest
from fastapi import WebSocketDisconnect
from conftest import token_for
import conversations

WS_URL = "/api/v1/chat/ws"


def connect(client, user_id):
    return client.websocket_connect(f"{WS_URL}?token={token_for(user_id)}")


def test_rejects_missing_and_invalid_tokens(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(WS_URL):
            pass
    assert exc_info.value.code == 1008

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"{WS_URL}?token=garbage"):
            pass


def test_accepts_bearer_header(client, alice):
    headers = {"Authorization": f"Bearer {token_for(alice.id)}"}
    with client.websocket_connect(WS_URL, headers=headers) as ws:
        assert ws.receive_json()["event"] == "presence:snapshot"


def test_connect_sends_snapshot_then_presence(client, alice, bob):
    with connect(client, alice.id) as alice_ws:
        snapshot = alice_ws.receive_json()
        assert snapshot == {"event": "presence:snapshot", "data": {"user_ids": [alice.id]}}
        assert alice_ws.receive_json()["data"] == {"user_id": alice.id, "online": True}

        with connect(client, bob.id) as bob_ws:
            assert sorted(bob_ws.receive_json()["data"]["user_ids"]) == sorted([alice.id, bob.id])
            assert bob_ws.receive_json()["data"] == {"user_id": bob.id, "online": True}
            assert alice_ws.receive_json() == {
                "event": "presence:update",
                "data": {"user_id": bob.id, "online": True},
            }


def test_send_direct_message_over_socket(client, alice, bob):
    with connect(client, alice.id) as alice_ws, connect(client, bob.id) as bob_ws:
        alice_ws.receive_json()  # snapshot
        alice_ws.receive_json()  # alice online
        alice_ws.receive_json()  # bob online
        bob_ws.receive_json()
        bob_ws.receive_json()

        alice_ws.send_json({
            "event": "chat:send",
            "ref": 1,
            "data": {"otherUserId": bob.id, "text": "hello", "clientMessageId": "m-1"},
        })

        ack = alice_ws.receive_json()
        assert ack["event"] == "ack"
        assert ack["ref"] == 1
        assert ack["data"]["message"]["id"] == "m-1"

        new = bob_ws.receive_json()
        assert new["event"] == "chat:new"
        assert new["data"]["conversation_id"] == ack["data"]["conversation_id"]
        assert new["data"]["message"]["text"] == "hello"

        # a retried send is acknowledged without a second delivery
        alice_ws.send_json({
            "event": "chat:send",
            "ref": 2,
            "data": {"otherUserId": bob.id, "text": "hello", "clientMessageId": "m-1"},
        })
        retry = alice_ws.receive_json()
        assert retry["ref"] == 2
        assert retry["data"]["message"]["id"] == "m-1"


def test_join_typing_and_read(client, db, alice, bob):
    conversation_id = conversations.find_or_create_direct(db, alice.id, bob.id).id

    with connect(client, alice.id) as alice_ws, connect(client, bob.id) as bob_ws:
        for _ in range(3):
            alice_ws.receive_json()
        for _ in range(2):
            bob_ws.receive_json()

        alice_ws.send_json({"event": "chat:join", "ref": "a", "data": {"conversationId": conversation_id}})
        assert alice_ws.receive_json()["event"] == "ack"
        bob_ws.send_json({"event": "chat:join", "ref": "b", "data": {"conversationId": conversation_id}})
        assert bob_ws.receive_json()["event"] == "ack"

        alice_ws.send_json({
            "event": "chat:typing",
            "ref": "t",
            "data": {"conversationId": conversation_id, "isTyping": True},
        })
        typing = bob_ws.receive_json()
        assert typing == {
            "event": "chat:typing",
            "data": {"conversation_id": conversation_id, "user_id": alice.id, "is_typing": True},
        }
        assert alice_ws.receive_json()["event"] == "chat:typing"
        assert alice_ws.receive_json()["ref"] == "t"

        bob_ws.send_json({"event": "chat:read", "ref": "r", "data": {"conversationId": conversation_id}})
        receipt = bob_ws.receive_json()
        assert receipt["event"] == "chat:read"
        assert receipt["data"]["user_id"] == bob.id
        assert receipt["data"]["conversation_type"] == "DM"
        ack = bob_ws.receive_json()
        assert ack["ref"] == "r"
        assert ack["data"]["type"] == "DM"
        assert alice_ws.receive_json()["event"] == "chat:read"


def test_join_rejected_for_non_member(client, db, alice, bob, carol):
    conversation_id = conversations.find_or_create_direct(db, alice.id, bob.id).id

    with connect(client, carol.id) as ws:
        ws.receive_json()
        ws.receive_json()
        ws.send_json({"event": "chat:join", "ref": 7, "data": {"conversationId": conversation_id}})
        reply = ws.receive_json()
        assert reply["event"] == "error"
        assert reply["ref"] == 7
        assert reply["data"]["status"] == 403


def test_bad_frames_keep_connection_open(client, alice):
    with connect(client, alice.id) as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_text("not json")
        reply = ws.receive_json()
        assert reply["event"] == "error"
        assert reply["data"]["status"] == 400

        ws.send_json({"event": "chat:dance", "ref": 3, "data": {}})
        reply = ws.receive_json()
        assert reply["ref"] == 3
        assert reply["data"]["detail"] == "Unknown event: chat:dance"

        ws.send_json({"event": "chat:join", "ref": 4, "data": {}})
        assert ws.receive_json()["data"]["status"] == 400

        ws.send_json({"event": "presence:sync", "ref": 5})
        assert ws.receive_json()["event"] == "presence:snapshot"
        assert ws.receive_json() == {"event": "ack", "ref": 5, "data": {"ok": True}}


def test_binary_frames_are_handled(client, alice):
    with connect(client, alice.id) as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_bytes(b'{"event": "presence:sync", "ref": 1}')
        assert ws.receive_json()["event"] == "presence:snapshot"
        assert ws.receive_json() == {"event": "ack", "ref": 1, "data": {"ok": True}}

        ws.send_bytes(b"\xff\xfe")
        reply = ws.receive_json()
        assert reply["event"] == "error"
        assert reply["data"]["status"] == 400

        ws.send_text('{"event": "presence:sync", "ref": 2}')
        ws.receive_json()
        assert ws.receive_json()["ref"] == 2
