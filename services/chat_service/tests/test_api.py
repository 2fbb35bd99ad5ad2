import asyncio
import time
import httpx
from conftest import auth_headers
from main import app
import conversations
import messages
import storage


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "chat-service"
    assert response.json()["auth"] == "verified"


def test_requires_bearer_token(client):
    response = client.get("/api/v1/chat/conversations")
    assert response.status_code == 401

    response = client.get("/api/v1/chat/conversations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_direct_conversation_flow(client, alice, bob):
    response = client.post(f"/api/v1/chat/with/{bob.id}", headers=auth_headers(alice.id))
    assert response.status_code == 200
    summary = response.json()
    assert summary["type"] == "DM"
    assert summary["other_user"]["id"] == bob.id
    conversation_id = summary["id"]

    again = client.post(f"/api/v1/chat/with/{alice.id}", headers=auth_headers(bob.id))
    assert again.json()["id"] == conversation_id

    response = client.post(
        f"/api/v1/chat/conversations/{conversation_id}/messages",
        json={"text": "hello", "client_message_id": "m-1"},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 201
    assert response.json()["id"] == "m-1"
    assert response.json()["receiver_id"] == bob.id

    listed = client.get("/api/v1/chat/conversations", headers=auth_headers(bob.id)).json()
    assert [(c["id"], c["unread"]) for c in listed] == [(conversation_id, 1)]
    assert listed[0]["last_message"]["content"] == "hello"

    response = client.post(f"/api/v1/chat/conversations/{conversation_id}/read", headers=auth_headers(bob.id))
    assert response.status_code == 200
    assert response.json()["type"] == "DM"

    listed = client.get("/api/v1/chat/conversations", headers=auth_headers(bob.id)).json()
    assert listed[0]["unread"] == 0


def test_errors_use_detail_body(client, alice, bob, carol):
    conversation_id = client.post(f"/api/v1/chat/with/{bob.id}", headers=auth_headers(alice.id)).json()["id"]

    response = client.get(
        f"/api/v1/chat/conversations/{conversation_id}/messages",
        headers=auth_headers(carol.id)
    )
    assert response.status_code == 403
    assert response.json() == {"detail": "You are not a member of this conversation"}

    response = client.post(
        f"/api/v1/chat/conversations/{conversation_id}/messages",
        json={"text": "  "},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 400

    response = client.patch("/api/v1/chat/messages/missing", json={"text": "x"}, headers=auth_headers(alice.id))
    assert response.status_code == 404


def test_group_management(client, alice, bob, carol, make_user):
    dave = make_user("Dave")
    response = client.post(
        "/api/v1/chat/groups",
        json={"title": "Study", "member_ids": [bob.id, carol.id]},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 201
    group_id = response.json()["conversation_id"]

    response = client.patch(
        f"/api/v1/chat/conversations/{group_id}",
        json={"title": "Grammar"},
        headers=auth_headers(alice.id)
    )
    assert response.json()["title"] == "Grammar"

    response = client.post(
        f"/api/v1/chat/conversations/{group_id}/members",
        json={"user_ids": [dave.id, bob.id]},
        headers=auth_headers(alice.id)
    )
    assert response.json()["added_user_ids"] == [dave.id]
    assert response.json()["members_count"] == 4

    response = client.patch(
        f"/api/v1/chat/conversations/{group_id}/nicknames/{dave.id}",
        json={"nickname": "D"},
        headers=auth_headers(bob.id)
    )
    assert response.json() == {"ok": True, "user_id": dave.id, "nickname": "D"}

    members = client.get(f"/api/v1/chat/conversations/{group_id}/members", headers=auth_headers(dave.id)).json()
    assert {m["user_id"]: m["role"] for m in members}[alice.id] == "OWNER"
    assert {m["user_id"]: m["nickname"] for m in members}[dave.id] == "D"

    response = client.post(f"/api/v1/chat/conversations/{group_id}/leave", headers=auth_headers(alice.id))
    assert response.status_code == 403

    response = client.patch(
        f"/api/v1/chat/conversations/{group_id}/members/{bob.id}/role",
        json={"role": "OWNER"},
        headers=auth_headers(alice.id)
    )
    assert response.json()["role"] == "OWNER"

    response = client.post(f"/api/v1/chat/conversations/{group_id}/leave", headers=auth_headers(alice.id))
    assert response.json() == {"ok": True, "deleted": False}


def test_message_mutations(client, alice, bob):
    conversation_id = client.post(f"/api/v1/chat/with/{bob.id}", headers=auth_headers(alice.id)).json()["id"]
    message = client.post(
        f"/api/v1/chat/conversations/{conversation_id}/messages",
        json={"text": "helo"},
        headers=auth_headers(alice.id)
    ).json()

    response = client.patch(f"/api/v1/chat/messages/{message['id']}", json={"text": "hello"}, headers=auth_headers(alice.id))
    assert response.json()["text"] == "hello"

    response = client.post(
        f"/api/v1/chat/messages/{message['id']}/reactions",
        json={"emoji": "🔥"},
        headers=auth_headers(bob.id)
    )
    assert [r["emoji"] for r in response.json()["reactions"]] == ["🔥"]

    response = client.post(f"/api/v1/chat/messages/{message['id']}/hide", headers=auth_headers(bob.id))
    assert response.json()["ok"] is True
    feed = client.get(f"/api/v1/chat/conversations/{conversation_id}/messages", headers=auth_headers(bob.id)).json()
    assert feed == []

    response = client.delete(f"/api/v1/chat/messages/{message['id']}", headers=auth_headers(alice.id))
    assert response.json()["deleted_at"] is not None
    assert response.json()["text"] == ""


def test_upload_attachment(client, alice, fake_storage):
    response = client.post(
        "/api/v1/chat/uploads",
        files={"file": ("notes.txt", b"abc", "text/plain")},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 200
    attachment = response.json()["attachment"]
    assert attachment["name"] == "notes.txt"
    assert attachment["mime"] == "text/plain"
    assert attachment["size"] == 3
    assert storage.object_name_from_url(attachment["url"]).startswith("chat/")
    assert list(fake_storage.objects.values()) == [b"abc"]


def test_upload_rejects_large_files(client, alice, monkeypatch, fake_storage):
    monkeypatch.setattr(storage, "CHAT_UPLOAD_MAX_BYTES", 2)
    response = client.post(
        "/api/v1/chat/uploads",
        files={"file": ("big.bin", b"abc", "application/octet-stream")},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 413
    assert fake_storage.objects == {}

    response = client.post(
        "/api/v1/chat/uploads",
        files={"file": ("ok.bin", b"ab", "application/octet-stream")},
        headers=auth_headers(alice.id)
    )
    assert response.status_code == 200
    assert list(fake_storage.objects.values()) == [b"ab"]


def test_user_search(client, alice, bob):
    response = client.get("/api/v1/chat/users/search", params={"q": "bo"}, headers=auth_headers(alice.id))
    assert response.status_code == 200
    assert [u["id"] for u in response.json()] == [bob.id]


def test_slow_broker_does_not_stall_other_requests(db, alice, bob, monkeypatch):
    conversation_id = conversations.find_or_create_direct(db, alice.id, bob.id).id

    def slow_publish(event_type, payload):
        time.sleep(1.0)

    monkeypatch.setattr(messages, "publish_event", slow_publish)

    async def run():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            send = asyncio.create_task(client.post(
                f"/api/v1/chat/conversations/{conversation_id}/messages",
                json={"text": "hello", "client_message_id": "m-slow"},
                headers=auth_headers(alice.id)
            ))
            await asyncio.sleep(0.2)
            started = time.monotonic()
            health = await client.get("/health")
            elapsed = time.monotonic() - started
            return await send, health, elapsed

    sent, health, elapsed = asyncio.run(run())
    assert health.status_code == 200
    assert elapsed < 0.5
    assert sent.status_code == 201
    assert sent.json()["id"] == "m-slow"
