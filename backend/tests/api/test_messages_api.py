import pytest

from vroom_messaging.settings import settings

U1 = {"X-User-Id": "u1"}
U2 = {"X-User-Id": "u2"}
U3 = {"X-User-Id": "u3"}


@pytest.mark.asyncio
async def test_messaging_end_to_end(api_client):
    first = await api_client.post("/api/messages", json={"receiverId": "u2", "content": "Hi!"}, headers=U1)
    assert first.status_code == 201
    body = first.json()
    conversation = body["conversation"]
    message = body["message"]
    assert {conversation["user1Id"], conversation["user2Id"]} == {"u1", "u2"}
    assert message["content"] == "Hi!"
    assert message["isRead"] is False
    assert message["messageType"] == "direct_message"
    assert message["conversationId"] == conversation["id"]

    second = await api_client.post(
        "/api/messages",
        json={"receiverId": "u2", "content": "Still available?", "conversationId": conversation["id"]},
        headers=U1,
    )
    assert second.status_code == 201
    assert second.json()["conversation"]["id"] == conversation["id"]

    listing = await api_client.get("/api/messages/conversations", headers=U1)
    assert listing.status_code == 200
    assert len(listing.json()) == 1

    unread = await api_client.get("/api/messages/unread-count", headers=U2)
    assert unread.json() == {"count": 2}

    history = await api_client.get(f"/api/messages/conversation/{conversation['id']}", headers=U2)
    assert history.status_code == 200
    messages = history.json()["messages"]
    assert [m["content"] for m in messages] == ["Hi!", "Still available?"]
    assert all(m["isRead"] for m in messages if m["receiverId"] == "u2")

    unread_after = await api_client.get("/api/messages/unread-count", headers=U2)
    assert unread_after.json() == {"count": 0}


@pytest.mark.asyncio
async def test_start_conversation_reuses_existing(api_client):
    started = await api_client.post("/api/messages/start", json={"receiverId": "u1", "content": "Hello"}, headers=U2)
    assert started.status_code == 201
    again = await api_client.post("/api/messages/start", json={"receiverId": "u1", "content": "Again"}, headers=U2)
    assert again.status_code == 201
    assert again.json()["conversation"]["id"] == started.json()["conversation"]["id"]

    self_start = await api_client.post("/api/messages/start", json={"receiverId": "u2", "content": "me"}, headers=U2)
    assert self_start.status_code == 400
    assert self_start.json()["detail"] == "self_message"


@pytest.mark.asyncio
async def test_history_is_restricted_to_participants(api_client):
    sent = await api_client.post("/api/messages", json={"receiverId": "u2", "content": "private"}, headers=U1)
    conversation_id = sent.json()["conversation"]["id"]

    outsider = await api_client.get(f"/api/messages/conversation/{conversation_id}", headers=U3)
    assert outsider.status_code == 403
    assert outsider.json()["detail"] == "access_denied"

    missing = await api_client.get("/api/messages/conversation/does-not-exist", headers=U1)
    assert missing.status_code == 404
    payload = missing.json()
    assert payload["message"] == "Conversation not found"
    assert payload["request_id"]


@pytest.mark.asyncio
async def test_receiver_mismatch_is_forbidden(api_client):
    sent = await api_client.post("/api/messages", json={"receiverId": "u2", "content": "hey"}, headers=U1)
    conversation_id = sent.json()["conversation"]["id"]

    response = await api_client.post(
        "/api/messages",
        json={"receiverId": "u3", "content": "hijack", "conversationId": conversation_id},
        headers=U1,
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "receiver_mismatch"


@pytest.mark.asyncio
async def test_conversation_with_user(api_client):
    empty = await api_client.get("/api/messages/user/u2", headers=U1)
    assert empty.status_code == 200
    assert empty.json()["conversation"] is None
    assert empty.json()["otherUser"]["handle"] == "bob"

    await api_client.post("/api/messages", json={"receiverId": "u2", "content": "ping"}, headers=U1)
    found = await api_client.get("/api/messages/user/u1", headers=U2)
    assert found.status_code == 200
    assert [m["content"] for m in found.json()["messages"]] == ["ping"]
    assert found.json()["messages"][0]["isRead"] is True

    unknown = await api_client.get("/api/messages/user/ghost", headers=U1)
    assert unknown.status_code == 404
    self_lookup = await api_client.get("/api/messages/user/u1", headers=U1)
    assert self_lookup.status_code == 400


@pytest.mark.asyncio
async def test_product_conversation(api_client):
    await api_client.post(
        "/api/messages",
        json={"receiverId": "u2", "content": "Is the bike still for sale?", "productId": "prod-42"},
        headers=U1,
    )

    seller_view = await api_client.get("/api/messages/product/prod-42", headers=U2)
    assert seller_view.status_code == 200
    assert seller_view.json()["messages"][0]["content"] == "Is the bike still for sale?"

    outsider = await api_client.get("/api/messages/product/prod-42", headers=U3)
    assert outsider.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"receiverId": "u2", "content": "hi", "messageType": "shout"},
        {"receiverId": "u2", "content": "hi", "metadata": ["not", "a", "map"]},
        {"receiverId": "u2", "content": "hi", "clientMsgId": "x" * 65},
    ],
)
async def test_schema_failures_are_bad_requests(api_client, payload):
    response = await api_client.post("/api/messages", json=payload, headers=U1)
    assert response.status_code == 400
    assert response.json()["detail"] == "validation_error"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content,status",
    [("a", 201), ("x" * 1000, 201), ("x" * 1001, 400), ("   ", 400)],
)
async def test_content_length_boundaries(api_client, content, status):
    response = await api_client.post("/api/messages", json={"receiverId": "u2", "content": content}, headers=U1)
    assert response.status_code == status


@pytest.mark.asyncio
async def test_missing_receiver_is_rejected(api_client):
    response = await api_client.post("/api/messages", json={"content": "to whom?"}, headers=U1)
    assert response.status_code == 400
    assert response.json()["detail"] == "missing_fields"


@pytest.mark.asyncio
async def test_send_budget_returns_429(api_client, monkeypatch):
    monkeypatch.setattr(settings, "message_send_limit", 1)
    ok = await api_client.post("/api/messages", json={"receiverId": "u2", "content": "one"}, headers=U1)
    assert ok.status_code == 201
    limited = await api_client.post("/api/messages", json={"receiverId": "u2", "content": "two"}, headers=U1)
    assert limited.status_code == 429
    assert limited.json()["detail"] == "rate_limited"


@pytest.mark.asyncio
async def test_identity_is_required(api_client):
    response = await api_client.get("/api/messages/conversations")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_header_identity_is_ignored_outside_dev(api_client, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    response = await api_client.get("/api/messages/unread-count", headers=U1)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_reused_client_token_is_rejected(api_client):
    payload = {"receiverId": "u2", "content": "hi", "clientMsgId": "tok-1"}
    first = await api_client.post("/api/messages", json=payload, headers=U1)
    assert first.status_code == 201

    retry = await api_client.post("/api/messages", json=payload, headers=U1)
    assert retry.status_code == 201
    assert retry.json()["message"]["id"] == first.json()["message"]["id"]

    reused = await api_client.post("/api/messages", json={**payload, "receiverId": "u3"}, headers=U1)
    assert reused.status_code == 400
    assert reused.json()["detail"] == "client_msg_id_reused"

    with_carol = await api_client.get("/api/messages/user/u3", headers=U1)
    assert with_carol.status_code == 200
    assert with_carol.json()["conversation"] is None
