"""Test suite for the API endpoints."""

import asyncio
import json

import pytest
from httpx import ASGITransport, AsyncClient

from chatbot_api.api.app import app, get_orchestrator, get_repository
from chatbot_api.repositories.unconfigured import UnconfiguredRepository
from chatbot_api.services.router import Provider
from tests.helpers.fakes import ScriptedBackend


def parse_events(body: str):
    """Decode the ``data: <json>`` lines of a streamed response."""
    events = []
    for line in body.splitlines():
        assert line.startswith("data: ")
        events.append(json.loads(line[len("data: "):]))
    return events


async def create(client, title="T", **extra):
    response = await client.post("/conversations", json={"title": title, **extra})
    assert response.status_code == 200
    return response.json()["data"]["conversation"]


@pytest.mark.asyncio
async def test_create_conversation(client):
    """Test creating a new conversation."""
    response = await client.post("/conversations", json={"title": "T", "model": "m"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    conversation = body["data"]["conversation"]
    assert conversation["title"] == "T"
    assert conversation["model"] == "m"
    assert conversation["messages"] == []
    assert conversation["userId"] == "user-1"
    assert "createdAt" in conversation
    assert "updatedAt" in conversation


@pytest.mark.asyncio
async def test_create_conversation_defaults_and_system_prompt(client):
    conversation = await create(client, systemPrompt="Be terse.")
    assert conversation["model"] == "gpt-4o-mini"
    assert len(conversation["messages"]) == 1
    assert conversation["messages"][0]["role"] == "system"
    assert conversation["messages"][0]["content"] == "Be terse."
    assert "timestamp" in conversation["messages"][0]


@pytest.mark.asyncio
async def test_append_messages_in_order(client):
    """Create, append two messages, and read them back in append order."""
    conversation = await create(client, model="m")
    conversation_id = conversation["id"]

    response = await client.patch(
        f"/conversations/{conversation_id}", json={"role": "user", "content": "hi"}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["addedMessage"]["content"] == "hi"
    assert data["addedMessage"]["role"] == "user"

    response = await client.get(f"/conversations/{conversation_id}")
    messages = response.json()["data"]["conversation"]["messages"]
    assert [m["content"] for m in messages] == ["hi"]

    await client.patch(f"/conversations/{conversation_id}", json={"role": "assistant", "content": "hello"})
    response = await client.get(f"/conversations/{conversation_id}")
    messages = response.json()["data"]["conversation"]["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hi"), ("assistant", "hello")]


@pytest.mark.asyncio
async def test_replace_conversation(client):
    conversation = await create(client)
    conversation_id = conversation["id"]

    response = await client.put(
        f"/conversations/{conversation_id}",
        json={
            "title": "Renamed",
            "messages": [
                {"role": "user", "content": "q", "timestamp": "2024-01-01T00:00:00Z"},
                {"role": "assistant", "content": "a"},
            ],
        },
    )
    assert response.status_code == 200
    updated = response.json()["data"]["conversation"]
    assert updated["title"] == "Renamed"
    assert [m["content"] for m in updated["messages"]] == ["q", "a"]
    assert updated["messages"][0]["timestamp"].startswith("2024-01-01T00:00:00")
    assert updated["messages"][1]["timestamp"]


@pytest.mark.asyncio
async def test_conversation_list_pagination(client):
    """Two conversations, one per page, newest first."""
    first = await create(client, "first")
    second = await create(client, "second")
    # Make recency unambiguous
    await asyncio.sleep(0.01)
    await client.patch(f"/conversations/{second['id']}", json={"role": "user", "content": "bump"})

    response = await client.get("/conversations?limit=1&offset=0")
    assert response.status_code == 200
    data = response.json()["data"]
    assert [c["id"] for c in data["conversations"]] == [second["id"]]
    assert data["total"] == 2
    assert data["hasMore"] is True

    response = await client.get("/conversations?limit=1&offset=1")
    data = response.json()["data"]
    assert [c["id"] for c in data["conversations"]] == [first["id"]]
    assert data["hasMore"] is False


@pytest.mark.asyncio
async def test_delete_conversation(client):
    conversation = await create(client)
    conversation_id = conversation["id"]

    response = await client.delete(f"/conversations/{conversation_id}")
    assert response.status_code == 200
    assert response.json()["data"]["deleted"] is True

    response = await client.get(f"/conversations/{conversation_id}")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Conversation not found"}

    response = await client.delete(f"/conversations/{conversation_id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_many_conversations(client):
    ids = [(await create(client, f"c{i}"))["id"] for i in range(3)]

    response = await client.delete(f"/conversations?ids={ids[0]},{ids[1]},missing")
    assert response.status_code == 200
    assert response.json()["data"]["deletedCount"] == 2

    response = await client.get("/conversations")
    assert [c["id"] for c in response.json()["data"]["conversations"]] == [ids[2]]

    response = await client.delete("/conversations")
    assert response.status_code == 400
    assert response.json()["error"] == "No conversation IDs provided"


@pytest.mark.asyncio
async def test_get_nonexistent_conversation(client):
    """Test getting a nonexistent conversation."""
    response = await client.get("/conversations/does-not-exist")
    assert response.status_code == 404

    response = await client.patch("/conversations/does-not-exist", json={"role": "user", "content": "x"})
    assert response.status_code == 404

    response = await client.put("/conversations/does-not-exist", json={"title": "x"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_other_users_conversations_are_invisible(client):
    conversation = await create(client)

    response = await client.get(
        f"/conversations/{conversation['id']}", headers={"X-User-Id": "someone-else"}
    )
    assert response.status_code == 404

    response = await client.get("/conversations", headers={"X-User-Id": "someone-else"})
    assert response.json()["data"]["conversations"] == []


@pytest.mark.asyncio
async def test_conversation_endpoints_require_identity(client):
    for method, url, body in [
        ("GET", "/conversations", None),
        ("POST", "/conversations", {"title": "T"}),
        ("GET", "/conversations/abc", None),
        ("PUT", "/conversations/abc", {"title": "T"}),
        ("PATCH", "/conversations/abc", {"role": "user", "content": "x"}),
        ("DELETE", "/conversations/abc", None),
        ("DELETE", "/conversations?ids=abc", None),
    ]:
        response = await client.request(method, url, json=body, headers={"X-User-Id": ""})
        assert response.status_code == 401, (method, url)
        assert response.json() == {"success": False, "error": "Unauthorized"}


@pytest.mark.asyncio
async def test_error_handling(client):
    """Malformed bodies are rejected with 400 and field details."""
    response = await client.post("/conversations", json={"title": ""})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Invalid request format"
    assert body["details"]

    response = await client.post("/conversations", json={"title": "x" * 101})
    assert response.status_code == 400

    conversation = await create(client)
    response = await client.patch(
        f"/conversations/{conversation['id']}", json={"role": "system", "content": "x"}
    )
    assert response.status_code == 400

    response = await client.patch(f"/conversations/{conversation['id']}", json={})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unconfigured_store_degrades(orchestrator):
    """Without a store, conversation calls succeed with empty results."""
    app.dependency_overrides[get_repository] = UnconfiguredRepository
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test", headers={"X-User-Id": "u"}
        ) as client:
            response = await client.get("/conversations")
            assert response.json()["data"] == {"conversations": [], "total": 0, "hasMore": False}

            response = await client.post("/conversations", json={"title": "T"})
            assert response.status_code == 200
            conversation_id = response.json()["data"]["conversation"]["id"]

            response = await client.get(f"/conversations/{conversation_id}")
            assert response.status_code == 404

            response = await client.delete(f"/conversations/{conversation_id}")
            assert response.status_code == 200
            assert response.json()["data"]["deleted"] is False

            response = await client.delete("/conversations?ids=a,b")
            assert response.json()["data"]["deletedCount"] == 0

            response = await client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
            assert response.status_code == 200
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_unreachable_store_degrades(client, redis_server):
    """A configured but unreachable store answers like an empty one."""
    conversation = await create(client)
    redis_server.connected = False

    response = await client.get("/conversations")
    assert response.status_code == 200
    assert response.json()["data"] == {"conversations": [], "total": 0, "hasMore": False}

    response = await client.delete(f"/conversations/{conversation['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["deleted"] is False

    response = await client.delete(f"/conversations?ids={conversation['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["deletedCount"] == 0

    response = await client.get(f"/conversations/{conversation['id']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_stream_chat(client, backend_factory):
    response = await client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "conversationId": "conv-9"},
    )
    assert response.status_code == 200

    events = parse_events(response.text)
    assert [e["type"] for e in events] == ["text-chunk"] * 3 + ["conversation-finished"]
    assert "".join(e["content"] for e in events[:3]) == "Hello, world"
    assert all(e["conversationId"] == "conv-9" for e in events)
    assert events[-1]["finishReason"] == "stop"
    assert events[-1]["usage"] == {"promptTokens": 12, "completionTokens": 3, "totalTokens": 15}

    # Default model, default persona prepended, default generation parameters
    assert backend_factory.handles[0].model_id == "gpt-4o-mini"
    call = backend_factory.backend.calls[0]
    assert call["messages"][0].role.value == "system"
    assert call["messages"][1].content == "hi"
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 2000


@pytest.mark.asyncio
async def test_stream_chat_routes_by_model(client, backend_factory):
    for model, provider in [
        ("claude-3-haiku-20240307", Provider.ANTHROPIC),
        ("some-llama-model", Provider.GROQ),
    ]:
        response = await client.post(
            "/chat", json={"messages": [{"role": "user", "content": "hi"}], "model": model}
        )
        assert response.status_code == 200
        assert backend_factory.handles[-1].provider is provider
        assert backend_factory.handles[-1].model_id == model


@pytest.mark.asyncio
async def test_stream_chat_uses_saved_model_cookie(client, backend_factory):
    client.cookies.set("selectedModel", json.dumps({"id": "gemini-1.5-pro", "name": "Gemini"}, separators=(",", ":")))
    await client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert backend_factory.handles[-1].provider is Provider.GOOGLE

    client.cookies.set("selectedModel", "not json")
    await client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert backend_factory.handles[-1].model_id == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_stream_chat_failure_is_in_band(client, backend_factory):
    backend_factory.backend = ScriptedBackend(["one", "two", "three"], fail_after=2)

    response = await client.post(
        "/chat", json={"messages": [{"role": "user", "content": "hi"}], "conversationId": "c"}
    )
    assert response.status_code == 200

    events = parse_events(response.text)
    assert [e["type"] for e in events] == ["text-chunk", "text-chunk", "error"]
    assert events[-1] == {"type": "error", "conversationId": "c", "error": "Failed to generate response"}


@pytest.mark.asyncio
async def test_buffered_chat(client):
    response = await client.post(
        "/chat",
        json={
            "messages": [{"role": "user", "content": "hi"}],
            "stream": False,
            "model": "gpt-4o",
            "systemPrompt": "Be brief.",
            "temperature": 0.2,
            "maxTokens": 10,
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {
        "message": {"role": "assistant", "content": "Hello, world"},
        "conversationId": None,
        "model": "gpt-4o",
        "usage": {"promptTokens": 12, "completionTokens": 3, "totalTokens": 15},
    }


@pytest.mark.asyncio
async def test_buffered_chat_failure(client, backend_factory):
    backend_factory.backend = ScriptedBackend(["partial"], fail_after=1)
    response = await client.post(
        "/chat", json={"messages": [{"role": "user", "content": "hi"}], "stream": False}
    )
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Failed to generate response"}


@pytest.mark.asyncio
async def test_chat_validation(client, backend_factory):
    bad_bodies = [
        {"messages": []},
        {"messages": [{"role": "robot", "content": "hi"}]},
        {"messages": [{"role": "user", "content": "hi"}], "temperature": 2.5},
        {"messages": [{"role": "user", "content": "hi"}], "maxTokens": 0},
        {"messages": [{"role": "user", "content": "hi"}], "maxTokens": 4001},
    ]
    for body in bad_bodies:
        response = await client.post("/chat", json=body)
        assert response.status_code == 400, body
        assert response.json()["success"] is False
    assert backend_factory.handles == []


@pytest.mark.asyncio
async def test_chat_does_not_require_identity(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/chat", json={"messages": [{"role": "user", "content": "hi"}], "stream": False}
            )
            assert response.status_code == 200
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_chat_info(client):
    response = await client.get("/chat")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["availableModels"]["anthropic"] == "claude-3-haiku-20240307"
    assert "default" in data["systemPrompts"]
    assert data["endpoints"]["conversations"] == "/conversations"


@pytest.mark.asyncio
async def test_metrics(client):
    await client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "requests_total" in response.text
    assert "stream_events_total" in response.text
