"""
Tests for agent_dashboard.app.main
===================================

The local HTTP surface served over ASGI: state scopes, health, peers and the
conversation endpoint with its error codes.
"""
from datetime import datetime, timezone

import httpx
import pytest

from agent_dashboard.app.engine import DashboardEngine
from agent_dashboard.app.errors import ConversationError
from agent_dashboard.app.main import VERSION, create_app
from agent_dashboard.app.models import ConversationTurn, PeerEntry, TokenUsage, ToolCall
from agent_dashboard.app.peers import MemoryRegistryStore, PeerRegistry

from factories import FakeProvider, make_agent, make_record, make_settings, make_snapshot


def _client(engine: DashboardEngine) -> httpx.AsyncClient:
    app = create_app(engine, run_polling=False)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://dashboard.test")


def _engine(*providers, **kwargs) -> DashboardEngine:
    kwargs.setdefault("http_client", httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(503))))
    return DashboardEngine(make_settings(), providers=list(providers), **kwargs)


@pytest.mark.asyncio
async def test_state_uses_camel_case() -> None:
    engine = _engine(FakeProvider("claude-sessions", records=[
        make_record("claude-sessions", "f1", session_id="s1", tokens=TokenUsage(input=12, cache_read=3)),
    ]))
    await engine.run_cycle()

    async with _client(engine) as client:
        response = await client.get("/api/state")

    assert response.status_code == 200
    body = response.json()
    assert body["instanceId"] == "host-test"
    agent = body["agents"][0]
    assert agent["id"] == "s1"
    assert agent["tokens"] == {"input": 12, "output": 0, "cacheCreate": 0, "cacheRead": 3}
    assert "lastActivityAt" in agent
    assert body["stats"]["byStatus"]["active"] == 1
    assert body["providerHealth"][0]["provider"] == "claude-sessions"


@pytest.mark.asyncio
async def test_state_scope_is_validated() -> None:
    async with _client(_engine()) as client:
        assert (await client.get("/api/state", params={"scope": "local"})).status_code == 200
        assert (await client.get("/api/state", params={"scope": "everything"})).status_code == 422


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client(_engine()) as client:
        body = (await client.get("/api/health")).json()
    assert body["status"] == "ok"
    assert body["version"] == VERSION
    assert body["instanceId"] == "host-test"
    assert body["relay"]["configured"] is False
    assert body["uptime"] >= 0


@pytest.mark.asyncio
async def test_peers_empty_without_registry() -> None:
    async with _client(_engine()) as client:
        assert (await client.get("/api/peers")).json() == []


@pytest.mark.asyncio
async def test_unknown_agent_conversation() -> None:
    engine = _engine()
    await engine.run_cycle()
    async with _client(engine) as client:
        response = await client.get("/api/agents/ghost/conversation")
    assert response.status_code == 404
    assert response.json() == {"code": "agent_not_found", "detail": "Unknown agent 'ghost'"}


@pytest.mark.asyncio
async def test_conversation_from_provider() -> None:
    turns = [
        ConversationTurn(role="user", content="add a test"),
        ConversationTurn(role="assistant", content="", tool_calls=[
            ToolCall(name="Bash", detail="pytest -q", result="1 passed"),
        ]),
    ]
    engine = _engine(FakeProvider("claude-sessions", turns=turns, records=[
        make_record("claude-sessions", "/p/s1.jsonl", session_id="s1", has_conversation=True),
    ]))
    await engine.run_cycle()

    async with _client(engine) as client:
        response = await client.get("/api/agents/s1/conversation")

    assert response.status_code == 200
    body = response.json()
    assert body["agentId"] == "s1"
    assert body["turns"][1]["toolCalls"][0] == {"name": "Bash", "detail": "pytest -q", "result": "1 passed",
                                                "isError": False}


@pytest.mark.parametrize("code,status", [
    (ConversationError.STORE_UNREACHABLE, 502),
    (ConversationError.MALFORMED_TRANSCRIPT, 502),
    (ConversationError.CONVERSATION_UNAVAILABLE, 404),
])
@pytest.mark.asyncio
async def test_conversation_errors_map_to_status(code, status) -> None:
    engine = _engine(FakeProvider("claude-sessions", conversation_error=ConversationError(code, "nope"),
                                  records=[make_record("claude-sessions", "f", session_id="s1")]))
    await engine.run_cycle()
    async with _client(engine) as client:
        response = await client.get("/api/agents/s1/conversation")
    assert response.status_code == status
    assert response.json()["code"] == code


@pytest.mark.asyncio
async def test_peer_agent_conversation_is_proxied() -> None:
    peer_snapshot = make_snapshot("peer", [make_agent("theirs", origins=["peer"], has_conversation=True)])
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url)
        if request.url.path == "/api/state":
            return httpx.Response(200, json=peer_snapshot.model_dump(mode="json", by_alias=True))
        return httpx.Response(200, json={"agentId": "theirs", "turns": [{"role": "user", "content": "hi"}]})

    store = MemoryRegistryStore()
    store.write(PeerEntry(instance_id="peer", api_port=19851, heartbeat_at=datetime.now(timezone.utc)))
    engine = _engine(FakeProvider("p"), registry=PeerRegistry(store, "host-test", 19850),
                     http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await engine.run_cycle()

    async with _client(engine) as client:
        peers = (await client.get("/api/peers")).json()
        response = await client.get("/api/agents/theirs/conversation")

    assert peers[0]["instanceId"] == "peer"
    assert response.status_code == 200
    assert response.json()["turns"][0]["content"] == "hi"
    assert str(requested[-1]) == "http://127.0.0.1:19851/api/agents/theirs/conversation"


@pytest.mark.asyncio
async def test_relay_state_requires_relay() -> None:
    async with _client(_engine()) as client:
        response = await client.get("/api/relay/state")
    assert response.status_code == 404
    assert response.json()["code"] == "relay_not_configured"


@pytest.mark.parametrize("relay_status,expected", [(200, 200), (503, 502)])
@pytest.mark.asyncio
async def test_relay_state_is_fetched_from_relay(relay_status, expected) -> None:
    aggregate = make_snapshot("relay", [make_agent("a1", origins=["host1"]), make_agent("b1", origins=["host2"])])
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET" and relay_status == 200:
            return httpx.Response(200, json=aggregate.model_dump(mode="json", by_alias=True))
        return httpx.Response(relay_status)

    settings = make_settings(relay={"url": "http://relay.test", "token": "t"})
    engine = DashboardEngine(settings, providers=[],
                             http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    async with _client(engine) as client:
        response = await client.get("/api/relay/state")

    assert response.status_code == expected
    assert seen[0].headers["Authorization"] == "Bearer t"
    if expected == 200:
        assert [a["id"] for a in response.json()["agents"]] == ["a1", "b1"]
    else:
        assert response.json()["code"] == "relay_unreachable"
