"""
Tests for agent_dashboard.app.relay_sync
=========================================

Push payload shape, failure accounting and the newest-wins retry loop.
"""
import json

import httpx
import pytest

from agent_dashboard.app.relay_sync import RelaySynchronizer

from factories import make_agent, make_snapshot


def _sync(handler, **kwargs) -> RelaySynchronizer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("backoff_base_seconds", 0.01)
    kwargs.setdefault("backoff_max_seconds", 0.02)
    return RelaySynchronizer("http://relay.test/", "secret", "host1", "laptop", "repo",
                             "http://laptop:19850", client, **kwargs)


def test_backoff_is_exponential_and_capped() -> None:
    sync = _sync(lambda request: httpx.Response(200), backoff_base_seconds=2, backoff_max_seconds=60)
    assert [sync.backoff_seconds(n) for n in range(0, 7)] == [0.0, 2, 4, 8, 16, 32, 60]


def test_payload_carries_instance_metadata() -> None:
    sync = _sync(lambda request: httpx.Response(200))
    payload = sync.build_payload(make_snapshot("host1", [make_agent("s1")]))
    assert payload["instanceId"] == "host1"
    assert payload["hostname"] == "laptop"
    assert payload["apiUrl"] == "http://laptop:19850"
    assert payload["snapshot"]["agents"][0]["id"] == "s1"


@pytest.mark.asyncio
async def test_push_sends_bearer_token() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    sync = _sync(handler)
    assert await sync.push_once(make_snapshot("host1", []))

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "http://relay.test/api/state"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content)["instanceId"] == "host1"
    assert sync.status.last_push_at is not None
    assert sync.status.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failed_push_is_recorded() -> None:
    sync = _sync(lambda request: httpx.Response(503))
    assert not await sync.push_once(make_snapshot("host1", []))
    assert not await sync.push_once(make_snapshot("host1", []))
    assert sync.status.consecutive_failures == 2
    assert "503" in sync.status.last_error
    assert sync.status.last_push_at is None


@pytest.mark.asyncio
async def test_drain_retries_until_relay_recovers() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("relay down", request=request)
        return httpx.Response(200)

    sync = _sync(handler)
    sync.submit(make_snapshot("host1", []))
    await sync._task

    assert len(attempts) == 3
    assert sync.status.consecutive_failures == 0
    assert sync.status.last_error is None


@pytest.mark.asyncio
async def test_newest_pending_snapshot_wins() -> None:
    pushed = []

    def handler(request: httpx.Request) -> httpx.Response:
        pushed.append(json.loads(request.content)["snapshot"]["agents"])
        if len(pushed) == 1:
            return httpx.Response(500)
        return httpx.Response(200)

    sync = _sync(handler)
    sync.submit(make_snapshot("host1", [make_agent("old")]))
    sync.submit(make_snapshot("host1", [make_agent("new")]))
    await sync._task

    assert [[a["id"] for a in agents] for agents in pushed] == [["new"], ["new"]]


@pytest.mark.asyncio
async def test_close_cancels_pending_retry() -> None:
    sync = _sync(lambda request: httpx.Response(500), backoff_base_seconds=30, backoff_max_seconds=30)
    sync.submit(make_snapshot("host1", []))
    await sync.close()
    assert sync._task is None
