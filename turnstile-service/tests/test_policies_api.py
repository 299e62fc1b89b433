"""Tests for /api/policies/* and /api/maintenance/* endpoints."""

from unittest.mock import AsyncMock

import pytest

from turnstile_service.db.kv_store import now_ms
from turnstile_service.db.schema import POLICIES_TABLE, RECORD_TABLES, SESSIONS_TABLE
from turnstile_service.errors import PolicyStoreError


pytestmark = pytest.mark.asyncio


async def test_get_policy(client):
    resp = await client.get("/api/policies/user-1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["user_id"] == "user-1"
    assert data["allowed_capabilities"] == ["orchestrator", "query"]


async def test_save_policy(client, app_with_mocks):
    resp = await client.put("/api/policies/", json={
        "user_id": "user-2",
        "allowed_capabilities": ["query"],
        "isolation_mode": "shared",
        "request_budget": 5,
        "token_budget": 512,
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["isolation_mode"] == "shared"
    assert data["updated_at"] is not None
    saved = app_with_mocks.state.policy_service.save_policy.call_args.args[0]
    assert saved.request_budget == 5


async def test_save_policy_validation(client):
    resp = await client.put("/api/policies/", json={
        "user_id": "user-2", "allowed_capabilities": [], "request_budget": 0, "token_budget": 1,
    })
    assert resp.status_code == 422


async def test_save_policy_store_failure(client, app_with_mocks):
    app_with_mocks.state.policy_service.save_policy = AsyncMock(
        side_effect=PolicyStoreError("Failed to save policy for user user-2"))
    resp = await client.put("/api/policies/", json={
        "user_id": "user-2", "allowed_capabilities": [], "request_budget": 1, "token_budget": 1,
    })
    assert resp.status_code == 500


async def test_reset_rate_limit(client):
    resp = await client.post("/api/policies/user-1/rate-limit/reset")
    assert resp.status_code == 200
    assert resp.json()["count"] == 0


async def test_policies_unavailable(client_no_services):
    resp = await client_no_services.get("/api/policies/user-1")
    assert resp.status_code == 503


async def test_purge_expired(client, app_with_mocks):
    store = app_with_mocks.state.store
    await store.put(SESSIONS_TABLE, "u1", "s#1", {}, expires_at=now_ms() - 1)
    await store.put(POLICIES_TABLE, "u1", "policy", {}, expires_at=now_ms() + 60_000)

    resp = await client.post("/api/maintenance/purge")
    assert resp.status_code == 200
    data = resp.json()
    assert set(data["purged"]) == set(RECORD_TABLES)
    assert data["purged"][SESSIONS_TABLE] == 1
    assert data["total"] == 1
    assert data["errors"] == []


async def test_purge_without_store(client_no_services):
    resp = await client_no_services.post("/api/maintenance/purge")
    assert resp.status_code == 503
