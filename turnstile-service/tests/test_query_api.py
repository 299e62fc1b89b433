"""Tests for /api/query and /api/query/stream."""

import json
from unittest.mock import AsyncMock

import pytest

from turnstile_service.models.gateway import QueryResponse


pytestmark = pytest.mark.asyncio


def _sse_events(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


async def test_query_success(client, app_with_mocks):
    resp = await client.post("/api/query", json={
        "query": "hello", "user_id": "user-1", "session_id": "sess-1", "request_id": "req-1",
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["content"] == "answer"
    assert data["request_id"] == "req-1"
    assert data["metadata"]["capability"] == "orchestrator"

    sent = app_with_mocks.state.gateway.handle_request_with_retry.call_args.args[0]
    assert sent.session_id == "sess-1"
    assert sent.token is None


async def test_query_generates_ids(client, app_with_mocks):
    resp = await client.post("/api/query", json={"query": "hello", "user_id": "user-1"})
    assert resp.status_code == 200
    sent = app_with_mocks.state.gateway.handle_request_with_retry.call_args.args[0]
    assert sent.session_id.startswith("session-")
    assert sent.request_id.startswith("req-")
    assert resp.json()["request_id"] == sent.request_id


@pytest.mark.parametrize("body", [
    {"user_id": "user-1"},
    {"query": "", "user_id": "user-1"},
    {"query": "hello"},
])
async def test_query_requires_query_and_user(client, body):
    resp = await client.post("/api/query", json=body)
    assert resp.status_code == 400


async def test_query_strips_retryable_marker(client, app_with_mocks):
    app_with_mocks.state.gateway.handle_request_with_retry = AsyncMock(return_value=QueryResponse(
        content="", request_id="req-1", success=False,
        error="The system is currently busy. Please wait a moment and try again. [retryable]",
    ))
    resp = await client.post("/api/query", json={"query": "hello", "user_id": "user-1"})
    data = resp.json()
    assert data["success"] is False
    assert data["error"] == "The system is currently busy. Please wait a moment and try again."


async def test_query_without_gateway(client_no_services):
    resp = await client_no_services.post("/api/query", json={"query": "hello", "user_id": "user-1"})
    assert resp.status_code == 503


async def test_stream_emits_chunks_then_complete(client, app_with_mocks):
    async def fake(req, on_chunk=None):
        await on_chunk("A ")
        await on_chunk("gate.")
        return QueryResponse(content="A gate.", request_id=req.request_id, success=True)

    app_with_mocks.state.gateway.handle_request_with_retry = AsyncMock(side_effect=fake)
    resp = await client.post("/api/query/stream", json={"query": "hello", "user_id": "user-1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = _sse_events(resp.text)
    assert [name for name, _ in events] == ["chunk", "chunk", "complete"]
    assert events[0][1] == {"content": "A "}
    assert events[-1][1]["content"] == "A gate."


async def test_stream_emits_error_event(client, app_with_mocks):
    async def fake(req, on_chunk=None):
        await on_chunk("partial")
        return QueryResponse(content="", request_id=req.request_id, success=False,
                             error="Your request timed out. Please try again. [retryable]")

    app_with_mocks.state.gateway.handle_request_with_retry = AsyncMock(side_effect=fake)
    resp = await client.post("/api/query/stream", json={"query": "hello", "user_id": "user-1"})
    events = _sse_events(resp.text)
    assert [name for name, _ in events] == ["chunk", "error"]
    assert events[-1][1]["error"] == "Your request timed out. Please try again."


async def test_stream_requires_query(client):
    resp = await client.post("/api/query/stream", json={"user_id": "user-1"})
    assert resp.status_code == 400
