"""Tests for POST /api/v1/webhooks/completion."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from app.core.dependencies import get_completion_handler
from app.main import app
from app.services.completion_handler import CompletionOutcome, Outcome

URL = "/api/v1/webhooks/completion"


@pytest.fixture
def handler():
    h = MagicMock()
    h.handle = AsyncMock(return_value=CompletionOutcome("task-1", Outcome.SUCCESS, scheduled=["metrics", "sources"]))
    app.dependency_overrides[get_completion_handler] = lambda: h
    return h


@pytest.mark.asyncio
async def test_completion_accepted(client: AsyncClient, handler):
    response = await client.post(
        URL,
        json={
            "task": {"id": "prov-1", "status": "COMPLETED", "idempotencyKey": "task-1"},
            "response": {"text": "Acme leads the market."},
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data == {"task_id": "task-1", "outcome": "success", "scheduled": ["metrics", "sources"]}

    event = handler.handle.call_args.args[0]
    assert event.task_id == "task-1"
    assert event.is_success


@pytest.mark.asyncio
async def test_provider_task_id_used_without_idempotency_key(client: AsyncClient, handler):
    await client.post(URL, json={"task": {"id": "task-7", "status": "FAILED"}, "response": {}})
    event = handler.handle.call_args.args[0]
    assert event.task_id == "task-7"
    assert not event.is_success


@pytest.mark.asyncio
async def test_missing_task_rejected(client: AsyncClient, handler):
    response = await client.post(URL, json={"response": {"text": "x"}})
    assert response.status_code == 400
    assert "task" in response.json()["detail"]
    handler.handle.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_response_rejected(client: AsyncClient, handler):
    response = await client.post(URL, json={"task": {"id": "task-1", "status": "COMPLETED"}})
    assert response.status_code == 400
    handler.handle.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_status_rejected(client: AsyncClient, handler):
    response = await client.post(URL, json={"task": {"id": "task-1"}, "response": {"text": "x"}})
    assert response.status_code == 400
    assert "task.status" in response.json()["detail"]
    handler.handle.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_json_rejected(client: AsyncClient, handler):
    response = await client.post(URL, content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    handler.handle.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_task_still_acknowledged(client: AsyncClient, handler):
    handler.handle.return_value = CompletionOutcome("ghost", Outcome.UNKNOWN_TASK)
    response = await client.post(URL, json={"task": {"id": "ghost", "status": "COMPLETED"}, "response": {"text": "x"}})
    assert response.status_code == 200
    assert response.json()["outcome"] == "unknown_task"
