"""Tests for the cron batch triggers."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from app.core.dependencies import get_batch_processor, get_chart_cache
from app.main import app
from app.services.batch_processor import BatchStats

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}
URL = "/api/v1/cron/source-metrics"


@pytest.fixture
def processor():
    p = MagicMock()
    p.run_batch = AsyncMock(return_value=BatchStats(total_processed=4, successful=3, failed=1, duration_ms=1200))
    p.run_batch_for_date_range = AsyncMock(return_value=BatchStats(total_processed=2, successful=2, duration_ms=50))
    p.get_batch_status = AsyncMock(
        return_value={
            "healthy": True,
            "last_processed_at": datetime(2026, 3, 14, 11, 0, tzinfo=timezone.utc).isoformat(),
            "backlog": 0,
            "checked_at": datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc).isoformat(),
        }
    )
    app.dependency_overrides[get_batch_processor] = lambda: p
    return p


@pytest.mark.asyncio
async def test_requires_secret(client: AsyncClient, processor):
    response = await client.post(URL)
    assert response.status_code == 401
    processor.run_batch.assert_not_awaited()


@pytest.mark.asyncio
async def test_wrong_secret(client: AsyncClient, processor):
    response = await client.post(URL, headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_empty_body_runs_reconciliation(client: AsyncClient, processor):
    response = await client.post(URL, headers=CRON_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["mode"] == "reconcile"
    assert data["total_processed"] == 4
    assert data["success_rate"] == 0.75
    processor.run_batch.assert_awaited_once()
    processor.run_batch_for_date_range.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_object_runs_reconciliation(client: AsyncClient, processor):
    response = await client.post(URL, json={}, headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json()["mode"] == "reconcile"


@pytest.mark.asyncio
async def test_date_range_runs_backfill(client: AsyncClient, processor):
    response = await client.post(URL, json={"startDate": "2026-03-01", "endDate": "2026-03-07"}, headers=CRON_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["mode"] == "backfill"
    assert data["start_date"] == "2026-03-01"
    processor.run_batch_for_date_range.assert_awaited_once_with(date(2026, 3, 1), date(2026, 3, 7))


@pytest.mark.asyncio
async def test_reversed_range_rejected(client: AsyncClient, processor):
    response = await client.post(URL, json={"startDate": "2026-03-07", "endDate": "2026-03-01"}, headers=CRON_HEADERS)
    assert response.status_code == 400
    processor.run_batch_for_date_range.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_date_rejected(client: AsyncClient, processor):
    response = await client.post(URL, json={"startDate": "March 1st", "endDate": "2026-03-07"}, headers=CRON_HEADERS)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_non_json_body_rejected(client: AsyncClient, processor):
    response = await client.post(URL, content=b"{oops", headers=CRON_HEADERS)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_status(client: AsyncClient, processor):
    response = await client.get(URL, headers=CRON_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["healthy"] is True
    assert data["backlog"] == 0


@pytest.mark.asyncio
async def test_chart_precompute(client: AsyncClient):
    cache = MagicMock()
    cache.precompute_all = AsyncMock(return_value={"pairs": 2, "computed": 18, "failed": 0})
    app.dependency_overrides[get_chart_cache] = lambda: cache

    response = await client.post("/api/v1/cron/charts", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"pairs": 2, "computed": 18, "failed": 0}
