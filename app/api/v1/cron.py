"""Batch triggers (Celery beat runs the same jobs; these are for manual and external cron use)."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from app.core.dependencies import get_batch_processor, get_chart_cache
from app.core.exceptions import BadRequestError
from app.core.security import require_cron_secret
from app.db.postgres import async_session_factory
from app.schemas.batch import BackfillRequest, BatchStatsResponse, BatchStatusResponse, ChartPrecomputeResponse
from app.services.batch_processor import BatchProcessor
from app.services.chart_service import ChartSnapshotCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


async def _parse_backfill(request: Request) -> BackfillRequest | None:
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequestError("Request body must be JSON")
    if body is None or body == {}:
        return None
    try:
        return BackfillRequest.model_validate(body)
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise BadRequestError(f"Invalid date range: {messages}")


@router.post("/source-metrics", response_model=BatchStatsResponse)
async def trigger_source_metrics(
    request: Request,
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """Run one reconciliation pass, or a backfill when ``{startDate, endDate}`` is given."""
    backfill = await _parse_backfill(request)
    if backfill is None:
        stats = await processor.run_batch()
        return BatchStatsResponse(mode="reconcile", **stats.to_dict())

    logger.info("Manual backfill requested for %s..%s", backfill.start_date, backfill.end_date)
    stats = await processor.run_batch_for_date_range(backfill.start_date, backfill.end_date)
    return BatchStatsResponse(
        mode="backfill",
        start_date=backfill.start_date,
        end_date=backfill.end_date,
        **stats.to_dict(),
    )


@router.get("/source-metrics", response_model=BatchStatusResponse)
async def source_metrics_status(processor: BatchProcessor = Depends(get_batch_processor)):
    return BatchStatusResponse(**await processor.get_batch_status())


@router.post("/charts", response_model=ChartPrecomputeResponse)
async def trigger_chart_precompute(cache: ChartSnapshotCache = Depends(get_chart_cache)):
    return ChartPrecomputeResponse(**await cache.precompute_all(async_session_factory))
