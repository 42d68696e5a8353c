"""Celery tasks for batch reconciliation and chart precompute."""

import asyncio
import logging
from datetime import date

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_processor(session_factory):
    from app.analysis.signal_extractor import OpenAiSignalAnalyzer
    from app.services.batch_processor import BatchProcessor
    from app.services.competitor_resolver import CompetitorResolver
    from app.services.domain_classifier import DomainClassifier

    analyzer = OpenAiSignalAnalyzer()
    return BatchProcessor(
        session_factory,
        CompetitorResolver(domain_resolver=analyzer),
        classifier=DomainClassifier(analyzer),
    )


async def _reconcile() -> dict:
    from app.db.postgres import make_session_factory

    session_factory, engine = make_session_factory()
    try:
        stats = await _build_processor(session_factory).run_batch()
        return stats.to_dict()
    finally:
        await engine.dispose()


async def _backfill(start: date, end: date) -> dict:
    from app.db.postgres import make_session_factory

    session_factory, engine = make_session_factory()
    try:
        stats = await _build_processor(session_factory).run_batch_for_date_range(start, end)
        return stats.to_dict()
    finally:
        await engine.dispose()


async def _precompute() -> dict:
    from app.db.postgres import make_session_factory
    from app.services.chart_service import ChartSnapshotCache

    session_factory, engine = make_session_factory(pool_size=5, max_overflow=0)
    try:
        return await ChartSnapshotCache().precompute_all(session_factory)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="reconcile_source_metrics", max_retries=0)
def reconcile_source_metrics(self) -> dict:
    """Single reconciliation pass over unaggregated successful tasks."""
    try:
        result = _run_async(_reconcile())
        logger.info("reconcile_source_metrics: %s", result)
        return {"status": "ok", **result}
    except Exception as e:
        logger.error("reconcile_source_metrics failed: %s", e, exc_info=True)
        return {"status": "error", "error": str(e)}


@celery_app.task(bind=True, name="backfill_source_metrics", max_retries=0)
def backfill_source_metrics(self, start_date: str, end_date: str) -> dict:
    """Recalculate utilization for every day in [start_date, end_date] (ISO dates)."""
    try:
        start, end = date.fromisoformat(start_date), date.fromisoformat(end_date)
        result = _run_async(_backfill(start, end))
        logger.info("backfill_source_metrics %s..%s: %s", start_date, end_date, result)
        return {"status": "ok", **result}
    except Exception as e:
        logger.error("backfill_source_metrics failed: %s", e, exc_info=True)
        return {"status": "error", "error": str(e)}


@celery_app.task(bind=True, name="precompute_charts", max_retries=0)
def precompute_charts(self) -> dict:
    try:
        result = _run_async(_precompute())
        return {"status": "ok", **result}
    except Exception as e:
        logger.error("precompute_charts failed: %s", e, exc_info=True)
        return {"status": "error", "error": str(e)}
