"""Batch reconciliation for source and visibility metrics.

``run_batch`` heals gaps left by lost or failed background continuations:
it picks successful tasks whose (entity, day) has no source bucket yet and
which have not been source-aggregated, re-runs both aggregators, then
recalculates utilization once per (entity, tenant, day) it touched.

``run_batch_for_date_range`` is the explicit backfill: it recalculates
utilization for every (entity, tenant) that had successful tasks on each day
of the range, with bounded concurrency and exponential-backoff retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import Date, cast, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.payload import extract_sources
from app.core.config import settings
from app.core.metrics import BATCH_DURATION, BATCH_ITEMS
from app.models.aggregation_ledger import AggregationLedger, LedgerKind
from app.models.entity import EntityOwnership
from app.models.metrics_bucket import SourceMetricsBucket
from app.models.prompt import Prompt
from app.models.task import Task, TaskStatus
from app.services import task_store
from app.services.competitor_resolver import CompetitorResolver
from app.services.domain_classifier import DomainClassifier
from app.services.metrics_aggregator import aggregate_metrics
from app.services.source_aggregator import aggregate_sources, day_bounds, recalculate_daily_utilization
from app.services.task_store import TaskContext

logger = logging.getLogger(__name__)

HEALTHY_FRESHNESS = timedelta(hours=1)

Triple = tuple[uuid.UUID, uuid.UUID, date]  # (entity_id, tenant_id, day)


@dataclass
class BatchStats:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0

    @property
    def success_rate(self) -> float:
        attempted = self.successful + self.failed
        return round(self.successful / attempted, 4) if attempted else 1.0

    @property
    def processing_rate(self) -> float:
        """Items per minute."""
        if self.duration_ms <= 0:
            return 0.0
        return round(self.total_processed / (self.duration_ms / 60_000), 2)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "total_processed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "success_rate": self.success_rate,
            "processing_rate": self.processing_rate,
        }


def task_day():
    """UTC calendar day of Task.created_at, as SQL."""
    return cast(func.timezone("UTC", Task.created_at), Date)


def unaggregated_tasks_query():
    """SUCCESS tasks of owned entities whose (entity, day) has no source bucket and no sources ledger row.

    Ownerless entities are excluded here rather than skipped later: nothing
    would ever mark them handled, and they would fill every oldest-first page.
    """
    has_owner = exists().where(EntityOwnership.entity_id == Prompt.entity_id)
    has_bucket = exists().where(
        SourceMetricsBucket.entity_id == Prompt.entity_id,
        SourceMetricsBucket.date == task_day(),
    )
    has_ledger = exists().where(
        AggregationLedger.task_id == Task.id,
        AggregationLedger.kind == LedgerKind.SOURCES,
    )
    return (
        select(Task.id)
        .join(Prompt, Prompt.id == Task.prompt_id)
        .where(Task.status == TaskStatus.SUCCESS.value, has_owner, ~has_bucket, ~has_ledger)
    )


def enumerate_days(start: date, end: date) -> list[date]:
    if start > end:
        raise ValueError("start date must not be after end date")
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Delay after failed attempt ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    return base_seconds * (2 ** (attempt - 1))


class BatchProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: CompetitorResolver | None = None,
        *,
        classifier: DomainClassifier | None = None,
        page_size: int | None = None,
        concurrency: int | None = None,
        max_attempts: int | None = None,
        retry_base_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.classifier = classifier
        self.page_size = min(page_size or settings.reconcile_page_size, 1000)
        self.concurrency = concurrency or settings.backfill_concurrency
        self.max_attempts = max_attempts or settings.backfill_max_attempts
        self.retry_base_seconds = (
            settings.backfill_retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Single-pass reconciliation
    # ------------------------------------------------------------------

    async def find_unaggregated(self) -> list[TaskContext]:
        async with self.session_factory() as db:
            ids = (
                await db.execute(unaggregated_tasks_query().order_by(Task.created_at).limit(self.page_size))
            ).scalars().all()
            return await task_store.load_task_contexts(db, list(ids))

    async def _reconcile_one(self, ctx: TaskContext) -> tuple[str, list[Triple]]:
        """Returns (outcome, touched triples); outcome is successful | failed | skipped."""
        if not ctx.tenant_ids:
            logger.info("Skipping task without owning tenant", extra={"task_id": ctx.task_id})
            return "skipped", []
        try:
            signals = ctx.signals
            competitors = []
            if self.resolver is not None and signals.competitors:
                competitors = await self.resolver.resolve(
                    self.session_factory, ctx, signals.competitors, lookup_only=True
                )
            metrics_report = await aggregate_metrics(self.session_factory, ctx, signals, competitors)
            sources_report = await aggregate_sources(
                self.session_factory,
                ctx,
                extract_sources(ctx.raw_payload),
                self.classifier.classify if self.classifier else None,
            )
        except Exception as e:
            logger.error("Reconciliation failed: %s: %s", type(e).__name__, e, extra={"task_id": ctx.task_id})
            return "failed", []

        touched = [(ctx.entity_id, tenant_id, ctx.day) for tenant_id in ctx.tenant_ids]
        if not (metrics_report.ok and sources_report.ok):
            return "failed", touched
        return "successful", touched

    async def _recalculate(self, entity_id: uuid.UUID, tenant_id: uuid.UUID, day: date) -> int:
        async with self.session_factory() as db:
            return await recalculate_daily_utilization(db, entity_id, tenant_id, day)

    async def run_batch(self) -> BatchStats:
        stats = BatchStats()
        started = time.perf_counter()

        contexts = await self.find_unaggregated()
        stats.total_processed = len(contexts)
        if not contexts:
            logger.info("Reconciliation: nothing to do")

        # Page is bounded by page_size, so fan out without a semaphore
        results = await asyncio.gather(*(self._reconcile_one(ctx) for ctx in contexts))

        touched: set[Triple] = set()
        for outcome, triples in results:
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            BATCH_ITEMS.labels(job="reconcile", outcome=outcome).inc()
            touched.update(triples)

        recalcs = await asyncio.gather(
            *(self._recalculate(*triple) for triple in sorted(touched, key=str)), return_exceptions=True
        )
        for triple, result in zip(sorted(touched, key=str), recalcs):
            if isinstance(result, Exception):
                logger.error("Utilization recalculation failed for %s: %s", triple, result)

        stats.duration_ms = int((time.perf_counter() - started) * 1000)
        BATCH_DURATION.labels(job="reconcile").observe(stats.duration_ms / 1000)
        logger.info(
            "Reconciliation done: processed=%d successful=%d failed=%d skipped=%d recalculated=%d in %dms",
            stats.total_processed,
            stats.successful,
            stats.failed,
            stats.skipped,
            len(touched),
            stats.duration_ms,
        )
        return stats

    # ------------------------------------------------------------------
    # Date-range backfill
    # ------------------------------------------------------------------

    async def find_active_pairs(self, day: date) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """(entity, tenant) pairs with at least one SUCCESS task on ``day``."""
        start, end = day_bounds(day)
        has_success = exists().where(
            Task.prompt_id == Prompt.id,
            Task.status == TaskStatus.SUCCESS.value,
            Task.created_at >= start,
            Task.created_at < end,
        )
        query = (
            select(EntityOwnership.entity_id, EntityOwnership.tenant_id)
            .join(Prompt, Prompt.entity_id == EntityOwnership.entity_id)
            .where(has_success)
            .distinct()
        )
        async with self.session_factory() as db:
            return [(entity_id, tenant_id) for entity_id, tenant_id in (await db.execute(query)).all()]

    async def _with_retry(self, job: Callable[[], Awaitable[object]], label: str) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await job()
                return True
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error("Backfill job %s failed after %d attempts: %s", label, attempt, e)
                    return False
                delay = backoff_delay(attempt, self.retry_base_seconds)
                logger.warning(
                    "Backfill job %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    label,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                await self._sleep(delay)
        return False

    async def run_batch_for_date_range(self, start: date, end: date) -> BatchStats:
        stats = BatchStats()
        started = time.perf_counter()

        jobs: list[Triple] = []
        for day in enumerate_days(start, end):
            jobs.extend((entity_id, tenant_id, day) for entity_id, tenant_id in await self.find_active_pairs(day))
        stats.total_processed = len(jobs)
        logger.info("Backfill %s..%s: %d job(s)", start, end, len(jobs))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_job(entity_id: uuid.UUID, tenant_id: uuid.UUID, day: date) -> bool:
            async with semaphore:
                return await self._with_retry(
                    lambda: self._recalculate(entity_id, tenant_id, day),
                    f"{entity_id}/{tenant_id}/{day}",
                )

        results = await asyncio.gather(*(run_job(*job) for job in jobs))
        for ok in results:
            outcome = "successful" if ok else "failed"
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            BATCH_ITEMS.labels(job="backfill", outcome=outcome).inc()

        stats.duration_ms = int((time.perf_counter() - started) * 1000)
        BATCH_DURATION.labels(job="backfill").observe(stats.duration_ms / 1000)
        logger.info(
            "Backfill done: jobs=%d successful=%d failed=%d in %dms",
            stats.total_processed,
            stats.successful,
            stats.failed,
            stats.duration_ms,
        )
        return stats

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_batch_status(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            last_update = (await db.execute(select(func.max(SourceMetricsBucket.updated_at)))).scalar_one_or_none()
            backlog = (
                await db.execute(select(func.count()).select_from(unaggregated_tasks_query().subquery()))
            ).scalar_one()

        fresh = last_update is not None and now - last_update <= HEALTHY_FRESHNESS
        return {
            "healthy": backlog == 0 or fresh,
            "last_processed_at": last_update.isoformat() if last_update else None,
            "backlog": int(backlog),
            "checked_at": now.isoformat(),
        }
