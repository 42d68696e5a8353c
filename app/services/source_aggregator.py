"""Source utilization aggregator.

``aggregate_sources`` bumps per-(entity, tenant, source, day, channel) citation
counters for one successful task. ``recalculate_daily_utilization`` derives the
utilization percentage from those counters and the day's distinct successful
prompts; it is idempotent and safe to run as often as needed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import Numeric, cast, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.merge import utilization
from app.analysis.types import ExtractedSource, SourceType
from app.core.metrics import AGGREGATION_FAILURES
from app.models.aggregation_ledger import LedgerKind
from app.models.metrics_bucket import SourceMetricsBucket
from app.models.prompt import Prompt
from app.models.source import Source, TaskSource
from app.models.task import Task, TaskStatus
from app.services import ledger
from app.services.ledger import AggregationReport
from app.services.task_store import TaskContext

logger = logging.getLogger(__name__)

SourceClassifier = Callable[[str], Awaitable[SourceType]]


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a UTC calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


async def classify_new_sources(
    db: AsyncSession,
    sources: list[ExtractedSource],
    classify: SourceClassifier,
) -> dict[str, str]:
    """hostname -> SourceType value, for the hostnames of sources not stored yet."""
    if not sources:
        return {}
    stored = await db.execute(select(Source.url).where(Source.url.in_([s.url for s in sources])))
    known = set(stored.scalars().all())
    hostnames = sorted({s.hostname for s in sources if s.url not in known})
    if not hostnames:
        return {}

    results = await asyncio.gather(*(classify(h) for h in hostnames), return_exceptions=True)
    types: dict[str, str] = {}
    for hostname, result in zip(hostnames, results):
        if isinstance(result, BaseException):
            logger.warning("Classifying %s failed, using OTHER: %s: %s", hostname, type(result).__name__, result)
            result = SourceType.OTHER
        types[hostname] = SourceType.coerce(result).value
    return types


async def upsert_sources(
    db: AsyncSession,
    sources: list[ExtractedSource],
    types: dict[str, str] | None = None,
) -> dict[str, uuid.UUID]:
    """Create missing Source rows (identity = normalized URL). Returns url -> id.

    ``types`` maps hostname -> SourceType value; unclassified hosts are stored as OTHER.
    Existing rows keep their type.
    """
    if not sources:
        return {}
    types = types or {}
    await db.execute(
        pg_insert(Source)
        .values(
            [
                {
                    "url": s.url,
                    "hostname": s.hostname,
                    "title": s.title,
                    "type": types.get(s.hostname, SourceType.OTHER.value),
                }
                for s in sources
            ]
        )
        .on_conflict_do_nothing(index_elements=["url"])
    )
    rows = await db.execute(select(Source.url, Source.id).where(Source.url.in_([s.url for s in sources])))
    return {url: source_id for url, source_id in rows.all()}


def source_bucket_upsert(
    *,
    entity_id: uuid.UUID,
    tenant_id: uuid.UUID,
    source_id: uuid.UUID,
    day: date,
    channel: str,
    occurrences: int,
):
    stmt = pg_insert(SourceMetricsBucket).values(
        entity_id=entity_id,
        tenant_id=tenant_id,
        source_id=source_id,
        date=day,
        channel=channel,
        total_mentions=occurrences,
        unique_prompts=1,
        utilization=0.0,
    )
    stored = SourceMetricsBucket.__table__.c
    return stmt.on_conflict_do_update(
        constraint="uq_source_metrics_bucket",
        set_={
            "total_mentions": stored.total_mentions + stmt.excluded.total_mentions,
            "unique_prompts": stored.unique_prompts + 1,
            "updated_at": func.now(),
        },
    )


async def aggregate_sources(
    session_factory: async_sessionmaker[AsyncSession],
    ctx: TaskContext,
    sources: list[ExtractedSource],
    classify: SourceClassifier | None = None,
) -> AggregationReport:
    """Count this task's cited sources for every owning tenant. Never raises.

    The ledger row is written even when the task cited nothing, so batch
    reconciliation does not keep reselecting it. New sources are classified
    with ``classify`` before any transaction is opened.
    """
    report = AggregationReport()
    if not ctx.tenant_ids:
        logger.warning("Entity %s has no owning tenant, skipping sources", ctx.entity_id, extra={"task_id": ctx.task_id})
        return report

    types: dict[str, str] = {}
    if classify is not None and sources:
        try:
            async with session_factory() as db:
                types = await classify_new_sources(db, sources, classify)
        except Exception as e:
            logger.warning(
                "Source classification skipped: %s: %s", type(e).__name__, e, extra={"task_id": ctx.task_id}
            )

    try:
        async with session_factory() as db:
            async with db.begin():
                source_ids = await upsert_sources(db, sources, types)
                if source_ids:
                    await db.execute(
                        pg_insert(TaskSource)
                        .values(
                            [
                                {"task_id": ctx.task_id, "source_id": source_ids[s.url], "occurrences": s.occurrences}
                                for s in sources
                                if s.url in source_ids
                            ]
                        )
                        .on_conflict_do_nothing(index_elements=["task_id", "source_id"])
                    )
    except Exception as e:
        AGGREGATION_FAILURES.labels(kind="sources").inc()
        logger.error("Source upsert failed: %s: %s", type(e).__name__, e, extra={"task_id": ctx.task_id})
        report.failed.extend(str(t) for t in ctx.tenant_ids)
        return report

    for tenant_id in ctx.tenant_ids:
        scope = str(tenant_id)
        try:
            async with session_factory() as db:
                async with db.begin():
                    if not await ledger.claim(db, ctx.task_id, LedgerKind.SOURCES, scope):
                        report.already_applied.append(scope)
                        continue
                    for src in sources:
                        source_id = source_ids.get(src.url)
                        if source_id is None:
                            continue
                        await db.execute(
                            source_bucket_upsert(
                                entity_id=ctx.entity_id,
                                tenant_id=tenant_id,
                                source_id=source_id,
                                day=ctx.day,
                                channel=ctx.channel,
                                occurrences=src.occurrences,
                            )
                        )
            report.applied.append(scope)
        except Exception as e:
            AGGREGATION_FAILURES.labels(kind="sources").inc()
            logger.error(
                "Source aggregation failed: %s: %s",
                type(e).__name__,
                e,
                extra={"task_id": ctx.task_id, "tenant_id": tenant_id},
            )
            report.failed.append(scope)

    logger.info(
        "Aggregated %d source(s) for %d tenant(s)",
        len(sources),
        len(report.applied),
        extra={"task_id": ctx.task_id, "entity_id": ctx.entity_id},
    )
    return report


async def count_daily_prompts(db: AsyncSession, entity_id: uuid.UUID, day: date) -> int:
    """Distinct prompts of ``entity_id`` with at least one SUCCESS task on ``day`` (UTC)."""
    start, end = day_bounds(day)
    result = await db.execute(
        select(func.count(func.distinct(Task.prompt_id)))
        .join(Prompt, Prompt.id == Task.prompt_id)
        .where(
            Prompt.entity_id == entity_id,
            Task.status == TaskStatus.SUCCESS.value,
            Task.created_at >= start,
            Task.created_at < end,
        )
    )
    return int(result.scalar_one() or 0)


async def recalculate_daily_utilization(
    db: AsyncSession,
    entity_id: uuid.UUID,
    tenant_id: uuid.UUID,
    day: date,
) -> int:
    """Recompute utilization for every source bucket of (entity, tenant, day).

    Returns the number of buckets updated (0 when the day has no successful prompts).
    """
    log_extra = {"entity_id": entity_id, "tenant_id": tenant_id}
    denominator = await count_daily_prompts(db, entity_id, day)
    if denominator == 0:
        logger.debug("No successful prompts on %s, utilization left as-is", day, extra=log_extra)
        return 0

    bucket_filter = (
        SourceMetricsBucket.entity_id == entity_id,
        SourceMetricsBucket.tenant_id == tenant_id,
        SourceMetricsBucket.date == day,
    )

    # Late-arriving data can push unique_prompts above the day's denominator
    overflow = await db.execute(
        select(SourceMetricsBucket.source_id, SourceMetricsBucket.unique_prompts).where(
            *bucket_filter, SourceMetricsBucket.unique_prompts > denominator
        )
    )
    for source_id, unique_prompts in overflow.all():
        logger.warning(
            "Utilization out of range for source %s on %s: %d/%d prompts, clamped to %.2f",
            source_id,
            day,
            unique_prompts,
            denominator,
            utilization(unique_prompts, denominator),
            extra=log_extra,
        )

    raw = SourceMetricsBucket.unique_prompts * 100.0 / denominator
    result = await db.execute(
        update(SourceMetricsBucket)
        .where(*bucket_filter)
        .values(
            utilization=func.round(cast(func.least(func.greatest(raw, 0), 100), Numeric), 2),
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    updated = result.rowcount or 0
    logger.info(
        "Recalculated utilization for %d bucket(s) on %s (denominator=%d)", updated, day, denominator, extra=log_extra
    )
    return updated
