"""Metrics aggregator: folds one successful task into the daily MetricsBuckets.

For every tenant owning the task's entity, in its own transaction:

  own bucket         total_results += 1, total_mentions += 1 iff position > 0,
                     averages merged by weight, visibility recomputed
  competitor buckets total_mentions = total_results = 1 per resolved competitor,
                     each under a SAVEPOINT so one bad row does not sink the rest

CompetitorLink mention counters are tenant-independent and are bumped once per
task under the ledger's global scope.

All bucket writes are ``INSERT ... ON CONFLICT DO UPDATE`` statements whose SET
clause reads the stored row, so concurrent writers never lose updates. The SQL
mirrors ``app.analysis.merge`` exactly.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import Numeric, case, cast, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.merge import BucketState, competitor_observation, own_observation
from app.analysis.types import ResolvedCompetitor, Signals
from app.core.metrics import AGGREGATION_FAILURES
from app.models.aggregation_ledger import GLOBAL_SCOPE, LedgerKind
from app.models.entity import CompetitorLink
from app.models.metrics_bucket import MetricsBucket
from app.services import ledger
from app.services.ledger import AggregationReport
from app.services.task_store import TaskContext

logger = logging.getLogger(__name__)

_OWN_KEY = ["entity_id", "tenant_id", "date", "channel"]
_COMPETITOR_KEY = ["entity_id", "tenant_id", "competitor_id", "date", "channel"]


def _merge_sql(stored_avg, stored_n, incoming_avg, incoming_n):
    """SQL twin of ``weighted_merge``."""
    return case(
        (incoming_avg.is_(None), stored_avg),
        (stored_avg.is_(None), incoming_avg),
        else_=(stored_avg * stored_n + incoming_avg * incoming_n) / func.nullif(stored_n + incoming_n, 0),
    )


def bucket_upsert(
    *,
    entity_id: uuid.UUID,
    tenant_id: uuid.UUID,
    competitor_id: uuid.UUID | None,
    day: date,
    channel: str,
    delta: BucketState,
):
    """Build the atomic upsert that merges ``delta`` into one bucket."""
    stmt = pg_insert(MetricsBucket).values(
        entity_id=entity_id,
        tenant_id=tenant_id,
        competitor_id=competitor_id,
        date=day,
        channel=channel,
        total_mentions=delta.total_mentions,
        total_results=delta.total_results,
        average_position=delta.average_position,
        position_samples=delta.position_samples,
        average_sentiment=delta.average_sentiment,
        sentiment_samples=delta.sentiment_samples,
        visibility_score=delta.visibility_score,
    )
    stored = MetricsBucket.__table__.c
    incoming = stmt.excluded

    new_mentions = stored.total_mentions + incoming.total_mentions
    new_results = stored.total_results + incoming.total_results

    set_ = {
        "total_mentions": new_mentions,
        "total_results": new_results,
        "average_position": _merge_sql(
            stored.average_position, stored.position_samples, incoming.average_position, incoming.position_samples
        ),
        "position_samples": stored.position_samples + incoming.position_samples,
        "average_sentiment": _merge_sql(
            stored.average_sentiment, stored.sentiment_samples, incoming.average_sentiment, incoming.sentiment_samples
        ),
        "sentiment_samples": stored.sentiment_samples + incoming.sentiment_samples,
        "visibility_score": case(
            (new_results > 0, func.round(cast(new_mentions * 100.0 / new_results, Numeric), 2)),
            else_=0.0,
        ),
        "updated_at": func.now(),
    }

    if competitor_id is None:
        return stmt.on_conflict_do_update(
            index_elements=_OWN_KEY,
            index_where=stored.competitor_id.is_(None),
            set_=set_,
        )
    return stmt.on_conflict_do_update(
        index_elements=_COMPETITOR_KEY,
        index_where=stored.competitor_id.isnot(None),
        set_=set_,
    )


def competitor_link_upsert(entity_id: uuid.UUID, competitor_id: uuid.UUID):
    stmt = pg_insert(CompetitorLink).values(entity_id=entity_id, competitor_id=competitor_id, mentions=1)
    return stmt.on_conflict_do_update(
        constraint="uq_competitor_link",
        set_={"mentions": CompetitorLink.mentions + 1, "updated_at": func.now()},
    )


async def _apply_competitor_links(
    session_factory: async_sessionmaker[AsyncSession],
    ctx: TaskContext,
    competitors: list[ResolvedCompetitor],
) -> None:
    if not competitors:
        return
    async with session_factory() as db:
        try:
            async with db.begin():
                if not await ledger.claim(db, ctx.task_id, LedgerKind.COMPETITOR_LINKS, GLOBAL_SCOPE):
                    logger.debug("Competitor links already counted", extra={"task_id": ctx.task_id})
                    return
                for comp in competitors:
                    try:
                        async with db.begin_nested():
                            await db.execute(competitor_link_upsert(ctx.entity_id, comp.entity_id))
                    except Exception as e:
                        AGGREGATION_FAILURES.labels(kind="competitor").inc()
                        logger.warning(
                            "Competitor link upsert failed for %s: %s",
                            comp.name,
                            e,
                            extra={"task_id": ctx.task_id},
                        )
        except Exception as e:
            AGGREGATION_FAILURES.labels(kind="competitor").inc()
            logger.error("Competitor link update failed: %s", e, extra={"task_id": ctx.task_id})


async def _aggregate_for_tenant(
    db: AsyncSession,
    ctx: TaskContext,
    tenant_id: uuid.UUID,
    signals: Signals,
    competitors: list[ResolvedCompetitor],
) -> bool:
    """Apply one task to one tenant's buckets. Returns False if already applied."""
    log_extra = {"task_id": ctx.task_id, "tenant_id": tenant_id}

    async with db.begin():
        if not await ledger.claim(db, ctx.task_id, LedgerKind.METRICS, str(tenant_id)):
            return False

        await db.execute(
            bucket_upsert(
                entity_id=ctx.entity_id,
                tenant_id=tenant_id,
                competitor_id=None,
                day=ctx.day,
                channel=ctx.channel,
                delta=own_observation(signals.position, signals.sentiment),
            )
        )

        for comp in competitors:
            try:
                async with db.begin_nested():
                    await db.execute(
                        bucket_upsert(
                            entity_id=ctx.entity_id,
                            tenant_id=tenant_id,
                            competitor_id=comp.entity_id,
                            day=ctx.day,
                            channel=ctx.channel,
                            delta=competitor_observation(comp.position, comp.sentiment),
                        )
                    )
            except Exception as e:
                AGGREGATION_FAILURES.labels(kind="competitor").inc()
                logger.warning("Competitor bucket upsert failed for %s: %s", comp.name, e, extra=log_extra)
    return True


async def aggregate_metrics(
    session_factory: async_sessionmaker[AsyncSession],
    ctx: TaskContext,
    signals: Signals | None,
    competitors: list[ResolvedCompetitor] | None = None,
) -> AggregationReport:
    """Fold one successful task into every owning tenant's buckets. Never raises."""
    report = AggregationReport()
    signals = signals or Signals()
    competitors = [c for c in competitors or [] if c.entity_id != ctx.entity_id]

    if not ctx.tenant_ids:
        logger.warning("Entity %s has no owning tenant, nothing to aggregate", ctx.entity_id, extra={"task_id": ctx.task_id})
        return report

    await _apply_competitor_links(session_factory, ctx, competitors)

    for tenant_id in ctx.tenant_ids:
        scope = str(tenant_id)
        try:
            async with session_factory() as db:
                applied = await _aggregate_for_tenant(db, ctx, tenant_id, signals, competitors)
        except Exception as e:
            AGGREGATION_FAILURES.labels(kind="metrics").inc()
            logger.error(
                "Metrics aggregation failed: %s: %s",
                type(e).__name__,
                e,
                extra={"task_id": ctx.task_id, "tenant_id": tenant_id},
            )
            report.failed.append(scope)
            continue
        (report.applied if applied else report.already_applied).append(scope)

    logger.info(
        "Metrics aggregated for %d tenant(s), %d already applied, %d failed",
        len(report.applied),
        len(report.already_applied),
        len(report.failed),
        extra={"task_id": ctx.task_id, "entity_id": ctx.entity_id},
    )
    return report
