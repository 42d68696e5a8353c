"""Chart snapshot cache.

Charts are served from ChartSnapshot rows while they are younger than the
staleness threshold; otherwise the series is recomputed from the metric
buckets and written back. The write is best-effort: two readers racing on a
stale snapshot compute the same deterministic series, so the loser's failure
is only logged.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.payload import root_domain
from app.core.config import settings
from app.core.metrics import CHART_CACHE
from app.models.chart_snapshot import ChartSnapshot
from app.models.entity import CompetitorLink, CompetitorStatus, Entity, EntityOwnership
from app.models.metrics_bucket import MetricsBucket, SourceMetricsBucket
from app.models.source import Source

logger = logging.getLogger(__name__)

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90}
TABS = ("competitors", "domain", "url")

TOP_N = 5
MAX_LABEL_LEN = 20


def view_key(time_range: str, tab: str) -> str:
    return f"{time_range}:{tab}"


def chart_color(index: int) -> str:
    return f"hsl(var(--chart-{index + 1}))"


def truncate_label(label: str, limit: int = MAX_LABEL_LEN) -> str:
    if len(label) <= limit:
        return label
    return label[: limit - 3] + "..."


def window_days(today: date, time_range: str) -> list[date]:
    span = TIME_RANGES[time_range]
    start = today - timedelta(days=span - 1)
    return [start + timedelta(days=i) for i in range(span)]


# ---------------------------------------------------------------------------
# Pure series builders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BrandDayRow:
    competitor_id: uuid.UUID | None  # None = the entity itself
    day: date
    mentions: int
    results: int


@dataclass(frozen=True)
class SourceDayRow:
    url: str
    hostname: str
    day: date
    utilization: float


def series_keys(names: list[str]) -> list[str]:
    """Data-point keys for brand series: the display name, suffixed " (2)", " (3)" ... on collisions."""
    taken = {"date"}
    keys = []
    for name in names:
        key, n = name, 1
        while key in taken:
            n += 1
            key = f"{name} ({n})"
        taken.add(key)
        keys.append(key)
    return keys


def build_competitor_series(
    days: list[date],
    own_name: str,
    competitors: dict[uuid.UUID, str],
    rows: list[BrandDayRow],
) -> tuple[list[dict], dict]:
    """Daily visibility for the entity and its top competitors.

    A competitor's daily visibility is its mentions over the entity's results
    for that day: the share of the entity's answers that named the competitor.
    """
    own_results: dict[date, int] = defaultdict(int)
    mentions: dict[tuple[uuid.UUID | None, date], int] = defaultdict(int)
    for row in rows:
        mentions[(row.competitor_id, row.day)] += row.mentions
        if row.competitor_id is None:
            own_results[row.day] += row.results

    window_mentions = defaultdict(int)
    for (competitor_id, _), count in mentions.items():
        if competitor_id is not None:
            window_mentions[competitor_id] += count
    top = sorted(competitors, key=lambda cid: (-window_mentions[cid], competitors[cid].lower()))[:TOP_N]

    brands: list[tuple[uuid.UUID | None, str]] = [(None, own_name)] + [(cid, competitors[cid]) for cid in top]
    keys = series_keys([name for _, name in brands])

    data = []
    for day in days:
        point: dict = {"date": day.isoformat()}
        results = own_results.get(day, 0)
        for (competitor_id, _), key in zip(brands, keys):
            if results > 0:
                value = min(100.0 * mentions.get((competitor_id, day), 0) / results, 100.0)
            else:
                value = 0.0
            point[key] = round(value, 2)
        data.append(point)

    config = {
        "brands": keys,
        "series": {
            key: {"label": name, "color": chart_color(i), "entity_id": str(cid) if cid else None}
            for i, ((cid, name), key) in enumerate(zip(brands, keys))
        },
    }
    return data, config


def build_source_series(days: list[date], rows: list[SourceDayRow], tab: str) -> tuple[list[dict], dict]:
    """Daily utilization of the top sources, grouped by root domain or by URL."""
    daily: dict[tuple[str, date], float] = defaultdict(float)
    for row in rows:
        key = root_domain(row.hostname) if tab == "domain" else row.url
        daily[(key, row.day)] += row.utilization

    totals: dict[str, float] = defaultdict(float)
    for (key, _), value in daily.items():
        totals[key] += min(value, 100.0)
    top = sorted(totals, key=lambda k: (-totals[k], k))[:TOP_N]

    data = []
    for day in days:
        point: dict = {"date": day.isoformat()}
        for i, key in enumerate(top):
            value = min(max(daily.get((key, day), 0.0), 0.0), 100.0)
            point[f"source_{i}"] = round(value, 1)
        data.append(point)

    config = {
        "series": {
            f"source_{i}": {
                "label": truncate_label(key) if tab == "url" else key,
                "value": key,
                "color": chart_color(i),
            }
            for i, key in enumerate(top)
        }
    }
    return data, config


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class ChartResult:
    data: list[dict]
    config: dict
    updated_at: datetime
    cached: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChartSnapshotCache:
    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        stale_after: timedelta | None = None,
    ):
        self.clock = clock
        self.stale_after = stale_after or timedelta(hours=settings.chart_stale_hours)

    def is_fresh(self, updated_at: datetime, now: datetime) -> bool:
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return now - updated_at < self.stale_after

    async def get_chart(
        self,
        db: AsyncSession,
        entity_id: uuid.UUID,
        tenant_id: uuid.UUID,
        time_range: str,
        tab: str,
        *,
        force_refresh: bool = False,
    ) -> ChartResult:
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {sorted(TIME_RANGES)}")
        if tab not in TABS:
            raise ValueError(f"tab must be one of {list(TABS)}")

        now = self.clock()
        key = view_key(time_range, tab)

        if not force_refresh:
            snapshot = (
                await db.execute(
                    select(ChartSnapshot).where(
                        ChartSnapshot.entity_id == entity_id,
                        ChartSnapshot.tenant_id == tenant_id,
                        ChartSnapshot.view_key == key,
                    )
                )
            ).scalar_one_or_none()
            if snapshot is not None and self.is_fresh(snapshot.updated_at, now):
                CHART_CACHE.labels(result="hit").inc()
                return ChartResult(snapshot.data, snapshot.config, snapshot.updated_at, cached=True)
            CHART_CACHE.labels(result="stale" if snapshot is not None else "miss").inc()

        days = window_days(now.date(), time_range)
        if tab == "competitors":
            data, config = await self._compute_competitors(db, entity_id, tenant_id, days)
        else:
            data, config = await self._compute_sources(db, entity_id, tenant_id, days, tab)

        await self._store(db, entity_id, tenant_id, key, data, config, now)
        return ChartResult(data, config, now, cached=False)

    async def _store(self, db, entity_id, tenant_id, key, data, config, now) -> None:
        stmt = pg_insert(ChartSnapshot).values(
            entity_id=entity_id, tenant_id=tenant_id, view_key=key, data=data, config=config, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_chart_snapshot",
            set_={"data": stmt.excluded.data, "config": stmt.excluded.config, "updated_at": stmt.excluded.updated_at},
        )
        try:
            await db.execute(stmt)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(
                "Chart snapshot write failed for %s, serving computed series: %s",
                key,
                e,
                extra={"entity_id": entity_id, "tenant_id": tenant_id},
            )

    async def _compute_competitors(self, db, entity_id, tenant_id, days):
        own_name = (await db.execute(select(Entity.name, Entity.domain).where(Entity.id == entity_id))).first()
        name = (own_name[0] or own_name[1]) if own_name else str(entity_id)

        accepted = await db.execute(
            select(CompetitorLink.competitor_id, func.coalesce(Entity.name, Entity.domain))
            .join(Entity, Entity.id == CompetitorLink.competitor_id)
            .where(CompetitorLink.entity_id == entity_id, CompetitorLink.status == CompetitorStatus.ACCEPTED)
        )
        competitors = {cid: cname for cid, cname in accepted.all() if cname != name}

        result = await db.execute(
            select(
                MetricsBucket.competitor_id,
                MetricsBucket.date,
                func.sum(MetricsBucket.total_mentions),
                func.sum(MetricsBucket.total_results),
            )
            .where(
                MetricsBucket.entity_id == entity_id,
                MetricsBucket.tenant_id == tenant_id,
                MetricsBucket.date >= days[0],
                MetricsBucket.date <= days[-1],
                or_(
                    MetricsBucket.competitor_id.is_(None),
                    MetricsBucket.competitor_id.in_(list(competitors)),
                ),
            )
            .group_by(MetricsBucket.competitor_id, MetricsBucket.date)
        )
        rows = [BrandDayRow(cid, d, int(m or 0), int(r or 0)) for cid, d, m, r in result.all()]
        return build_competitor_series(days, name, competitors, rows)

    async def _compute_sources(self, db, entity_id, tenant_id, days, tab):
        result = await db.execute(
            select(Source.url, Source.hostname, SourceMetricsBucket.date, func.sum(SourceMetricsBucket.utilization))
            .join(Source, Source.id == SourceMetricsBucket.source_id)
            .where(
                SourceMetricsBucket.entity_id == entity_id,
                SourceMetricsBucket.tenant_id == tenant_id,
                SourceMetricsBucket.date >= days[0],
                SourceMetricsBucket.date <= days[-1],
            )
            .group_by(Source.url, Source.hostname, SourceMetricsBucket.date)
        )
        rows = [SourceDayRow(url, host, d, float(u or 0.0)) for url, host, d, u in result.all()]
        return build_source_series(days, rows, tab)

    async def precompute_all(self, session_factory: async_sessionmaker[AsyncSession]) -> dict:
        """Refresh every view for every (entity, tenant) ownership. Failures are counted."""
        async with session_factory() as db:
            pairs = (await db.execute(select(EntityOwnership.entity_id, EntityOwnership.tenant_id))).all()

        stats = {"pairs": len(pairs), "computed": 0, "failed": 0}
        for entity_id, tenant_id in pairs:
            for time_range in TIME_RANGES:
                for tab in TABS:
                    try:
                        async with session_factory() as db:
                            await self.get_chart(db, entity_id, tenant_id, time_range, tab, force_refresh=True)
                        stats["computed"] += 1
                    except Exception as e:
                        stats["failed"] += 1
                        logger.error(
                            "Chart precompute failed for %s: %s",
                            view_key(time_range, tab),
                            e,
                            extra={"entity_id": entity_id, "tenant_id": tenant_id},
                        )
        logger.info("Chart precompute: %d computed, %d failed over %d pair(s)", stats["computed"], stats["failed"], len(pairs))
        return stats
