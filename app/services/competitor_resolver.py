"""Competitor resolution: competitor names from an answer -> Entity rows.

For each name:
  1. existing Entity with the same name (case-insensitive)
  2. otherwise ask the LLM for the brand's domain (cached per process)
  3. find or create the Entity by domain, described by ``fetch_info``
     (homepage metadata, or DomainClassifier.describe in production)

The tracked entity itself is never returned. Every step is best-effort: a
name that cannot be resolved is dropped with a warning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.types import CompetitorSignal, DomainInfo, ResolvedCompetitor
from app.collectors.domain_info import fetch_domain_info
from app.core.cache import TtlCache
from app.core.config import settings
from app.core.metrics import AGGREGATION_FAILURES
from app.models.entity import Entity
from app.services.task_store import TaskContext

logger = logging.getLogger(__name__)

# Cached "no domain" answers, so unknown names are not re-asked every event
_NO_DOMAIN = ""


class DomainResolver(Protocol):
    async def resolve_domain(self, competitor_name: str, context: str | None = None) -> str | None: ...


class CompetitorResolver:
    def __init__(
        self,
        domain_resolver: DomainResolver | None,
        domain_cache: TtlCache[str] | None = None,
        fetch_info: Callable[[str], Awaitable[DomainInfo]] = fetch_domain_info,
        timeout: float | None = None,
    ):
        self.domain_resolver = domain_resolver
        self.domain_cache = domain_cache or TtlCache(ttl_seconds=settings.domain_cache_ttl_seconds)
        self.fetch_info = fetch_info
        self.timeout = timeout or settings.enrichment_timeout_seconds

    async def resolve(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ctx: TaskContext,
        competitors: list[CompetitorSignal],
        *,
        lookup_only: bool = False,
    ) -> list[ResolvedCompetitor]:
        """Resolve all competitor names concurrently. Deduplicated by entity id, order kept.

        ``lookup_only`` skips LLM domain resolution and entity creation (used by
        batch reconciliation).
        """
        own_name = ctx.entity_name.strip().lower()
        candidates = [c for c in competitors if c.name.strip() and c.name.strip().lower() != own_name]
        if not candidates:
            return []

        results = await asyncio.gather(
            *(self._resolve_one(session_factory, ctx, c, lookup_only) for c in candidates)
        )

        resolved: list[ResolvedCompetitor] = []
        seen = set()
        for item in results:
            if item is None or item.entity_id in seen:
                continue
            seen.add(item.entity_id)
            resolved.append(item)
        return resolved

    async def _resolve_one(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ctx: TaskContext,
        competitor: CompetitorSignal,
        lookup_only: bool,
    ) -> ResolvedCompetitor | None:
        name = competitor.name.strip()
        try:
            async with session_factory() as db:
                entity_id = await self._find_by_name(db, name)
                if entity_id is None and not lookup_only:
                    domain = await self._domain_for(name, ctx.prompt_text)
                    if domain:
                        entity_id = await self._find_or_create_by_domain(db, domain, name)
        except Exception as e:
            AGGREGATION_FAILURES.labels(kind="resolution").inc()
            logger.warning(
                "Competitor resolution failed for %r, continuing: %s: %s",
                name,
                type(e).__name__,
                e,
                extra={"task_id": ctx.task_id},
            )
            return None

        if entity_id is None or entity_id == ctx.entity_id:
            return None
        return ResolvedCompetitor(
            entity_id=entity_id,
            name=name,
            position=competitor.position,
            sentiment=competitor.sentiment,
        )

    @staticmethod
    async def _find_by_name(db: AsyncSession, name: str):
        result = await db.execute(
            select(Entity.id).where(func.lower(Entity.name) == name.lower()).order_by(Entity.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    async def _domain_for(self, name: str, context: str | None) -> str | None:
        key = name.lower()
        cached = self.domain_cache.get(key)
        if cached is not None:
            return cached or None
        if self.domain_resolver is None:
            return None

        try:
            domain = await asyncio.wait_for(self.domain_resolver.resolve_domain(name, context), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Domain resolution timed out for %r", name)
            return None
        except Exception as e:
            logger.warning("Domain resolution failed for %r: %s: %s", name, type(e).__name__, e)
            return None

        self.domain_cache.set(key, domain or _NO_DOMAIN)
        return domain or None

    async def _find_or_create_by_domain(self, db: AsyncSession, domain: str, fallback_name: str):
        existing = await db.execute(select(Entity.id).where(Entity.domain == domain))
        entity_id = existing.scalar_one_or_none()
        if entity_id is not None:
            return entity_id

        info = await self.fetch_info(domain)
        # Parallel events may race to create the same domain; the loser re-reads
        await db.execute(
            pg_insert(Entity)
            .values(
                domain=domain,
                name=info.name or fallback_name,
                description=info.description,
                type=info.type.value if info.type else None,
            )
            .on_conflict_do_nothing(index_elements=["domain"])
        )
        await db.commit()
        created = await db.execute(select(Entity.id).where(Entity.domain == domain))
        entity_id = created.scalar_one_or_none()
        if entity_id is not None:
            logger.info("Competitor entity ready for %s (%s)", fallback_name, domain)
        return entity_id
