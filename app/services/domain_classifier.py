"""Website description and classification for new competitors and cited sources.

    homepage fetched  ->  analyzer enriches the metadata
    enrich failed     ->  analyzer describes the bare domain
    both failed       ->  homepage metadata (if any), type OTHER

Every analyzer call is bounded by the enrichment timeout; ``describe`` and
``classify`` never raise. Types are cached per hostname for the process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from app.analysis.types import DomainInfo, SourceType
from app.collectors.domain_info import fetch_domain_info
from app.core.cache import TtlCache
from app.core.config import settings

logger = logging.getLogger(__name__)


class DomainDescriber(Protocol):
    async def describe_domain(self, domain: str, homepage: DomainInfo | None = None) -> DomainInfo: ...


class DomainClassifier:
    def __init__(
        self,
        describer: DomainDescriber | None,
        fetch_info: Callable[[str], Awaitable[DomainInfo]] = fetch_domain_info,
        type_cache: TtlCache[SourceType] | None = None,
        timeout: float | None = None,
    ):
        self.describer = describer
        self.fetch_info = fetch_info
        self.type_cache = type_cache or TtlCache(ttl_seconds=settings.domain_cache_ttl_seconds)
        self.timeout = timeout or settings.enrichment_timeout_seconds

    async def _ask(self, domain: str, homepage: DomainInfo | None) -> DomainInfo | None:
        if self.describer is None:
            return None
        mode = "enrich" if homepage is not None else "generate"
        try:
            return await asyncio.wait_for(self.describer.describe_domain(domain, homepage), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Domain %s (%s) timed out after %.0fs", mode, domain, self.timeout)
        except Exception as e:
            logger.warning("Domain %s (%s) failed: %s: %s", mode, domain, type(e).__name__, e)
        return None

    async def describe(self, domain: str) -> DomainInfo:
        try:
            homepage = await self.fetch_info(domain)
        except Exception as e:
            logger.warning("Homepage fetch failed for %s: %s: %s", domain, type(e).__name__, e)
            homepage = DomainInfo(domain)

        described = None
        if homepage.has_metadata:
            described = await self._ask(domain, homepage)
        if described is None:
            described = await self._ask(domain, None)

        if described is None:
            info = DomainInfo(domain, homepage.name, homepage.description, SourceType.OTHER)
        else:
            info = DomainInfo(
                domain,
                name=described.name or homepage.name,
                description=described.description or homepage.description,
                type=described.type or SourceType.OTHER,
            )
        self.type_cache.set(domain, info.type)
        return info

    async def classify(self, hostname: str) -> SourceType:
        cached = self.type_cache.get(hostname)
        if cached is not None:
            return cached
        return (await self.describe(hostname)).type
