"""Process-scoped TTL cache for enrichment lookups.

Usage::

    cache = TtlCache(ttl_seconds=3600)
    domain = cache.get("acme")
    if domain is None:
        domain = await resolve(...)
        cache.set("acme", domain)

The clock is injectable so expiry can be tested without sleeping. Expired
entries are dropped lazily on read and in bulk by ``evict_expired()``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Generic, TypeVar

V = TypeVar("V")

_MISSING = object()


class TtlCache(Generic[V]):
    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, tuple[float, V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, default: V | None = None) -> V | None:
        item = self._entries.get(key, _MISSING)
        if item is _MISSING:
            return default
        expires_at, value = item
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def set(self, key: str, value: V, ttl_seconds: float | None = None) -> None:
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self.evict_expired()
            if len(self._entries) >= self._max_entries:
                # Drop the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
        self._entries[key] = (self._clock() + (ttl_seconds or self._ttl), value)

    def evict(self, key: str) -> bool:
        return self._entries.pop(key, _MISSING) is not _MISSING

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
