"""Tests for the TTL cache."""

import pytest

from app.core.cache import TtlCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_get_set(clock):
    cache = TtlCache(ttl_seconds=60, clock=clock)
    cache.set("acme", "acme.com")
    assert cache.get("acme") == "acme.com"
    assert "acme" in cache
    assert len(cache) == 1


def test_expiry(clock):
    cache = TtlCache(ttl_seconds=60, clock=clock)
    cache.set("acme", "acme.com")
    clock.now += 61
    assert cache.get("acme") is None
    assert "acme" not in cache
    assert len(cache) == 0


def test_empty_string_is_a_cached_value(clock):
    """Negative lookups are cached as ''."""
    cache = TtlCache(ttl_seconds=60, clock=clock)
    cache.set("nobody", "")
    assert "nobody" in cache
    assert cache.get("nobody") == ""


def test_per_key_ttl(clock):
    cache = TtlCache(ttl_seconds=60, clock=clock)
    cache.set("short", 1, ttl_seconds=5)
    cache.set("long", 2)
    clock.now += 10
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_evict_expired(clock):
    cache = TtlCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.now += 11
    cache.set("c", 3)
    assert cache.evict_expired() == 2
    assert len(cache) == 1


def test_max_entries_drops_oldest(clock):
    cache = TtlCache(ttl_seconds=100, clock=clock, max_entries=2)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    clock.now += 1
    cache.set("c", 3)
    assert "a" not in cache
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_evict_and_clear(clock):
    cache = TtlCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    assert cache.evict("a") is True
    assert cache.evict("a") is False
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_invalid_ttl():
    with pytest.raises(ValueError):
        TtlCache(ttl_seconds=0)
