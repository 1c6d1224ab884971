from datetime import timedelta

from auditlog.services.cache import InMemoryTTLCache


def test_entries_expire_after_ttl(clock):
    cache = InMemoryTTLCache(timedelta(minutes=15), clock=clock)
    cache.set("k", [1, 2])
    assert cache.get("k") == [1, 2]

    clock.advance(minutes=14, seconds=59)
    assert cache.get("k") == [1, 2]
    clock.advance(seconds=1)
    assert cache.get("k") is None
    assert cache.hits == 2
    assert cache.misses == 1


def test_per_entry_ttl_overrides_default(clock):
    cache = InMemoryTTLCache(timedelta(hours=1), clock=clock)
    cache.set("short", "v", ttl=timedelta(seconds=10))
    clock.advance(seconds=11)
    assert cache.get("short") is None


def test_oldest_entries_are_evicted_when_full(clock):
    cache = InMemoryTTLCache(timedelta(minutes=5), max_entries=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_clear_drops_everything(clock):
    cache = InMemoryTTLCache(clock=clock)
    cache.set("a", 1)
    cache.clear()
    assert len(cache) == 0
    assert cache.get("a") is None
