import sys
import os
import threading
from concurrent.futures import ThreadPoolExecutor
import pytest

# Add backend to path so we can import modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from caching.cache_store import CacheKeys, CacheStore
from fakes import FakeClock


def test_set_then_get_within_ttl():
    clock = FakeClock()
    cache = CacheStore(max_entries=10, clock=clock)
    cache.set("repos:u1", {"repos": []}, ttl_seconds=60)
    assert cache.get("repos:u1") == {"repos": []}


def test_get_after_ttl_returns_none_and_purges():
    clock = FakeClock()
    cache = CacheStore(max_entries=10, clock=clock)
    cache.set("repos:u1", "v", ttl_seconds=60)
    clock.advance(61)
    assert cache.get("repos:u1") is None
    assert cache.stats()["size"] == 0


def test_grace_window_staleness():
    """ttl=1s, grace=5s: stale at 2s, gone at 7s."""
    clock = FakeClock()
    cache = CacheStore(max_entries=10, clock=clock)
    cache.set("usage:u1", "v", ttl_seconds=1)

    assert cache.get_with_staleness("usage:u1", grace_seconds=5) == ("v", False)

    clock.advance(2)
    assert cache.get_with_staleness("usage:u1", grace_seconds=5) == ("v", True)

    clock.advance(5)
    assert cache.get_with_staleness("usage:u1", grace_seconds=5) is None
    assert cache.stats()["size"] == 0


def test_lru_eviction_keeps_recently_read_entry():
    clock = FakeClock()
    cache = CacheStore(max_entries=3, clock=clock)
    for key in ("a:1", "b:1", "c:1"):
        cache.set(key, key, ttl_seconds=300)
        clock.advance(1)

    # reading A makes it the most recently used
    assert cache.get("a:1") == "a:1"
    clock.advance(1)
    cache.set("d:1", "d:1", ttl_seconds=300)

    assert cache.stats() == {"size": 3, "max_entries": 3}
    assert cache.get("a:1") == "a:1"
    assert cache.get("b:1") is None
    assert cache.get("c:1") == "c:1"
    assert cache.get("d:1") == "d:1"


def test_overwriting_existing_key_at_capacity_does_not_evict():
    cache = CacheStore(max_entries=2, clock=FakeClock())
    cache.set("a:1", 1, ttl_seconds=60)
    cache.set("b:1", 2, ttl_seconds=60)
    cache.set("a:1", 3, ttl_seconds=60)
    assert cache.get("a:1") == 3
    assert cache.get("b:1") == 2


def test_set_refreshes_expiry():
    clock = FakeClock()
    cache = CacheStore(max_entries=2, clock=clock)
    cache.set("a:1", 1, ttl_seconds=10)
    clock.advance(8)
    cache.set("a:1", 2, ttl_seconds=10)
    clock.advance(8)
    assert cache.get("a:1") == 2


def test_invalidate_by_prefix():
    cache = CacheStore(max_entries=10, clock=FakeClock())
    cache.set("history:u1", 1, 60)
    cache.set("history:u2", 2, 60)
    cache.set("usage:u1", 3, 60)
    assert cache.invalidate_by_prefix("history:") == 2
    assert cache.get("usage:u1") == 3
    assert cache.get("history:u1") is None


def test_invalidate_user_matches_owner_segment_exactly():
    cache = CacheStore(max_entries=10, clock=FakeClock())
    cache.set(CacheKeys.repos("u1"), 1, 60)
    cache.set(CacheKeys.usage("u1"), 2, 60)
    cache.set("categorization:u1:latest", 3, 60)
    cache.set(CacheKeys.repos("u12"), 4, 60)

    assert cache.invalidate_user("u1") == 3
    assert cache.get(CacheKeys.repos("u12")) == 4
    assert cache.stats()["size"] == 1


def test_delete_and_stats_do_not_fail_on_missing_key():
    cache = CacheStore(max_entries=5, clock=FakeClock())
    cache.delete("nope:1")
    assert cache.stats() == {"size": 0, "max_entries": 5}


def test_purge_expired_respects_grace():
    clock = FakeClock()
    cache = CacheStore(max_entries=10, clock=clock)
    cache.set("a:1", 1, ttl_seconds=10)
    cache.set("b:1", 2, ttl_seconds=100)
    clock.advance(30)
    assert cache.purge_expired(grace_seconds=60) == 0
    clock.advance(50)
    assert cache.purge_expired(grace_seconds=60) == 1
    assert cache.get("b:1") == 2


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        CacheStore(max_entries=0)


def test_concurrent_inserts_never_exceed_capacity():
    cache = CacheStore(max_entries=10, clock=FakeClock())
    workers = 16
    barrier = threading.Barrier(workers)
    sizes = []

    def insert(worker):
        barrier.wait()
        for i in range(50):
            cache.set(f"history:w{worker}-{i}", i, ttl_seconds=60)
            sizes.append(cache.stats()["size"])

    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(insert, range(workers)))

    assert max(sizes) <= 10
    assert cache.stats()["size"] == 10
