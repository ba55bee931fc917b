from __future__ import annotations

from insightgate.services.cache.keys import canonical_json, normalize_question, question_hash, schema_hash
from insightgate.services.cache.store import CacheKey, TTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _cache(clock: _Clock, *, max_entries: int = 10) -> TTLCache:
    return TTLCache("query", default_ttl_s=60, max_entries_per_tenant=max_entries, time_source=clock)


def test_round_trip_returns_fresh_copies() -> None:
    clock = _Clock()
    cache = _cache(clock)
    key = CacheKey("t1", "db1", "abc")
    cache.put(key, {"rows": [1, 2]})

    first = cache.get(key)
    first["rows"].append(3)
    assert cache.get(key) == {"rows": [1, 2]}


def test_repeated_gets_are_idempotent_with_non_decreasing_hits() -> None:
    clock = _Clock()
    cache = _cache(clock)
    key = CacheKey("t1", "db1", "abc")
    cache.put(key, "SELECT 1")

    hits = []
    for _ in range(3):
        assert cache.get(key) == "SELECT 1"
        hits.append(cache.entry(key).hit_count)
    assert hits == sorted(hits)
    assert hits[-1] == 3


def test_entry_expires_at_ttl_and_is_removed_lazily() -> None:
    clock = _Clock()
    cache = _cache(clock)
    key = CacheKey("t1", "db1", "abc")
    cache.put(key, "x", ttl_s=10)

    clock.now += 9
    assert cache.get(key) == "x"
    clock.now += 1
    assert cache.get(key) is None
    assert cache.entry(key) is None


def test_corrupt_payload_is_a_miss_and_dropped() -> None:
    clock = _Clock()
    cache = _cache(clock)
    key = CacheKey("t1", "db1", "abc")
    cache.put(key, {"ok": True})
    cache._entries[key].payload = "{not json"

    assert cache.get(key) is None
    assert cache.entry(key) is None


def test_keys_never_cross_tenants() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.put(CacheKey("t1", "db1", "same"), "tenant-one")

    assert cache.get(CacheKey("t2", "db1", "same")) is None
    assert cache.get(CacheKey("t1", "db2", "same")) is None


def test_per_tenant_bound_evicts_least_recently_used() -> None:
    clock = _Clock()
    cache = _cache(clock, max_entries=2)
    first, second, third = (CacheKey("t1", "db1", name) for name in ("a", "b", "c"))
    cache.put(first, 1)
    clock.now += 1
    cache.put(second, 2)
    clock.now += 1
    # Touch the oldest so the middle entry becomes least recently used.
    assert cache.get(first) == 1
    clock.now += 1
    cache.put(third, 3)
    cache.put(CacheKey("t2", "db1", "a"), "other tenant")

    assert cache.get(second) is None
    assert cache.get(first) == 1
    assert cache.get(third) == 3
    assert cache.stats("t1").entry_count == 2
    assert cache.stats("t2").entry_count == 1


def test_invalidation_scopes_and_cleanup() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.put(CacheKey("t1", "db1", "a"), 1)
    cache.put(CacheKey("t1", "db2", "b"), 2)
    cache.put(CacheKey("t2", "db1", "c"), 3, ttl_s=1)

    assert cache.invalidate_database("t1", "db1") == 1
    assert cache.invalidate(CacheKey("t1", "db2", "b")) is True
    assert cache.invalidate(CacheKey("t1", "db2", "b")) is False

    clock.now += 5
    assert cache.cleanup_expired() == 1
    assert cache.stats().entry_count == 0

    cache.put(CacheKey("t1", "db1", "a"), 1)
    cache.put(CacheKey("t1", "db2", "b"), 2)
    assert cache.invalidate_tenant("t1") == 2
    cache.put(CacheKey("t3", None, "x"), 1)
    assert cache.clear() == 1


def test_stats_sum_hits() -> None:
    clock = _Clock()
    cache = _cache(clock)
    key = CacheKey("t1", "db1", "a")
    cache.put(key, 1)
    cache.get(key)
    cache.get(key)
    stats = cache.stats("t1")
    assert stats.to_dict() == {"entry_count": 1, "hit_count": 2}


def test_question_and_schema_hashes_are_stable() -> None:
    assert normalize_question("  Show   SALES\n") == "show sales"
    assert question_hash("Show sales") == question_hash("show   sales ")
    assert question_hash("show sales") != question_hash("show orders")
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert schema_hash({"a": 1, "b": 2}) == schema_hash({"b": 2, "a": 1})
