from __future__ import annotations

import asyncio
import json

from cache_analyzer import CacheAnalyzer
from cache_manager import CacheManager, namespace_of
from cache_monitor import CacheMonitor
from metrics import metrics_collector


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.data: dict[str, str] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def flushdb(self):
        self.data.clear()


def test_namespace_of_key_shapes():
    assert namespace_of("match:KR_1") == "match"
    assert namespace_of("ai_analysis_KR_1_abc") == "ai_analysis"
    assert namespace_of("single") == "single"


def test_l1_roundtrip_and_expiry():
    cache = CacheManager()

    async def scenario():
        await cache.set("match:1", {"a": 1}, 60)
        assert await cache.get("match:1") == {"a": 1}
        cache.l1["match:1"]["expiresAt"] = 0
        assert await cache.get("match:1") is None

    asyncio.run(scenario())
    assert cache.get_stats()["l1CacheStats"]["hits"] == 1
    assert cache.get_stats()["l1CacheStats"]["misses"] == 1


def test_set_normalizes_ttl():
    cache = CacheManager()
    assert asyncio.run(cache.set("k:1", 1, -3)) == 300


def test_l1_eviction_when_full():
    cache = CacheManager(max_keys=2)

    async def scenario():
        await cache.set("a:1", 1, 10)
        await cache.get("a:1")
        await cache.set("b:1", 2, 100)
        await cache.set("c:1", 3, 100)

    asyncio.run(scenario())
    assert set(cache.l1) == {"b:1", "c:1"}
    assert metrics_collector.cache["a"]["evictions"] == 1


def test_l2_fallback_promotes_to_l1():
    cache = CacheManager()
    cache.l2 = FakeRedis()
    cache.l2_connected = True
    cache.l2.data["ranking:kr"] = json.dumps([1, 2])

    assert asyncio.run(cache.get("ranking:kr")) == [1, 2]
    assert "ranking:kr" in cache.l1


def test_l2_failures_do_not_break_reads():
    cache = CacheManager()
    cache.l2 = FakeRedis(fail=True)
    cache.l2_connected = True

    async def scenario():
        await cache.set("match:2", {"ok": True}, 60)
        return await cache.get("match:2"), await cache.get("match:missing")

    assert asyncio.run(scenario()) == ({"ok": True}, None)


def test_remember_calls_loader_once():
    cache = CacheManager()
    calls = []

    async def loader():
        calls.append(1)
        return {"value": len(calls)}

    async def scenario():
        first = await cache.remember("static_data:x", 60, loader)
        second = await cache.remember("static_data:x", 60, loader)
        return first, second

    assert asyncio.run(scenario()) == ({"value": 1}, {"value": 1})
    assert len(calls) == 1


def test_remember_skips_none():
    cache = CacheManager()

    async def loader():
        return None

    asyncio.run(cache.remember("none:1", 60, loader))
    assert "none:1" not in cache.l1


def test_delete_flush_and_namespace_eviction():
    cache = CacheManager()

    async def scenario():
        await cache.set("tierlist:all", [1], 60)
        await cache.set("tierlist:S", [2], 60)
        await cache.set("ranking:kr", [3], 60)
        assert await cache.delete("ranking:kr") is True
        assert await cache.delete("ranking:kr") is False
        assert cache.evict_namespace("tierlist") == 2
        await cache.set("x:1", 1, 60)
        await cache.flush()

    asyncio.run(scenario())
    assert cache.l1 == {}


def test_cache_monitor_counts_and_hit_rate():
    monitor = CacheMonitor()
    monitor.record_event("k", "hit")
    monitor.record_event("k", "miss")
    monitor.record_event("k", "set")
    monitor.record_event("k", "bogus")
    stats = monitor.get_stats("k")
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["sets"] == 1
    assert stats["hitRate"] == 50.0

    monitor.set_enabled(False)
    monitor.record_event("k", "hit")
    assert monitor.get_stats("k")["hits"] == 1


def test_cache_analyzer_report_and_optimize():
    cache = CacheManager()
    analyzer = CacheAnalyzer()

    async def scenario():
        await cache.set("cold:1", 1, 60)
        await cache.set("warm:1", 1, 60)
        cache.l1["warm:1"]["expiresAt"] = 0

    asyncio.run(scenario())
    analyzer.record_query("cold", from_cache=False)
    analyzer.query_log["cold"]["lastAccessed"] = 0
    analyzer.record_query("hot", from_cache=True)

    analysis = analyzer.analyze_cache(cache.snapshot())
    assert analysis["queries"]["totalQueries"] == 2
    assert analysis["queries"]["hitRate"] == 50.0
    assert "Cache performance report" in analyzer.generate_report(cache.snapshot())

    result = analyzer.optimize(cache)
    assert result["coldOperations"] == ["cold"]
    assert result["evictedEntries"] == 1
    assert result["purgedEntries"] == 1
    assert cache.l1 == {}
