"""Usage tracking, dynamic TTLs and lazy-key eviction."""

import asyncio
import time

import pytest

from constants import USAGE_STATS_KEY, Namespace
from core.keys import all_key, lazy_key
from services.caching import Evictor, UsageTracker


@pytest.fixture
def usage(cache, settings):
    return UsageTracker(cache, settings)


def hit(usage, entity_type, entity_id, times):
    for _ in range(times):
        usage.record(entity_type, entity_id)


def _static(value):
    async def fetch():
        return value
    return fetch


class TestDynamicTTL:

    @pytest.mark.parametrize("accesses,expected", [
        (0, 900),
        (10, 900),
        (11, 1800),
        (51, 3600),
        (101, 7200),
    ])
    def test_step_function(self, usage, accesses, expected):
        hit(usage, "employee", "E1", accesses)
        assert usage.calculate_dynamic_ttl("employee", "E1") == expected

    def test_disabled_returns_default(self, cache, tmp_path):
        from tests.conftest import make_settings
        settings = make_settings(tmp_path, dynamic_ttl_enabled=False)
        tracker = UsageTracker(cache, settings)
        hit(tracker, "employee", "E1", 200)
        assert tracker.calculate_dynamic_ttl("employee", "E1") == settings.dynamic_ttl_default


class TestUsageTracker:

    def test_top_accessed_and_classify(self, usage):
        hit(usage, "employee", "E1", 60)
        hit(usage, "employee", "E2", 20)
        hit(usage, "division", "D1", 2)

        assert usage.top_accessed(2) == [("employee:E1", 60), ("employee:E2", 20)]
        assert usage.classify(50, 5) == {"hot": ["employee:E1"], "cold": ["division:D1"]}

    async def test_snapshot_survives_restart(self, usage, cache, settings):
        hit(usage, "employee", "E1", 3)
        assert await usage.save()
        assert await cache.ttl(USAGE_STATS_KEY) > 0

        restarted = UsageTracker(cache, settings)
        hit(restarted, "employee", "E1", 1)
        assert await restarted.load() == 1
        assert restarted.access_count("employee", "E1") == 3

    async def test_load_without_snapshot(self, usage):
        assert await usage.load() == 0


class TestEvictor:

    async def _fill(self, cache, usage, count):
        now = time.time()
        for n in range(count):
            await cache.set(lazy_key("employee", f"E{n}"), {"id": f"E{n}"}, 600)
            usage.record("employee", f"E{n}")
            usage.last_access[f"employee:E{n}"] = now - (count - n)

    async def test_no_eviction_below_threshold(self, cache, usage, settings):
        await self._fill(cache, usage, 3)
        outcome = await Evictor(cache, usage, settings).evict_if_needed()
        assert outcome["evicted"] == 0

    async def test_evicts_least_recently_used_fraction(self, cache, usage, settings):
        await self._fill(cache, usage, 10)
        await cache.set("cache:employee:E0", {"id": "E0"}, 600)
        evictor = Evictor(cache, usage, settings)

        outcome = await evictor.evict_if_needed(threshold_bytes=1)

        assert outcome["evicted"] == 2
        assert outcome["candidates"] == 10
        assert await cache.exists(lazy_key("employee", "E0")) is False
        assert await cache.exists(lazy_key("employee", "E1")) is False
        assert await cache.exists(lazy_key("employee", "E2")) is True
        assert await cache.exists("cache:employee:E0") is True
        assert evictor.total_evicted == 2

    async def test_expired_keys_are_never_victims(self, cache, usage, settings):
        old = time.time() - 3600
        for n in range(10):
            await cache.set(lazy_key("employee", f"X{n}"), {"id": f"X{n}"}, 1)
            usage.record("employee", f"X{n}")
            usage.last_access[f"employee:X{n}"] = old
        await asyncio.sleep(1.1)
        await self._fill(cache, usage, 10)

        outcome = await Evictor(cache, usage, settings).evict_if_needed(force=True)

        assert outcome["candidates"] == 10
        assert outcome["evicted"] == 2
        assert outcome["used_after"] < outcome["used_before"]
        assert cache.registry.size(Namespace.LAZY) == 8

    async def test_eviction_frees_memory_and_keeps_preloaded_state(self, stack):
        await stack.preload.preload_all("test")
        for emp_no in ("E1", "E2"):
            await stack.data.get_employee(emp_no)
        for n in range(20):
            await stack.lazy.lazy_load("attendance", n, _static({"id": n, "scan_type": "IN"}))

        sets_before = {t: await stack.cache.scard(all_key(t)) for t in ("division", "section", "employee")}
        index_before = await stack.index.count()
        edges_before = await stack.graph.count()

        outcome = await stack.evictor.evict_if_needed(threshold_bytes=1)

        assert outcome["evicted"] >= 1
        assert outcome["used_after"] < outcome["used_before"]
        assert {t: await stack.cache.scard(all_key(t)) for t in sets_before} == sets_before
        assert await stack.index.count() == index_before
        assert await stack.graph.count() == edges_before
        assert await stack.preload.is_cache_warm()

    async def test_always_evicts_at_least_one(self, cache, usage, settings):
        await self._fill(cache, usage, 2)
        outcome = await Evictor(cache, usage, settings).evict_if_needed(force=True)
        assert outcome["evicted"] == 1
