"""KV adapter over the in-memory backend, plus degraded-mode behavior."""

import asyncio

import pytest

from constants import Namespace
from core.cache import CacheBatch, CacheService, chunked
from core.keys import NamespaceRegistry, lazy_key
from core.memory_backend import MemoryKVStore
from tests.conftest import make_settings


class TestMemoryKVStore:

    async def test_ttl_reports_missing_and_persistent_keys(self):
        store = MemoryKVStore()
        await store.set("plain", "v")
        await store.setex("timed", 120, "v")

        assert await store.ttl("missing") == -2
        assert await store.ttl("plain") == -1
        assert 0 < await store.ttl("timed") <= 120

    async def test_srem_deletes_empty_set(self):
        store = MemoryKVStore()
        await store.sadd("rel:division:D1:sections", "S1", "S2")
        await store.srem("rel:division:D1:sections", "S1", "S2")

        assert await store.exists("rel:division:D1:sections") == 0
        assert await store.smembers("rel:division:D1:sections") == set()

    async def test_wrong_type_raises(self):
        store = MemoryKVStore()
        await store.sadd("members", "a")
        with pytest.raises(TypeError):
            await store.get("members")

    async def test_pipeline_applies_commands_in_order(self):
        store = MemoryKVStore()
        pipe = store.pipeline()
        pipe.setex("cache:division:D1", 60, "{}")
        pipe.sadd("cache:division:all", "D1")
        pipe.delete("cache:division:D1")
        assert len(pipe) == 3

        results = await pipe.execute()

        assert results == [True, 1, 1]
        assert await store.get("cache:division:D1") is None
        assert await store.smembers("cache:division:all") == {"D1"}

    async def test_memory_info_after_expiry(self):
        store = MemoryKVStore()
        await store.setex(lazy_key("employee", "E1"), 1, "x" * 50)
        await store.setex(lazy_key("employee", "E2"), 600, "y" * 50)
        await asyncio.sleep(1.1)

        info = await store.info("memory")

        assert info["used_memory"] == len(lazy_key("employee", "E2")) + 50
        assert await store.exists(lazy_key("employee", "E1")) == 0

    async def test_keys_glob(self):
        store = MemoryKVStore()
        for key in ("report:group:a", "report:audit:b", "lazy:employee:E1"):
            await store.set(key, "1")
        assert sorted(await store.keys("report:*")) == ["report:audit:b", "report:group:a"]


class TestCacheService:

    async def test_json_round_trip_and_stats(self, cache):
        assert await cache.set("cache:division:D1", {"id": "D1", "name": "Finance"}, 60)
        assert await cache.get("cache:division:D1") == {"id": "D1", "name": "Finance"}
        assert await cache.get("cache:division:D2") is None

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0

    async def test_lazy_keys_are_tracked_in_registry(self, cache):
        await cache.set(lazy_key("employee", "E1"), {"id": "E1"}, 60)
        await cache.set("cache:employee:E1", {"id": "E1"}, 60)

        assert await cache.namespace_keys(Namespace.LAZY) == ["lazy:employee:E1"]

        await cache.delete("lazy:employee:E1")
        assert cache.registry.size(Namespace.LAZY) == 0

    async def test_expired_lazy_keys_leave_the_registry(self, cache):
        await cache.set(lazy_key("employee", "E1"), {"id": "E1"}, 1)
        await cache.set(lazy_key("employee", "E2"), {"id": "E2"}, 600)
        await asyncio.sleep(1.1)

        assert await cache.namespace_keys(Namespace.LAZY) == ["lazy:employee:E2"]
        assert cache.registry.keys(Namespace.LAZY) == {"lazy:employee:E2"}
        assert await cache.memory_usage() > 0

    async def test_reused_batch_tracks_only_new_writes(self, cache):
        batch = CacheBatch(cache)
        batch.set(lazy_key("employee", "E1"), {"id": "E1"}, 60)
        assert await batch.submit()
        await cache.delete(lazy_key("employee", "E1"))

        batch.set(lazy_key("employee", "E2"), {"id": "E2"}, 60)
        assert await batch.submit()

        assert cache.registry.keys(Namespace.LAZY) == {"lazy:employee:E2"}
        assert batch.submitted

    async def test_pipeline_submits_on_exit(self, cache):
        async with cache.pipeline() as pipe:
            pipe.set("cache:section:S1", {"id": "S1"}, 60)
            pipe.sadd("cache:section:all", "S1")
            pipe.expire("cache:section:all", 60)
            assert await cache.get("cache:section:S1") is None

        assert await cache.get("cache:section:S1") == {"id": "S1"}
        assert await cache.smembers("cache:section:all") == {"S1"}

    async def test_pipeline_discarded_when_body_raises(self, cache):
        with pytest.raises(RuntimeError):
            async with cache.pipeline() as pipe:
                pipe.set("cache:section:S9", {"id": "S9"}, 60)
                raise RuntimeError("boom")

        assert await cache.exists("cache:section:S9") is False

    async def test_clear_namespace(self, cache):
        await cache.set("search:employee:{}:1:50", {"items": []}, 60)
        await cache.set("cache:employee:E1", {"id": "E1"}, 60)

        assert await cache.clear_namespace(Namespace.SEARCH) == 1
        assert await cache.exists("cache:employee:E1")

    async def test_disabled_cache_returns_neutral_values(self, tmp_path):
        service = CacheService(make_settings(tmp_path, cache_enabled=False), NamespaceRegistry())
        assert await service.startup() is False

        assert await service.get("anything") is None
        assert await service.set("anything", 1) is False
        assert await service.delete("anything") == 0
        assert await service.ttl("anything") == -2
        assert await service.smembers("rel:division:D1:sections") == set()
        assert await service.keys("*") == []
        assert await service.ping() is False
        assert await service.memory_info() == {}
        async with service.pipeline() as pipe:
            pipe.set("cache:division:D1", {"id": "D1"})
        assert pipe.submitted is False
        assert await service.get_info() == {
            "enabled": False,
            "connected": False,
            "message": "Cache is disabled or not connected",
        }

    async def test_unreachable_redis_degrades(self, tmp_path):
        settings = make_settings(
            tmp_path,
            cache_backend="redis",
            redis_host="127.0.0.1",
            redis_port=1,
            cache_max_retries=1,
            cache_retry_backoff=0.01,
            cache_connect_timeout=0.5,
        )
        service = CacheService(settings, NamespaceRegistry())

        assert await service.startup() is False
        assert service.is_available() is False
        assert await service.get("report:group:x") is None
        assert await service.set("report:group:x", {"a": 1}) is False

    def test_backoff_is_capped(self, tmp_path):
        service = CacheService(make_settings(tmp_path, cache_retry_backoff=0.5, cache_retry_backoff_cap=2.0))
        assert [service._backoff_delay(n) for n in range(5)] == [0.5, 1.0, 2.0, 2.0, 2.0]


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []
