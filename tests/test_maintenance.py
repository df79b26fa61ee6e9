"""Scheduled maintenance tasks and their metrics."""

import pytest

from core.cache import CacheService
from core.keys import NamespaceRegistry
from services.caching import Evictor, MaintenanceScheduler
from tests.conftest import make_settings

TASKS = [
    "quick_cleanup",
    "deep_cleanup",
    "memory_optimization",
    "usage_analysis",
    "usage_snapshot",
    "nightly_optimization",
    "health_check",
]


class TestCleanup:

    async def test_quick_cleanup_removes_keys_about_to_expire(self, stack):
        cache = stack.cache
        await cache.set("lazy:employee:E1", {"id": "E1"}, 30)
        await cache.set("report:group:x", {"x": 1}, 10)
        await cache.set("lazy:employee:E2", {"id": "E2"}, 3600)

        outcome = await stack.maintenance.quick_cleanup()

        assert outcome["removed"] == 2
        assert await cache.exists("lazy:employee:E2")

    async def test_deep_cleanup_targets_evictable_namespaces(self, stack):
        cache = stack.cache
        await cache.set("search:employee:{}:1:50", {"items": []}, 200)
        await cache.client.set("report:group:no-ttl", "{}")
        await cache.set("lazy:division:D1", {"id": "D1"}, 3600)
        await cache.set("cache:division:D1", {"id": "D1"}, 200)

        outcome = await stack.maintenance.deep_cleanup()

        assert outcome["removed"] == 2
        assert outcome["namespaces"] == {"lazy": 0, "search": 1, "report": 1}
        assert await cache.exists("cache:division:D1")
        assert await cache.exists("lazy:division:D1")


class TestAnalysis:

    async def test_usage_analysis_recommendations(self, stack):
        for _ in range(60):
            stack.usage.record("employee", "E1")
        stack.usage.record("employee", "E2")
        stack.usage.record("division", "D1")

        summary = await stack.maintenance.analyze_usage()

        assert (summary["tracked"], summary["hot"], summary["cold"]) == (3, 1, 2)
        assert "Consider preloading more frequently accessed data" in summary["recommendations"]
        assert "Too much cold data, consider reducing TTL" in summary["recommendations"]

    async def test_memory_optimization_below_pressure(self, stack):
        outcome = await stack.maintenance.optimize_memory()

        assert outcome["eviction"]["evicted"] == 0
        assert outcome["fragmentation_warning"] is False

    async def test_nightly_optimization_writes_report(self, stack):
        stack.usage.record("employee", "E1")

        outcome = await stack.maintenance.nightly_optimization()

        assert outcome["refreshed"] == 1
        assert outcome["usage_snapshot"]["saved"] is True
        [report] = await stack.database.recent_performance_reports(1)
        assert report.id == outcome["report_id"]
        assert "cache_stats" in report.data

    async def test_health_check(self, stack):
        outcome = await stack.maintenance.health_check()
        assert outcome["healthy"] is True
        assert outcome["reconnected"] is False
        assert outcome["high_memory"] is False


class TestRunTask:

    async def test_metrics_are_recorded(self, stack):
        metrics = await stack.maintenance.run_task("health_check")

        assert metrics["runs"] == 1
        assert metrics["last_outcome"] == "success"
        assert metrics["last_result"]["healthy"] is True
        assert metrics["last_duration_ms"] >= 0

    async def test_failures_never_escape(self, stack, monkeypatch):
        async def broken():
            raise RuntimeError("snapshot store down")

        monkeypatch.setattr(stack.usage, "save", broken)

        metrics = await stack.maintenance.run_task("usage_snapshot")

        assert metrics["last_outcome"] == "failed"
        assert metrics["failures"] == 1
        assert metrics["last_error"] == "snapshot store down"

    async def test_unknown_task(self, stack):
        with pytest.raises(KeyError):
            await stack.maintenance.run_task("defragment")

    async def test_every_task_tolerates_disabled_cache(self, stack, tmp_path):
        settings = make_settings(tmp_path, cache_enabled=False)
        cache = CacheService(settings, NamespaceRegistry())
        await cache.startup()
        maintenance = MaintenanceScheduler(cache, stack.usage, Evictor(cache, stack.usage, settings),
                                           stack.data, stack.database, stack.scheduler, settings)

        for task in TASKS:
            metrics = await maintenance.run_task(task)
            assert metrics["last_outcome"] == "success", task


class TestScheduling:

    async def test_start_registers_every_task(self, stack):
        stack.settings.maintenance_enabled = True

        stack.maintenance.start()

        status = stack.maintenance.get_status()
        assert status["active"] is True
        assert sorted(job["id"] for job in status["jobs"]) == sorted(f"cache_{t}" for t in TASKS)
        assert set(status["metrics"]) == set(TASKS)

    async def test_disabled_maintenance_does_not_start(self, stack):
        stack.maintenance.start()
        assert stack.maintenance.get_status()["active"] is False
