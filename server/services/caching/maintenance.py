"""Periodic cache maintenance on APScheduler cron triggers.

Every task is idempotent and safe to run alongside request traffic. Task
failures are logged and recorded in the metrics map; they never propagate
into the scheduler.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from constants import DEEP_CLEANUP_NAMESPACES, Namespace
from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.health import process_snapshot
from core.keys import namespace_pattern
from core.logging import get_logger, log_execution_time
from services.caching.data_service import CacheDataService
from services.caching.usage import Evictor, UsageTracker
from services.scheduler import CronScheduler

logger = get_logger(__name__)

QUICK_CLEANUP = "quick_cleanup"
DEEP_CLEANUP = "deep_cleanup"
MEMORY_OPTIMIZATION = "memory_optimization"
USAGE_ANALYSIS = "usage_analysis"
USAGE_SNAPSHOT = "usage_snapshot"
NIGHTLY_OPTIMIZATION = "nightly_optimization"
HEALTH_CHECK = "health_check"


@dataclass
class TaskMetrics:
    """Run counters for one maintenance task."""
    runs: int = 0
    failures: int = 0
    last_started_at: Optional[float] = None
    last_duration_ms: Optional[int] = None
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        started = (datetime.fromtimestamp(self.last_started_at, tz=timezone.utc).isoformat()
                   if self.last_started_at else None)
        return {
            "runs": self.runs,
            "failures": self.failures,
            "last_started_at": started,
            "last_duration_ms": self.last_duration_ms,
            "last_outcome": self.last_outcome,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class MaintenanceScheduler:
    """Registers and runs the cache maintenance tasks."""

    def __init__(self, cache: CacheService, usage: UsageTracker, evictor: Evictor,
                 data_service: CacheDataService, database: Database,
                 scheduler: CronScheduler, settings: Settings):
        self.cache = cache
        self.usage = usage
        self.evictor = evictor
        self.data_service = data_service
        self.database = database
        self.scheduler = scheduler
        self.settings = settings

        self.tasks: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            QUICK_CLEANUP: self.quick_cleanup,
            DEEP_CLEANUP: self.deep_cleanup,
            MEMORY_OPTIMIZATION: self.optimize_memory,
            USAGE_ANALYSIS: self.analyze_usage,
            USAGE_SNAPSHOT: self.save_usage_snapshot,
            NIGHTLY_OPTIMIZATION: self.nightly_optimization,
            HEALTH_CHECK: self.health_check,
        }
        self.schedules: Dict[str, str] = {
            QUICK_CLEANUP: settings.quick_cleanup_cron,
            DEEP_CLEANUP: settings.deep_cleanup_cron,
            MEMORY_OPTIMIZATION: settings.memory_optimization_cron,
            USAGE_ANALYSIS: settings.usage_analysis_cron,
            USAGE_SNAPSHOT: settings.usage_snapshot_cron,
            NIGHTLY_OPTIMIZATION: settings.nightly_optimization_cron,
            HEALTH_CHECK: settings.health_check_cron,
        }
        self.metrics: Dict[str, TaskMetrics] = {name: TaskMetrics() for name in self.tasks}

    def start(self) -> None:
        if not self.settings.maintenance_enabled:
            logger.info("Cache maintenance disabled")
            return
        for name, expression in self.schedules.items():
            self.scheduler.register_cron_job(f"cache_{name}", expression, self.run_task, name=name)
        self.scheduler.start()
        logger.info("Cache maintenance scheduled", tasks=len(self.schedules))

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    async def run_task(self, name: str) -> Dict[str, Any]:
        """Run one task by name and record its outcome."""
        if name not in self.tasks:
            raise KeyError(name)

        metrics = self.metrics[name]
        metrics.runs += 1
        metrics.last_started_at = time.time()
        start = time.perf_counter()
        try:
            result = await self.tasks[name]()
            metrics.last_outcome = "success"
            metrics.last_error = None
            metrics.last_result = result
        except Exception as e:
            metrics.failures += 1
            metrics.last_outcome = "failed"
            metrics.last_error = str(e)
            logger.error("Maintenance task failed", task=name, error=str(e))
        finally:
            end = time.perf_counter()
            metrics.last_duration_ms = int((end - start) * 1000)
            log_execution_time(logger, name, start, end, outcome=metrics.last_outcome)
        return metrics.to_dict()

    # =========================================================================
    # Tasks
    # =========================================================================

    async def quick_cleanup(self) -> Dict[str, Any]:
        """Delete keys that are about to expire anyway."""
        threshold = self.settings.quick_cleanup_ttl_threshold
        doomed: List[str] = []
        scanned = 0
        for namespace in Namespace:
            for key in await self.cache.scan(namespace_pattern(namespace)):
                scanned += 1
                ttl = await self.cache.ttl(key)
                if 0 < ttl < threshold:
                    doomed.append(key)
        removed = await self.cache.delete(*doomed) if doomed else 0
        logger.info("Quick cleanup completed", scanned=scanned, removed=removed)
        return {"scanned": scanned, "removed": removed}

    async def deep_cleanup(self) -> Dict[str, Any]:
        """Sweep evictable namespaces for keys without TTL or close to expiry."""
        threshold = self.settings.deep_cleanup_ttl_threshold
        per_namespace: Dict[str, int] = {}
        for namespace in DEEP_CLEANUP_NAMESPACES:
            doomed = []
            for key in await self.cache.namespace_keys(namespace):
                ttl = await self.cache.ttl(key)
                if ttl == -1 or 0 <= ttl < threshold:
                    doomed.append(key)
            per_namespace[namespace.value] = await self.cache.delete(*doomed) if doomed else 0
        removed = sum(per_namespace.values())
        logger.info("Deep cleanup completed", removed=removed, **per_namespace)
        return {"removed": removed, "namespaces": per_namespace}

    async def optimize_memory(self) -> Dict[str, Any]:
        """Evict under memory pressure and flag fragmentation."""
        info = await self.cache.memory_info()
        if not info:
            return {"skipped": "cache unavailable"}

        used = info.get("used_memory", 0)
        maximum = info.get("maxmemory", 0)
        fragmentation = info.get("mem_fragmentation_ratio", 0.0)
        result: Dict[str, Any] = {"used_memory": used, "maxmemory": maximum,
                                  "fragmentation_ratio": fragmentation}

        if maximum:
            threshold = int(maximum * self.settings.memory_pressure_ratio)
            if used > threshold:
                logger.warning("High cache memory usage, evicting", used_memory=used, maxmemory=maximum)
            result["eviction"] = await self.evictor.evict_if_needed(threshold_bytes=threshold)
        else:
            result["eviction"] = await self.evictor.evict_if_needed()

        result["fragmentation_warning"] = fragmentation > self.settings.fragmentation_warn_ratio
        if result["fragmentation_warning"]:
            logger.warning("High cache memory fragmentation, consider restarting the KV store",
                           fragmentation_ratio=fragmentation)
        return result

    async def analyze_usage(self) -> Dict[str, Any]:
        """Classify tracked entities into hot and cold and suggest tuning."""
        buckets = self.usage.classify(self.settings.usage_hot_threshold, self.settings.usage_cold_threshold)
        tracked = len(self.usage.counts)
        hit_rate = self.cache.get_stats()["hit_rate"]

        recommendations = []
        if hit_rate < self.settings.hit_rate_target:
            recommendations.append("Consider preloading more frequently accessed data")
        if tracked and len(buckets["cold"]) > tracked * 0.5:
            recommendations.append("Too much cold data, consider reducing TTL")

        summary = {
            "tracked": tracked,
            "hot": len(buckets["hot"]),
            "cold": len(buckets["cold"]),
            "hit_rate": hit_rate,
            "recommendations": recommendations,
        }
        logger.info("Usage analysis completed", **summary)
        return summary

    async def save_usage_snapshot(self) -> Dict[str, Any]:
        return {"saved": await self.usage.save(), "tracked": len(self.usage.counts)}

    async def nightly_optimization(self) -> Dict[str, Any]:
        """Deep cleanup, re-warm hot entities, optimize memory, save usage, report."""
        result = {
            "deep_cleanup": await self.deep_cleanup(),
            "refreshed": await self.data_service.refresh_top_accessed(),
            "memory": await self.optimize_memory(),
            "usage_snapshot": await self.save_usage_snapshot(),
        }
        result["report_id"] = await self.generate_performance_report()
        return result

    async def health_check(self) -> Dict[str, Any]:
        """Ping the KV store, reconnect on failure and flag high memory usage."""
        if not self.cache.enabled:
            return {"status": "disabled"}

        healthy = await self.cache.ping()
        reconnected = False
        if not healthy:
            logger.error("KV store health check failed, reconnecting")
            reconnected = await self.cache.reconnect()

        used = await self.cache.memory_usage()
        high_memory = used > self.settings.memory_alarm_bytes
        if high_memory:
            logger.warning("High cache memory usage", used_mb=round(used / 1024 / 1024))
        return {"healthy": healthy, "reconnected": reconnected, "used_memory": used, "high_memory": high_memory}

    async def generate_performance_report(self) -> Optional[int]:
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cache_stats": self.cache.get_stats(),
            "usage": self.usage.get_stats(),
            "maintenance_metrics": {name: m.to_dict() for name, m in self.metrics.items()},
            "system": {
                **process_snapshot(),
                "cache_enabled": self.cache.enabled,
                "cache_connected": self.cache.connected,
            },
        }
        report_id = await self.database.add_performance_report(report)
        logger.info("Performance report generated", report_id=report_id)
        return report_id

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self.scheduler.running,
            "jobs": self.scheduler.get_all_jobs(),
            "schedules": dict(self.schedules),
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
            "cache_stats": self.cache.get_stats(),
            "usage": self.usage.get_stats(),
        }
