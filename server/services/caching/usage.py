"""Usage tracking, dynamic TTL and priority-based eviction of lazy-loaded keys."""

import math
import time
from typing import Any, Dict, List, Optional, Tuple

from constants import Namespace, USAGE_STATS_KEY
from core.cache import CacheService
from core.config import Settings
from core.keys import usage_id_from_lazy_key
from core.logging import get_logger
from services.caching.models import UsageSnapshot

logger = get_logger(__name__)


def usage_id(entity_type: str, entity_id: Any) -> str:
    return f"{entity_type}:{entity_id}"


class UsageTracker:
    """In-memory access counters keyed by ``{entity_type}:{id}``.

    Counters are advisory: losing them only degrades TTL and eviction
    quality. They are saved to ``system:usage_stats`` on a timer and on
    shutdown and reloaded at startup.
    """

    def __init__(self, cache: CacheService, settings: Settings):
        self.cache = cache
        self.settings = settings
        self.counts: Dict[str, int] = {}
        self.last_access: Dict[str, float] = {}

    def record(self, entity_type: str, entity_id: Any) -> int:
        """Register one access and return the new count."""
        key = usage_id(entity_type, entity_id)
        self.counts[key] = self.counts.get(key, 0) + 1
        self.last_access[key] = time.time()
        return self.counts[key]

    def access_count(self, entity_type: str, entity_id: Any) -> int:
        return self.counts.get(usage_id(entity_type, entity_id), 0)

    def calculate_dynamic_ttl(self, entity_type: str, entity_id: Any) -> int:
        """Step function from access count to TTL seconds."""
        if not self.settings.dynamic_ttl_enabled:
            return self.settings.dynamic_ttl_default
        count = self.access_count(entity_type, entity_id)
        for threshold, ttl in self.settings.dynamic_ttl_thresholds:
            if count > threshold:
                return ttl
        return self.settings.dynamic_ttl_floor

    def top_accessed(self, limit: int = 100) -> List[Tuple[str, int]]:
        ranked = sorted(self.counts.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]

    def classify(self, hot_threshold: int = 50, cold_threshold: int = 5) -> Dict[str, List[str]]:
        """Split tracked ids into hot (>= hot_threshold) and cold (< cold_threshold)."""
        hot = [k for k, c in self.counts.items() if c >= hot_threshold]
        cold = [k for k, c in self.counts.items() if c < cold_threshold]
        return {"hot": sorted(hot), "cold": sorted(cold)}

    def recency_rank(self, key: str) -> Tuple[float, int, str]:
        """Sort key for eviction: least recently then least frequently used first."""
        ident = usage_id_from_lazy_key(key) or key
        return (self.last_access.get(ident, 0.0), self.counts.get(ident, 0), key)

    # =========================================================================
    # Snapshot boundary
    # =========================================================================

    def snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(counts=dict(self.counts), last_access=dict(self.last_access))

    def restore(self, snapshot: UsageSnapshot) -> None:
        """Merge a snapshot, keeping the larger count and later access per id."""
        for key, count in snapshot.counts.items():
            self.counts[key] = max(self.counts.get(key, 0), count)
        for key, ts in snapshot.last_access.items():
            self.last_access[key] = max(self.last_access.get(key, 0.0), ts)

    async def save(self) -> bool:
        saved = await self.cache.set(USAGE_STATS_KEY, self.snapshot().to_dict(), self.settings.usage_snapshot_ttl)
        if saved:
            logger.info("Usage statistics saved", tracked=len(self.counts))
        return saved

    async def load(self) -> int:
        data = await self.cache.get(USAGE_STATS_KEY)
        if not isinstance(data, dict):
            return 0
        self.restore(UsageSnapshot.from_dict(data))
        logger.info("Usage statistics loaded", tracked=len(self.counts))
        return len(self.counts)

    def reset(self) -> None:
        self.counts.clear()
        self.last_access.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked_entities": len(self.counts),
            "total_accesses": sum(self.counts.values()),
            "top": [{"key": k, "count": c} for k, c in self.top_accessed(10)],
        }


class Evictor:
    """Deletes the least valuable share of ``lazy:*`` keys under memory pressure.

    Only lazy payloads are candidates; preloaded collections, relationship
    mirrors and durable index rows are never touched.
    """

    def __init__(self, cache: CacheService, usage: UsageTracker, settings: Settings):
        self.cache = cache
        self.usage = usage
        self.settings = settings
        self.total_evicted = 0

    async def evict_if_needed(self, threshold_bytes: Optional[int] = None, force: bool = False) -> Dict[str, Any]:
        """Evict when used memory exceeds the threshold (default: memory ceiling)."""
        ceiling = self.settings.cache_memory_ceiling_bytes if threshold_bytes is None else threshold_bytes
        used_before = await self.cache.memory_usage()
        outcome: Dict[str, Any] = {
            "evicted": 0,
            "used_before": used_before,
            "used_after": used_before,
            "threshold": ceiling,
        }

        over = ceiling > 0 and used_before > ceiling
        if not (force or over):
            return outcome

        keys = await self.cache.namespace_keys(Namespace.LAZY)
        if not keys:
            logger.warning("Memory above threshold but no lazy keys to evict",
                           used_memory=used_before, threshold=ceiling)
            return outcome

        ranked = sorted(keys, key=self.usage.recency_rank)
        victims = ranked[:max(1, math.floor(len(ranked) * self.settings.eviction_fraction))]
        deleted = await self.cache.delete(*victims)
        used_after = await self.cache.memory_usage()
        self.total_evicted += deleted

        outcome.update({"evicted": deleted, "candidates": len(keys), "used_after": used_after})
        logger.info("Evicted low-priority lazy keys", evicted=deleted, candidates=len(keys),
                    used_before=used_before, used_after=used_after)
        return outcome
