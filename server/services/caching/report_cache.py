"""Cache for computed report payloads with pattern-based invalidation.

Callers address entries with a ``CacheKeySpec``:

- ``ExplicitKey("report:custom:...")`` uses the key as given.
- ``DerivedKey("group", {...})`` canonicalizes a fixed, ordered subset of
  the parameters into ``report:{type}:...``; missing or None fields become
  empty strings, so omitting a field and passing ``""`` hit the same entry.

When the KV store is disabled or disconnected every method returns its
neutral value (None, False, 0) and report generation simply recomputes.
"""

from typing import Any, Dict, List, Mapping, Optional

from constants import REPORT_AUDIT, REPORT_INDIVIDUAL, REPORT_PARAM_FIELDS, Namespace
from core.cache import CacheService
from core.config import Settings
from core.keys import namespace_pattern
from core.logging import get_logger
from services.caching.models import CacheKeySpec, DerivedKey, ExplicitKey

logger = get_logger(__name__)

ALL_REPORTS = namespace_pattern(Namespace.REPORT)


def _new_stats() -> Dict[str, int]:
    return {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}


def _field(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    return "" if value is None else str(value)


def generate_key(report_type: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Deterministic key for a report type and parameter bag."""
    p = {name: _field(params or {}, name) for name in REPORT_PARAM_FIELDS}

    if report_type == REPORT_INDIVIDUAL:
        parts = [p["employee_id"], p["from_date"], p["to_date"]]
    elif report_type == REPORT_AUDIT:
        parts = [p["from_date"], p["to_date"], p["grouping"],
                 p["division_id"], p["section_id"], p["sub_section_id"]]
    else:
        parts = [p["from_date"], p["to_date"],
                 p["division_id"], p["section_id"], p["sub_section_id"]]

    return ":".join([Namespace.REPORT.value, report_type, *parts])


def resolve_key(spec: CacheKeySpec) -> str:
    if isinstance(spec, ExplicitKey):
        return spec.key
    if isinstance(spec, DerivedKey):
        return generate_key(spec.report_type, spec.params)
    raise TypeError(f"Unsupported cache key spec: {type(spec).__name__}")


class ReportCache:
    """Report payload cache over the shared KV adapter."""

    def __init__(self, cache: CacheService, settings: Settings):
        self.cache = cache
        self.settings = settings
        self.default_ttl = settings.cache_ttl
        self.stats = _new_stats()

    generate_key = staticmethod(generate_key)

    @property
    def available(self) -> bool:
        return self.cache.is_available()

    async def get(self, spec: CacheKeySpec) -> Optional[Any]:
        """Decoded payload or None (miss, or cache unavailable)."""
        if not self.available:
            return None
        key = resolve_key(spec)
        value = await self.cache.get(key)
        if value is None:
            self.stats["misses"] += 1
            logger.debug("Report cache miss", key=key)
            return None
        self.stats["hits"] += 1
        logger.debug("Report cache hit", key=key)
        return value

    async def get_raw(self, spec: CacheKeySpec) -> Optional[str]:
        if not self.available:
            return None
        return await self.cache.get_raw(resolve_key(spec))

    async def set(self, spec: CacheKeySpec, data: Any, ttl: Optional[int] = None) -> bool:
        """Store a payload; non-string payloads are JSON encoded."""
        if not self.available:
            return False
        key = resolve_key(spec)
        ttl = ttl or self.default_ttl
        if isinstance(data, str):
            stored = await self.cache.set_raw(key, data, ttl)
        else:
            stored = await self.cache.set(key, data, ttl)
        if stored:
            self.stats["sets"] += 1
            logger.debug("Report cache set", key=key, ttl=ttl)
        else:
            self.stats["errors"] += 1
        return stored

    async def clear(self, spec: CacheKeySpec) -> bool:
        if not self.available:
            return False
        deleted = await self.cache.delete(resolve_key(spec))
        self.stats["deletes"] += deleted
        return deleted > 0

    async def clear_all(self, pattern: str = ALL_REPORTS) -> int:
        return await self._clear_patterns([pattern])

    async def clear_date_range(self, from_date: str, to_date: str) -> int:
        """Delete every report whose key carries this exact date range."""
        return await self._clear_patterns([
            f"report:*:{from_date}:{to_date}:*",
            f"report:*:{from_date}:{to_date}",
        ])

    async def clear_organization(self, division_id: str = "", section_id: str = "",
                                 sub_section_id: str = "") -> int:
        """Delete reports filtered on an organizational unit; empty parts match anything.

        At least one of the three ids is required; use ``clear_all`` to drop every report.
        """
        if not (division_id or section_id or sub_section_id):
            raise ValueError("clear_organization needs a division, section or sub-section id")
        parts = [value or "*" for value in (division_id, section_id, sub_section_id)]
        return await self._clear_patterns([f"report:*:{':'.join(parts)}"])

    async def _clear_patterns(self, patterns: List[str]) -> int:
        if not self.available:
            return 0
        keys = set()
        for pattern in patterns:
            keys.update(await self.cache.keys(pattern))
        if not keys:
            logger.info("No report cache keys to clear", patterns=patterns)
            return 0
        deleted = await self.cache.delete(*sorted(keys))
        self.stats["deletes"] += deleted
        logger.info("Report cache cleared", patterns=patterns, deleted=deleted)
        return deleted

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        hit_rate = round(self.stats["hits"] / lookups * 100, 2) if lookups else 0.0
        return {
            "enabled": self.cache.enabled,
            "connected": self.cache.connected,
            **self.stats,
            "hit_rate": hit_rate,
            "total_requests": lookups,
        }

    def reset_stats(self) -> None:
        self.stats = _new_stats()
        logger.info("Report cache statistics reset")

    async def get_keys_count(self, pattern: str = ALL_REPORTS) -> int:
        if not self.available:
            return 0
        return len(await self.cache.keys(pattern))

    async def get_info(self) -> Dict[str, Any]:
        if not self.available:
            return {
                "enabled": self.cache.enabled,
                "connected": False,
                "message": "Cache is disabled or not connected",
            }
        return {
            "enabled": True,
            "connected": True,
            "default_ttl": self.default_ttl,
            "keys_count": await self.get_keys_count(),
            "stats": self.get_stats(),
            "memory": await self.cache.memory_info(),
        }
