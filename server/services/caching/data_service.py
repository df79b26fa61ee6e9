"""Cache-first entity reads with Source Store fallback."""

import asyncio
import math
from typing import Any, Dict, List, Optional

from constants import DIVISION, EMPLOYEE, ENTITY_TYPES, SECTION, SUBSECTION
from core.cache import CacheService
from core.config import Settings
from core.keys import entity_key, list_key, search_key
from core.logging import get_logger
from core.source_store import ENTITY_MODELS, SourceStore
from services.caching.index_registry import IndexRegistry
from services.caching.lazy_loader import LazyLoader
from services.caching.payloads import build_payload
from services.caching.usage import UsageTracker

logger = get_logger(__name__)


class CacheDataService:
    """Entity getters used by request handlers.

    Lookup order: preloaded ``cache:{type}:{id}``, then the lazy namespace,
    then the Source Store (which populates the lazy namespace).
    """

    def __init__(self, cache: CacheService, source: SourceStore, lazy: LazyLoader,
                 index: IndexRegistry, usage: UsageTracker, settings: Settings):
        self.cache = cache
        self.source = source
        self.lazy = lazy
        self.index = index
        self.usage = usage
        self.settings = settings

    def _fetcher(self, entity_type: str, entity_id: Any):
        async def fetch() -> Optional[Dict[str, Any]]:
            row = await self.source.get_entity(entity_type, entity_id)
            return build_payload(entity_type, row) if row else None
        return fetch

    async def get_entity(self, entity_type: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        if entity_type not in ENTITY_MODELS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        payload = await self.cache.get(entity_key(entity_type, entity_id))
        if payload is not None:
            return payload
        return await self.lazy.lazy_load(entity_type, entity_id, self._fetcher(entity_type, entity_id))

    async def get_division(self, code: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(DIVISION, code)

    async def get_section(self, code: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(SECTION, code)

    async def get_sub_section(self, sub_section_id: Any) -> Optional[Dict[str, Any]]:
        return await self.get_entity(SUBSECTION, sub_section_id)

    async def get_employee(self, emp_no: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(EMPLOYEE, emp_no)

    async def batch_get(self, entity_type: str, ids: List[str]) -> List[Dict[str, Any]]:
        """Resolve ids in order, skipping ones that no longer exist."""
        results = await asyncio.gather(*(self.get_entity(entity_type, i) for i in ids))
        return [r for r in results if r is not None]

    # =========================================================================
    # Collections
    # =========================================================================

    async def _list_ids(self, entity_type: str) -> Optional[List[str]]:
        ids = await self.cache.get(list_key(entity_type))
        return ids if isinstance(ids, list) else None

    async def list_entities(self, entity_type: str) -> List[Dict[str, Any]]:
        ids = await self._list_ids(entity_type)
        if ids is not None:
            return await self.batch_get(entity_type, ids)
        rows = await self.source.list_entities(entity_type)
        return [p for p in (build_payload(entity_type, row) for row in rows) if p]

    async def list_divisions(self) -> List[Dict[str, Any]]:
        return await self.list_entities(DIVISION)

    async def list_sections(self, division_code: Optional[str] = None) -> List[Dict[str, Any]]:
        sections = await self.list_entities(SECTION)
        if division_code:
            sections = [s for s in sections if s.get("division_code") == division_code]
        return sections

    async def list_employees(self, page: int = 1, limit: int = 100) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, limit)
        ids = await self._list_ids(EMPLOYEE)
        if ids is None:
            rows = await self.source.page_employees((page - 1) * limit, limit)
            items = [p for p in (build_payload(EMPLOYEE, row) for row in rows) if p]
            total = (await self.source.count_rows())[EMPLOYEE]
        else:
            total = len(ids)
            items = await self.batch_get(EMPLOYEE, ids[(page - 1) * limit:page * limit])
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, entity_type: str, filters: Dict[str, Any],
                     page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Paginated filtered search with a short-lived result cache."""
        key = search_key(entity_type, filters, page, limit)
        cached = await self.cache.get(key)
        if isinstance(cached, dict):
            return cached

        result = await self.source.search(entity_type, filters, page, limit)
        result["items"] = [p for p in (build_payload(entity_type, row) for row in result["items"]) if p]
        await self.cache.set(key, result, self.settings.search_cache_ttl)
        return result

    async def search_by_index(self, entity_type: str, index_key: str, value: str,
                              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.index.search_by_index(entity_type, index_key, value, limit)

    # =========================================================================
    # Maintenance helpers
    # =========================================================================

    async def refresh_top_accessed(self, limit: Optional[int] = None) -> int:
        """Re-fetch the most accessed entities into the lazy namespace."""
        refreshed = 0
        for ident, _ in self.usage.top_accessed(limit or self.settings.preload_top_n):
            entity_type, _, entity_id = ident.partition(":")
            if entity_type not in ENTITY_TYPES or entity_type not in ENTITY_MODELS or not entity_id:
                continue
            try:
                if await self.lazy.refresh_entity(entity_type, entity_id, self._fetcher(entity_type, entity_id)):
                    refreshed += 1
            except Exception as e:
                logger.warning("Refresh of hot entity failed", entity=ident, error=str(e))
        logger.info("Refreshed top accessed entities", refreshed=refreshed)
        return refreshed

    async def check_health(self) -> Dict[str, Any]:
        kv_ok = await self.cache.ping()
        try:
            counts = await self.source.count_rows()
            source_ok = True
        except Exception as e:
            logger.warning("Source store health check failed", error=str(e))
            counts = {}
            source_ok = False
        return {
            "kv_store": "healthy" if kv_ok else ("disabled" if not self.cache.enabled else "unavailable"),
            "source_store": "healthy" if source_ok else "unavailable",
            "source_counts": counts,
            "cache_stats": self.cache.get_stats(),
        }
