"""Secondary-attribute lookup over the durable ``cache_index`` table."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.exceptions import StaleIndexReference
from core.logging import get_logger
from services.caching.payloads import INDEXED_FIELDS, index_entries

logger = get_logger(__name__)


class IndexRegistry:
    """Maps (entity_type, index_key, index_value) to cache keys.

    Searches never scan the KV keyspace. Index rows whose cache entry has
    been evicted are dropped from results.
    """

    def __init__(self, cache: CacheService, database: Database, settings: Settings):
        self.cache = cache
        self.database = database
        self.settings = settings

    @staticmethod
    def entries_for(entity_type: str, payload: Dict[str, Any], cache_key: str) -> List[Dict[str, Any]]:
        return index_entries(entity_type, payload, cache_key)

    @staticmethod
    def indexed_fields(entity_type: str) -> Sequence[str]:
        return INDEXED_FIELDS.get(entity_type, ())

    async def register(self, entries: List[Dict[str, Any]]) -> int:
        """Upsert index rows; raises on failure."""
        return await self.database.upsert_index_entries(entries)

    async def search_by_index(self, entity_type: str, index_key: str, search_value: str,
                              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Substring match against index rows, resolved through the KV store."""
        if not search_value:
            return []
        rows = await self.database.search_index(entity_type, index_key, search_value, limit)

        cache_keys: List[str] = []
        seen = set()
        for row in rows:
            if row.cache_key not in seen:
                seen.add(row.cache_key)
                cache_keys.append(row.cache_key)

        payloads = await asyncio.gather(*(self.cache.get(key) for key in cache_keys))
        results = []
        for key, payload in zip(cache_keys, payloads):
            if payload is None:
                logger.debug("Dropping index hit", reason=str(StaleIndexReference(key)))
                continue
            results.append(payload)
        return results

    async def remove(self, entity_type: str, entity_ids: Sequence[str]) -> int:
        if not entity_ids:
            return 0
        return await self.database.delete_index_entries(entity_type, entity_ids)

    async def indexed_ids(self, entity_type: str) -> List[str]:
        return await self.database.list_index_entity_ids(entity_type)

    async def clear(self) -> int:
        return await self.database.clear_index()

    async def count(self, entity_type: Optional[str] = None) -> int:
        return await self.database.count_index(entity_type)
