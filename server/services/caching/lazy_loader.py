"""On-demand get-or-fetch caching and bounded streaming loads."""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from core.cache import CacheService
from core.config import Settings
from core.keys import lazy_key
from core.logging import get_logger
from services.caching.usage import UsageTracker

logger = get_logger(__name__)

FetchFn = Callable[[], Awaitable[Optional[Any]]]
PageFn = Callable[[int, int], Awaitable[List[Dict[str, Any]]]]


class LazyLoader:
    """Reads through ``lazy:{type}:{id}`` with usage-driven TTLs."""

    def __init__(self, cache: CacheService, usage: UsageTracker, settings: Settings):
        self.cache = cache
        self.usage = usage
        self.settings = settings
        self._pending_writes: Set[asyncio.Task] = set()

    async def lazy_load(self, entity_type: str, entity_id: Any, fetch_fn: FetchFn) -> Optional[Any]:
        """Return the cached entity or fetch, cache and return it.

        Source errors raised by ``fetch_fn`` propagate. A failed cache write
        does not; the fetched value is still returned.
        """
        key = lazy_key(entity_type, entity_id)
        cached = await self.cache.get(key)
        if cached is not None:
            self.usage.record(entity_type, entity_id)
            return cached

        data = await fetch_fn()
        if data is None:
            return None

        self.usage.record(entity_type, entity_id)
        ttl = self.usage.calculate_dynamic_ttl(entity_type, entity_id)
        if not await self.cache.set(key, data, ttl):
            logger.debug("Lazy cache write skipped", key=key)
        return data

    async def refresh_entity(self, entity_type: str, entity_id: Any, fetch_fn: FetchFn) -> Optional[Any]:
        """Fetch and overwrite the lazy entry regardless of what is cached."""
        key = lazy_key(entity_type, entity_id)
        data = await fetch_fn()
        if data is None:
            await self.cache.delete(key)
            return None
        await self.cache.set(key, data, self.usage.calculate_dynamic_ttl(entity_type, entity_id))
        return data

    async def invalidate(self, entity_type: str, entity_id: Any) -> bool:
        return await self.cache.delete(lazy_key(entity_type, entity_id)) > 0

    async def streaming_load(self, entity_type: str, query_fn: PageFn,
                             batch_size: Optional[int] = None,
                             id_field: str = "id") -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages from ``query_fn(offset, limit)`` until an empty or short page.

        Each yielded page is also written into the lazy namespace by a
        background task, so the next fetch is not blocked on the KV store.
        """
        size = batch_size or self.settings.streaming_batch_size
        offset = 0
        while True:
            batch = await query_fn(offset, size)
            if not batch:
                break

            self._schedule_write(entity_type, batch, id_field)
            yield batch

            offset += len(batch)
            if len(batch) < size:
                break
            await asyncio.sleep(self.settings.streaming_pause_seconds)

    def _schedule_write(self, entity_type: str, batch: List[Dict[str, Any]], id_field: str) -> None:
        task = asyncio.create_task(self._write_batch(entity_type, list(batch), id_field))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write_batch(self, entity_type: str, batch: List[Dict[str, Any]], id_field: str) -> int:
        written = 0
        try:
            async with self.cache.pipeline() as pipe:
                for item in batch:
                    entity_id = item.get(id_field)
                    if entity_id is None:
                        continue
                    ttl = self.usage.calculate_dynamic_ttl(entity_type, entity_id)
                    pipe.set(lazy_key(entity_type, entity_id), item, ttl)
                    written += 1
        except Exception as e:
            logger.warning("Streaming cache write failed", entity_type=entity_type,
                           batch=len(batch), error=str(e))
            return 0
        return written

    async def drain(self) -> None:
        """Wait for outstanding background batch writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)
