"""Bulk preload of the organizational hierarchy into the KV store.

Each collection step reads active rows from the Source Store and, batch by
batch, submits one pipeline with the entity payloads, the ``all`` set members
and the parent relationship members, then upserts the matching index rows.
Steps run in a fixed order and there is no rollback: when a step fails the
collections loaded before it stay warm.
"""

import asyncio
import json
import time
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from constants import (
    ATTENDANCE, DIVISION, EMPLOYEE, JOB_ATTENDANCE_PRELOAD, JOB_FULL_PRELOAD,
    PRELOAD_ENTITY_TYPES, PRELOAD_NAMESPACES, RELATIONSHIP_TYPES, REQUIRED_ENTITY_TYPES,
    SECTION, SUBSECTION,
)
from core.cache import CacheService, chunked
from core.config import Settings
from core.database import Database
from core.exceptions import PartialPreloadFailure
from core.keys import all_key, entity_key, list_key, relationship_key
from core.logging import get_logger
from core.source_store import SourceStore
from models.cache import as_utc, utcnow
from services.caching.index_registry import IndexRegistry
from services.caching.jobs import JobTracker
from services.caching.lazy_loader import LazyLoader
from services.caching.models import PreloadJob, PreloadResult, StepResult
from services.caching.payloads import build_payload, parent_links
from services.caching.relationships import RelationshipGraph, make_edge

logger = get_logger(__name__)

RELATIONSHIPS_STEP = "relationships"

STEP_LABELS: Dict[str, str] = {
    DIVISION: "Divisions",
    SECTION: "Sections",
    SUBSECTION: "Sub-Sections",
    EMPLOYEE: "Employees",
    RELATIONSHIPS_STEP: "Relationships",
    ATTENDANCE: "Attendance",
}

ProgressFn = Callable[..., None]


def _notify(on_progress: Optional[ProgressFn], step: str, processed: int,
            total: Optional[int] = None, finished: bool = False) -> None:
    if on_progress is not None:
        on_progress(step, processed, total, finished=finished)


class PreloadOrchestrator:
    """Keeps the ``cache:`` and ``rel:`` namespaces warm.

    ``generation`` is bumped by ``invalidate_all``; a run that started under
    an older generation records its metadata as invalid so the next warmth
    check triggers a fresh rebuild.
    """

    def __init__(self, cache: CacheService, database: Database, source: SourceStore,
                 index: IndexRegistry, graph: RelationshipGraph, lazy: LazyLoader,
                 jobs: JobTracker, settings: Settings):
        self.cache = cache
        self.database = database
        self.source = source
        self.index = index
        self.graph = graph
        self.lazy = lazy
        self.jobs = jobs
        self.settings = settings
        self.generation = 0
        self.last_result: Optional[PreloadResult] = None

    # =========================================================================
    # Full preload
    # =========================================================================

    async def preload_all(self, triggered_by: str = "system",
                          on_progress: Optional[ProgressFn] = None) -> PreloadResult:
        """Load every collection, then relationships; raises PartialPreloadFailure."""
        started = time.monotonic()
        generation = self.generation
        log_id = await self.database.start_sync_log("full", triggered_by)
        result = PreloadResult(success=False, sync_log_id=log_id)
        payloads: Dict[str, List[Dict[str, Any]]] = {}
        completed: List[str] = []
        current = PRELOAD_ENTITY_TYPES[0]

        logger.info("Preload started", triggered_by=triggered_by, generation=generation)
        try:
            for entity_type in PRELOAD_ENTITY_TYPES:
                current = entity_type
                step, items = await self._preload_collection(entity_type, generation, on_progress)
                result.steps.append(step)
                payloads[entity_type] = items
                completed.append(entity_type)

            current = RELATIONSHIPS_STEP
            result.relationships = await self.build_relationships(payloads, on_progress)
            completed.append(RELATIONSHIPS_STEP)

        except Exception as e:
            await self.database.finish_sync_log(
                log_id, "failed",
                records_synced=result.total_records,
                indexes_built=result.total_indexes,
                error_message=f"{current}: {e}",
            )
            logger.error("Preload step failed", step=current, completed=completed, error=str(e))
            raise PartialPreloadFailure(current, completed, e) from e

        result.success = True
        result.invalidated_during_run = generation != self.generation
        result.duration_ms = int((time.monotonic() - started) * 1000)
        await self.database.finish_sync_log(
            log_id, "completed",
            records_synced=result.total_records,
            indexes_built=result.total_indexes,
        )
        self.last_result = result
        logger.info("Preload completed",
                    records=result.total_records,
                    indexes=result.total_indexes,
                    relationships=result.relationships,
                    duration_ms=result.duration_ms)
        return result

    async def _preload_collection(self, entity_type: str, generation: int,
                                  on_progress: Optional[ProgressFn]) -> Tuple[StepResult, List[Dict[str, Any]]]:
        started = time.monotonic()
        rows = await self.source.list_entities(entity_type)
        items = [p for p in (build_payload(entity_type, row) for row in rows) if p]
        total = len(items)
        ttl = self.settings.ttl_for(entity_type)
        set_key = all_key(entity_type)
        _notify(on_progress, entity_type, 0, total)

        ids: List[str] = []
        indexed = 0
        stored = True
        for batch in chunked(items, self.settings.preload_batch_size):
            entries: List[Dict[str, Any]] = []
            parent_keys: Set[Tuple[str, str]] = set()
            async with self.cache.pipeline() as pipe:
                for payload in batch:
                    entity_id = str(payload["id"])
                    key = entity_key(entity_type, entity_id)
                    pipe.set(key, payload, ttl)
                    pipe.sadd(set_key, entity_id)
                    for parent_type, parent_id in parent_links(entity_type, payload):
                        rel_key = relationship_key(parent_type, parent_id, entity_type)
                        pipe.sadd(rel_key, entity_id)
                        parent_keys.add((rel_key, parent_type))
                    entries.extend(self.index.entries_for(entity_type, payload, key))
                    ids.append(entity_id)
                pipe.expire(set_key, ttl)
                for rel_key, parent_type in parent_keys:
                    pipe.expire(rel_key, self.settings.ttl_for(parent_type))
            stored = stored and pipe.submitted

            indexed += await self.index.register(entries)
            _notify(on_progress, entity_type, len(ids), total)
            await asyncio.sleep(0)

        stored = await self.cache.set(list_key(entity_type), ids, ttl) and stored
        if not stored:
            logger.warning("Preload step not stored in KV store, metadata left invalid", step=entity_type)
        pruned = await self._prune_stale(entity_type, set(ids))

        size_bytes = sum(len(json.dumps(p, default=str)) for p in items)
        await self.database.upsert_metadata(
            cache_key=set_key,
            entity_type=entity_type,
            record_count=total,
            size_bytes=size_bytes,
            ttl_seconds=ttl,
            is_valid=stored and generation == self.generation,
        )

        step = StepResult(
            entity_type=entity_type,
            count=total,
            indexed=indexed,
            pruned=pruned,
            duration_ms=int((time.monotonic() - started) * 1000),
            stored=stored,
        )
        _notify(on_progress, entity_type, total, total, finished=True)
        logger.info("Preload step completed", step=entity_type, count=total, indexed=indexed, pruned=pruned)
        return step, items

    async def _prune_stale(self, entity_type: str, current_ids: Set[str]) -> int:
        """Remove ids cached or indexed earlier that the Source Store no longer returns."""
        cached = await self.cache.smembers(all_key(entity_type))
        indexed = set(await self.index.indexed_ids(entity_type))
        stale = sorted((cached | indexed) - current_ids)
        if not stale:
            return 0

        old_payloads = await asyncio.gather(*(self.cache.get(entity_key(entity_type, i)) for i in stale))
        links = []
        for entity_id, payload in zip(stale, old_payloads):
            if isinstance(payload, dict):
                for parent_type, parent_id in parent_links(entity_type, payload):
                    links.append((parent_type, parent_id, entity_type, entity_id))

        async with self.cache.pipeline() as pipe:
            pipe.delete(*[entity_key(entity_type, i) for i in stale])
            pipe.srem(all_key(entity_type), *stale)
        if links:
            await self.graph.remove_members(links)
        await self.index.remove(entity_type, stale)
        await self.database.delete_relationships_for(entity_type, stale)

        logger.info("Pruned stale cache entries", entity_type=entity_type, count=len(stale))
        return len(stale)

    # =========================================================================
    # Relationships
    # =========================================================================

    @staticmethod
    def derive_edges(payloads: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """Parent -> child edges from already-fetched payloads."""
        edges = []
        for child_type, items in payloads.items():
            for payload in items:
                for parent_type, parent_id in parent_links(child_type, payload):
                    if (parent_type, child_type) in RELATIONSHIP_TYPES:
                        edges.append(make_edge(parent_type, parent_id, child_type, payload["id"]))
        return edges

    async def build_relationships(self, payloads: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                                  on_progress: Optional[ProgressFn] = None) -> int:
        """Upsert relationship edges and rewrite their KV mirrors."""
        if payloads is None:
            payloads = {}
            for entity_type in PRELOAD_ENTITY_TYPES:
                rows = await self.source.list_entities(entity_type)
                payloads[entity_type] = [p for p in (build_payload(entity_type, r) for r in rows) if p]

        edges = self.derive_edges(payloads)
        _notify(on_progress, RELATIONSHIPS_STEP, 0, len(edges))
        outcome = await self.graph.replace_all(edges)
        _notify(on_progress, RELATIONSHIPS_STEP, len(edges), len(edges), finished=True)
        logger.info("Relationships built", **outcome)
        return outcome["edges"]

    # =========================================================================
    # Attendance range
    # =========================================================================

    def default_attendance_range(self) -> Tuple[str, str]:
        today = date.today()
        start = self.settings.preload_attendance_from or (
            today - timedelta(days=self.settings.attendance_preload_days)
        ).isoformat()
        return start, today.isoformat()

    async def preload_attendance_range(self, from_date: Optional[str] = None, to_date: Optional[str] = None,
                                       on_progress: Optional[ProgressFn] = None) -> Dict[str, Any]:
        """Stream attendance scans for a date range into the lazy namespace."""
        default_from, default_to = self.default_attendance_range()
        start = from_date or default_from
        end = to_date or default_to
        generation = self.generation

        total = await self.source.count_attendance(start, end)
        _notify(on_progress, ATTENDANCE, 0, total)

        async def page(offset: int, limit: int) -> List[Dict[str, Any]]:
            rows = await self.source.page_attendance(offset, limit, start, end)
            return [{**row, "id": row["attendance_id"]} for row in rows]

        processed = 0
        async for batch in self.lazy.streaming_load(ATTENDANCE, page):
            processed += len(batch)
            _notify(on_progress, ATTENDANCE, processed, total)
        await self.lazy.drain()

        await self.database.upsert_metadata(
            cache_key=f"cache:attendance:range:{start}:{end}",
            entity_type=ATTENDANCE,
            record_count=processed,
            ttl_seconds=self.settings.ttl_for(ATTENDANCE),
            is_valid=generation == self.generation,
            details={"from_date": start, "to_date": end},
        )
        _notify(on_progress, ATTENDANCE, processed, total, finished=True)
        logger.info("Attendance range preloaded", from_date=start, to_date=end, records=processed)
        return {"from_date": start, "to_date": end, "records": processed}

    # =========================================================================
    # Jobs
    # =========================================================================

    def start_preload_job(self, triggered_by: str = "system",
                          include_attendance: Optional[bool] = None,
                          from_date: Optional[str] = None,
                          to_date: Optional[str] = None) -> Tuple[PreloadJob, bool]:
        """Start (or join) the full preload job."""
        with_attendance = self.settings.preload_attendance if include_attendance is None else include_attendance
        step_names = list(PRELOAD_ENTITY_TYPES) + [RELATIONSHIPS_STEP]
        if with_attendance:
            step_names.append(ATTENDANCE)

        async def runner(job: PreloadJob) -> Dict[str, Any]:
            await self._seed_step_totals(job)
            try:
                result = await self.preload_all(job.triggered_by, on_progress=job.report)
            except PartialPreloadFailure as failure:
                job.fail_step(failure.step, str(failure.cause))
                raise
            outcome = result.to_dict()
            if with_attendance:
                outcome["attendance"] = await self.preload_attendance_range(from_date, to_date, on_progress=job.report)
            return outcome

        return self.jobs.start_job(JOB_FULL_PRELOAD, triggered_by,
                                   [(name, STEP_LABELS[name]) for name in step_names], runner)

    def start_attendance_job(self, triggered_by: str = "system", from_date: Optional[str] = None,
                             to_date: Optional[str] = None) -> Tuple[PreloadJob, bool]:
        async def runner(job: PreloadJob) -> Dict[str, Any]:
            return await self.preload_attendance_range(from_date, to_date, on_progress=job.report)

        return self.jobs.start_job(JOB_ATTENDANCE_PRELOAD, triggered_by,
                                   [(ATTENDANCE, STEP_LABELS[ATTENDANCE])], runner)

    async def _seed_step_totals(self, job: PreloadJob) -> None:
        try:
            job.set_step_totals(await self.source.count_rows())
        except Exception as e:
            logger.warning("Could not size preload steps", job_id=job.id, error=str(e))

    async def ensure_warm(self, triggered_by: str = "system") -> Optional[PreloadJob]:
        """Start a preload job when the cache is cold; returns the job if any."""
        if await self.is_cache_warm():
            return None
        job, _ = self.start_preload_job(triggered_by)
        return job

    # =========================================================================
    # State
    # =========================================================================

    async def is_cache_warm(self) -> bool:
        """True when every required collection has valid, unexpired metadata."""
        rows = await self.database.list_metadata(REQUIRED_ENTITY_TYPES)
        collections = {row.entity_type: row for row in rows if row.cache_key == all_key(row.entity_type)}
        if set(collections) != set(REQUIRED_ENTITY_TYPES):
            return False
        now = utcnow()
        for row in collections.values():
            expires_at = as_utc(row.expires_at)
            if not row.is_valid or (expires_at is not None and expires_at <= now):
                return False
        return True

    async def invalidate_all(self) -> Dict[str, int]:
        """Invalidate metadata and wipe preloaded KV keys, index rows and edges."""
        self.generation += 1
        invalidated = await self.database.invalidate_all_metadata()
        deleted = 0
        for namespace in PRELOAD_NAMESPACES:
            deleted += await self.cache.clear_namespace(namespace)
        index_rows = await self.index.clear()
        edges = await self.graph.clear()
        logger.info("Cache invalidated", generation=self.generation, metadata=invalidated,
                    keys=deleted, index_rows=index_rows, relationships=edges)
        return {
            "metadata_invalidated": invalidated,
            "keys_deleted": deleted,
            "index_rows_deleted": index_rows,
            "relationships_deleted": edges,
            "generation": self.generation,
        }

    async def get_stats(self) -> Dict[str, Any]:
        metadata = await self.database.list_metadata()
        syncs = await self.database.recent_syncs(10)
        cache_stats = self.cache.get_stats()
        valid = [m for m in metadata if m.is_valid]
        return {
            "is_warm": await self.is_cache_warm(),
            "generation": self.generation,
            "valid_collections": len(valid),
            "total_records": sum(m.record_count for m in valid),
            "total_size_bytes": sum(m.size_bytes for m in valid),
            "index_entries": await self.index.count(),
            "relationships": await self.graph.count(),
            "metadata": [m.model_dump(mode="json") for m in metadata],
            "recent_syncs": [s.model_dump(mode="json") for s in syncs],
            "hit_ratio": cache_stats["hit_rate"],
            "cache": cache_stats,
            "active_job": (self.jobs.active_job(JOB_FULL_PRELOAD).to_dict()
                           if self.jobs.active_job(JOB_FULL_PRELOAD) else None),
        }
