"""Async database service for the durable cache tables (SQLModel + SQLAlchemy 2.0)."""

from datetime import timedelta
from typing import Dict, Any, Iterable, List, Optional, Sequence, Tuple
from sqlmodel import SQLModel, select
from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError
from contextlib import asynccontextmanager

from core.config import Settings
from models.cache import (
    CACHE_TABLES, CacheIndex, CacheRelationship, CacheMetadata, CacheSyncLog,
    CachePerformanceReport, utcnow,
)
from core.logging import get_logger

logger = get_logger(__name__)

IndexKey = Tuple[str, str, str]
EdgeKey = Tuple[str, str, str, str]


def create_engine_for(url: str, settings: Settings) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to pooled dialects."""
    kwargs: Dict[str, Any] = {"echo": settings.database_echo, "future": True}
    if not (url.startswith("sqlite") and ":memory:" in url):
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
    return create_async_engine(url, **kwargs)


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), max(1, size)):
        yield items[start:start + size]


class Database:
    """Async database service for index, relationship, metadata and sync-log rows.

    Bulk writes raise so the preload orchestrator can record a failed step.
    Reads used on request paths log and return neutral values.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create the cache tables."""
        try:
            self.engine = create_engine_for(self.settings.database_url, self.settings)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all, tables=CACHE_TABLES)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Index registry rows
    # ============================================================================

    async def upsert_index_entries(self, entries: List[Dict[str, Any]]) -> int:
        """Insert or update index rows keyed by (entity_type, entity_id, index_key).

        Rows are written in chunks of ``preload_batch_size``; the last write
        for a natural key wins.
        """
        if not entries:
            return 0

        latest: Dict[IndexKey, Dict[str, Any]] = {}
        for entry in entries:
            key = (entry["entity_type"], str(entry["entity_id"]), entry["index_key"])
            latest[key] = entry

        written = 0
        for chunk in _chunks(list(latest.items()), self.settings.preload_batch_size):
            written += await self._write_index_chunk(dict(chunk))
        return written

    async def _write_index_chunk(self, chunk: Dict[IndexKey, Dict[str, Any]], retry: bool = True) -> int:
        try:
            async with self.get_session() as session:
                by_type: Dict[str, List[str]] = {}
                for entity_type, entity_id, _ in chunk:
                    by_type.setdefault(entity_type, []).append(entity_id)

                existing: Dict[IndexKey, CacheIndex] = {}
                for entity_type, ids in by_type.items():
                    stmt = select(CacheIndex).where(
                        CacheIndex.entity_type == entity_type,
                        CacheIndex.entity_id.in_(set(ids)),
                    )
                    result = await session.execute(stmt)
                    for row in result.scalars().all():
                        existing[(row.entity_type, row.entity_id, row.index_key)] = row

                for key, entry in chunk.items():
                    value = "" if entry.get("index_value") is None else str(entry["index_value"])
                    row = existing.get(key)
                    if row:
                        row.index_value = value
                        row.cache_key = entry["cache_key"]
                        row.updated_at = utcnow()
                    else:
                        session.add(CacheIndex(
                            entity_type=key[0],
                            entity_id=key[1],
                            index_key=key[2],
                            index_value=value,
                            cache_key=entry["cache_key"],
                        ))

                await session.commit()
                return len(chunk)

        except IntegrityError:
            # Another writer inserted the same natural key between select and insert
            if retry:
                return await self._write_index_chunk(chunk, retry=False)
            raise

    async def search_index(self, entity_type: str, index_key: str, search_value: str,
                           limit: Optional[int] = None) -> List[CacheIndex]:
        """Substring match on index_value."""
        limit = limit or self.settings.index_search_limit
        try:
            async with self.get_session() as session:
                stmt = (
                    select(CacheIndex)
                    .where(
                        CacheIndex.entity_type == entity_type,
                        CacheIndex.index_key == index_key,
                        CacheIndex.index_value.contains(search_value, autoescape=True),
                    )
                    .order_by(CacheIndex.index_value)
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Index search failed", entity_type=entity_type,
                         index_key=index_key, error=str(e))
            return []

    async def list_index_entity_ids(self, entity_type: str) -> List[str]:
        """Distinct entity ids that have index rows for a type."""
        async with self.get_session() as session:
            stmt = select(CacheIndex.entity_id).where(CacheIndex.entity_type == entity_type).distinct()
            result = await session.execute(stmt)
            return [row for row in result.scalars().all()]

    async def delete_index_entries(self, entity_type: str, entity_ids: Sequence[str]) -> int:
        """Remove every index row of the given entities."""
        deleted = 0
        for chunk in _chunks(list(entity_ids), self.settings.preload_batch_size):
            async with self.get_session() as session:
                stmt = delete(CacheIndex).where(
                    CacheIndex.entity_type == entity_type,
                    CacheIndex.entity_id.in_(chunk),
                )
                result = await session.execute(stmt)
                await session.commit()
                deleted += result.rowcount or 0
        return deleted

    async def clear_index(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(CacheIndex))
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Relationship edges
    # ============================================================================

    async def upsert_relationships(self, edges: List[Dict[str, Any]]) -> int:
        """Insert or update edges keyed by (parent_type, parent_id, child_type, child_id)."""
        if not edges:
            return 0

        latest: Dict[EdgeKey, Dict[str, Any]] = {}
        for edge in edges:
            key = (edge["parent_type"], str(edge["parent_id"]), edge["child_type"], str(edge["child_id"]))
            latest[key] = edge

        written = 0
        for chunk in _chunks(list(latest.items()), self.settings.preload_batch_size):
            written += await self._write_edge_chunk(dict(chunk))
        return written

    async def _write_edge_chunk(self, chunk: Dict[EdgeKey, Dict[str, Any]], retry: bool = True) -> int:
        try:
            async with self.get_session() as session:
                by_parent: Dict[Tuple[str, str], List[str]] = {}
                for parent_type, parent_id, child_type, _ in chunk:
                    by_parent.setdefault((parent_type, child_type), []).append(parent_id)

                existing: Dict[EdgeKey, CacheRelationship] = {}
                for (parent_type, child_type), parent_ids in by_parent.items():
                    stmt = select(CacheRelationship).where(
                        CacheRelationship.parent_type == parent_type,
                        CacheRelationship.child_type == child_type,
                        CacheRelationship.parent_id.in_(set(parent_ids)),
                    )
                    result = await session.execute(stmt)
                    for row in result.scalars().all():
                        existing[(row.parent_type, row.parent_id, row.child_type, row.child_id)] = row

                for key, edge in chunk.items():
                    row = existing.get(key)
                    if row:
                        row.relationship_type = edge["relationship_type"]
                        row.updated_at = utcnow()
                    else:
                        session.add(CacheRelationship(
                            parent_type=key[0],
                            parent_id=key[1],
                            child_type=key[2],
                            child_id=key[3],
                            relationship_type=edge["relationship_type"],
                        ))

                await session.commit()
                return len(chunk)

        except IntegrityError:
            if retry:
                return await self._write_edge_chunk(chunk, retry=False)
            raise

    async def list_relationships(self, parent_type: Optional[str] = None,
                                 parent_id: Optional[str] = None,
                                 child_type: Optional[str] = None) -> List[CacheRelationship]:
        """Durable edges, used to rebuild KV mirrors."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheRelationship)
                if parent_type:
                    stmt = stmt.where(CacheRelationship.parent_type == parent_type)
                if parent_id is not None:
                    stmt = stmt.where(CacheRelationship.parent_id == str(parent_id))
                if child_type:
                    stmt = stmt.where(CacheRelationship.child_type == child_type)
                result = await session.execute(stmt.order_by(CacheRelationship.id))
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to list relationships", parent_type=parent_type, error=str(e))
            return []

    async def delete_relationships_for(self, entity_type: str, entity_ids: Sequence[str]) -> int:
        """Remove edges where the entities appear as parent or child."""
        deleted = 0
        for chunk in _chunks(list(entity_ids), self.settings.preload_batch_size):
            async with self.get_session() as session:
                as_child = await session.execute(delete(CacheRelationship).where(
                    CacheRelationship.child_type == entity_type,
                    CacheRelationship.child_id.in_(chunk),
                ))
                as_parent = await session.execute(delete(CacheRelationship).where(
                    CacheRelationship.parent_type == entity_type,
                    CacheRelationship.parent_id.in_(chunk),
                ))
                await session.commit()
                deleted += (as_child.rowcount or 0) + (as_parent.rowcount or 0)
        return deleted

    async def delete_relationships_by_id(self, row_ids: Sequence[int]) -> int:
        deleted = 0
        for chunk in _chunks(list(row_ids), self.settings.preload_batch_size):
            async with self.get_session() as session:
                result = await session.execute(delete(CacheRelationship).where(CacheRelationship.id.in_(chunk)))
                await session.commit()
                deleted += result.rowcount or 0
        return deleted

    async def clear_relationships(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(CacheRelationship))
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Collection metadata
    # ============================================================================

    async def upsert_metadata(self, cache_key: str, entity_type: str, record_count: int,
                              size_bytes: int = 0, ttl_seconds: int = 3600,
                              is_valid: bool = True, bump_version: bool = True,
                              details: Optional[Dict[str, Any]] = None) -> CacheMetadata:
        """Record a completed collection load."""
        now = utcnow()
        async with self.get_session() as session:
            stmt = select(CacheMetadata).where(CacheMetadata.cache_key == cache_key)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                existing.entity_type = entity_type
                existing.record_count = record_count
                existing.size_bytes = size_bytes
                existing.last_sync_at = now
                existing.expires_at = now + timedelta(seconds=ttl_seconds)
                existing.is_valid = is_valid
                existing.details = details
                if bump_version:
                    existing.version = (existing.version or 0) + 1
            else:
                existing = CacheMetadata(
                    cache_key=cache_key,
                    entity_type=entity_type,
                    record_count=record_count,
                    size_bytes=size_bytes,
                    last_sync_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                    is_valid=is_valid,
                    details=details,
                )
                session.add(existing)

            await session.commit()
            return existing

    async def get_metadata(self, cache_key: str) -> Optional[CacheMetadata]:
        try:
            async with self.get_session() as session:
                stmt = select(CacheMetadata).where(CacheMetadata.cache_key == cache_key)
                result = await session.execute(stmt)
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get cache metadata", cache_key=cache_key, error=str(e))
            return None

    async def list_metadata(self, entity_types: Optional[Iterable[str]] = None) -> List[CacheMetadata]:
        try:
            async with self.get_session() as session:
                stmt = select(CacheMetadata)
                if entity_types is not None:
                    stmt = stmt.where(CacheMetadata.entity_type.in_(list(entity_types)))
                result = await session.execute(stmt.order_by(CacheMetadata.cache_key))
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to list cache metadata", error=str(e))
            return []

    async def invalidate_all_metadata(self) -> int:
        """Mark every collection invalid and bump its version."""
        async with self.get_session() as session:
            stmt = update(CacheMetadata).values(
                is_valid=False,
                version=CacheMetadata.version + 1,
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Sync log
    # ============================================================================

    async def start_sync_log(self, sync_type: str, triggered_by: str,
                             entity_type: Optional[str] = None) -> int:
        async with self.get_session() as session:
            row = CacheSyncLog(
                sync_type=sync_type,
                entity_type=entity_type,
                status="in_progress",
                triggered_by=triggered_by,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row.id

    async def finish_sync_log(self, log_id: int, status: str, records_synced: int = 0,
                              indexes_built: int = 0, error_message: Optional[str] = None) -> bool:
        """Close a sync log row; failures here must not mask the preload outcome."""
        try:
            async with self.get_session() as session:
                row = await session.get(CacheSyncLog, log_id)
                if not row:
                    return False
                completed = utcnow()
                row.status = status
                row.records_synced = records_synced
                row.indexes_built = indexes_built
                row.error_message = error_message[:2000] if error_message else None
                row.completed_at = completed
                started = row.started_at
                if started is not None:
                    if started.tzinfo is None:
                        started = started.replace(tzinfo=completed.tzinfo)
                    row.duration_ms = int((completed - started).total_seconds() * 1000)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to finish sync log", log_id=log_id, status=status, error=str(e))
            return False

    async def get_sync_log(self, log_id: int) -> Optional[CacheSyncLog]:
        async with self.get_session() as session:
            return await session.get(CacheSyncLog, log_id)

    async def recent_syncs(self, limit: int = 10) -> List[CacheSyncLog]:
        try:
            async with self.get_session() as session:
                stmt = select(CacheSyncLog).order_by(CacheSyncLog.id.desc()).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get sync history", error=str(e))
            return []

    # ============================================================================
    # Performance reports
    # ============================================================================

    async def add_performance_report(self, data: Dict[str, Any]) -> Optional[int]:
        try:
            async with self.get_session() as session:
                row = CachePerformanceReport(data=data)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return row.id

        except Exception as e:
            logger.error("Failed to save performance report", error=str(e))
            return None

    async def recent_performance_reports(self, limit: int = 10) -> List[CachePerformanceReport]:
        try:
            async with self.get_session() as session:
                stmt = select(CachePerformanceReport).order_by(CachePerformanceReport.id.desc()).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get performance reports", error=str(e))
            return []

    # ============================================================================
    # Counts
    # ============================================================================

    async def count_index(self, entity_type: Optional[str] = None) -> int:
        try:
            async with self.get_session() as session:
                stmt = select(func.count()).select_from(CacheIndex)
                if entity_type:
                    stmt = stmt.where(CacheIndex.entity_type == entity_type)
                result = await session.execute(stmt)
                return int(result.scalar_one())

        except Exception as e:
            logger.error("Failed to count index rows", error=str(e))
            return 0

    async def count_relationships(self) -> int:
        try:
            async with self.get_session() as session:
                result = await session.execute(select(func.count()).select_from(CacheRelationship))
                return int(result.scalar_one())

        except Exception as e:
            logger.error("Failed to count relationships", error=str(e))
            return 0
