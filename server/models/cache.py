"""Durable cache bookkeeping tables.

The KV store holds payloads; these tables hold what must survive a KV flush:
secondary indexes, relationship edges, per-collection metadata, the sync log
and maintenance performance reports.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CacheIndex(SQLModel, table=True):
    """Secondary index row: (entity_type, index_key, index_value) -> cache_key."""

    __tablename__ = "cache_index"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "index_key", name="uq_cache_index_entity_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(max_length=50, index=True)
    entity_id: str = Field(max_length=100)
    index_key: str = Field(max_length=100)
    index_value: str = Field(default="", max_length=500, index=True)
    cache_key: str = Field(max_length=255)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    )


class CacheRelationship(SQLModel, table=True):
    """Parent -> child edge mirrored into rel:{parent}:{id}:{child}s."""

    __tablename__ = "cache_relationships"
    __table_args__ = (
        UniqueConstraint("parent_type", "parent_id", "child_type", "child_id", name="uq_cache_relationship"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    parent_type: str = Field(max_length=50)
    parent_id: str = Field(max_length=100, index=True)
    child_type: str = Field(max_length=50)
    child_id: str = Field(max_length=100)
    relationship_type: str = Field(max_length=50)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    )


class CacheMetadata(SQLModel, table=True):
    """One row per cached collection."""

    __tablename__ = "cache_metadata"

    id: Optional[int] = Field(default=None, primary_key=True)
    cache_key: str = Field(max_length=255, unique=True, index=True)
    entity_type: str = Field(max_length=50, index=True)
    record_count: int = Field(default=0)
    size_bytes: int = Field(default=0)
    last_sync_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    version: int = Field(default=1)
    is_valid: bool = Field(default=True)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


class CacheSyncLog(SQLModel, table=True):
    """Append-only record of preload runs."""

    __tablename__ = "cache_sync_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    sync_type: str = Field(max_length=50)
    entity_type: Optional[str] = Field(default=None, max_length=50)
    records_synced: int = Field(default=0)
    indexes_built: int = Field(default=0)
    status: str = Field(default="in_progress", max_length=20, index=True)
    started_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: Optional[int] = Field(default=None)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    triggered_by: str = Field(default="system", max_length=100)


class CachePerformanceReport(SQLModel, table=True):
    """Snapshot written by the nightly optimization task."""

    __tablename__ = "cache_performance_reports"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    data: Dict[str, Any] = Field(sa_column=Column(JSON))


CACHE_TABLES = [
    CacheIndex.__table__,
    CacheRelationship.__table__,
    CacheMetadata.__table__,
    CacheSyncLog.__table__,
    CachePerformanceReport.__table__,
]
