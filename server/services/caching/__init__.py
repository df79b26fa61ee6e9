"""HR attendance cache orchestration.

Layered over the KV adapter in ``core.cache``:
- Bulk preload of the organization hierarchy with progress-tracked jobs
- Secondary index and parent/child relationship graph with durable mirrors
- Lazy loading with usage-driven TTLs and streaming attendance loads
- Report payload cache with pattern invalidation
- Cron-scheduled maintenance (cleanup, eviction, usage analysis, health)
"""

from .models import (
    JobStatus,
    StepStatus,
    JobStep,
    PreloadJob,
    StepResult,
    PreloadResult,
    UsageSnapshot,
    ExplicitKey,
    DerivedKey,
    CacheKeySpec,
)
from .usage import UsageTracker, Evictor, usage_id
from .lazy_loader import LazyLoader
from .index_registry import IndexRegistry
from .relationships import RelationshipGraph, make_edge, group_edges
from .data_service import CacheDataService
from .jobs import JobTracker
from .preload import PreloadOrchestrator
from .report_cache import ReportCache, generate_key, resolve_key
from .maintenance import MaintenanceScheduler, TaskMetrics

__all__ = [
    # Models
    "JobStatus",
    "StepStatus",
    "JobStep",
    "PreloadJob",
    "StepResult",
    "PreloadResult",
    "UsageSnapshot",
    "ExplicitKey",
    "DerivedKey",
    "CacheKeySpec",
    # Usage
    "UsageTracker",
    "Evictor",
    "usage_id",
    # Loading and lookup
    "LazyLoader",
    "IndexRegistry",
    "RelationshipGraph",
    "make_edge",
    "group_edges",
    "CacheDataService",
    # Preload
    "JobTracker",
    "PreloadOrchestrator",
    # Reports
    "ReportCache",
    "generate_key",
    "resolve_key",
    # Maintenance
    "MaintenanceScheduler",
    "TaskMetrics",
]
