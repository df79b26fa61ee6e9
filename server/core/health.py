"""Health check utilities for the /health endpoint and maintenance reports."""
import time
from typing import Dict, Any, TYPE_CHECKING

import psutil
from sqlalchemy import text

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheService
    from core.source_store import SourceStore

logger = get_logger(__name__)

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    try:
        return psutil.Process().memory_info().rss / (1024 * 1024)
    except psutil.Error:
        return 0.0


def get_cpu_percent() -> float:
    """Get current process CPU usage percentage."""
    try:
        return psutil.Process().cpu_percent(interval=None)
    except psutil.Error:
        return 0.0


def process_snapshot() -> Dict[str, Any]:
    return {
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "cpu_percent": round(get_cpu_percent(), 1),
    }


async def check_database(database: "Database") -> bool:
    """Check durable cache table connectivity."""
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def check_source(source: "SourceStore") -> bool:
    try:
        await source.count_rows()
        return True
    except Exception as e:
        logger.warning("Source store health check failed", error=str(e))
        return False


async def get_health_status(
    database: "Database",
    source: "SourceStore",
    cache: "CacheService",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get comprehensive health status for /health endpoint.

    The KV store being down only degrades the service; the durable tables
    and the Source Store are required.
    """
    db_healthy = await check_database(database)
    source_healthy = await check_source(source)
    cache_healthy = await cache.ping()

    if db_healthy and source_healthy:
        overall_status = "healthy" if (cache_healthy or not settings.cache_enabled) else "degraded"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        **process_snapshot(),
        "checks": {
            "database": db_healthy,
            "source_store": source_healthy,
            "cache": cache_healthy,
        },
        "features": {
            "cache_enabled": settings.cache_enabled,
            "cache_backend": settings.cache_backend,
            "maintenance": settings.maintenance_enabled,
            "dynamic_ttl": settings.dynamic_ttl_enabled,
        },
    }
