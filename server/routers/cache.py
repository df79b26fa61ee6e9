"""Cache administration routes (preload jobs, invalidation, report cache, maintenance)."""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Dict, Any, Optional

from core.container import container
from core.database import Database
from core.exceptions import JobNotFound, SourceUnavailable
from core.logging import get_logger
from services.caching import (
    CacheDataService,
    JobTracker,
    MaintenanceScheduler,
    PreloadOrchestrator,
    RelationshipGraph,
    ReportCache,
    DerivedKey,
    ExplicitKey,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


class PreloadRequest(BaseModel):
    triggered_by: str = "api"
    include_attendance: Optional[bool] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None


class AttendancePreloadRequest(BaseModel):
    triggered_by: str = "api"
    from_date: Optional[str] = None
    to_date: Optional[str] = None


class ReportKeyRequest(BaseModel):
    key: Optional[str] = None
    report_type: Optional[str] = None
    params: Dict[str, Any] = {}


class DateRangeRequest(BaseModel):
    from_date: str
    to_date: str


class OrganizationRequest(BaseModel):
    division_id: str = ""
    section_id: str = ""
    sub_section_id: str = ""


class SearchRequest(BaseModel):
    filters: Dict[str, Any] = {}
    page: int = 1
    limit: int = 50


# ============================================================================
# Status
# ============================================================================

@router.get("/status")
async def get_status(
    preload: PreloadOrchestrator = Depends(lambda: container.preload()),
    data_service: CacheDataService = Depends(lambda: container.data_service())
):
    """Warm state and backend health."""
    return {
        "success": True,
        "is_warm": await preload.is_cache_warm(),
        "health": await data_service.check_health(),
    }


@router.get("/stats")
async def get_stats(
    preload: PreloadOrchestrator = Depends(lambda: container.preload())
):
    return {"success": True, "stats": await preload.get_stats()}


@router.get("/metadata")
async def get_metadata(
    database: Database = Depends(lambda: container.database())
):
    rows = await database.list_metadata()
    return {"success": True, "metadata": [row.model_dump(mode="json") for row in rows]}


@router.get("/syncs")
async def get_sync_history(
    limit: int = Query(default=10, ge=1, le=100),
    database: Database = Depends(lambda: container.database())
):
    """Recent preload runs, newest first."""
    rows = await database.recent_syncs(limit)
    return {"success": True, "syncs": [row.model_dump(mode="json") for row in rows]}


# ============================================================================
# Lookups
# ============================================================================

@router.get("/index/{entity_type}/{index_key}")
async def search_index(
    entity_type: str,
    index_key: str,
    q: str = Query(..., min_length=1),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    data_service: CacheDataService = Depends(lambda: container.data_service())
):
    """Substring search over an indexed field."""
    items = await data_service.search_by_index(entity_type, index_key, q, limit)
    return {"success": True, "count": len(items), "items": items}


@router.get("/children/{parent_type}/{parent_id}/{child_type}")
async def get_children(
    parent_type: str,
    parent_id: str,
    child_type: str,
    graph: RelationshipGraph = Depends(lambda: container.relationship_graph())
):
    children = await graph.get_children(parent_type, parent_id, child_type)
    return {"success": True, "count": len(children), "children": children}


@router.get("/entities/{entity_type}/{entity_id}")
async def get_entity(
    entity_type: str,
    entity_id: str,
    data_service: CacheDataService = Depends(lambda: container.data_service())
):
    try:
        entity = await data_service.get_entity(entity_type, entity_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SourceUnavailable as e:
        logger.error("Entity lookup failed", entity_type=entity_type, entity_id=entity_id, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    if entity is None:
        raise HTTPException(status_code=404, detail=f"{entity_type} {entity_id} not found")
    return {"success": True, "entity": entity}


@router.post("/entities/{entity_type}/search")
async def search_entities(
    entity_type: str,
    request: SearchRequest,
    data_service: CacheDataService = Depends(lambda: container.data_service())
):
    try:
        result = await data_service.search(entity_type, request.filters, request.page, request.limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SourceUnavailable as e:
        logger.error("Entity search failed", entity_type=entity_type, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, **result}


# ============================================================================
# Preload jobs
# ============================================================================

@router.post("/preload")
async def trigger_preload(
    request: PreloadRequest,
    preload: PreloadOrchestrator = Depends(lambda: container.preload())
):
    """Start the full preload, or join the one already running."""
    job, is_new = preload.start_preload_job(
        triggered_by=request.triggered_by,
        include_attendance=request.include_attendance,
        from_date=request.from_date,
        to_date=request.to_date,
    )
    return {"success": True, "started": is_new, "job": job.to_dict()}


@router.post("/preload/attendance")
async def trigger_attendance_preload(
    request: AttendancePreloadRequest,
    preload: PreloadOrchestrator = Depends(lambda: container.preload())
):
    job, is_new = preload.start_attendance_job(request.triggered_by, request.from_date, request.to_date)
    return {"success": True, "started": is_new, "job": job.to_dict()}


@router.get("/jobs")
async def list_jobs(
    jobs: JobTracker = Depends(lambda: container.job_tracker())
):
    return {"success": True, "jobs": [job.to_dict() for job in jobs.list_jobs()]}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    jobs: JobTracker = Depends(lambda: container.job_tracker())
):
    """Progress snapshot for polling clients."""
    try:
        return {"success": True, "job": jobs.require_job(job_id).to_dict()}
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    jobs: JobTracker = Depends(lambda: container.job_tracker())
):
    try:
        return {"success": True, "job": jobs.cancel_job(job_id).to_dict()}
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/invalidate")
async def invalidate_cache(
    preload: PreloadOrchestrator = Depends(lambda: container.preload())
):
    """Drop all preloaded state; the next preload rebuilds it."""
    return {"success": True, **await preload.invalidate_all()}


@router.post("/relationships/restore")
async def restore_relationships(
    graph: RelationshipGraph = Depends(lambda: container.relationship_graph())
):
    """Rewrite relationship mirrors in the KV store from the durable table."""
    return {"success": True, "mirrors": await graph.restore_mirrors()}


# ============================================================================
# Report cache
# ============================================================================

@router.post("/reports/clear")
async def clear_report(
    request: ReportKeyRequest,
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    if request.key:
        spec = ExplicitKey(request.key)
    elif request.report_type:
        spec = DerivedKey(request.report_type, request.params)
    else:
        raise HTTPException(status_code=422, detail="Either key or report_type is required")
    return {"success": True, "cleared": await reports.clear(spec)}


@router.post("/reports/clear-all")
async def clear_all_reports(
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    return {"success": True, "deleted": await reports.clear_all()}


@router.post("/reports/clear-date-range")
async def clear_reports_by_date_range(
    request: DateRangeRequest,
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    return {"success": True, "deleted": await reports.clear_date_range(request.from_date, request.to_date)}


@router.post("/reports/clear-organization")
async def clear_reports_by_organization(
    request: OrganizationRequest,
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    try:
        deleted = await reports.clear_organization(request.division_id, request.section_id, request.sub_section_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"success": True, "deleted": deleted}


@router.post("/reports/reset-stats")
async def reset_report_stats(
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    reports.reset_stats()
    return {"success": True, "stats": reports.get_stats()}


@router.get("/reports/info")
async def get_report_cache_info(
    reports: ReportCache = Depends(lambda: container.report_cache())
):
    return {"success": True, "info": await reports.get_info()}


# ============================================================================
# Maintenance
# ============================================================================

@router.get("/maintenance")
async def get_maintenance_status(
    maintenance: MaintenanceScheduler = Depends(lambda: container.maintenance())
):
    return {"success": True, "status": maintenance.get_status()}


@router.post("/maintenance/{task}")
async def run_maintenance_task(
    task: str,
    maintenance: MaintenanceScheduler = Depends(lambda: container.maintenance())
):
    """Run one maintenance task now."""
    try:
        metrics = await maintenance.run_task(task)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown maintenance task: {task}")
    return {"success": metrics["last_outcome"] == "success", "task": task, "metrics": metrics}
