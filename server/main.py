"""
FastAPI service for the HR attendance cache tier.

Preloads the organization hierarchy into the KV store, serves cache-first
lookups and runs scheduled cache maintenance.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.exceptions import CacheError
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import cache

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting attendance cache service")
    set_startup_time()

    await container.database().startup()
    await container.source_store().startup()
    connected = await container.cache().startup()
    if not connected:
        logger.warning("KV store unavailable, serving from the Source Store")

    await container.usage_tracker().load()
    container.maintenance().start()

    if settings.preload_on_startup:
        job = await container.preload().ensure_warm(triggered_by="startup")
        if job:
            logger.info("Startup preload scheduled", job_id=job.id)

    logger.info("Services started successfully")
    yield

    # Shutdown
    container.maintenance().shutdown()
    await container.job_tracker().shutdown()
    await container.lazy_loader().drain()
    await container.usage_tracker().save()
    await container.cache().shutdown()
    await container.source_store().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Attendance Cache Service",
    version="1.0.0",
    description="Cache orchestration for HR organization and attendance data",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


@app.exception_handler(CacheError)
async def cache_error_handler(request: Request, exc: CacheError):
    logger.error("Cache tier error", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "error": str(exc)}
    )


# Exception middleware BEFORE CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)

logger.info("Configuring CORS middleware", origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(cache.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    health = await get_health_status(
        container.database(),
        container.source_store(),
        container.cache(),
        settings,
    )
    return {
        **health,
        "service": "attendance-cache",
        "version": app.version,
        "environment": "development" if settings.debug else "production",
        "cache_warm": await container.preload().is_cache_warm(),
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting attendance cache service",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        workers=1
    )
