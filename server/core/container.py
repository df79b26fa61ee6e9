"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from core.keys import NamespaceRegistry
from core.source_store import SourceStore
from services.scheduler import CronScheduler
from services.caching import (
    CacheDataService,
    Evictor,
    IndexRegistry,
    JobTracker,
    LazyLoader,
    MaintenanceScheduler,
    PreloadOrchestrator,
    RelationshipGraph,
    ReportCache,
    UsageTracker,
)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Durable cache tables (index, relationships, metadata, sync log)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # HR source tables, read only
    source_store = providers.Singleton(
        SourceStore,
        settings=settings
    )

    # Lazy-key registry shared by the KV adapter and the evictor
    namespace_registry = providers.Singleton(
        NamespaceRegistry
    )

    # KV adapter (Redis, or the in-process store when CACHE_BACKEND=memory)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        registry=namespace_registry
    )

    usage_tracker = providers.Singleton(
        UsageTracker,
        cache=cache,
        settings=settings
    )

    evictor = providers.Singleton(
        Evictor,
        cache=cache,
        usage=usage_tracker,
        settings=settings
    )

    lazy_loader = providers.Singleton(
        LazyLoader,
        cache=cache,
        usage=usage_tracker,
        settings=settings
    )

    index_registry = providers.Singleton(
        IndexRegistry,
        cache=cache,
        database=database,
        settings=settings
    )

    data_service = providers.Singleton(
        CacheDataService,
        cache=cache,
        source=source_store,
        lazy=lazy_loader,
        index=index_registry,
        usage=usage_tracker,
        settings=settings
    )

    relationship_graph = providers.Singleton(
        RelationshipGraph,
        cache=cache,
        database=database,
        settings=settings,
        resolve=data_service.provided.batch_get
    )

    job_tracker = providers.Singleton(
        JobTracker,
        settings=settings
    )

    preload = providers.Singleton(
        PreloadOrchestrator,
        cache=cache,
        database=database,
        source=source_store,
        index=index_registry,
        graph=relationship_graph,
        lazy=lazy_loader,
        jobs=job_tracker,
        settings=settings
    )

    report_cache = providers.Singleton(
        ReportCache,
        cache=cache,
        settings=settings
    )

    cron_scheduler = providers.Singleton(
        CronScheduler,
        timezone=settings.provided.maintenance_timezone
    )

    maintenance = providers.Singleton(
        MaintenanceScheduler,
        cache=cache,
        usage=usage_tracker,
        evictor=evictor,
        data_service=data_service,
        database=database,
        scheduler=cron_scheduler,
        settings=settings
    )


# Global container instance
container = Container()
