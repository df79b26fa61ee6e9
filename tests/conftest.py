"""Shared fixtures: in-memory KV backend, temporary SQLite databases seeded with HR rows."""

import pytest
from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.keys import NamespaceRegistry
from core.source_store import SourceStore
from models.source import SOURCE_TABLES, Attendance, DivisionSync, EmployeeSync, SectionSync, SubSection
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
from services.scheduler import CronScheduler


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/cache.db",
        source_database_url=f"sqlite+aiosqlite:///{tmp_path}/source.db",
        cache_backend="memory",
        maintenance_enabled=False,
        streaming_pause_seconds=0,
        preload_batch_size=2,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def source_rows():
    return [
        DivisionSync(HIE_CODE="D1", HIE_NAME="Finance"),
        DivisionSync(HIE_CODE="D2", HIE_NAME="Operations"),
        DivisionSync(HIE_CODE="D9", HIE_NAME="Closed Division", STATUS="INACTIVE"),
        SectionSync(HIE_CODE="S1", HIE_NAME="Payroll", HIE_RELATIONSHIP="D1"),
        SectionSync(HIE_CODE="S2", HIE_NAME="Logistics", HIE_RELATIONSHIP="D2"),
        SubSection(id=1, sub_section_name="Payroll North", sub_section_code="SS1",
                   section_code="S1", division_code="D1"),
        EmployeeSync(EMP_NO="E1", EMP_NAME="Alice Perera", EMP_EMAIL="alice@example.com",
                     DIV_CODE="D1", SEC_CODE="S1"),
        EmployeeSync(EMP_NO="E2", EMP_NAME="Bruno Silva", EMP_EMAIL="bruno@example.com",
                     DIV_CODE="D2", SEC_CODE="S2"),
        EmployeeSync(EMP_NO="E3", EMP_NAME="Chamari Fernando", DIV_CODE="D1", SEC_CODE="S1",
                     IS_ACTIVE=False),
        Attendance(attendance_id=1, employee_ID="E1", fingerprint_id="Main Gate",
                   date_="2024-01-02", time_="08:01:00", scan_type="IN"),
        Attendance(attendance_id=2, employee_ID="E1", fingerprint_id="Main Gate",
                   date_="2024-01-02", time_="17:05:00", scan_type="OUT"),
        Attendance(attendance_id=3, employee_ID="E2", fingerprint_id="Emergancy Exit 1",
                   date_="2024-01-02", time_="12:00:00", scan_type="OUT"),
        Attendance(attendance_id=4, employee_ID="E2", fingerprint_id="Main Gate",
                   date_="2024-01-03", time_="08:30:00", scan_type="IN"),
        Attendance(attendance_id=5, employee_ID="E1", fingerprint_id="Main Gate",
                   date_="2024-02-01", time_="08:00:00", scan_type="IN"),
    ]


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def seeded_source(settings):
    """Create and fill the HR sync tables."""
    engine = create_async_engine(settings.effective_source_url)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=SOURCE_TABLES)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        session.add_all(source_rows())
        await session.commit()
    yield session_factory
    await engine.dispose()


@pytest.fixture
async def cache(settings):
    service = CacheService(settings, NamespaceRegistry())
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def source(settings, seeded_source):
    store = SourceStore(settings)
    await store.startup()
    yield store
    await store.shutdown()


class Stack:
    """Cache components wired the same way the application container wires them."""

    def __init__(self, settings, cache, database, source):
        self.settings = settings
        self.cache = cache
        self.database = database
        self.source = source
        self.usage = UsageTracker(cache, settings)
        self.evictor = Evictor(cache, self.usage, settings)
        self.lazy = LazyLoader(cache, self.usage, settings)
        self.index = IndexRegistry(cache, database, settings)
        self.data = CacheDataService(cache, source, self.lazy, self.index, self.usage, settings)
        self.graph = RelationshipGraph(cache, database, settings, resolve=self.data.batch_get)
        self.jobs = JobTracker(settings)
        self.preload = PreloadOrchestrator(cache, database, source, self.index, self.graph,
                                           self.lazy, self.jobs, settings)
        self.reports = ReportCache(cache, settings)
        self.scheduler = CronScheduler(settings.maintenance_timezone)
        self.maintenance = MaintenanceScheduler(cache, self.usage, self.evictor, self.data,
                                                database, self.scheduler, settings)


@pytest.fixture
async def stack(settings, cache, database, source):
    components = Stack(settings, cache, database, source)
    yield components
    await components.jobs.shutdown()
    await components.lazy.drain()
    components.scheduler.shutdown()
