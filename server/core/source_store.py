"""Read-only async access to the HR sync tables (the system of record)."""

import math
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar
from sqlmodel import SQLModel, select
from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from constants import DIVISION, EMPLOYEE, SECTION, SUBSECTION
from core.config import Settings
from core.database import create_engine_for
from core.exceptions import SourceUnavailable
from core.logging import get_logger
from models.source import Attendance, DivisionSync, EmployeeSync, SectionSync, SubSection

logger = get_logger(__name__)

T = TypeVar("T")

EMERGENCY_EXIT_MARKER = "%Emergancy Exit%"

# entity_type -> (model, natural id column)
ENTITY_MODELS: Dict[str, Tuple[Type[SQLModel], str]] = {
    DIVISION: (DivisionSync, "HIE_CODE"),
    SECTION: (SectionSync, "HIE_CODE"),
    SUBSECTION: (SubSection, "id"),
    EMPLOYEE: (EmployeeSync, "EMP_NO"),
}

# entity_type -> {filter name: (column, exact match)}
SEARCH_FILTERS: Dict[str, Dict[str, Tuple[str, bool]]] = {
    DIVISION: {
        "code": ("HIE_CODE", False),
        "name": ("HIE_NAME", False),
    },
    SECTION: {
        "code": ("HIE_CODE", False),
        "name": ("HIE_NAME", False),
        "division_code": ("HIE_RELATIONSHIP", True),
    },
    SUBSECTION: {
        "code": ("sub_section_code", False),
        "name": ("sub_section_name", False),
        "section_code": ("section_code", True),
        "division_code": ("division_code", True),
    },
    EMPLOYEE: {
        "id": ("EMP_NO", False),
        "name": ("EMP_NAME", False),
        "email": ("EMP_EMAIL", False),
        "designation": ("EMP_DESIGNATION", False),
        "division_id": ("DIV_CODE", True),
        "section_id": ("SEC_CODE", True),
    },
}


def _row_dict(row: SQLModel) -> Dict[str, Any]:
    return row.model_dump()


class SourceStore:
    """Bulk, point and paged queries; every failure surfaces as SourceUnavailable."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.async_session = None

    async def startup(self):
        self.engine = create_engine_for(self.settings.effective_source_url, self.settings)
        self.async_session = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        logger.info("Source store ready")

    async def shutdown(self):
        if self.engine:
            await self.engine.dispose()
            logger.info("Source store connections closed")

    @asynccontextmanager
    async def _session(self):
        if not self.async_session:
            raise RuntimeError("Source store not initialized")
        async with self.async_session() as session:
            yield session

    async def _query(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._session() as session:
                return await fn(session)
        except Exception as e:
            logger.error("Source query failed", operation=operation, error=str(e))
            raise SourceUnavailable(operation, str(e)) from e

    async def _all(self, operation: str, stmt) -> List[Dict[str, Any]]:
        async def run(session):
            result = await session.execute(stmt)
            return [_row_dict(row) for row in result.scalars().all()]

        return await self._query(operation, run)

    # =========================================================================
    # Bulk
    # =========================================================================

    async def list_divisions(self) -> List[Dict[str, Any]]:
        stmt = select(DivisionSync).where(DivisionSync.STATUS == "ACTIVE").order_by(DivisionSync.HIE_NAME)
        return await self._all("list_divisions", stmt)

    async def list_sections(self) -> List[Dict[str, Any]]:
        stmt = select(SectionSync).where(SectionSync.STATUS == "ACTIVE").order_by(SectionSync.HIE_NAME)
        return await self._all("list_sections", stmt)

    async def list_sub_sections(self) -> List[Dict[str, Any]]:
        stmt = select(SubSection).order_by(SubSection.sub_section_name)
        return await self._all("list_sub_sections", stmt)

    async def list_employees(self) -> List[Dict[str, Any]]:
        stmt = select(EmployeeSync).where(EmployeeSync.IS_ACTIVE == True).order_by(EmployeeSync.EMP_NAME)  # noqa: E712
        return await self._all("list_employees", stmt)

    async def list_entities(self, entity_type: str) -> List[Dict[str, Any]]:
        loaders = {
            DIVISION: self.list_divisions,
            SECTION: self.list_sections,
            SUBSECTION: self.list_sub_sections,
            EMPLOYEE: self.list_employees,
        }
        if entity_type not in loaders:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return await loaders[entity_type]()

    async def count_rows(self) -> Dict[str, int]:
        """Active row counts per entity type."""
        async def run(session):
            counts = {}
            for entity_type, stmt in (
                (DIVISION, select(func.count()).select_from(DivisionSync).where(DivisionSync.STATUS == "ACTIVE")),
                (SECTION, select(func.count()).select_from(SectionSync).where(SectionSync.STATUS == "ACTIVE")),
                (SUBSECTION, select(func.count()).select_from(SubSection)),
                (EMPLOYEE, select(func.count()).select_from(EmployeeSync).where(EmployeeSync.IS_ACTIVE == True)),  # noqa: E712
            ):
                counts[entity_type] = int((await session.execute(stmt)).scalar_one())
            return counts

        return await self._query("count_rows", run)

    # =========================================================================
    # Point
    # =========================================================================

    async def get_entity(self, entity_type: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        """Row by natural id, or None."""
        if entity_type not in ENTITY_MODELS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        model, id_column = ENTITY_MODELS[entity_type]
        if id_column == "id":
            try:
                entity_id = int(entity_id)
            except (TypeError, ValueError):
                return None

        async def run(session):
            stmt = select(model).where(getattr(model, id_column) == entity_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_dict(row) if row else None

        return await self._query(f"get_{entity_type}", run)

    async def get_division(self, code: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(DIVISION, code)

    async def get_section(self, code: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(SECTION, code)

    async def get_sub_section(self, sub_section_id: Any) -> Optional[Dict[str, Any]]:
        return await self.get_entity(SUBSECTION, sub_section_id)

    async def get_employee(self, emp_no: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity(EMPLOYEE, emp_no)

    # =========================================================================
    # Paged
    # =========================================================================

    async def page_employees(self, offset: int, limit: int) -> List[Dict[str, Any]]:
        stmt = (
            select(EmployeeSync)
            .where(EmployeeSync.IS_ACTIVE == True)  # noqa: E712
            .order_by(EmployeeSync.EMP_NO)
            .offset(offset)
            .limit(limit)
        )
        return await self._all("page_employees", stmt)

    def _attendance_filter(self, stmt, from_date: Optional[str], to_date: Optional[str]):
        stmt = stmt.where(or_(
            Attendance.fingerprint_id.is_(None),
            Attendance.fingerprint_id.not_like(EMERGENCY_EXIT_MARKER),
        ))
        if from_date:
            stmt = stmt.where(Attendance.date_ >= from_date)
        if to_date:
            stmt = stmt.where(Attendance.date_ <= to_date)
        return stmt

    async def page_attendance(self, offset: int, limit: int,
                              from_date: Optional[str] = None,
                              to_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Attendance scans in (date, time, id) order, excluding emergency-exit readers."""
        stmt = self._attendance_filter(select(Attendance), from_date, to_date)
        stmt = stmt.order_by(Attendance.date_, Attendance.time_, Attendance.attendance_id).offset(offset).limit(limit)
        return await self._all("page_attendance", stmt)

    async def count_attendance(self, from_date: Optional[str] = None, to_date: Optional[str] = None) -> int:
        async def run(session):
            stmt = self._attendance_filter(select(func.count()).select_from(Attendance), from_date, to_date)
            return int((await session.execute(stmt)).scalar_one())

        return await self._query("count_attendance", run)

    async def search(self, entity_type: str, filters: Dict[str, Any],
                     page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Filtered, paginated rows with totals."""
        if entity_type not in ENTITY_MODELS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        model, id_column = ENTITY_MODELS[entity_type]
        allowed = SEARCH_FILTERS.get(entity_type, {})
        page = max(1, page)
        limit = max(1, limit)

        conditions = []
        for name, value in (filters or {}).items():
            if value in (None, ""):
                continue
            if name not in allowed:
                logger.debug("Ignoring unknown search filter", entity_type=entity_type, filter=name)
                continue
            column_name, exact = allowed[name]
            column = getattr(model, column_name)
            conditions.append(column == value if exact else column.contains(str(value), autoescape=True))

        async def run(session):
            count_stmt = select(func.count()).select_from(model)
            rows_stmt = select(model)
            for condition in conditions:
                count_stmt = count_stmt.where(condition)
                rows_stmt = rows_stmt.where(condition)
            total = int((await session.execute(count_stmt)).scalar_one())
            rows_stmt = rows_stmt.order_by(getattr(model, id_column)).offset((page - 1) * limit).limit(limit)
            rows = [_row_dict(row) for row in (await session.execute(rows_stmt)).scalars().all()]
            return {
                "items": rows,
                "total": total,
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit) if total else 0,
            }

        return await self._query(f"search_{entity_type}", run)


__all__ = ["SourceStore", "ENTITY_MODELS", "SEARCH_FILTERS"]
