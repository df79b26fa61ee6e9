"""SQLModel mappings of the HR sync tables read by the Source Store.

These tables are owned by the HR sync jobs; this service only reads them.
Column names follow the upstream schema verbatim.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field


class DivisionSync(SQLModel, table=True):
    """Organizational division."""

    __tablename__ = "divisions_sync"

    HIE_CODE: str = Field(primary_key=True, max_length=50)
    HIE_NAME: str = Field(default="", max_length=255, index=True)
    HIE_NAME_SINHALA: Optional[str] = Field(default=None, max_length=255)
    HIE_NAME_TAMIL: Optional[str] = Field(default=None, max_length=255)
    HIE_RELATIONSHIP: Optional[str] = Field(default=None, max_length=50)
    DEF_LEVEL: Optional[int] = Field(default=None)
    STATUS: str = Field(default="ACTIVE", max_length=20)
    DESCRIPTION: Optional[str] = Field(default=None, max_length=1000)
    synced_at: Optional[datetime] = Field(default=None)


class SectionSync(SQLModel, table=True):
    """Section; HIE_RELATIONSHIP holds the parent division code."""

    __tablename__ = "sections_sync"

    HIE_CODE: str = Field(primary_key=True, max_length=50)
    HIE_NAME: str = Field(default="", max_length=255, index=True)
    HIE_NAME_SINHALA: Optional[str] = Field(default=None, max_length=255)
    HIE_NAME_TAMIL: Optional[str] = Field(default=None, max_length=255)
    HIE_RELATIONSHIP: Optional[str] = Field(default=None, max_length=50, index=True)
    DEF_LEVEL: Optional[int] = Field(default=None)
    STATUS: str = Field(default="ACTIVE", max_length=20)
    DESCRIPTION: Optional[str] = Field(default=None, max_length=1000)
    synced_at: Optional[datetime] = Field(default=None)


class SubSection(SQLModel, table=True):
    """Sub-section managed locally under a section."""

    __tablename__ = "sub_sections"

    id: Optional[int] = Field(default=None, primary_key=True)
    sub_section_name: str = Field(default="", max_length=255)
    sub_section_code: Optional[str] = Field(default=None, max_length=50)
    section_code: Optional[str] = Field(default=None, max_length=50, index=True)
    division_code: Optional[str] = Field(default=None, max_length=50)


class EmployeeSync(SQLModel, table=True):
    """Employee master row."""

    __tablename__ = "employees_sync"

    EMP_NO: str = Field(primary_key=True, max_length=50)
    EMP_NAME: str = Field(default="", max_length=255, index=True)
    EMP_NAME_WITH_INITIALS: Optional[str] = Field(default=None, max_length=255)
    EMP_EMAIL: Optional[str] = Field(default=None, max_length=255)
    EMP_PHONE: Optional[str] = Field(default=None, max_length=50)
    EMP_MOBILE: Optional[str] = Field(default=None, max_length=50)
    EMP_STATUS: Optional[str] = Field(default=None, max_length=20)
    EMP_TYPE: Optional[str] = Field(default=None, max_length=50)
    EMP_DESIGNATION: Optional[str] = Field(default=None, max_length=255)
    DIV_CODE: Optional[str] = Field(default=None, max_length=50, index=True)
    DIV_NAME: Optional[str] = Field(default=None, max_length=255)
    SEC_CODE: Optional[str] = Field(default=None, max_length=50, index=True)
    SEC_NAME: Optional[str] = Field(default=None, max_length=255)
    LOCATION: Optional[str] = Field(default=None, max_length=255)
    STATUS: str = Field(default="ACTIVE", max_length=20)
    IS_ACTIVE: bool = Field(default=True)
    synced_at: Optional[datetime] = Field(default=None)


class Attendance(SQLModel, table=True):
    """Raw fingerprint scan."""

    __tablename__ = "attendance"

    attendance_id: Optional[int] = Field(default=None, primary_key=True)
    employee_ID: str = Field(max_length=50, index=True)
    fingerprint_id: Optional[str] = Field(default=None, max_length=255)
    date_: str = Field(max_length=10, index=True)  # YYYY-MM-DD
    time_: Optional[str] = Field(default=None, max_length=8)
    scan_type: Optional[str] = Field(default=None, max_length=10)


SOURCE_TABLES = [
    DivisionSync.__table__,
    SectionSync.__table__,
    SubSection.__table__,
    EmployeeSync.__table__,
    Attendance.__table__,
]
