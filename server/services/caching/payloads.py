"""Canonical cache payloads, index rows and parent links per entity type."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from constants import DIVISION, EMPLOYEE, SECTION, SUBSECTION

# entity_type -> payload fields mirrored into the index registry
INDEXED_FIELDS: Dict[str, Tuple[str, ...]] = {
    DIVISION: ("code", "name"),
    SECTION: ("code", "name", "division_code"),
    SUBSECTION: ("code", "name", "section_code"),
    EMPLOYEE: ("id", "name", "email", "division_id", "section_id"),
}

# entity_type -> [(parent_type, payload field holding the parent id)]
PARENT_FIELDS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    SECTION: ((DIVISION, "division_code"),),
    SUBSECTION: ((SECTION, "section_code"),),
    EMPLOYEE: ((DIVISION, "division_id"), (SECTION, "section_id")),
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _timestamp(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return _text(value)


def _hierarchy_payload(row: Dict[str, Any], parent_field: str) -> Optional[Dict[str, Any]]:
    code = _text(row.get("HIE_CODE"))
    if not code:
        return None
    return {
        "id": code,
        "code": code,
        "name": row.get("HIE_NAME") or "",
        "name_sinhala": row.get("HIE_NAME_SINHALA"),
        "name_tamil": row.get("HIE_NAME_TAMIL"),
        parent_field: _text(row.get("HIE_RELATIONSHIP")),
        "level": row.get("DEF_LEVEL"),
        "status": row.get("STATUS") or "ACTIVE",
        "description": row.get("DESCRIPTION"),
        "synced_at": _timestamp(row.get("synced_at")),
    }


def division_payload(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _hierarchy_payload(row, "parent_code")


def section_payload(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _hierarchy_payload(row, "division_code")


def sub_section_payload(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    sub_id = _text(row.get("id")) or _text(row.get("sub_section_code"))
    if not sub_id:
        return None
    return {
        "id": sub_id,
        "code": row.get("sub_section_code") or "",
        "name": row.get("sub_section_name") or "",
        "section_code": _text(row.get("section_code")),
        "division_code": _text(row.get("division_code")),
        "status": "ACTIVE",
    }


def employee_payload(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    emp_id = _text(row.get("EMP_NO"))
    if not emp_id:
        return None
    return {
        "id": emp_id,
        "name": row.get("EMP_NAME") or row.get("EMP_NAME_WITH_INITIALS") or "",
        "designation": row.get("EMP_DESIGNATION"),
        "type": row.get("EMP_TYPE"),
        "division_id": _text(row.get("DIV_CODE")),
        "division_name": row.get("DIV_NAME"),
        "section_id": _text(row.get("SEC_CODE")),
        "section_name": row.get("SEC_NAME"),
        "location": row.get("LOCATION"),
        "status": row.get("STATUS") or row.get("EMP_STATUS"),
        "email": row.get("EMP_EMAIL"),
        "phone": row.get("EMP_PHONE") or row.get("EMP_MOBILE"),
        "synced_at": _timestamp(row.get("synced_at")),
    }


PAYLOAD_BUILDERS: Dict[str, Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = {
    DIVISION: division_payload,
    SECTION: section_payload,
    SUBSECTION: sub_section_payload,
    EMPLOYEE: employee_payload,
}


def build_payload(entity_type: str, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Canonical payload for a source row; None when the row has no natural id."""
    return PAYLOAD_BUILDERS[entity_type](row)


def index_entries(entity_type: str, payload: Dict[str, Any], cache_key: str) -> List[Dict[str, Any]]:
    entries = []
    for field_name in INDEXED_FIELDS.get(entity_type, ()):
        value = payload.get(field_name)
        if value in (None, ""):
            continue
        entries.append({
            "entity_type": entity_type,
            "entity_id": payload["id"],
            "index_key": field_name,
            "index_value": str(value),
            "cache_key": cache_key,
        })
    return entries


def parent_links(entity_type: str, payload: Dict[str, Any]) -> List[Tuple[str, str]]:
    """(parent_type, parent_id) pairs the entity belongs to."""
    links = []
    for parent_type, field_name in PARENT_FIELDS.get(entity_type, ()):
        parent_id = payload.get(field_name)
        if parent_id:
            links.append((parent_type, str(parent_id)))
    return links
