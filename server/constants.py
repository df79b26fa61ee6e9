"""Centralized constants for entity types, key namespaces and job kinds.

This module provides a single source of truth for the names shared between
the preload orchestrator, the loaders, the report cache and the maintenance
scheduler.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

# =============================================================================
# ENTITY TYPES
# =============================================================================

DIVISION = 'division'
SECTION = 'section'
SUBSECTION = 'subsection'
EMPLOYEE = 'employee'
ATTENDANCE = 'attendance'

# Collections that must have valid metadata for the cache to count as warm
REQUIRED_ENTITY_TYPES: Tuple[str, ...] = (DIVISION, SECTION, EMPLOYEE)

# Collections the preload orchestrator loads, in order
PRELOAD_ENTITY_TYPES: Tuple[str, ...] = (DIVISION, SECTION, SUBSECTION, EMPLOYEE)

ENTITY_TYPES: FrozenSet[str] = frozenset(PRELOAD_ENTITY_TYPES) | {ATTENDANCE}

# =============================================================================
# KEY NAMESPACES
# =============================================================================


class Namespace(str, Enum):
    """Top-level KV key prefixes."""
    CACHE = "cache"      # preloaded entities, lists and "all" sets
    REL = "rel"          # relationship mirror sets
    LAZY = "lazy"        # on-demand entity cache (evictable)
    SEARCH = "search"    # paginated search results
    REPORT = "report"    # computed report payloads
    SYSTEM = "system"    # usage snapshot and other bookkeeping


# Namespaces whose keys are remembered in-process so eviction can skip a scan
TRACKED_NAMESPACES: FrozenSet[Namespace] = frozenset([Namespace.LAZY])

# Namespaces swept by deep cleanup
DEEP_CLEANUP_NAMESPACES: Tuple[Namespace, ...] = (Namespace.LAZY, Namespace.SEARCH, Namespace.REPORT)

# Namespaces owned by the preload orchestrator (wiped by invalidate_all)
PRELOAD_NAMESPACES: Tuple[Namespace, ...] = (Namespace.CACHE, Namespace.REL)

USAGE_STATS_KEY = "system:usage_stats"

# =============================================================================
# RELATIONSHIPS
# =============================================================================

# (parent_type, child_type) -> relationship_type
RELATIONSHIP_TYPES: Dict[Tuple[str, str], str] = {
    (DIVISION, SECTION): 'has_section',
    (DIVISION, EMPLOYEE): 'has_employee',
    (SECTION, SUBSECTION): 'has_subsection',
    (SECTION, EMPLOYEE): 'has_employee',
}

# =============================================================================
# JOBS
# =============================================================================

JOB_FULL_PRELOAD = 'full_preload'
JOB_ATTENDANCE_PRELOAD = 'attendance_preload'

# =============================================================================
# REPORT CACHE
# =============================================================================

REPORT_INDIVIDUAL = 'individual'
REPORT_AUDIT = 'audit'
REPORT_GROUP = 'group'

REPORT_PARAM_FIELDS: Tuple[str, ...] = (
    'from_date',
    'to_date',
    'division_id',
    'section_id',
    'sub_section_id',
    'employee_id',
    'grouping',
)
