"""Parent -> child edges: durable table plus KV set mirrors."""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from constants import RELATIONSHIP_TYPES
from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.keys import relationship_key
from core.logging import get_logger

logger = get_logger(__name__)

Resolver = Callable[[str, List[str]], Awaitable[List[Dict[str, Any]]]]


def make_edge(parent_type: str, parent_id: Any, child_type: str, child_id: Any) -> Dict[str, Any]:
    return {
        "parent_type": parent_type,
        "parent_id": str(parent_id),
        "child_type": child_type,
        "child_id": str(child_id),
        "relationship_type": RELATIONSHIP_TYPES.get((parent_type, child_type), f"has_{child_type}"),
    }


def group_edges(edges: Iterable[Dict[str, Any]]) -> Dict[str, Set[str]]:
    """Mirror set key -> child ids."""
    grouped: Dict[str, Set[str]] = {}
    for edge in edges:
        key = relationship_key(edge["parent_type"], edge["parent_id"], edge["child_type"])
        grouped.setdefault(key, set()).add(str(edge["child_id"]))
    return grouped


class RelationshipGraph:
    """O(1) child enumeration through ``rel:{parent}:{id}:{child}s`` sets.

    Reads go to the KV mirror only. An evicted mirror reads as no children;
    the durable table is used to rebuild mirrors, not to answer reads.
    """

    def __init__(self, cache: CacheService, database: Database, settings: Settings,
                 resolve: Optional[Resolver] = None):
        self.cache = cache
        self.database = database
        self.settings = settings
        self.resolve = resolve

    async def child_ids(self, parent_type: str, parent_id: Any, child_type: str) -> List[str]:
        members = await self.cache.smembers(relationship_key(parent_type, parent_id, child_type))
        return sorted(members)

    async def get_children(self, parent_type: str, parent_id: Any, child_type: str) -> List[Dict[str, Any]]:
        ids = await self.child_ids(parent_type, parent_id, child_type)
        if not ids or self.resolve is None:
            return []
        return await self.resolve(child_type, ids)

    async def save_edges(self, edges: List[Dict[str, Any]]) -> int:
        """Upsert durable edges; raises on failure."""
        return await self.database.upsert_relationships(edges)

    async def write_mirrors(self, edges: List[Dict[str, Any]], replace: bool = True) -> int:
        """Write KV mirror sets for edges, replacing existing members when asked."""
        grouped = group_edges(edges)
        if not grouped:
            return 0
        parent_types = {edge["parent_type"] for edge in edges}
        ttl_by_key: Dict[str, int] = {}
        for edge in edges:
            key = relationship_key(edge["parent_type"], edge["parent_id"], edge["child_type"])
            ttl_by_key[key] = self.settings.ttl_for(edge["parent_type"])

        async with self.cache.pipeline() as pipe:
            for key, members in grouped.items():
                if replace:
                    pipe.delete(key)
                pipe.sadd(key, *sorted(members))
                pipe.expire(key, ttl_by_key[key])
        logger.debug("Relationship mirrors written", sets=len(grouped), parent_types=sorted(parent_types))
        return len(grouped)

    async def replace_all(self, edges: List[Dict[str, Any]]) -> Dict[str, int]:
        """Make the durable table and the mirrors match ``edges`` exactly.

        New edges are upserted, edges no longer derived are deleted, and
        mirror sets of parents that lost all children are removed.
        """
        previous = await self.database.list_relationships()
        wanted = {
            (e["parent_type"], e["parent_id"], e["child_type"], e["child_id"]) for e in edges
        }
        obsolete = [
            row for row in previous
            if (row.parent_type, row.parent_id, row.child_type, row.child_id) not in wanted
        ]

        saved = await self.save_edges(edges)
        removed = await self.database.delete_relationships_by_id([row.id for row in obsolete]) if obsolete else 0

        live_keys = set(group_edges(edges))
        orphaned = {
            relationship_key(row.parent_type, row.parent_id, row.child_type) for row in obsolete
        } - live_keys
        if orphaned:
            await self.cache.delete(*sorted(orphaned))
        mirrors = await self.write_mirrors(edges)

        return {"edges": saved, "removed": removed, "mirrors": mirrors}

    async def remove_members(self, links: Iterable[Tuple[str, str, str, str]]) -> None:
        """Drop (parent_type, parent_id, child_type, child_id) members from mirrors."""
        async with self.cache.pipeline() as pipe:
            for parent_type, parent_id, child_type, child_id in links:
                pipe.srem(relationship_key(parent_type, parent_id, child_type), child_id)

    async def restore_mirrors(self) -> int:
        """Rebuild every KV mirror from the durable table."""
        edges = [
            make_edge(row.parent_type, row.parent_id, row.child_type, row.child_id)
            for row in await self.database.list_relationships()
        ]
        restored = await self.write_mirrors(edges)
        logger.info("Relationship mirrors restored", sets=restored, edges=len(edges))
        return restored

    async def clear(self) -> int:
        return await self.database.clear_relationships()

    async def count(self) -> int:
        return await self.database.count_relationships()
