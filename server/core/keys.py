"""KV key builders and the in-process namespace registry.

Key schema:
    cache:{type}:{id}               -> JSON entity payload
    cache:{type}:list               -> JSON list of ids (snapshot)
    cache:{type}:all                -> SET of ids
    rel:{parent}:{id}:{child}s      -> SET of child ids
    lazy:{type}:{id}                -> JSON entity payload (evictable)
    search:{type}:{filters}:{p}:{l} -> JSON page of results
    report:{type}:{params...}       -> report payload
    system:usage_stats              -> JSON usage snapshot
"""

import json
from typing import Any, Dict, Iterable, Optional, Set

from constants import Namespace, TRACKED_NAMESPACES


def entity_key(entity_type: str, entity_id: Any) -> str:
    return f"{Namespace.CACHE.value}:{entity_type}:{entity_id}"


def list_key(entity_type: str) -> str:
    return f"{Namespace.CACHE.value}:{entity_type}:list"


def all_key(entity_type: str) -> str:
    return f"{Namespace.CACHE.value}:{entity_type}:all"


def relationship_key(parent_type: str, parent_id: Any, child_type: str) -> str:
    return f"{Namespace.REL.value}:{parent_type}:{parent_id}:{child_type}s"


def lazy_key(entity_type: str, entity_id: Any) -> str:
    return f"{Namespace.LAZY.value}:{entity_type}:{entity_id}"


def search_key(entity_type: str, filters: Dict[str, Any], page: int, limit: int) -> str:
    canonical = json.dumps(filters or {}, sort_keys=True, default=str)
    return f"{Namespace.SEARCH.value}:{entity_type}:{canonical}:{page}:{limit}"


def namespace_pattern(namespace: Namespace) -> str:
    return f"{namespace.value}:*"


def namespace_of(key: str) -> Optional[Namespace]:
    """Return the namespace a key belongs to, or None for foreign keys."""
    prefix = key.split(":", 1)[0]
    try:
        return Namespace(prefix)
    except ValueError:
        return None


def usage_id_from_lazy_key(key: str) -> Optional[str]:
    """Map ``lazy:{type}:{id}`` to the usage tracker id ``{type}:{id}``."""
    parts = key.split(":", 1)
    if len(parts) != 2 or parts[0] != Namespace.LAZY.value:
        return None
    return parts[1]


class NamespaceRegistry:
    """Remembers keys written into tracked namespaces by this process.

    Lets the evictor enumerate ``lazy:*`` keys without a keyspace scan. The
    registry is best effort: keys written by other processes are not known,
    so callers fall back to a scan when it is empty.
    """

    def __init__(self, tracked: Iterable[Namespace] = TRACKED_NAMESPACES):
        self._keys: Dict[Namespace, Set[str]] = {ns: set() for ns in tracked}

    def is_tracked(self, namespace: Namespace) -> bool:
        return namespace in self._keys

    def track(self, key: str) -> None:
        namespace = namespace_of(key)
        if namespace in self._keys:
            self._keys[namespace].add(key)

    def forget(self, *keys: str) -> None:
        for key in keys:
            namespace = namespace_of(key)
            if namespace in self._keys:
                self._keys[namespace].discard(key)

    def forget_namespace(self, namespace: Namespace) -> None:
        if namespace in self._keys:
            self._keys[namespace].clear()

    def keys(self, namespace: Namespace) -> Set[str]:
        return set(self._keys.get(namespace, ()))

    def size(self, namespace: Namespace) -> int:
        return len(self._keys.get(namespace, ()))
