"""In-process KV backend with the subset of the redis.asyncio API the cache uses.

Single-process deployments and the test suite run against this backend; it
supports TTLs, sets, glob scans and pipelines, and reports a memory usage
estimate through ``info("memory")`` the same way Redis does.
"""

import fnmatch
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Union


def _sizeof(value: Any) -> int:
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, set):
        return sum(len(str(m)) for m in value) + 16 * len(value)
    return len(str(value))


class MemoryKVStore:
    """Dict-backed store with lazy expiry."""

    def __init__(self, maxmemory: int = 0):
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self.maxmemory = maxmemory

    # -------------------------------------------------------------------------
    # Expiry bookkeeping
    # -------------------------------------------------------------------------

    def _alive(self, key: str) -> bool:
        if key not in self._data:
            return False
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return True

    def _live_keys(self) -> List[str]:
        return [k for k in list(self._data.keys()) if self._alive(k)]

    def _container(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            self._data[key] = kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    # -------------------------------------------------------------------------
    # Strings and keys
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, str):
            raise TypeError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._data[key] = value
        if ex:
            self._expires[key] = time.monotonic() + ex
        else:
            self._expires.pop(key, None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._alive(key):
                deleted += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return deleted

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = time.monotonic() + ttl
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - time.monotonic())))

    async def keys(self, pattern: str = "*") -> List[str]:
        return [k for k in self._live_keys() if fnmatch.fnmatchcase(k, pattern)]

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None) -> AsyncIterator[str]:
        for key in await self.keys(match or "*"):
            yield key

    # -------------------------------------------------------------------------
    # Sets
    # -------------------------------------------------------------------------

    async def sadd(self, key: str, *members: Any) -> int:
        container: Set[str] = self._container(key, set)
        before = len(container)
        container.update(str(m) for m in members)
        return len(container) - before

    async def srem(self, key: str, *members: Any) -> int:
        if not self._alive(key):
            return 0
        container: Set[str] = self._container(key, set)
        removed = 0
        for member in members:
            if str(member) in container:
                container.discard(str(member))
                removed += 1
        if not container:
            await self.delete(key)
        return removed

    async def smembers(self, key: str) -> Set[str]:
        if not self._alive(key):
            return set()
        return set(self._container(key, set))

    async def scard(self, key: str) -> int:
        if not self._alive(key):
            return 0
        return len(self._container(key, set))

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------

    async def info(self, section: Optional[str] = None) -> Dict[str, Union[int, float]]:
        used = sum(len(k) + _sizeof(self._data[k]) for k in self._live_keys())
        return {
            "used_memory": used,
            "maxmemory": self.maxmemory,
            "mem_fragmentation_ratio": 1.0,
        }

    def pipeline(self, transaction: bool = True) -> "MemoryPipeline":
        return MemoryPipeline(self)

    async def aclose(self) -> None:
        return None

    async def close(self) -> None:
        return None


class MemoryPipeline:
    """Queues commands and applies them in order on ``execute()``."""

    def __init__(self, store: MemoryKVStore):
        self._store = store
        self._commands: List[tuple] = []

    def __len__(self) -> int:
        return len(self._commands)

    def __getattr__(self, name: str):
        target = getattr(self._store, name, None)
        if target is None or name.startswith("_") or name in ("pipeline", "scan_iter"):
            raise AttributeError(name)

        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        results = []
        for name, args, kwargs in commands:
            results.append(await getattr(self._store, name)(*args, **kwargs))
        return results

    async def reset(self) -> None:
        self._commands = []

    async def __aenter__(self) -> "MemoryPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.reset()
