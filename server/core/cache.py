"""KV cache adapter with Redis (production) or in-process memory backend.

Every public coroutine is tolerant of backend unavailability: when the cache
is disabled or disconnected it returns a neutral value (None, False, 0, empty
collection) instead of raising, so callers degrade to always-recompute.
"""

import json
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from constants import Namespace
from core.config import Settings
from core.exceptions import BackendUnavailable
from core.keys import NamespaceRegistry, namespace_of, namespace_pattern
from core.logging import get_logger, log_cache_operation
from core.memory_backend import MemoryKVStore

logger = get_logger(__name__)

T = TypeVar("T")

DELETE_CHUNK = 500


def _new_stats() -> Dict[str, int]:
    return {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}


class CacheService:
    """Async KV adapter shared by every cache component.

    Backend selection:
    - Redis: CACHE_BACKEND=redis (default), with bounded connect retries
    - Memory: CACHE_BACKEND=memory, single-process deployments and tests
    - Disabled: CACHE_ENABLED=false, every call is a no-op
    """

    def __init__(self, settings: Settings, registry: Optional[NamespaceRegistry] = None):
        self.settings = settings
        self.enabled = settings.cache_enabled
        self.backend = settings.cache_backend
        self.client: Any = None
        self.connected = False
        self.registry = registry or NamespaceRegistry()
        self.stats = _new_stats()
        self._connect_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def startup(self) -> bool:
        """Initialize cache connection."""
        return await self.connect()

    async def connect(self) -> bool:
        """Connect to the configured backend with capped exponential backoff."""
        if not self.enabled:
            logger.info("KV cache disabled, requests will bypass the cache")
            return False

        async with self._connect_lock:
            if self.connected and self.client is not None:
                return True

            if self.backend == "memory":
                self.client = MemoryKVStore(maxmemory=self.settings.cache_memory_ceiling_bytes)
                self.connected = True
                logger.info("Using in-memory KV cache")
                return True

            attempts = self.settings.cache_max_retries + 1
            for attempt in range(attempts):
                client = self._create_redis_client()
                try:
                    await client.ping()
                    self.client = client
                    self.connected = True
                    logger.info("Redis cache connected",
                                host=self.settings.redis_host,
                                port=self.settings.redis_port,
                                db=self.settings.redis_db,
                                attempt=attempt + 1)
                    return True
                except Exception as e:
                    await self._close_client(client)
                    delay = self._backoff_delay(attempt)
                    logger.warning("Redis connection failed",
                                   attempt=attempt + 1, retry_in=delay, error=str(e))
                    if attempt + 1 < attempts:
                        await asyncio.sleep(delay)

            self.client = None
            self.connected = False
            logger.warning("Redis unavailable, reports will run without caching")
            return False

    async def reconnect(self) -> bool:
        """Drop the current client and connect again."""
        async with self._connect_lock:
            await self._close_client(self.client)
            self.client = None
            self.connected = False
        return await self.connect()

    async def shutdown(self) -> None:
        """Close cache connections."""
        await self._close_client(self.client)
        if self.client is not None:
            logger.info("KV cache connection closed", backend=self.backend)
        self.client = None
        self.connected = False

    def _create_redis_client(self) -> "redis.Redis":
        timeout = self.settings.cache_connect_timeout
        if self.settings.redis_url:
            return redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        return redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            password=self.settings.redis_password,
            db=self.settings.redis_db,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    def _backoff_delay(self, attempt: int) -> float:
        delay = self.settings.cache_retry_backoff * (2 ** attempt)
        return min(delay, self.settings.cache_retry_backoff_cap)

    @staticmethod
    async def _close_client(client: Any) -> None:
        if client is None:
            return
        try:
            if hasattr(client, "aclose"):
                await client.aclose()
            else:
                await client.close()
        except Exception as e:
            logger.debug("Ignoring error while closing cache client", error=str(e))

    # =========================================================================
    # Guarded execution
    # =========================================================================

    def is_available(self) -> bool:
        """Check if the backend is enabled and connected."""
        return self.enabled and self.connected and self.client is not None

    def _require_client(self) -> Any:
        if not self.enabled:
            raise BackendUnavailable("cache disabled")
        if not self.connected or self.client is None:
            raise BackendUnavailable("cache not connected")
        return self.client

    async def _run(self, operation: str, key: str,
                   fn: Callable[[Any], Awaitable[T]], default: T) -> T:
        try:
            client = self._require_client()
            return await fn(client)
        except BackendUnavailable:
            return default
        except Exception as e:
            self._record_error(operation, key, e)
            return default

    def _record_error(self, operation: str, key: str, error: Exception) -> None:
        self.stats["errors"] += 1
        if isinstance(error, (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)):
            self.connected = False
        logger.error("Cache operation failed", operation=operation, key=key, error=str(error))

    # =========================================================================
    # Strings
    # =========================================================================

    async def get_raw(self, key: str) -> Optional[str]:
        """Get the stored text for a key."""
        async def op(client):
            value = await client.get(key)
            hit = value is not None
            self.stats["hits" if hit else "misses"] += 1
            log_cache_operation(logger, "get", key, hit=hit)
            return value

        return await self._run("get", key, op, None)

    async def get(self, key: str) -> Optional[Any]:
        """Get a JSON value from cache."""
        value = await self.get_raw(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def set_raw(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Store text with a TTL (SETEX)."""
        ttl = ttl or self.settings.cache_ttl

        async def op(client):
            await client.setex(key, ttl, value)
            self.stats["sets"] += 1
            self.registry.track(key)
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        return await self._run("set", key, op, False)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a JSON-serialized value with optional TTL."""
        return await self.set_raw(key, json.dumps(value, default=str), ttl)

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not keys:
            return 0

        async def op(client):
            deleted = 0
            for start in range(0, len(keys), DELETE_CHUNK):
                deleted += await client.delete(*keys[start:start + DELETE_CHUNK])
            self.stats["deletes"] += deleted
            self.registry.forget(*keys)
            log_cache_operation(logger, "delete", keys[0], count=len(keys), deleted=deleted)
            return deleted

        return await self._run("delete", keys[0], op, 0)

    async def exists(self, key: str) -> bool:
        async def op(client):
            return bool(await client.exists(key))

        return await self._run("exists", key, op, False)

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 without TTL, -2 when missing."""
        async def op(client):
            return int(await client.ttl(key))

        return await self._run("ttl", key, op, -2)

    async def expire(self, key: str, ttl: int) -> bool:
        async def op(client):
            return bool(await client.expire(key, ttl))

        return await self._run("expire", key, op, False)

    # =========================================================================
    # Key enumeration
    # =========================================================================

    async def keys(self, pattern: str) -> List[str]:
        """KEYS pattern (glob)."""
        async def op(client):
            return list(await client.keys(pattern))

        return await self._run("keys", pattern, op, [])

    async def scan(self, pattern: str = "*") -> List[str]:
        """Incremental SCAN collecting every key matching pattern."""
        async def op(client):
            found = []
            async for key in client.scan_iter(match=pattern, count=1000):
                found.append(key)
            return found

        return await self._run("scan", pattern, op, [])

    async def clear_pattern(self, pattern: str) -> int:
        """Delete every key matching pattern."""
        keys = await self.keys(pattern)
        if not keys:
            return 0
        deleted = await self.delete(*keys)
        log_cache_operation(logger, "clear_pattern", pattern, deleted=deleted)
        return deleted

    async def namespace_keys(self, namespace: Namespace) -> List[str]:
        """Live keys in a namespace, from the registry when it has entries.

        Registry entries whose key has expired are forgotten on the way.
        """
        if self.registry.is_tracked(namespace) and self.registry.size(namespace):
            return await self._live_registered(sorted(self.registry.keys(namespace)))
        return await self.scan(namespace_pattern(namespace))

    async def _live_registered(self, keys: List[str]) -> List[str]:
        async def op(client):
            pipe = client.pipeline(transaction=False)
            for key in keys:
                pipe.exists(key)
            flags = await pipe.execute()
            dead = [key for key, flag in zip(keys, flags) if not flag]
            if dead:
                self.registry.forget(*dead)
                log_cache_operation(logger, "forget_expired", dead[0], count=len(dead))
            return [key for key, flag in zip(keys, flags) if flag]

        return await self._run("exists", keys[0], op, [])

    async def clear_namespace(self, namespace: Namespace) -> int:
        deleted = await self.clear_pattern(namespace_pattern(namespace))
        self.registry.forget_namespace(namespace)
        return deleted

    # =========================================================================
    # Sets
    # =========================================================================

    async def sadd(self, key: str, *members: Any) -> int:
        if not members:
            return 0

        async def op(client):
            return int(await client.sadd(key, *members))

        return await self._run("sadd", key, op, 0)

    async def srem(self, key: str, *members: Any) -> int:
        if not members:
            return 0

        async def op(client):
            return int(await client.srem(key, *members))

        return await self._run("srem", key, op, 0)

    async def smembers(self, key: str) -> Set[str]:
        async def op(client):
            return {m.decode("utf-8") if isinstance(m, bytes) else m for m in await client.smembers(key)}

        return await self._run("smembers", key, op, set())

    async def scard(self, key: str) -> int:
        async def op(client):
            return int(await client.scard(key))

        return await self._run("scard", key, op, 0)

    # =========================================================================
    # Batches
    # =========================================================================

    @asynccontextmanager
    async def pipeline(self) -> AsyncIterator["CacheBatch"]:
        """Collect commands and submit them as one pipeline on exit.

        Nothing is submitted when the body raises.
        """
        batch = CacheBatch(self)
        yield batch
        await batch.submit()

    # =========================================================================
    # Server
    # =========================================================================

    async def ping(self) -> bool:
        async def op(client):
            return bool(await client.ping())

        return await self._run("ping", "-", op, False)

    async def memory_info(self) -> Dict[str, Any]:
        """used_memory / maxmemory / mem_fragmentation_ratio from INFO memory."""
        async def op(client):
            info = await client.info("memory")
            return {
                "used_memory": int(info.get("used_memory", 0)),
                "maxmemory": int(info.get("maxmemory", 0)),
                "mem_fragmentation_ratio": float(info.get("mem_fragmentation_ratio", 0) or 0),
            }

        return await self._run("info", "memory", op, {})

    async def memory_usage(self) -> int:
        info = await self.memory_info()
        return int(info.get("used_memory", 0))

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        hit_rate = round(self.stats["hits"] / lookups * 100, 2) if lookups else 0.0
        return {
            "enabled": self.enabled,
            "connected": self.connected,
            "backend": self.backend,
            **self.stats,
            "hit_rate": hit_rate,
            "total_requests": lookups,
        }

    def reset_stats(self) -> None:
        self.stats = _new_stats()
        logger.info("Cache statistics reset")

    async def get_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {
                "enabled": self.enabled,
                "connected": False,
                "message": "Cache is disabled or not connected",
            }
        return {
            "enabled": True,
            "connected": True,
            "backend": self.backend,
            "host": self.settings.redis_host if self.backend == "redis" else None,
            "port": self.settings.redis_port if self.backend == "redis" else None,
            "db": self.settings.redis_db if self.backend == "redis" else None,
            "default_ttl": self.settings.cache_ttl,
            "memory": await self.memory_info(),
            "stats": self.get_stats(),
        }


class CacheBatch:
    """Commands queued for a single pipeline submission.

    Payload writes are queued before the set/index bookkeeping that refers to
    them, and the whole batch is sent at once, so readers never see a set
    member whose payload has not been written.
    """

    def __init__(self, cache: CacheService):
        self.cache = cache
        self._commands: List[tuple] = []
        self._written: List[str] = []
        self._deleted: List[str] = []
        self.submitted = True

    def __len__(self) -> int:
        return len(self._commands)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> "CacheBatch":
        payload = value if isinstance(value, str) else json.dumps(value, default=str)
        self._commands.append(("setex", (key, ttl or self.cache.settings.cache_ttl, payload)))
        self._written.append(key)
        return self

    def delete(self, *keys: str) -> "CacheBatch":
        if keys:
            self._commands.append(("delete", tuple(keys)))
            self._deleted.extend(keys)
        return self

    def sadd(self, key: str, *members: Any) -> "CacheBatch":
        if members:
            self._commands.append(("sadd", (key, *members)))
        return self

    def srem(self, key: str, *members: Any) -> "CacheBatch":
        if members:
            self._commands.append(("srem", (key, *members)))
        return self

    def expire(self, key: str, ttl: int) -> "CacheBatch":
        self._commands.append(("expire", (key, ttl)))
        return self

    async def submit(self) -> bool:
        """Send the queued commands; returns False when the backend is unavailable.

        A failed submission clears ``submitted`` for the rest of the batch's life.
        """
        if not self._commands:
            return True
        commands, written, deleted = self._commands, self._written, self._deleted
        self._commands, self._written, self._deleted = [], [], []

        async def op(client):
            pipe = client.pipeline(transaction=True)
            for name, args in commands:
                getattr(pipe, name)(*args)
            await pipe.execute()
            sets = sum(1 for name, _ in commands if name == "setex")
            self.cache.stats["sets"] += sets
            for key in written:
                self.cache.registry.track(key)
            self.cache.registry.forget(*deleted)
            log_cache_operation(logger, "pipeline", commands[0][1][0], commands=len(commands))
            return True

        stored = await self.cache._run("pipeline", str(commands[0][1][0]), op, False)
        if not stored:
            self.submitted = False
        return stored


def chunked(items: List[T], size: int) -> Iterable[List[T]]:
    """Split a list into consecutive chunks of at most size items."""
    for start in range(0, len(items), max(1, size)):
        yield items[start:start + size]


__all__ = ["CacheService", "CacheBatch", "chunked", "namespace_of"]
