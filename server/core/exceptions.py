"""Cache orchestration exception hierarchy."""

from typing import List, Optional


class CacheError(Exception):
    """Base exception for all cache-tier errors."""


class BackendUnavailable(CacheError):
    """KV store connect or command failure.

    Only raised inside the KV adapter. The adapter converts it into a neutral
    return value, so callers never see it.
    """


class SourceUnavailable(CacheError):
    """Source Store query failed during a miss-fill or bulk read."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class PartialPreloadFailure(CacheError):
    """A preload step failed; earlier steps stay warm."""

    def __init__(self, step: str, completed_steps: List[str], cause: Optional[BaseException] = None):
        self.step = step
        self.completed_steps = list(completed_steps)
        self.cause = cause
        super().__init__(f"Preload step '{step}' failed: {cause}")


class StaleIndexReference(CacheError):
    """Index or relationship entry points at an evicted cache key."""

    def __init__(self, cache_key: str):
        self.cache_key = cache_key
        super().__init__(f"Stale reference to {cache_key}")


class JobNotFound(CacheError):
    """No preload job with the given id is known to this process."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
