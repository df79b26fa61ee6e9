"""Environment-driven configuration with Pydantic v2."""

from typing import Dict, List, Literal, Optional, Tuple
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    workers: int = Field(default=1, env="WORKERS", ge=1, le=8)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], env="CORS_ORIGINS")

    # Durable cache tables (index, relationships, metadata, sync log)
    database_url: str = Field(default="sqlite+aiosqlite:///./data/cache.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=1, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=0, le=100)

    # Source Store (HR sync tables, read only). Empty means same as database_url
    source_database_url: Optional[str] = Field(default=None, env="SOURCE_DATABASE_URL")

    # KV cache
    cache_enabled: bool = Field(default=True, env="CACHE_ENABLED")
    cache_backend: Literal["redis", "memory"] = Field(default="redis", env="CACHE_BACKEND")
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_host: str = Field(default="127.0.0.1", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT", ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None, env="REDIS_PASSWORD")
    redis_db: int = Field(default=0, env="REDIS_DB", ge=0, le=15)
    cache_ttl: int = Field(default=300, env="CACHE_TTL", ge=1)
    entity_ttl_overrides: Dict[str, int] = Field(
        default_factory=lambda: {
            "division": 3600,
            "section": 3600,
            "subsection": 3600,
            "employee": 1800,
            "attendance": 3600,
        },
        env="ENTITY_TTL_OVERRIDES",
    )
    cache_connect_timeout: float = Field(default=5.0, env="CACHE_CONNECT_TIMEOUT", gt=0)
    cache_max_retries: int = Field(default=3, env="CACHE_MAX_RETRIES", ge=0, le=10)
    cache_retry_backoff: float = Field(default=0.1, env="CACHE_RETRY_BACKOFF", ge=0)
    cache_retry_backoff_cap: float = Field(default=2.0, env="CACHE_RETRY_BACKOFF_CAP", ge=0)
    cache_memory_ceiling_bytes: int = Field(
        default=500 * 1024 * 1024, env="CACHE_MEMORY_CEILING_BYTES", ge=0
    )

    # Usage tracking and eviction
    dynamic_ttl_enabled: bool = Field(default=True, env="DYNAMIC_TTL_ENABLED")
    dynamic_ttl_thresholds: List[Tuple[int, int]] = Field(
        default_factory=lambda: [(100, 7200), (50, 3600), (10, 1800)],
        env="DYNAMIC_TTL_THRESHOLDS",
    )
    dynamic_ttl_floor: int = Field(default=900, env="DYNAMIC_TTL_FLOOR", ge=1)
    dynamic_ttl_default: int = Field(default=3600, env="DYNAMIC_TTL_DEFAULT", ge=1)
    eviction_fraction: float = Field(default=0.2, env="EVICTION_FRACTION", gt=0, le=1)
    usage_snapshot_ttl: int = Field(default=86400, env="USAGE_SNAPSHOT_TTL", ge=60)
    preload_top_n: int = Field(default=100, env="PRELOAD_TOP_N", ge=1)

    # Preload and streaming
    preload_batch_size: int = Field(default=500, env="PRELOAD_BATCH_SIZE", ge=1)
    preload_on_startup: bool = Field(default=False, env="PRELOAD_ON_STARTUP")
    preload_attendance: bool = Field(default=False, env="PRELOAD_ATTENDANCE")
    attendance_preload_days: int = Field(default=30, env="ATTENDANCE_PRELOAD_DAYS", ge=1)
    preload_attendance_from: Optional[str] = Field(default=None, env="PRELOAD_ATTENDANCE_FROM")
    streaming_batch_size: int = Field(default=1000, env="STREAMING_BATCH_SIZE", ge=1)
    streaming_pause_seconds: float = Field(default=0.01, env="STREAMING_PAUSE_SECONDS", ge=0)
    search_cache_ttl: int = Field(default=300, env="SEARCH_CACHE_TTL", ge=1)
    index_search_limit: int = Field(default=100, env="INDEX_SEARCH_LIMIT", ge=1)
    job_retention: int = Field(default=20, env="JOB_RETENTION", ge=1)

    # Maintenance scheduler (5-field cron expressions)
    maintenance_enabled: bool = Field(default=True, env="MAINTENANCE_ENABLED")
    maintenance_timezone: str = Field(default="UTC", env="MAINTENANCE_TIMEZONE")
    quick_cleanup_cron: str = Field(default="*/15 * * * *", env="QUICK_CLEANUP_CRON")
    deep_cleanup_cron: str = Field(default="0 * * * *", env="DEEP_CLEANUP_CRON")
    memory_optimization_cron: str = Field(default="*/30 * * * *", env="MEMORY_OPTIMIZATION_CRON")
    usage_analysis_cron: str = Field(default="0 */6 * * *", env="USAGE_ANALYSIS_CRON")
    usage_snapshot_cron: str = Field(default="0 * * * *", env="USAGE_SNAPSHOT_CRON")
    nightly_optimization_cron: str = Field(default="0 2 * * *", env="NIGHTLY_OPTIMIZATION_CRON")
    health_check_cron: str = Field(default="*/5 * * * *", env="HEALTH_CHECK_CRON")
    quick_cleanup_ttl_threshold: int = Field(default=60, env="QUICK_CLEANUP_TTL_THRESHOLD", ge=1)
    deep_cleanup_ttl_threshold: int = Field(default=300, env="DEEP_CLEANUP_TTL_THRESHOLD", ge=1)
    memory_pressure_ratio: float = Field(default=0.8, env="MEMORY_PRESSURE_RATIO", gt=0, le=1)
    fragmentation_warn_ratio: float = Field(default=1.5, env="FRAGMENTATION_WARN_RATIO", gt=1)
    memory_alarm_bytes: int = Field(default=1024 * 1024 * 1024, env="MEMORY_ALARM_BYTES", ge=0)
    usage_hot_threshold: int = Field(default=50, env="USAGE_HOT_THRESHOLD", ge=1)
    usage_cold_threshold: int = Field(default=5, env="USAGE_COLD_THRESHOLD", ge=1)
    hit_rate_target: float = Field(default=70.0, env="HIT_RATE_TARGET", ge=0, le=100)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url", "source_database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("dynamic_ttl_thresholds")
    @classmethod
    def sort_ttl_thresholds(cls, v):
        """Highest access threshold first so the first match wins."""
        return sorted(((int(hits), int(ttl)) for hits, ttl in v), key=lambda t: t[0], reverse=True)

    @property
    def effective_source_url(self) -> str:
        return self.source_database_url or self.database_url

    def ttl_for(self, entity_type: str) -> int:
        """Fixed TTL for a preloaded entity collection."""
        return self.entity_ttl_overrides.get(entity_type, self.cache_ttl)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
