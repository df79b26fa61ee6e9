"""Structured logging for the cache service.

structlog renders over stdlib logging so third-party loggers (uvicorn,
SQLAlchemy, APScheduler) share the same handlers. Context bound with
``job_context`` is merged into every event emitted inside the block, which
is how preload steps, lazy loads and KV calls made by a job carry its id.
"""

import sys
import structlog
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional
from core.config import Settings

NOISY_LOGGERS = (
    "apscheduler",
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "uvicorn.access",
    "watchfiles",
)


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _processors(log_format: str) -> list:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors += [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False, pad_event=40,
                                          exception_formatter=structlog.dev.plain_traceback),
        ]
    return processors


def configure_logging(settings: Settings) -> None:
    """Configure structured logging from settings. Safe to call more than once."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level,
                        handlers=_handlers(settings, level), force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(settings.log_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_context(job_id: str, kind: str) -> Iterator[None]:
    """Bind job fields to every log event emitted by the current task."""
    with structlog.contextvars.bound_contextvars(job_id=job_id, job_kind=kind):
        yield


def log_execution_time(logger: structlog.stdlib.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )


def log_cache_operation(logger: structlog.stdlib.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Debug event for a single KV call. ``hit`` is only set for reads."""
    if hit is not None:
        kwargs["cache_hit"] = hit
    logger.debug("Cache operation", operation=operation, cache_key=key, **kwargs)
