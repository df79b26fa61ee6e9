"""Cache orchestration state models.

Jobs and usage snapshots are process-local and JSON-serializable so they can
be exposed over HTTP or saved to the KV store.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class JobStatus(str, Enum):
    """Preload job states.

    State transitions:
        RUNNING -> COMPLETED
                -> FAILED
                -> CANCELLED   (record only; the runner keeps going)
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


FINISHED_STEP_STATES = (StepStatus.COMPLETED, StepStatus.SKIPPED)


@dataclass
class JobStep:
    """One labelled step of a preload job."""
    name: str
    label: str
    status: StepStatus = StepStatus.PENDING
    processed: int = 0
    total: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "status": self.status.value,
            "processed": self.processed,
            "total": self.total,
            "message": self.message,
        }


@dataclass
class PreloadJob:
    """Pollable record of a long-running preload.

    ``percent`` is weighted by per-step item counts when those are known,
    otherwise by step count. It only reaches 100 on completion.
    """
    kind: str
    triggered_by: str
    steps: List[JobStep]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: JobStatus = JobStatus.RUNNING
    step_index: int = 0
    percent: float = 0.0
    current_step: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    done: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.RUNNING

    def _step(self, name: str) -> Optional[JobStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def set_step_totals(self, totals: Mapping[str, int]) -> None:
        for name, total in totals.items():
            step = self._step(name)
            if step:
                step.total = max(0, int(total))
        self._recalculate()

    def begin_step(self, name: str, total: Optional[int] = None) -> None:
        step = self._step(name)
        if step is None:
            return
        self.step_index = self.steps.index(step)
        self.current_step = step.label
        step.status = StepStatus.RUNNING
        if total is not None:
            step.total = max(0, int(total))
        self._recalculate()

    def update_step(self, name: str, processed: int, total: Optional[int] = None,
                    message: Optional[str] = None) -> None:
        step = self._step(name)
        if step is None:
            return
        step.processed = max(0, int(processed))
        if total is not None:
            step.total = max(0, int(total))
        if message:
            step.message = message
        self._recalculate()

    def complete_step(self, name: str, processed: Optional[int] = None) -> None:
        step = self._step(name)
        if step is None:
            return
        step.status = StepStatus.COMPLETED
        if processed is not None:
            step.processed = processed
        self._recalculate()

    def skip_step(self, name: str, message: Optional[str] = None) -> None:
        step = self._step(name)
        if step is None:
            return
        step.status = StepStatus.SKIPPED
        step.message = message
        self._recalculate()

    def fail_step(self, name: str, message: str) -> None:
        step = self._step(name)
        if step is None:
            return
        step.status = StepStatus.FAILED
        step.message = message

    def report(self, name: str, processed: int, total: Optional[int] = None,
               finished: bool = False) -> None:
        """Progress callback shape used by the preload orchestrator."""
        step = self._step(name)
        if step is None:
            return
        if step.status == StepStatus.PENDING:
            self.begin_step(name, total)
        if finished:
            self.complete_step(name, processed)
        else:
            self.update_step(name, processed, total)

    def _recalculate(self) -> None:
        grand_total = sum(s.total for s in self.steps)
        if grand_total > 0:
            completed = 0
            for step in self.steps:
                if step.status in FINISHED_STEP_STATES:
                    completed += step.total
                else:
                    completed += min(step.processed, step.total)
            percent = completed / grand_total * 100
        elif self.steps:
            completed_steps = 0.0
            for step in self.steps:
                if step.status in FINISHED_STEP_STATES:
                    completed_steps += 1
                elif step.status == StepStatus.RUNNING and step.total:
                    completed_steps += min(step.processed, step.total) / step.total
            percent = completed_steps / len(self.steps) * 100
        else:
            percent = 0.0
        self.percent = round(min(percent, 99.0), 1)

    def finish(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.result = result
        if self.status == JobStatus.CANCELLED:
            return
        self.status = JobStatus.COMPLETED
        self.percent = 100.0
        self.current_step = "Completed"
        self.completed_at = time.time()
        self._resolve()

    def fail(self, error: str) -> None:
        self.error = error
        if self.status == JobStatus.CANCELLED:
            return
        self.status = JobStatus.FAILED
        self.current_step = "Failed"
        self.completed_at = time.time()
        self._resolve()

    def cancel(self) -> bool:
        """Mark cancelled so pollers stop waiting; returns False if already finished."""
        if self.is_terminal:
            return False
        self.status = JobStatus.CANCELLED
        self.current_step = "Cancelled"
        self.completed_at = time.time()
        self._resolve()
        return True

    def _resolve(self) -> None:
        if self.done is not None and not self.done.done():
            self.done.set_result(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "percent": self.percent,
            "currentStep": self.current_step,
            "stepIndex": self.step_index,
            "steps": [s.to_dict() for s in self.steps],
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "triggeredBy": self.triggered_by,
            "error": self.error,
            "result": self.result,
        }


@dataclass
class StepResult:
    """Outcome of one preload step."""
    entity_type: str
    count: int = 0
    indexed: int = 0
    pruned: int = 0
    duration_ms: int = 0
    stored: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "count": self.count,
            "indexed": self.indexed,
            "pruned": self.pruned,
            "duration_ms": self.duration_ms,
            "stored": self.stored,
        }


@dataclass
class PreloadResult:
    """Outcome of preload_all()."""
    success: bool
    steps: List[StepResult] = field(default_factory=list)
    relationships: int = 0
    duration_ms: int = 0
    sync_log_id: Optional[int] = None
    invalidated_during_run: bool = False

    @property
    def total_records(self) -> int:
        return sum(s.count for s in self.steps)

    @property
    def total_indexes(self) -> int:
        return sum(s.indexed for s in self.steps)

    @property
    def stored(self) -> bool:
        return all(s.stored for s in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total_records": self.total_records,
            "total_indexes": self.total_indexes,
            "relationships": self.relationships,
            "duration_ms": self.duration_ms,
            "sync_log_id": self.sync_log_id,
            "invalidated_during_run": self.invalidated_during_run,
            "stored": self.stored,
            "steps": {s.entity_type: s.to_dict() for s in self.steps},
        }


@dataclass
class UsageSnapshot:
    """Serializable usage counters saved to ``system:usage_stats``."""
    counts: Dict[str, int] = field(default_factory=dict)
    last_access: Dict[str, float] = field(default_factory=dict)
    saved_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "last_access": dict(self.last_access),
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsageSnapshot":
        return cls(
            counts={str(k): int(v) for k, v in (data.get("counts") or {}).items()},
            last_access={str(k): float(v) for k, v in (data.get("last_access") or {}).items()},
            saved_at=float(data.get("saved_at") or time.time()),
        )


# =============================================================================
# Report cache key specs
# =============================================================================


@dataclass(frozen=True)
class ExplicitKey:
    """A fully-qualified cache key supplied by the caller."""
    key: str


@dataclass(frozen=True)
class DerivedKey:
    """A report type plus parameter bag, canonicalized into a key."""
    report_type: str
    params: Mapping[str, Any] = field(default_factory=dict, hash=False)


CacheKeySpec = Union[ExplicitKey, DerivedKey]
