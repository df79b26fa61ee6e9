"""In-process tracker for long-running preload jobs with single-flight starts."""

import asyncio
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from core.config import Settings
from core.exceptions import JobNotFound
from core.logging import get_logger, job_context
from services.caching.models import JobStatus, JobStep, PreloadJob

logger = get_logger(__name__)

Runner = Callable[[PreloadJob], Awaitable[Optional[Dict[str, Any]]]]


class JobTracker:
    """Creates, runs and retains PreloadJob records for polling.

    Jobs are not persisted; after a restart the cache warmth check decides
    whether a new job is needed.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._jobs: "OrderedDict[str, PreloadJob]" = OrderedDict()
        self._active: Dict[str, str] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def start_job(self, kind: str, triggered_by: str, steps: Sequence[Tuple[str, str]],
                  runner: Runner) -> Tuple[PreloadJob, bool]:
        """Return the running job of this kind, or create and launch a new one.

        There is no await between the lookup and the registration, so
        concurrent callers on the same loop collapse into one job.
        """
        running = self.active_job(kind)
        if running is not None:
            logger.info("Joining running job", job_id=running.id, kind=kind, triggered_by=triggered_by)
            return running, False

        job = PreloadJob(
            kind=kind,
            triggered_by=triggered_by,
            steps=[JobStep(name=name, label=label) for name, label in steps],
        )
        job.done = asyncio.get_running_loop().create_future()
        self._jobs[job.id] = job
        self._active[kind] = job.id
        self._prune()

        self._tasks[job.id] = asyncio.create_task(self._run(job, runner))
        logger.info("Job started", job_id=job.id, kind=kind, triggered_by=triggered_by)
        return job, True

    async def _run(self, job: PreloadJob, runner: Runner) -> None:
        try:
            with job_context(job.id, job.kind):
                result = await runner(job)
                job.finish(result)
                logger.info("Job completed", status=job.status.value)
        except asyncio.CancelledError:
            job.fail("Interrupted by shutdown")
            raise
        except Exception as e:
            job.fail(str(e))
            logger.error("Job failed", job_id=job.id, kind=job.kind, error=str(e))
        finally:
            if self._active.get(job.kind) == job.id:
                del self._active[job.kind]
            self._tasks.pop(job.id, None)

    def _prune(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.is_terminal]
        excess = len(self._jobs) - self.settings.job_retention
        for job_id in finished[:max(0, excess)]:
            del self._jobs[job_id]

    def active_job(self, kind: str) -> Optional[PreloadJob]:
        job_id = self._active.get(kind)
        job = self._jobs.get(job_id) if job_id else None
        if job is not None and job.status == JobStatus.RUNNING:
            return job
        return None

    def get_job(self, job_id: str) -> Optional[PreloadJob]:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> PreloadJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(self) -> List[PreloadJob]:
        return list(reversed(self._jobs.values()))

    def cancel_job(self, job_id: str) -> PreloadJob:
        """Mark a job cancelled; the underlying work runs to completion."""
        job = self.require_job(job_id)
        if job.cancel():
            logger.info("Job marked cancelled", job_id=job_id, kind=job.kind)
        return job

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> PreloadJob:
        job = self.require_job(job_id)
        if job.done is not None and not job.is_terminal:
            await asyncio.wait_for(asyncio.shield(job.done), timeout)
        return job

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Running jobs interrupted", count=len(tasks))
