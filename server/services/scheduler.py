"""
Cron Scheduler Service using APScheduler.
Runs the cache maintenance tasks on their cron schedules.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from typing import Callable, Dict, List

from core.logging import get_logger

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger.

    Args:
        cron_expression: 6-field cron expression (second minute hour day month weekday)
                        or 5-field (minute hour day month weekday)
        timezone: Timezone for schedule (default: UTC)
    """
    parts = cron_expression.split()

    if len(parts) >= 6:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=parts[5],
            timezone=timezone
        )

    # 5-field format: minute hour day month weekday (default second=0)
    if len(parts) < 5:
        parts.extend(['*'] * (5 - len(parts)))
    return CronTrigger(
        second='0',
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone
    )


class CronScheduler:
    """Thin owner of one AsyncIOScheduler instance."""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.scheduler = AsyncIOScheduler(timezone=timezone)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the scheduler if not already running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started", timezone=self.timezone)

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown")

    def register_cron_job(self, job_id: str, cron_expression: str, callback: Callable, **kwargs) -> str:
        """
        Register a cron job with the scheduler.

        Args:
            job_id: Unique identifier for the job
            cron_expression: 5- or 6-field cron expression
            callback: Async function to call when job fires
            **kwargs: Additional arguments passed to the callback

        Returns:
            The job_id
        """
        trigger = build_cron_trigger(cron_expression, self.timezone)

        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            kwargs=kwargs
        )

        logger.info("Registered cron job", job_id=job_id, expression=cron_expression)
        return job_id

    def get_all_jobs(self) -> List[Dict]:
        """Get list of all scheduled jobs."""
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger)
            }
            for job in self.scheduler.get_jobs()
        ]
