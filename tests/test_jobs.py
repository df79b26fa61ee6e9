"""Preload job tracking: single flight, progress, failure and cancellation."""

import asyncio

import pytest
import structlog

from core.exceptions import JobNotFound, SourceUnavailable
from services.caching import JobStatus, JobTracker, StepStatus
from tests.conftest import make_settings


async def test_concurrent_triggers_share_one_job(stack):
    first, started = stack.preload.start_preload_job("alice")
    second, started_again = stack.preload.start_preload_job("bob")

    assert started is True
    assert started_again is False
    assert second.id == first.id

    job = await stack.jobs.wait_for_job(first.id, timeout=30)
    assert job.status == JobStatus.COMPLETED
    assert job.percent == 100.0
    assert [s.status for s in job.steps] == [StepStatus.COMPLETED] * 5
    assert job.result["total_records"] == 7


async def test_job_snapshot_shape(stack):
    job, _ = stack.preload.start_preload_job("api")
    snapshot = job.to_dict()

    assert snapshot["status"] == "running"
    assert snapshot["triggeredBy"] == "api"
    assert [s["name"] for s in snapshot["steps"]] == [
        "division", "section", "subsection", "employee", "relationships",
    ]
    await stack.jobs.wait_for_job(job.id, timeout=30)
    assert stack.jobs.get_job(job.id).to_dict()["completedAt"] is not None


async def test_attendance_step_is_optional(stack):
    job, _ = stack.preload.start_preload_job("api", include_attendance=True,
                                             from_date="2024-01-01", to_date="2024-01-31")
    await stack.jobs.wait_for_job(job.id, timeout=30)

    assert job.steps[-1].name == "attendance"
    assert job.result["attendance"]["records"] == 3


async def test_failed_step_fails_job(stack, monkeypatch):
    async def broken():
        raise SourceUnavailable("list_sections", "timeout")

    monkeypatch.setattr(stack.source, "list_sections", broken)

    job, _ = stack.preload.start_preload_job("api")
    await stack.jobs.wait_for_job(job.id, timeout=30)

    assert job.status == JobStatus.FAILED
    assert "section" in job.error
    assert job.steps[0].status == StepStatus.COMPLETED
    assert job.steps[1].status == StepStatus.FAILED
    assert job.percent < 100
    assert stack.jobs.active_job("full_preload") is None


async def test_cancel_is_record_only(stack):
    job, _ = stack.preload.start_preload_job("api")
    cancelled = stack.jobs.cancel_job(job.id)

    assert cancelled.status == JobStatus.CANCELLED
    assert (await stack.jobs.wait_for_job(job.id)).status == JobStatus.CANCELLED
    assert stack.jobs.active_job("full_preload") is None

    # the preload itself keeps running to completion
    while job.id in stack.jobs._tasks:
        await asyncio.sleep(0.01)
    assert job.status == JobStatus.CANCELLED
    assert job.result["total_records"] == 7

    replacement, started = stack.preload.start_preload_job("api")
    assert started is True
    assert replacement.id != job.id
    await stack.jobs.wait_for_job(replacement.id, timeout=30)


def test_unknown_job(settings):
    jobs = JobTracker(settings)
    assert jobs.get_job("nope") is None
    with pytest.raises(JobNotFound):
        jobs.require_job("nope")
    with pytest.raises(JobNotFound):
        jobs.cancel_job("nope")


async def test_finished_jobs_are_pruned(tmp_path):
    jobs = JobTracker(make_settings(tmp_path, job_retention=2))

    async def runner(job):
        return {"ok": True}

    ids = []
    for _ in range(3):
        job, _ = jobs.start_job("custom", "test", [("only", "Only")], runner)
        await jobs.wait_for_job(job.id, timeout=5)
        await asyncio.sleep(0)
        ids.append(job.id)

    assert [j.id for j in jobs.list_jobs()] == [ids[2], ids[1]]


async def test_runner_logs_carry_job_context(settings):
    jobs = JobTracker(settings)
    seen = {}

    async def runner(job):
        seen.update(structlog.contextvars.get_contextvars())

    job, _ = jobs.start_job("custom", "test", [("only", "Only")], runner)
    await jobs.wait_for_job(job.id, timeout=5)

    assert seen == {"job_id": job.id, "job_kind": "custom"}
    assert "job_id" not in structlog.contextvars.get_contextvars()


async def test_shutdown_interrupts_running_jobs(settings):
    jobs = JobTracker(settings)
    release = asyncio.Event()

    async def runner(job):
        await release.wait()

    job, _ = jobs.start_job("custom", "test", [("only", "Only")], runner)
    await asyncio.sleep(0)
    await jobs.shutdown()

    assert job.status == JobStatus.FAILED
    assert job.error == "Interrupted by shutdown"
