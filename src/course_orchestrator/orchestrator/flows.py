"""Prefect flow that drives one job through scheduling passes.

Each pass is a Prefect task so the run shows up pass-by-pass in the Prefect
UI; retries stay owned by the recovery manager, not by Prefect.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from prefect import flow, task
from prefect.cache_policies import NO_CACHE

from course_orchestrator.orchestrator.errors import JobNotFoundError
from course_orchestrator.orchestrator.models import TERMINAL_JOB_STATUSES, JobView
from course_orchestrator.orchestrator.scheduler import Scheduler

logger = logging.getLogger(__name__)

_DEFAULT_MAX_PASSES = 10_000


@task(cache_policy=NO_CACHE)
def scheduling_pass(*, scheduler: Scheduler, job_id: str) -> dict[str, Any]:
    """One recover/dispatch/await round restricted to `job_id`."""

    return asdict(scheduler.run_pass(job_ids=[job_id]))


@flow(name="course_generation_job")
def run_job_flow(
    *,
    scheduler: Scheduler,
    job_id: str,
    max_passes: int = _DEFAULT_MAX_PASSES,
    on_progress: Callable[[str], None] | None = None,
) -> JobView:
    """Run passes until the job is terminal or paused (or `max_passes` is spent)."""

    emit = on_progress or (lambda _: None)
    job = scheduler.progress.refresh(job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    for index in range(max_passes):
        if job.status in TERMINAL_JOB_STATUSES or job.is_paused:
            break
        summary = scheduling_pass(scheduler=scheduler, job_id=job_id)
        job = scheduler.progress.refresh(job_id) or job
        emit(
            f"pass {index + 1}: dispatched={summary['dispatched']} "
            f"completed={summary['completed']} failed={summary['failed']} "
            f"status={job.status.value}",
        )
        if not summary["dispatched"]:
            scheduler.idle_wait()
    logger.info("Flow for job %s finished with status %s", job_id, job.status.value)
    return job
