"""Read-only job liveness classification for monitoring consumers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from course_orchestrator.config import HealthSettings
from course_orchestrator.orchestrator.errors import JobNotFoundError
from course_orchestrator.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    HealthStatus,
    JobHealthReport,
    JobStatus,
    JobView,
    TaskView,
)
from course_orchestrator.orchestrator.progress import job_counters, progress_percentage
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.storage.common import utc_now

RECOMMENDED_ACTIONS: dict[HealthStatus, str] = {
    HealthStatus.HEALTHY: "wait",
    HealthStatus.STALLED: "resume",
    HealthStatus.STUCK: "restart",
    HealthStatus.FAILED: "manual_intervention",
    HealthStatus.ABANDONED: "delete_and_retry",
}


def classify_health(
    *,
    job: JobView,
    last_activity_at: datetime,
    now: datetime,
    settings: HealthSettings,
) -> tuple[HealthStatus, str]:
    """Map a job and its idle time to a health status and a human message."""

    idle = (now - last_activity_at).total_seconds()
    if job.status == JobStatus.FAILED:
        return HealthStatus.FAILED, job.error_summary or "Job failed."
    if job.status in TERMINAL_JOB_STATUSES:
        return HealthStatus.HEALTHY, f"Job {job.status.value}."
    if job.is_paused:
        return HealthStatus.HEALTHY, "Job is paused by operator."
    if idle >= settings.abandon_after_seconds and job.status == JobStatus.PROCESSING:
        return (
            HealthStatus.ABANDONED,
            f"No task activity for {_minutes(idle)} minutes; the job looks abandoned.",
        )
    if idle >= settings.stuck_after_seconds:
        return HealthStatus.STUCK, f"No task activity for {_minutes(idle)} minutes."
    if idle >= settings.stall_after_seconds:
        return HealthStatus.STALLED, f"No task activity for {_minutes(idle)} minutes."
    return HealthStatus.HEALTHY, "Job is progressing."


class JobHealthAggregator:
    """Computes progress and liveness from stored task state; never mutates it."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        settings: HealthSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.clock = clock

    def health(self, job_id: str, *, now: datetime | None = None) -> JobHealthReport:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return self._report(job=job, tasks=self.repository.list_tasks(job_id), now=now)

    def check_all(
        self,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> list[JobHealthReport]:
        """Health of every non-terminal job (stuck-job sweep)."""

        jobs = self.repository.list_jobs(
            user_id=user_id,
            statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
            limit=1_000,
        )
        return [
            self._report(job=job, tasks=self.repository.list_tasks(job.job_id), now=now)
            for job in jobs
        ]

    def _report(
        self,
        *,
        job: JobView,
        tasks: list[TaskView],
        now: datetime | None,
    ) -> JobHealthReport:
        moment = now or self.clock()
        last_activity = max(
            [job.last_activity_at, job.created_at, *(task.updated_at for task in tasks)],
        )
        status, message = classify_health(
            job=job,
            last_activity_at=last_activity,
            now=moment,
            settings=self.settings,
        )
        counters = job_counters(tasks)
        return JobHealthReport(
            job_id=job.job_id,
            status=status,
            job_status=job.status,
            progress_percentage=progress_percentage(
                total=counters["total"],
                completed=counters["completed"],
                skipped=counters["skipped"],
            ),
            message=message,
            recommended_action=RECOMMENDED_ACTIONS[status],
            last_activity_at=last_activity,
            seconds_since_activity=max(0.0, (moment - last_activity).total_seconds()),
            total_tasks=counters["total"],
            completed_tasks=counters["completed"],
            failed_tasks=counters["failed"],
            skipped_tasks=counters["skipped"],
            running_tasks=counters["running"],
            pending_tasks=counters["pending"],
            is_paused=job.is_paused,
        )


def _minutes(seconds: float) -> int:
    return int(seconds // 60)
