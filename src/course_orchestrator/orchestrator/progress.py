"""Job-level status derivation from task states."""

from __future__ import annotations

import logging
from collections import Counter

from course_orchestrator.orchestrator.artifacts import OutputStore
from course_orchestrator.orchestrator.failure_classifier import classify_dependency_failure
from course_orchestrator.orchestrator.models import (
    ACTIVE_TASK_STATUSES,
    RESOLVED_TASK_STATUSES,
    TERMINAL_JOB_STATUSES,
    ErrorCategory,
    JobStatus,
    JobView,
    LogEntryWrite,
    LogLevel,
    Severity,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.rate_limiter import RateLimiter
from course_orchestrator.orchestrator.repository import OrchestratorRepository, is_unclaimed

logger = logging.getLogger(__name__)

_MAX_REFRESH_ATTEMPTS = 5
_BLOCKING_DEPENDENCY_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def derive_job_status(tasks: list[TaskView], *, current: JobStatus) -> JobStatus:
    """Job status as a function of its tasks.

    `completed` iff every task is completed or skipped; `failed` iff a task
    failed with critical severity or nothing is left to run and some task
    failed; otherwise `processing` once anything has moved.
    """

    if current == JobStatus.CANCELLED or not tasks:
        return current
    if all(task.status in RESOLVED_TASK_STATUSES for task in tasks):
        return JobStatus.COMPLETED
    failed = [task for task in tasks if task.status == TaskStatus.FAILED]
    if any(task.severity == Severity.CRITICAL for task in failed):
        return JobStatus.FAILED
    if failed and not any(task.status in ACTIVE_TASK_STATUSES for task in tasks):
        return JobStatus.FAILED
    if current != JobStatus.PENDING or any(_has_started(task) for task in tasks):
        return JobStatus.PROCESSING
    return JobStatus.PENDING


def job_counters(tasks: list[TaskView]) -> dict[str, int]:
    counts = Counter(task.status for task in tasks)
    return {
        "total": len(tasks),
        "completed": counts[TaskStatus.COMPLETED],
        "failed": counts[TaskStatus.FAILED],
        "skipped": counts[TaskStatus.SKIPPED],
        "running": counts[TaskStatus.RUNNING],
        "pending": counts[TaskStatus.PENDING] + counts[TaskStatus.QUEUED],
        "cancelled": counts[TaskStatus.CANCELLED],
    }


def progress_percentage(*, total: int, completed: int, skipped: int) -> float:
    if total <= 0:
        return 0.0
    return round((completed + skipped) / total * 100, 2)


def blocked_by_failed_dependency(tasks: list[TaskView]) -> dict[str, list[str]]:
    """Unclaimed tasks that can never run, mapped to the failed prerequisites."""

    status_by_id = {task.task_id: task.status for task in tasks}
    blocked: dict[str, list[str]] = {}
    for task in tasks:
        if not is_unclaimed(task):
            continue
        failed_deps = [
            dep
            for dep in task.dependency_ids
            if status_by_id.get(dep) in _BLOCKING_DEPENDENCY_STATUSES
        ]
        if failed_deps:
            blocked[task.task_id] = failed_deps
    return blocked


class JobProgressTracker:
    """Recomputes job counters/status and keeps active-job slots in step."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        rate_limiter: RateLimiter,
        output_store: OutputStore,
    ) -> None:
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.output_store = output_store

    def propagate_dependency_failures(self, job_id: str) -> list[str]:
        """Fail, without executing, every task whose prerequisite failed.

        Repeats until no new task is blocked so failures travel down chains.
        """

        failed_ids: list[str] = []
        while True:
            tasks = self.repository.list_tasks(job_id)
            blocked = blocked_by_failed_dependency(tasks)
            newly_failed = 0
            for task_id, dependency_ids in blocked.items():
                classification = classify_dependency_failure(dependency_ids)
                message = "Prerequisite task(s) failed: " + ", ".join(dependency_ids)
                if not self.repository.fail_unexecuted_task(
                    task_id=task_id,
                    failure=classification.to_task_failure(message),
                ):
                    continue
                newly_failed += 1
                failed_ids.append(task_id)
                self.repository.add_log_entry(
                    LogEntryWrite(
                        job_id=job_id,
                        task_id=task_id,
                        level=LogLevel.WARNING,
                        source="scheduler",
                        message=message,
                        payload=classification.to_event_details(),
                    ),
                )
            if newly_failed == 0:
                return failed_ids

    def refresh(self, job_id: str) -> JobView | None:
        """Write recomputed counters/status; returns the fresh job view."""

        self.propagate_dependency_failures(job_id)
        for _ in range(_MAX_REFRESH_ATTEMPTS):
            job = self.repository.get_job(job_id)
            if job is None:
                return None
            tasks = self.repository.list_tasks(job_id)
            status = derive_job_status(tasks, current=job.status)
            output_ref = None
            if status == JobStatus.COMPLETED and job.status != JobStatus.COMPLETED:
                output_ref = self.output_store.write_job_manifest(job_id=job_id, tasks=tasks)
            if not self.repository.update_job_progress(
                job_id=job_id,
                expected_status=job.status,
                status=status,
                counters=job_counters(tasks),
                error_summary=_error_summary(tasks) if status == JobStatus.FAILED else None,
                output_ref=output_ref,
            ):
                continue
            if status != job.status:
                self._on_transition(job=job, status=status)
            return self.repository.get_job(job_id)
        logger.warning("Gave up refreshing job %s after concurrent updates", job_id)
        return self.repository.get_job(job_id)

    def cancel(self, job: JobView) -> bool:
        """Mark a job cancelled; callers cancel its open tasks first."""

        tasks = self.repository.list_tasks(job.job_id)
        if not self.repository.update_job_progress(
            job_id=job.job_id,
            expected_status=job.status,
            status=JobStatus.CANCELLED,
            counters=job_counters(tasks),
            error_summary="Cancelled by operator.",
        ):
            return False
        self._on_transition(job=job, status=JobStatus.CANCELLED)
        return True

    def _on_transition(self, *, job: JobView, status: JobStatus) -> None:
        was_terminal = job.status in TERMINAL_JOB_STATUSES
        is_terminal = status in TERMINAL_JOB_STATUSES
        if is_terminal and not was_terminal:
            self.rate_limiter.release_job_slot(user_id=job.user_id)
        elif was_terminal and not is_terminal:
            self.rate_limiter.reacquire_job_slot(user_id=job.user_id)

        level = LogLevel.ERROR if status == JobStatus.FAILED else LogLevel.INFO
        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=job.job_id,
                level=level,
                source="orchestrator",
                message=f"Job status changed: {job.status.value} -> {status.value}",
                payload={"status_from": job.status.value, "status_to": status.value},
            ),
        )
        logger.info("Job %s: %s -> %s", job.job_id, job.status.value, status.value)


def _has_started(task: TaskView) -> bool:
    return task.status != TaskStatus.PENDING or task.retry_count > 0


def _error_summary(tasks: list[TaskView]) -> str:
    failed = [task for task in tasks if task.status == TaskStatus.FAILED]
    critical = [task for task in failed if task.severity == Severity.CRITICAL]
    root_causes = [
        task for task in failed if task.error_category != ErrorCategory.DEPENDENCY_FAILURE
    ]
    lead = (critical or root_causes or failed or [None])[0]
    if lead is None:
        return "Job failed."
    category = lead.error_category.value if lead.error_category else "unknown"
    return (
        f"{len(failed)} task(s) failed; first root cause {lead.task_type} "
        f"({category}): {lead.error_message or 'no message'}"
    )
