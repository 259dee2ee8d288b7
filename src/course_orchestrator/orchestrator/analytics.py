"""Derived per-job analytics and error reports, recomputed from task records."""

from __future__ import annotations

from collections import Counter

from course_orchestrator.orchestrator.errors import JobNotFoundError
from course_orchestrator.orchestrator.failure_classifier import error_pattern_suggestions
from course_orchestrator.orchestrator.models import (
    AnalyticsSnapshot,
    ErrorReport,
    JobView,
    LogLevel,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.repository import OrchestratorRepository

ERROR_LEVELS = (LogLevel.WARNING, LogLevel.ERROR, LogLevel.CRITICAL)


def build_analytics(job: JobView, tasks: list[TaskView]) -> AnalyticsSnapshot:
    durations = [
        task.actual_duration_seconds
        for task in tasks
        if task.status == TaskStatus.COMPLETED and task.actual_duration_seconds is not None
    ]
    total_duration = None
    if job.started_at is not None:
        end = job.finished_at
        if end is None and tasks:
            end = max(task.updated_at for task in tasks)
        if end is not None:
            total_duration = max(0.0, (end - job.started_at).total_seconds())

    by_status = Counter(task.status.value for task in tasks)
    attempted = by_status[TaskStatus.COMPLETED.value] + by_status[TaskStatus.FAILED.value]
    prompt_tokens = sum(task.prompt_tokens for task in tasks)
    completion_tokens = sum(task.completion_tokens for task in tasks)
    return AnalyticsSnapshot(
        job_id=job.job_id,
        total_tasks=len(tasks),
        tasks_by_status=dict(by_status),
        tasks_by_type=dict(Counter(task.task_type for task in tasks)),
        total_duration_seconds=round(total_duration, 3) if total_duration is not None else None,
        average_task_duration_seconds=round(sum(durations) / len(durations), 3)
        if durations
        else None,
        api_calls_made=sum(task.api_calls for task in tasks),
        api_calls_failed=sum(task.api_failures for task in tasks),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated_cost_usd=round(sum(task.estimated_cost_usd for task in tasks), 6),
        success_rate=round(by_status[TaskStatus.COMPLETED.value] / attempted * 100, 2)
        if attempted
        else 0.0,
        retries_performed=sum(task.retry_count for task in tasks),
        peak_memory_mb=job.peak_memory_mb,
    )


class JobAnalyticsService:
    """Read models over stored jobs: analytics snapshot and error report."""

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def analytics(self, job_id: str) -> AnalyticsSnapshot:
        job = self._require_job(job_id)
        return build_analytics(job, self.repository.list_tasks(job_id))

    def errors(self, job_id: str) -> ErrorReport:
        """Error log entries plus failed tasks with category/severity breakdowns."""

        self._require_job(job_id)
        entries = self.repository.list_log_entries(job_id, levels=ERROR_LEVELS)
        failed = self.repository.list_tasks(job_id, status=TaskStatus.FAILED)

        by_category: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        for entry in entries:
            category = entry.payload.get("error_category")
            severity = entry.payload.get("severity")
            if isinstance(category, str):
                by_category[category] += 1
            if isinstance(severity, str):
                by_severity[severity] += 1
        total = sum(by_category.values())
        most_common = by_category.most_common(1)
        return ErrorReport(
            job_id=job_id,
            entries=entries,
            failed_tasks=failed,
            by_category=dict(by_category),
            by_severity=dict(by_severity),
            critical_count=by_severity.get("critical", 0),
            most_common_category=most_common[0][0] if most_common else None,
            suggestions=error_pattern_suggestions(
                by_category=by_category,
                by_severity=by_severity,
                total=total,
            ),
        )

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
