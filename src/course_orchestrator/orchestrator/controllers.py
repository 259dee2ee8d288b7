"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from course_orchestrator.config import Settings
from course_orchestrator.orchestrator.artifacts import load_json
from course_orchestrator.orchestrator.errors import InvalidTaskGraphError
from course_orchestrator.orchestrator.graph import parse_task_specs
from course_orchestrator.orchestrator.models import (
    JobHealthReport,
    RecoveryActionResult,
    ReportFormat,
    TaskStatus,
)
from course_orchestrator.orchestrator.services import CourseOrchestratorService, SubmitJob


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission from a JSON job file."""

    db_path: Path | None
    job_file: Path
    user_id: str
    role: str | None


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job reads and actions."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    job_id: str
    status: str | None


@dataclass(slots=True)
class TaskCommand:
    """CLI input for retry/skip/inspect operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ExpandTaskCommand:
    db_path: Path | None
    parent_task_id: str
    task_type: str
    input_json: str | None
    priority: int | None


@dataclass(slots=True)
class ExportReportCommand:
    db_path: Path | None
    job_id: str
    report_format: str
    output_path: Path | None
    include_analytics: bool = True
    include_tasks: bool = True
    include_errors: bool = True
    include_performance: bool = True


@dataclass(slots=True)
class RunCommand:
    """CLI input for scheduler execution."""

    db_path: Path | None
    job_id: str | None
    once: bool
    max_passes: int | None
    max_idle_polls: int | None
    use_prefect: bool = False


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None
    user_id: str | None


@dataclass(slots=True)
class UsageCommand:
    db_path: Path | None
    user_id: str
    role: str | None


@dataclass(slots=True)
class RecordMemoryCommand:
    db_path: Path | None
    job_id: str
    peak_memory_mb: float


class OrchestratorCliController:
    """Coordinates submission, scheduling, inspection and recovery CLI operations."""

    def __init__(
        self,
        *,
        service_factory: Callable[[Settings], CourseOrchestratorService] | None = None,
    ) -> None:
        self._service_factory = service_factory or CourseOrchestratorService.from_settings

    def submit(self, command: SubmitJobCommand) -> list[str]:
        document = load_json(command.job_file)
        request = document.get("request", {})
        if not isinstance(request, dict):
            raise InvalidTaskGraphError("`request` must be a JSON object.")
        specs = parse_task_specs(document.get("tasks"))

        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            job = service.submit_job(
                SubmitJob(
                    user_id=command.user_id,
                    role=command.role or settings.rate_limits.default_role,
                    request=request,
                    tasks=specs,
                ),
            )
        return [
            f"Job submitted: job_id={job.job_id} status={job.status.value} "
            f"tasks={job.total_tasks}",
        ]

    def status(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            snapshot = service.get_job_status(command.job_id)

        job = snapshot.job
        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}" + (" (paused)" if job.is_paused else ""),
            f"Owner: {job.user_id} ({job.role})",
            f"Tasks: total={job.total_tasks} completed={job.completed_tasks} "
            f"failed={job.failed_tasks} skipped={job.skipped_tasks}",
            f"Output: {job.output_ref or '-'}",
        ]
        if job.error_summary:
            lines.append(f"Error: {job.error_summary}")
        lines.extend(_health_lines(snapshot.health))
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        with self._service(settings) as service:
            tasks = service.list_tasks(command.job_id, status=status)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
                f"deps={len(task.dependency_ids)}"
                + (f" error={task.error_category.value}" if task.error_category else ""),
            )
        return lines

    def inspect_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            task = service.get_task(command.task_id)
            events = service.repository.list_task_events(task_id=command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Job: {task.job_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Depends on: {', '.join(task.dependency_ids) or '-'}",
            f"Error: {task.error_category.value if task.error_category else '-'} "
            f"severity={task.severity.value if task.severity else '-'} "
            f"message={task.error_message or '-'}",
            f"Needs review: {'yes' if task.needs_review else 'no'}",
            f"Output: {task.output_ref or '-'}",
        ]
        lines.extend(f"  suggestion: {item}" for item in task.recovery_suggestions)
        if task.output_ref and Path(task.output_ref).exists():
            output = load_json(Path(task.output_ref))
            lines.append("Output keys: " + (", ".join(sorted(output)) or "-"))
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def errors(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            report = service.get_errors(command.job_id)

        lines = [
            f"Errors for job {report.job_id}: {len(report.entries)} entries, "
            f"{len(report.failed_tasks)} failed task(s), critical={report.critical_count}",
            "By category: " + (_fmt_key_value(report.by_category) or "none"),
            "By severity: " + (_fmt_key_value(report.by_severity) or "none"),
        ]
        for entry in report.entries:
            lines.append(
                f"  {entry.created_at.isoformat()} [{entry.level.value}] "
                f"{entry.source}: {entry.message}",
            )
        lines.extend(f"Suggestion: {item}" for item in report.suggestions)
        return lines

    def analytics(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            snapshot = service.get_analytics(command.job_id)

        return [
            f"Analytics for job {snapshot.job_id}",
            f"Tasks: {snapshot.total_tasks} ({_fmt_key_value(snapshot.tasks_by_status)})",
            f"Types: {_fmt_key_value(snapshot.tasks_by_type) or 'none'}",
            f"Success rate: {snapshot.success_rate:.1f}%",
            f"Duration: total={_fmt_seconds(snapshot.total_duration_seconds)} "
            f"avg_task={_fmt_seconds(snapshot.average_task_duration_seconds)}",
            f"API calls: made={snapshot.api_calls_made} failed={snapshot.api_calls_failed}",
            f"Tokens: prompt={snapshot.prompt_tokens} completion={snapshot.completion_tokens} "
            f"total={snapshot.total_tokens}",
            f"Estimated cost: ${snapshot.estimated_cost_usd:.4f}",
            f"Retries: {snapshot.retries_performed}",
            f"Peak memory: {_fmt_memory(snapshot.peak_memory_mb)}",
        ]

    def retry_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            return _action_lines(service.retry_task(command.task_id))

    def skip_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            return _action_lines(service.skip_task(command.task_id))

    def pause_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            return _action_lines(service.pause_job(command.job_id))

    def resume_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            return _action_lines(service.resume_job(command.job_id))

    def cancel_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            return _action_lines(service.cancel_job(command.job_id))

    def smart_recover(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            summary = service.smart_recover(command.job_id)

        lines = [
            f"Smart recovery for job {summary.job_id}: "
            f"retried={len(summary.retried)} skipped={len(summary.skipped)} "
            f"unchanged={len(summary.unchanged)}",
        ]
        lines.extend(f"  retried {task_id}" for task_id in summary.retried)
        lines.extend(f"  skipped {task_id}" for task_id in summary.skipped)
        return lines

    def expand_task(self, command: ExpandTaskCommand) -> list[str]:
        payload: dict[str, Any] | None = None
        if command.input_json:
            parsed = json.loads(command.input_json)
            if not isinstance(parsed, dict):
                raise ValueError("--input must be a JSON object.")
            payload = parsed

        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            task = service.expand_task(
                parent_task_id=command.parent_task_id,
                task_type=command.task_type,
                input_payload=payload,
                priority=command.priority,
            )
        return [
            f"Task added: task_id={task.task_id} type={task.task_type} "
            f"status={task.status.value} parent={command.parent_task_id}",
        ]

    def export_report(self, command: ExportReportCommand) -> list[str]:
        report_format = ReportFormat(command.report_format.strip().lower())
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            rendered = service.export_report(
                command.job_id,
                report_format=report_format,
                include_analytics=command.include_analytics,
                include_tasks=command.include_tasks,
                include_errors=command.include_errors,
                include_performance=command.include_performance,
            )

        if command.output_path is None:
            return rendered.splitlines()
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(rendered, "utf-8")
        return [f"Report written: {command.output_path} ({report_format.value})"]

    def run(self, command: RunCommand, *, emit: Callable[[str], None] | None = None) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if settings.execution.backend == "http":
            settings.validate_for_http_backend()
        with self._service(settings) as service:
            if command.job_id is not None:
                if command.use_prefect:
                    from course_orchestrator.orchestrator.flows import run_job_flow  # noqa: PLC0415

                    job = run_job_flow(
                        scheduler=service.scheduler,
                        job_id=command.job_id,
                        on_progress=emit,
                    )
                else:
                    job = service.run_job(command.job_id, max_passes=command.max_passes)
                return [
                    f"Job {job.job_id}: status={job.status.value} "
                    f"completed={job.completed_tasks}/{job.total_tasks} "
                    f"failed={job.failed_tasks} skipped={job.skipped_tasks}"
                    + (" (paused)" if job.is_paused else ""),
                ]

            summary = (
                service.scheduler.run_pass()
                if command.once
                else service.scheduler.run_loop(
                    max_passes=command.max_passes,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Scheduler summary: "
            f"dispatched={summary.dispatched} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"dependency_failed={summary.dependency_failed} "
            f"rate_limited={summary.rate_limited} recovered={summary.recovered}",
        ]

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            reports = service.check_all_health(user_id=command.user_id)

        lines = [f"Active jobs: {len(reports)}"]
        for report in reports:
            lines.append(
                f"  {report.job_id} health={report.status.value} "
                f"job={report.job_status.value} progress={report.progress_percentage:.1f}% "
                f"action={report.recommended_action}",
            )
        return lines

    def usage(self, command: UsageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        role = command.role or settings.rate_limits.default_role
        with self._service(settings) as service:
            usages = service.usage(user_id=command.user_id, role=role)

        lines = [f"Rate limits for {command.user_id} ({role})"]
        for usage in usages:
            line = (
                f"  {usage.scope.value}: minute={usage.minute}/{usage.minute_limit} "
                f"hour={usage.hour}/{usage.hour_limit} day={usage.day}/{usage.day_limit}"
            )
            if usage.concurrent_limit is not None:
                line += f" active_jobs={usage.active_jobs}/{usage.concurrent_limit}"
            percentages = usage.percentages
            line += " peak=" + f"{max(percentages.values()):.0f}%"
            lines.append(line)
        return lines

    def record_memory(self, command: RecordMemoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            updated = service.record_peak_memory(
                command.job_id,
                peak_memory_mb=command.peak_memory_mb,
            )
        if updated:
            return [f"Peak memory recorded: {command.peak_memory_mb:.1f} MB"]
        return ["Peak memory unchanged (a higher value is already recorded)."]

    @contextmanager
    def _service(self, settings: Settings) -> Iterator[CourseOrchestratorService]:
        settings.validate()
        service = self._service_factory(settings)
        try:
            yield service
        finally:
            service.close()


def _health_lines(report: JobHealthReport) -> list[str]:
    return [
        f"Health: {report.status.value} ({report.message})",
        f"Progress: {report.progress_percentage:.1f}% "
        f"running={report.running_tasks} pending={report.pending_tasks}",
        f"Last activity: {report.last_activity_at.isoformat()} "
        f"({report.seconds_since_activity:.0f}s ago)",
        f"Recommended action: {report.recommended_action}",
    ]


def _action_lines(result: RecoveryActionResult) -> list[str]:
    state = "applied" if result.applied else "no-op"
    return [f"{result.action} {result.target_id}: {state}. {result.message}"]


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}s"


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_memory(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1f} MB"
