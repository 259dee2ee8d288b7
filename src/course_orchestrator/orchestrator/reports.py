"""Job report export: JSON payload, per-task CSV and printable markdown."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from typing import Any

from course_orchestrator.orchestrator.models import (
    AnalyticsSnapshot,
    ErrorReport,
    JobView,
    ReportFormat,
    ReportSections,
    TaskView,
)

_LOW_SUCCESS_RATE = 90.0
_HIGH_API_FAILURE_RATIO = 0.5
_SLOW_TASK_SECONDS = 30.0

CSV_COLUMNS = (
    "task_id",
    "task_type",
    "status",
    "priority",
    "retry_count",
    "max_retries",
    "error_category",
    "severity",
    "actual_duration_seconds",
    "api_calls",
    "api_failures",
    "prompt_tokens",
    "completion_tokens",
    "estimated_cost_usd",
    "error_message",
)


def build_recommendations(
    *,
    analytics: AnalyticsSnapshot,
    errors: ErrorReport,
) -> list[str]:
    """Operator-facing recommendations derived from analytics and errors."""

    recommendations: list[str] = []
    attempted = analytics.tasks_by_status.get("completed", 0) + analytics.tasks_by_status.get(
        "failed",
        0,
    )
    if attempted and analytics.success_rate < _LOW_SUCCESS_RATE:
        recommendations.append(
            f"Success rate is {analytics.success_rate:.1f}%; review failed tasks "
            "and consider smart recovery.",
        )
    if errors.critical_count:
        recommendations.append(
            f"{errors.critical_count} critical error(s) recorded; these need "
            "manual intervention before retrying.",
        )
    if (
        analytics.api_calls_made
        and analytics.api_calls_failed / analytics.api_calls_made > _HIGH_API_FAILURE_RATIO
    ):
        recommendations.append(
            "More than half of generation calls failed; check generation service "
            "availability and credentials.",
        )
    skipped = analytics.tasks_by_status.get("skipped", 0)
    if skipped:
        recommendations.append(
            f"{skipped} task(s) were skipped; the generated course may be incomplete.",
        )
    average = analytics.average_task_duration_seconds
    if average is not None and average > _SLOW_TASK_SECONDS:
        recommendations.append(
            f"Average task time is {average:.1f}s; consider smaller generation units.",
        )
    if not recommendations:
        recommendations.append(
            "Generation completed successfully with no major issues detected.",
        )
    return recommendations


def build_report_payload(
    *,
    job: JobView,
    tasks: list[TaskView],
    analytics: AnalyticsSnapshot,
    errors: ErrorReport,
    generated_at: datetime,
    sections: ReportSections | None = None,
) -> dict[str, Any]:
    """Report dict; sections switched off in `sections` are left out entirely."""

    sections = sections or ReportSections()
    payload: dict[str, Any] = {
        "generated_at": generated_at.isoformat(),
        "job": {
            "job_id": job.job_id,
            "user_id": job.user_id,
            "role": job.role,
            "status": job.status.value,
            "is_paused": job.is_paused,
            "request": job.request,
            "output_ref": job.output_ref,
            "error_summary": job.error_summary,
            "created_at": job.created_at.isoformat(),
            "started_at": _iso(job.started_at),
            "finished_at": _iso(job.finished_at),
        },
    }
    if sections.analytics:
        payload["analytics"] = {
            "total_tasks": analytics.total_tasks,
            "tasks_by_status": analytics.tasks_by_status,
            "tasks_by_type": analytics.tasks_by_type,
            "api_calls_made": analytics.api_calls_made,
            "api_calls_failed": analytics.api_calls_failed,
            "total_tokens": analytics.total_tokens,
            "estimated_cost_usd": analytics.estimated_cost_usd,
            "success_rate": analytics.success_rate,
            "retries_performed": analytics.retries_performed,
        }
    if sections.performance:
        payload["performance"] = {
            "total_duration_seconds": analytics.total_duration_seconds,
            "average_task_duration_seconds": analytics.average_task_duration_seconds,
            "peak_memory_mb": analytics.peak_memory_mb,
        }
    if sections.errors:
        payload["errors"] = {
            "by_category": errors.by_category,
            "by_severity": errors.by_severity,
            "critical_count": errors.critical_count,
            "most_common_category": errors.most_common_category,
            "suggestions": errors.suggestions,
        }
    if sections.tasks:
        payload["tasks"] = [_task_row(task) for task in tasks]
    payload["recommendations"] = build_recommendations(analytics=analytics, errors=errors)
    return payload


def export_report(
    *,
    report_format: ReportFormat,
    job: JobView,
    tasks: list[TaskView],
    analytics: AnalyticsSnapshot,
    errors: ErrorReport,
    generated_at: datetime,
    sections: ReportSections | None = None,
) -> str:
    payload = build_report_payload(
        job=job,
        tasks=tasks,
        analytics=analytics,
        errors=errors,
        generated_at=generated_at,
        sections=sections,
    )
    if report_format == ReportFormat.JSON:
        return json.dumps(payload, ensure_ascii=False, indent=2)
    if report_format == ReportFormat.CSV:
        return render_csv(payload)
    return render_markdown(payload)


def render_csv(payload: dict[str, Any]) -> str:
    """One row per task, followed by a recommendations block."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if "tasks" in payload:
        writer.writerow(CSV_COLUMNS)
        for row in payload["tasks"]:
            writer.writerow([_csv_cell(row[column]) for column in CSV_COLUMNS])
        writer.writerow([])
    writer.writerow(["recommendation"])
    for recommendation in payload["recommendations"]:
        writer.writerow([recommendation])
    return buffer.getvalue()


def render_markdown(payload: dict[str, Any]) -> str:
    job = payload["job"]
    lines = [
        f"# Course Generation Report: {job['job_id']}",
        "",
        f"Generated at: `{payload['generated_at']}`",
        "",
        "## Job",
        "",
        f"- Status: **{job['status']}**" + (" (paused)" if job["is_paused"] else ""),
        f"- User: `{job['user_id']}` ({job['role']})",
        f"- Started: {job['started_at'] or 'n/a'}",
        f"- Finished: {job['finished_at'] or 'n/a'}",
        f"- Output: {job['output_ref'] or 'n/a'}",
        *([f"- Error summary: {job['error_summary']}"] if job["error_summary"] else []),
        "",
    ]

    analytics = payload.get("analytics")
    if analytics is not None:
        lines += [
            "## Analytics",
            "",
            f"- Tasks: {analytics['total_tasks']} ({_fmt_key_value(analytics['tasks_by_status'])})",
            f"- Success rate: {analytics['success_rate']:.1f}%",
            f"- API calls: {analytics['api_calls_made']} "
            f"(failed {analytics['api_calls_failed']})",
            f"- Tokens: {analytics['total_tokens']}",
            f"- Estimated cost: ${analytics['estimated_cost_usd']:.4f}",
            f"- Retries: {analytics['retries_performed']}",
            "",
        ]

    performance = payload.get("performance")
    if performance is not None:
        lines += [
            "## Performance",
            "",
            f"- Total duration: {_fmt_seconds(performance['total_duration_seconds'])}",
            f"- Average task duration: "
            f"{_fmt_seconds(performance['average_task_duration_seconds'])}",
            f"- Peak memory: {_fmt_memory(performance['peak_memory_mb'])}",
            "",
        ]

    errors = payload.get("errors")
    if errors is not None:
        suggestion_lines = [f"- {item}" for item in errors["suggestions"]] or ["- none"]
        lines += [
            "## Errors",
            "",
            f"- By category: {_fmt_key_value(errors['by_category']) or 'none'}",
            f"- By severity: {_fmt_key_value(errors['by_severity']) or 'none'}",
            f"- Critical: {errors['critical_count']}",
            "",
            "Suggestions:",
            *suggestion_lines,
            "",
        ]

    if "tasks" in payload:
        lines += [
            "## Tasks",
            "",
            "| Type | Status | Retries | Duration | Error |",
            "|---|---|---|---|---|",
            *(
                f"| `{row['task_type']}` | {row['status']} "
                f"| {row['retry_count']}/{row['max_retries']} "
                f"| {_fmt_seconds(row['actual_duration_seconds'])} "
                f"| {row['error_category'] or '-'} |"
                for row in payload["tasks"]
            ),
            "",
        ]

    lines += [
        "## Recommendations",
        "",
        *(f"- {item}" for item in payload["recommendations"]),
        "",
    ]
    return "\n".join(lines)


def _task_row(task: TaskView) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "task_type": task.task_type,
        "status": task.status.value,
        "priority": task.priority,
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "error_category": task.error_category.value if task.error_category else None,
        "severity": task.severity.value if task.severity else None,
        "actual_duration_seconds": task.actual_duration_seconds,
        "api_calls": task.api_calls,
        "api_failures": task.api_failures,
        "prompt_tokens": task.prompt_tokens,
        "completion_tokens": task.completion_tokens,
        "estimated_cost_usd": task.estimated_cost_usd,
        "error_message": task.error_message,
        "output_ref": task.output_ref,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _csv_cell(value: Any) -> Any:
    return "" if value is None else value


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}s"


def _fmt_memory(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1f} MB"


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
