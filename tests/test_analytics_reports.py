from __future__ import annotations

import csv
import io
import json

import allure
import pytest
from conftest import submit, tasks_by_key

from course_orchestrator.orchestrator.models import JobView, ReportFormat, TaskSpec
from course_orchestrator.orchestrator.reports import CSV_COLUMNS
from course_orchestrator.orchestrator.services import CourseOrchestratorService

pytestmark = [
    allure.epic("Job Health Aggregator"),
    allure.feature("Analytics and report export"),
]


@pytest.fixture()
def mixed_job(service: CourseOrchestratorService) -> JobView:
    """One completed, one failed after a retry, one skipped."""

    job = submit(
        service,
        [
            TaskSpec(key="ok", task_type="lesson_section"),
            TaskSpec(
                key="net",
                task_type="lesson_mind_map",
                max_retries=1,
                input_payload={"simulate_failure": "network"},
            ),
            TaskSpec(key="skip", task_type="path_quiz"),
        ],
    )
    service.skip_task(tasks_by_key(service, job.job_id)["skip"].task_id)
    service.record_peak_memory(job.job_id, peak_memory_mb=512.5)
    return service.run_job(job.job_id, max_passes=10)


def test_analytics_are_recomputed_from_tasks(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    analytics = service.get_analytics(mixed_job.job_id)

    assert analytics.total_tasks == 3
    assert analytics.tasks_by_status == {"completed": 1, "failed": 1, "skipped": 1}
    assert analytics.tasks_by_type == {"lesson_section": 1, "lesson_mind_map": 1, "path_quiz": 1}
    assert analytics.api_calls_made == 3
    assert analytics.api_calls_failed == 2
    assert analytics.success_rate == 50.0
    assert analytics.retries_performed == 1
    assert analytics.total_tokens == analytics.prompt_tokens + analytics.completion_tokens
    assert analytics.total_tokens > 0
    assert analytics.peak_memory_mb == 512.5
    assert analytics.total_duration_seconds is not None
    assert analytics.average_task_duration_seconds is not None


def test_error_report_breaks_down_categories(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    report = service.get_errors(mixed_job.job_id)

    assert report.by_category == {"transient": 2}
    assert report.by_severity == {"low": 2}
    assert report.critical_count == 0
    assert report.most_common_category == "transient"
    assert [task.task_type for task in report.failed_tasks] == ["lesson_mind_map"]
    assert any("generation service" in item for item in report.suggestions)
    assert any("Only transient errors" in item for item in report.suggestions)


def test_json_report_carries_recommendations(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    payload = json.loads(service.export_report(mixed_job.job_id, report_format=ReportFormat.JSON))

    assert set(payload) == {
        "generated_at",
        "job",
        "analytics",
        "performance",
        "errors",
        "tasks",
        "recommendations",
    }
    assert payload["job"]["status"] == "failed"
    assert len(payload["tasks"]) == 3
    recommendations = payload["recommendations"]
    assert any(item.startswith("Success rate is 50.0%") for item in recommendations)
    assert any("More than half of generation calls failed" in item for item in recommendations)
    assert any(item.startswith("1 task(s) were skipped") for item in recommendations)


def test_csv_report_has_task_rows_then_recommendations(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    text = service.export_report(mixed_job.job_id, report_format=ReportFormat.CSV)

    rows = list(csv.reader(io.StringIO(text)))
    assert tuple(rows[0]) == CSV_COLUMNS
    task_rows = rows[1:4]
    assert sorted(row[2] for row in task_rows) == ["completed", "failed", "skipped"]
    assert rows[4] == []
    assert rows[5] == ["recommendation"]
    assert len(rows) > 6


def test_markdown_report_sections(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    text = service.export_report(mixed_job.job_id, report_format=ReportFormat.MARKDOWN)

    assert text.startswith(f"# Course Generation Report: {mixed_job.job_id}")
    for heading in (
        "## Job",
        "## Analytics",
        "## Performance",
        "## Errors",
        "## Tasks",
        "## Recommendations",
    ):
        assert heading in text
    assert "- Peak memory: 512.5 MB" in text
    assert "| `lesson_mind_map` | failed | 1/1 |" in text


def test_json_report_leaves_out_disabled_sections(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    payload = json.loads(
        service.export_report(
            mixed_job.job_id,
            report_format=ReportFormat.JSON,
            include_analytics=False,
            include_tasks=False,
            include_performance=False,
        ),
    )

    assert set(payload) == {"generated_at", "job", "errors", "recommendations"}
    assert payload["errors"]["by_category"] == {"transient": 2}
    assert any(item.startswith("Success rate is 50.0%") for item in payload["recommendations"])


def test_csv_and_markdown_without_tasks_or_errors(
    service: CourseOrchestratorService,
    mixed_job: JobView,
) -> None:
    text = service.export_report(
        mixed_job.job_id,
        report_format=ReportFormat.CSV,
        include_tasks=False,
    )
    rows = list(csv.reader(io.StringIO(text)))
    assert rows[0] == ["recommendation"]

    markdown = service.export_report(
        mixed_job.job_id,
        report_format=ReportFormat.MARKDOWN,
        include_errors=False,
        include_performance=False,
    )
    assert "## Analytics" in markdown
    assert "## Tasks" in markdown
    assert "## Errors" not in markdown
    assert "## Performance" not in markdown
    assert "Peak memory" not in markdown


def test_clean_job_gets_default_recommendation(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    service.run_job(job.job_id, max_passes=5)

    payload = json.loads(service.export_report(job.job_id, report_format=ReportFormat.JSON))

    assert payload["recommendations"] == [
        "Generation completed successfully with no major issues detected.",
    ]
    assert payload["analytics"]["success_rate"] == 100.0


def test_peak_memory_rejects_negative_values(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])

    with pytest.raises(ValueError, match="peak_memory_mb"):
        service.record_peak_memory(job.job_id, peak_memory_mb=-1.0)
