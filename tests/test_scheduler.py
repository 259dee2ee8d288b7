from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import timedelta

import allure
import pytest
from conftest import submit, tasks_by_key

from course_orchestrator.config import RoleLimits, Settings
from course_orchestrator.orchestrator.executor import ExecutionResult
from course_orchestrator.orchestrator.generation import EchoGenerationBackend
from course_orchestrator.orchestrator.generation.base import (
    GenerationRequest,
    GenerationResponse,
)
from course_orchestrator.orchestrator.models import (
    ErrorCategory,
    HealthStatus,
    JobStatus,
    Severity,
    TaskSpec,
    TaskStatus,
)
from course_orchestrator.orchestrator.services import CourseOrchestratorService

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Dispatch, retries and dependency handling"),
]


class RecordingBackend(EchoGenerationBackend):
    """Echo backend that remembers the order in which task keys were generated."""

    def __init__(self) -> None:
        super().__init__()
        self.order: list[str] = []
        self._order_lock = threading.Lock()

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        with self._order_lock:
            self.order.append(str(request.input_payload.get("key")))
        return super().generate(request)


class HookedBackend(EchoGenerationBackend):
    """Echo backend that runs a callback with the task key before generating."""

    def __init__(self) -> None:
        super().__init__()
        self.on_generate: Callable[[str], None] | None = None

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        if self.on_generate is not None:
            self.on_generate(str(request.input_payload.get("key")))
        return super().generate(request)


@pytest.fixture()
def recording_service(
    settings: Settings,
) -> Iterator[tuple[CourseOrchestratorService, RecordingBackend]]:
    settings.scheduler.max_workers = 1
    backend = RecordingBackend()
    orchestrator = CourseOrchestratorService.from_settings(settings, backend=backend)
    try:
        yield orchestrator, backend
    finally:
        orchestrator.close()


def test_linear_chain_completes_in_dependency_order(
    recording_service: tuple[CourseOrchestratorService, RecordingBackend],
) -> None:
    service, backend = recording_service
    job = submit(
        service,
        [
            TaskSpec(key="exam", task_type="class_exam", depends_on=("lesson",)),
            TaskSpec(key="outline", task_type="outline_generation"),
            TaskSpec(key="lesson", task_type="lesson_section", depends_on=("outline",)),
        ],
    )

    finished = service.run_job(job.job_id, max_passes=20)

    assert finished.status == JobStatus.COMPLETED
    assert backend.order == ["outline", "lesson", "exam"]
    assert finished.completed_tasks == 3
    assert finished.output_ref is not None
    assert finished.started_at is not None
    assert finished.finished_at is not None


def test_ready_tasks_dispatch_by_priority_then_submission_order(
    recording_service: tuple[CourseOrchestratorService, RecordingBackend],
) -> None:
    service, backend = recording_service
    job = submit(
        service,
        [
            TaskSpec(key="late", task_type="lesson_section", priority=200),
            TaskSpec(key="first", task_type="lesson_section", priority=10),
            TaskSpec(key="second", task_type="lesson_section", priority=100),
            TaskSpec(key="third", task_type="lesson_mind_map", priority=100),
        ],
    )

    service.run_job(job.job_id, max_passes=20)

    assert backend.order == ["first", "second", "third", "late"]


def test_critical_failure_fails_dependents_without_calling_backend(
    service: CourseOrchestratorService,
    echo_backend: EchoGenerationBackend,
) -> None:
    job = submit(
        service,
        [
            TaskSpec(
                key="a",
                task_type="outline_generation",
                input_payload={"simulate_failure": "quota"},
            ),
            TaskSpec(key="b", task_type="lesson_section", depends_on=("a",)),
            TaskSpec(key="c", task_type="path_quiz", depends_on=("b",)),
        ],
    )

    finished = service.run_job(job.job_id, max_passes=20)

    tasks = tasks_by_key(service, job.job_id)
    assert finished.status == JobStatus.FAILED
    assert tasks["a"].status == TaskStatus.FAILED
    assert tasks["a"].error_category == ErrorCategory.QUOTA
    assert tasks["a"].severity == Severity.CRITICAL
    assert tasks["a"].recovery_suggestions
    for key in ("b", "c"):
        assert tasks[key].status == TaskStatus.FAILED
        assert tasks[key].error_category == ErrorCategory.DEPENDENCY_FAILURE
        assert echo_backend.calls_for(tasks[key].task_id) == 0
    assert echo_backend.calls_for(tasks["a"].task_id) == 1
    assert finished.error_summary is not None
    assert "quota" in finished.error_summary


def test_transient_failure_exhausts_retries_then_fails(
    service: CourseOrchestratorService,
    echo_backend: EchoGenerationBackend,
) -> None:
    job = submit(
        service,
        [
            TaskSpec(
                key="net",
                task_type="lesson_section",
                max_retries=2,
                input_payload={"simulate_failure": "network"},
            ),
        ],
    )

    finished = service.run_job(job.job_id, max_passes=20)

    task = tasks_by_key(service, job.job_id)["net"]
    assert finished.status == JobStatus.FAILED
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.error_category == ErrorCategory.TRANSIENT
    assert task.severity == Severity.LOW
    assert task.api_calls == 3
    assert task.api_failures == 3
    assert echo_backend.calls_for(task.task_id) == 3


def test_transient_failure_recovers_on_retry(
    service: CourseOrchestratorService,
    echo_backend: EchoGenerationBackend,
) -> None:
    job = submit(
        service,
        [
            TaskSpec(
                key="slow",
                task_type="lesson_brainbytes",
                input_payload={"simulate_failure": "timeout", "simulate_failure_attempts": 1},
            ),
        ],
    )

    finished = service.run_job(job.job_id, max_passes=20)

    task = tasks_by_key(service, job.job_id)["slow"]
    assert finished.status == JobStatus.COMPLETED
    assert task.status == TaskStatus.COMPLETED
    assert task.retry_count == 1
    assert task.error_category is None
    assert task.output_ref is not None
    assert echo_backend.calls_for(task.task_id) == 2


def test_repeated_invalid_output_is_escalated_for_review(
    service: CourseOrchestratorService,
    echo_backend: EchoGenerationBackend,
) -> None:
    job = submit(
        service,
        [
            TaskSpec(
                key="bad",
                task_type="lesson_assessment",
                max_retries=3,
                input_payload={"simulate_failure": "invalid_output"},
            ),
        ],
    )

    service.run_job(job.job_id, max_passes=20)

    task = tasks_by_key(service, job.job_id)["bad"]
    assert task.status == TaskStatus.FAILED
    assert task.error_category == ErrorCategory.VALIDATION
    assert task.severity == Severity.HIGH
    assert task.needs_review is True
    assert task.recovery_suggestions
    assert echo_backend.calls_for(task.task_id) == 2
    events = [
        event.event_type for event in service.repository.list_task_events(task_id=task.task_id)
    ]
    assert "escalated" in events


def test_missing_subject_is_input_contract_failure(service: CourseOrchestratorService) -> None:
    job = submit(
        service,
        [TaskSpec(key="lesson", task_type="lesson_section")],
        request={"language": "en"},
    )

    finished = service.run_job(job.job_id, max_passes=5)

    task = tasks_by_key(service, job.job_id)["lesson"]
    assert finished.status == JobStatus.FAILED
    assert task.error_category == ErrorCategory.INPUT_CONTRACT
    assert task.api_calls == 0


def test_paused_job_is_not_dispatched_until_resumed(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])

    assert service.pause_job(job.job_id).applied is True
    assert service.pause_job(job.job_id).applied is False
    summary = service.scheduler.run_pass()
    assert summary.dispatched == 0
    assert service.run_job(job.job_id, max_passes=3).status == JobStatus.PENDING

    assert service.resume_job(job.job_id).applied is True
    finished = service.run_job(job.job_id, max_passes=10)
    assert finished.status == JobStatus.COMPLETED


def test_task_rate_limit_defers_excess_tasks(
    settings: Settings,
    service: CourseOrchestratorService,
) -> None:
    settings.rate_limits.ceilings[("student", "task")] = RoleLimits(1, 100, 1_000)
    job = submit(
        service,
        [
            TaskSpec(key="a", task_type="lesson_section"),
            TaskSpec(key="b", task_type="lesson_section"),
        ],
        user_id="student-1",
        role="student",
    )

    summary = service.scheduler.run_pass()

    assert summary.dispatched == 1
    assert summary.completed == 1
    assert summary.rate_limited == 1
    tasks = tasks_by_key(service, job.job_id)
    statuses = sorted(task.status.value for task in tasks.values())
    assert statuses == ["completed", "pending"]
    deferred = next(task for task in tasks.values() if task.status == TaskStatus.PENDING)
    assert deferred.worker_id is None
    job_after = service.repository.get_job(job.job_id)
    assert job_after is not None
    assert job_after.status == JobStatus.PROCESSING


def test_run_loop_drains_all_jobs(service: CourseOrchestratorService) -> None:
    first = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    second = submit(
        service,
        [
            TaskSpec(key="x", task_type="knowledge_analysis"),
            TaskSpec(key="y", task_type="content_validation", depends_on=("x",)),
        ],
    )

    summary = service.scheduler.run_loop(max_passes=10, max_idle_polls=1)

    assert summary.completed == 3
    assert summary.failed == 0
    for job_id in (first.job_id, second.job_id):
        job = service.repository.get_job(job_id)
        assert job is not None
        assert job.status == JobStatus.COMPLETED


def test_stale_claim_is_released_on_next_pass(
    settings: Settings,
    service: CourseOrchestratorService,
) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    task = tasks_by_key(service, job.job_id)["a"]
    assert service.repository.claim_task(task_id=task.task_id, worker_id="crashed-scheduler")
    settings.scheduler.stale_claim_seconds = 0

    summary = service.scheduler.run_pass()

    assert summary.recovered == 1
    assert summary.dispatched == 1
    assert tasks_by_key(service, job.job_id)["a"].status == TaskStatus.COMPLETED


def test_task_denied_admission_is_left_untouched_and_job_goes_stalled(
    settings: Settings,
    service: CourseOrchestratorService,
) -> None:
    settings.rate_limits.ceilings[("student", "task")] = RoleLimits(10, 10, 1)
    job = submit(
        service,
        [
            TaskSpec(key="a", task_type="lesson_section"),
            TaskSpec(key="b", task_type="lesson_section"),
        ],
        user_id="student-1",
        role="student",
    )

    first = service.scheduler.run_pass()
    activity = service.health_aggregator.health(job.job_id).last_activity_at
    later = [service.scheduler.run_pass() for _ in range(2)]

    assert first.dispatched == 1
    assert first.rate_limited == 1
    assert [summary.rate_limited for summary in later] == [0, 0]
    assert [summary.dispatched for summary in later] == [0, 0]
    deferred = tasks_by_key(service, job.job_id)["b"]
    assert deferred.status == TaskStatus.PENDING
    assert deferred.worker_id is None
    event_types = {
        event.event_type for event in service.repository.list_task_events(task_id=deferred.task_id)
    }
    assert not event_types & {"claimed", "claim_released"}
    report = service.health_aggregator.health(job.job_id)
    assert report.last_activity_at == activity
    stalled = service.health_aggregator.health(
        job.job_id,
        now=report.last_activity_at + timedelta(seconds=301),
    )
    assert stalled.status == HealthStatus.STALLED


def test_pause_during_in_flight_task_holds_dependents_until_resume(
    settings: Settings,
) -> None:
    backend = HookedBackend()
    service = CourseOrchestratorService.from_settings(settings, backend=backend)
    try:
        job = submit(
            service,
            [
                TaskSpec(key="a", task_type="outline_generation"),
                TaskSpec(key="b", task_type="lesson_section", depends_on=("a",)),
            ],
        )

        def pause_on_first_task(key: str) -> None:
            if key == "a":
                service.pause_job(job.job_id)

        backend.on_generate = pause_on_first_task

        first = service.scheduler.run_pass()
        second = service.scheduler.run_pass()

        assert first.dispatched == 1
        assert first.completed == 1
        assert second.dispatched == 0
        tasks = tasks_by_key(service, job.job_id)
        assert tasks["a"].status == TaskStatus.COMPLETED
        assert tasks["b"].status == TaskStatus.PENDING
        paused = service.repository.get_job(job.job_id)
        assert paused is not None
        assert paused.is_paused is True

        backend.on_generate = None
        assert service.resume_job(job.job_id).applied is True
        finished = service.run_job(job.job_id, max_passes=10)
        assert finished.status == JobStatus.COMPLETED
        assert finished.completed_tasks == 2
    finally:
        service.close()


def test_failed_attempt_without_classification_is_rejected(
    service: CourseOrchestratorService,
) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    task = tasks_by_key(service, job.job_id)["a"]

    with pytest.raises(ValueError, match="must carry a classification"):
        service.engine._log_attempt(  # noqa: SLF001
            task=task,
            result=ExecutionResult(success=False, error="boom"),
        )
