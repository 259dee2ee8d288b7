from __future__ import annotations

import allure
import pytest
from conftest import submit, tasks_by_key

from course_orchestrator.orchestrator.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    TaskNotFoundError,
)
from course_orchestrator.orchestrator.generation import EchoGenerationBackend
from course_orchestrator.orchestrator.models import (
    AdmissionScope,
    ErrorCategory,
    JobStatus,
    Severity,
    TaskFailure,
    TaskSpec,
    TaskStatus,
)
from course_orchestrator.orchestrator.recovery import retry_delay_seconds
from course_orchestrator.orchestrator.services import CourseOrchestratorService

pytestmark = [
    allure.epic("Retry & Recovery"),
    allure.feature("Operator actions"),
]


def _chain_with_failing_root(failure: str, **payload: object) -> list[TaskSpec]:
    return [
        TaskSpec(
            key="a",
            task_type="outline_generation",
            max_retries=0,
            input_payload={"simulate_failure": failure, **payload},
        ),
        TaskSpec(key="b", task_type="lesson_section", depends_on=("a",)),
        TaskSpec(key="c", task_type="path_quiz", depends_on=("b",)),
    ]


@pytest.mark.parametrize(
    ("retry_count", "expected"),
    [(0, 30.0), (1, 60.0), (3, 240.0), (10, 900.0)],
)
def test_retry_delay_is_exponential_and_capped(retry_count: int, expected: float) -> None:
    delay = retry_delay_seconds(retry_count=retry_count, base_seconds=30, max_seconds=900)

    assert delay == expected


def test_manual_retry_reopens_dependency_failures(
    service: CourseOrchestratorService,
    echo_backend: EchoGenerationBackend,
) -> None:
    job = submit(service, _chain_with_failing_root("network", simulate_failure_attempts=1))
    assert service.run_job(job.job_id, max_passes=10).status == JobStatus.FAILED
    root = tasks_by_key(service, job.job_id)["a"]

    result = service.retry_task(root.task_id)

    assert result.applied is True
    assert "2 dependent task(s) reopened" in result.message
    tasks = tasks_by_key(service, job.job_id)
    assert tasks["a"].status == TaskStatus.QUEUED
    assert tasks["a"].worker_id is None
    assert tasks["a"].retry_count == 0
    assert tasks["b"].status == TaskStatus.PENDING
    assert tasks["c"].status == TaskStatus.PENDING
    assert service.repository.get_job(job.job_id).status == JobStatus.PROCESSING

    finished = service.run_job(job.job_id, max_passes=10)
    assert finished.status == JobStatus.COMPLETED
    assert echo_backend.calls_for(root.task_id) == 2


def test_retry_is_noop_for_non_failed_tasks(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    task = tasks_by_key(service, job.job_id)["a"]

    result = service.retry_task(task.task_id)

    assert result.applied is False
    assert "only failed tasks" in result.message
    assert tasks_by_key(service, job.job_id)["a"].status == TaskStatus.PENDING


def test_skipping_failed_root_unblocks_dependents(service: CourseOrchestratorService) -> None:
    job = submit(service, _chain_with_failing_root("auth"))
    assert service.run_job(job.job_id, max_passes=10).status == JobStatus.FAILED
    root = tasks_by_key(service, job.job_id)["a"]
    assert root.severity == Severity.HIGH

    first = service.skip_task(root.task_id)
    second = service.skip_task(root.task_id)

    assert first.applied is True
    assert second.applied is False
    finished = service.run_job(job.job_id, max_passes=10)
    tasks = tasks_by_key(service, job.job_id)
    assert finished.status == JobStatus.COMPLETED
    assert tasks["a"].status == TaskStatus.SKIPPED
    assert tasks["b"].status == TaskStatus.COMPLETED
    assert tasks["c"].status == TaskStatus.COMPLETED
    assert finished.skipped_tasks == 1


def test_skip_pending_task_lets_dependents_run(service: CourseOrchestratorService) -> None:
    job = submit(
        service,
        [
            TaskSpec(key="optional", task_type="lesson_mind_map"),
            TaskSpec(key="quiz", task_type="path_quiz", depends_on=("optional",)),
        ],
    )
    optional = tasks_by_key(service, job.job_id)["optional"]

    assert service.skip_task(optional.task_id).applied

    finished = service.run_job(job.job_id, max_passes=10)
    assert finished.status == JobStatus.COMPLETED
    assert tasks_by_key(service, job.job_id)["quiz"].status == TaskStatus.COMPLETED


def test_smart_recover_retries_low_failures_and_skips_the_rest(
    service: CourseOrchestratorService,
) -> None:
    job = submit(
        service,
        [
            TaskSpec(
                key="locked",
                task_type="lesson_section",
                input_payload={"simulate_failure": "auth"},
            ),
            TaskSpec(key="flaky", task_type="lesson_brainbytes"),
        ],
    )
    flaky = tasks_by_key(service, job.job_id)["flaky"]
    assert service.repository.fail_unexecuted_task(
        task_id=flaky.task_id,
        failure=TaskFailure(
            category=ErrorCategory.TRANSIENT,
            severity=Severity.LOW,
            message="timeout",
        ),
    )
    assert service.run_job(job.job_id, max_passes=10).status == JobStatus.FAILED
    locked = tasks_by_key(service, job.job_id)["locked"]

    summary = service.smart_recover(job.job_id)

    assert summary.retried == [flaky.task_id]
    assert summary.skipped == [locked.task_id]
    assert summary.total_actions == 2
    finished = service.run_job(job.job_id, max_passes=10)
    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_tasks == 1
    assert finished.skipped_tasks == 1


def test_cancel_job_cancels_open_tasks_and_frees_slot(service: CourseOrchestratorService) -> None:
    job = submit(
        service,
        [
            TaskSpec(key="a", task_type="lesson_section"),
            TaskSpec(key="b", task_type="lesson_section", depends_on=("a",)),
        ],
        user_id="student-7",
        role="student",
    )
    usage_before = service.rate_limiter.usage(
        user_id="student-7",
        role="student",
        scope=AdmissionScope.JOB,
    )
    assert usage_before.active_jobs == 1

    result = service.cancel_job(job.job_id)

    assert result.applied is True
    assert service.cancel_job(job.job_id).applied is False
    assert service.repository.get_job(job.job_id).status == JobStatus.CANCELLED
    assert {task.status for task in service.list_tasks(job.job_id)} == {TaskStatus.CANCELLED}
    usage_after = service.rate_limiter.usage(
        user_id="student-7",
        role="student",
        scope=AdmissionScope.JOB,
    )
    assert usage_after.active_jobs == 0
    assert service.scheduler.run_pass().dispatched == 0
    with pytest.raises(InvalidTransitionError):
        service.smart_recover(job.job_id)


def test_expand_completed_task_reopens_completed_job(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="lesson", task_type="lesson_section")])
    assert service.run_job(job.job_id, max_passes=5).status == JobStatus.COMPLETED
    parent = tasks_by_key(service, job.job_id)["lesson"]

    created = service.expand_task(
        parent_task_id=parent.task_id,
        task_type="lesson_assessment",
        input_payload={"title": "Loops quiz"},
    )

    assert created.dependency_ids == (parent.task_id,)
    assert created.input_payload["expanded_from"] == parent.task_id
    assert created.seq == parent.seq + 1
    assert created.priority == parent.priority
    reopened = service.repository.get_job(job.job_id)
    assert reopened.status == JobStatus.PROCESSING
    assert reopened.total_tasks == 2
    finished = service.run_job(job.job_id, max_passes=5)
    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_tasks == 2


def test_expand_rejects_incomplete_parent(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="lesson", task_type="lesson_section")])
    parent = tasks_by_key(service, job.job_id)["lesson"]

    with pytest.raises(InvalidTransitionError, match="Only completed tasks"):
        service.expand_task(parent_task_id=parent.task_id, task_type="path_quiz")


def test_actions_on_unknown_ids_raise_not_found(service: CourseOrchestratorService) -> None:
    with pytest.raises(TaskNotFoundError):
        service.retry_task("missing-task")
    with pytest.raises(TaskNotFoundError):
        service.skip_task("missing-task")
    with pytest.raises(JobNotFoundError):
        service.pause_job("missing-job")
    with pytest.raises(JobNotFoundError):
        service.cancel_job("missing-job")
