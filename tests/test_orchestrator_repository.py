from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from course_orchestrator.orchestrator.models import (
    AttemptUsage,
    ErrorCategory,
    JobCreate,
    JobStatus,
    LogEntryWrite,
    LogLevel,
    Severity,
    TaskCreate,
    TaskFailure,
    TaskStatus,
)
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.storage.common import utc_now

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Compare-and-set transitions"),
]


def _seed_job(repository: OrchestratorRepository, *, tasks: int = 1, max_retries: int = 2) -> str:
    repository.ensure_user(user_id="u1", role="teacher")
    job = repository.create_job_with_tasks(
        JobCreate(job_id="job-1", user_id="u1", role="teacher", request={"topic": "SQL"}),
        [
            TaskCreate(
                task_id=f"task-{index}",
                task_type="lesson_section",
                seq=index,
                dependency_ids=(),
                priority=100,
                max_retries=max_retries,
                input_payload={"key": f"t{index}"},
            )
            for index in range(tasks)
        ],
    )
    return job.job_id


def test_job_and_tasks_are_persisted_atomically(repository: OrchestratorRepository) -> None:
    job_id = _seed_job(repository, tasks=3)

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.total_tasks == 3
    assert job.request == {"topic": "SQL"}

    tasks = repository.list_tasks(job_id)
    assert [task.task_id for task in tasks] == ["task-0", "task-1", "task-2"]
    assert all(task.status == TaskStatus.PENDING for task in tasks)
    events = repository.list_task_events(task_id="task-0")
    assert [event.event_type for event in events] == ["created"]


def test_claim_start_complete_cycle(repository: OrchestratorRepository) -> None:
    job_id = _seed_job(repository)

    assert repository.claim_task(task_id="task-0", worker_id="w1") is True
    assert repository.claim_task(task_id="task-0", worker_id="w2") is False
    assert repository.start_task(task_id="task-0", worker_id="w2") is None

    started = repository.start_task(task_id="task-0", worker_id="w1")
    assert started is not None
    assert started.status == TaskStatus.RUNNING

    assert repository.complete_task(
        task_id="task-0",
        worker_id="w2",
        output_ref="out.json",
        usage=AttemptUsage(prompt_tokens=5),
    ) is False
    assert repository.complete_task(
        task_id="task-0",
        worker_id="w1",
        output_ref="out.json",
        usage=AttemptUsage(prompt_tokens=5, completion_tokens=7, duration_seconds=1.5),
    ) is True

    task = repository.get_task("task-0")
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.output_ref == "out.json"
    assert task.api_calls == 1
    assert task.prompt_tokens == 5
    assert task.completion_tokens == 7
    assert task.actual_duration_seconds == pytest.approx(1.5)
    assert [event.event_type for event in repository.list_task_events(task_id="task-0")] == [
        "created",
        "claimed",
        "started",
        "completed",
    ]
    job = repository.get_job(job_id)
    assert job is not None
    assert job.last_activity_at >= job.created_at


def test_concurrent_claims_admit_exactly_one_scheduler(repository: OrchestratorRepository) -> None:
    _seed_job(repository)
    barrier = threading.Barrier(8)
    winners: list[str] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        barrier.wait(timeout=5)
        if repository.claim_task(task_id="task-0", worker_id=worker_id):
            with lock:
                winners.append(worker_id)

    threads = [threading.Thread(target=_claim, args=(f"w{index}",)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(winners) == 1
    task = repository.get_task("task-0")
    assert task is not None
    assert task.worker_id == winners[0]


def test_schedule_retry_never_exceeds_max_retries(repository: OrchestratorRepository) -> None:
    _seed_job(repository, max_retries=1)
    failure = TaskFailure(
        category=ErrorCategory.TRANSIENT,
        severity=Severity.LOW,
        message="timeout",
    )

    for expected in (True, False):
        assert repository.claim_task(task_id="task-0", worker_id="w1")
        assert repository.start_task(task_id="task-0", worker_id="w1") is not None
        scheduled = repository.schedule_retry(
            task_id="task-0",
            worker_id="w1",
            run_after=utc_now() - timedelta(seconds=1),
            failure=failure,
            usage=AttemptUsage(api_failures=1),
        )
        assert scheduled is expected
        if not scheduled:
            assert repository.fail_task(
                task_id="task-0",
                worker_id="w1",
                failure=failure,
                usage=AttemptUsage(api_failures=1),
            )

    task = repository.get_task("task-0")
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 1
    assert task.api_calls == 2
    assert task.api_failures == 2


def test_release_claim_returns_task_to_pending(repository: OrchestratorRepository) -> None:
    _seed_job(repository)
    assert repository.claim_task(task_id="task-0", worker_id="w1")

    assert repository.release_claim(task_id="task-0", worker_id="other") is False
    assert repository.release_claim(task_id="task-0", worker_id="w1") is True

    task = repository.get_task("task-0")
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.worker_id is None


def test_transition_guard_discards_result_after_skip(repository: OrchestratorRepository) -> None:
    _seed_job(repository)
    assert repository.claim_task(task_id="task-0", worker_id="w1")
    assert repository.start_task(task_id="task-0", worker_id="w1") is not None

    assert repository.transition_task(
        task_id="task-0",
        expected=TaskStatus.RUNNING,
        status=TaskStatus.SKIPPED,
        event_type="skipped",
    )
    assert repository.complete_task(
        task_id="task-0",
        worker_id="w1",
        output_ref="late.json",
        usage=AttemptUsage(),
    ) is False
    task = repository.get_task("task-0")
    assert task is not None
    assert task.status == TaskStatus.SKIPPED
    assert task.output_ref is None


def test_log_entries_filter_by_level(repository: OrchestratorRepository) -> None:
    job_id = _seed_job(repository)
    repository.add_log_entry(
        LogEntryWrite(job_id=job_id, level=LogLevel.INFO, message="started"),
    )
    repository.add_log_entry(
        LogEntryWrite(
            job_id=job_id,
            task_id="task-0",
            level=LogLevel.ERROR,
            source="execution_engine",
            message="boom",
            payload={"error_category": "unknown"},
        ),
    )

    errors = repository.list_log_entries(job_id, levels=(LogLevel.ERROR,))
    assert [entry.message for entry in errors] == ["boom"]
    assert errors[0].payload == {"error_category": "unknown"}
    assert len(repository.list_log_entries(job_id)) == 2


def test_record_peak_memory_keeps_maximum(repository: OrchestratorRepository) -> None:
    job_id = _seed_job(repository)

    assert repository.record_peak_memory(job_id=job_id, peak_memory_mb=256.0) is True
    assert repository.record_peak_memory(job_id=job_id, peak_memory_mb=128.0) is False
    job = repository.get_job(job_id)
    assert job is not None
    assert job.peak_memory_mb == 256.0
