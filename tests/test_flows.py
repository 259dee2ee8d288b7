from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest
from conftest import submit
from prefect.testing.utilities import prefect_test_harness

from course_orchestrator.orchestrator.errors import JobNotFoundError
from course_orchestrator.orchestrator.flows import run_job_flow
from course_orchestrator.orchestrator.models import JobStatus, TaskSpec
from course_orchestrator.orchestrator.services import CourseOrchestratorService

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Prefect job flow"),
]


@pytest.fixture(scope="module", autouse=True)
def prefect_backend() -> Iterator[None]:
    with prefect_test_harness():
        yield


def test_flow_drives_job_to_completion(service: CourseOrchestratorService) -> None:
    job = submit(
        service,
        [
            TaskSpec(key="outline", task_type="outline_generation"),
            TaskSpec(key="lesson", task_type="lesson_section", depends_on=("outline",)),
        ],
    )
    progress: list[str] = []

    finished = run_job_flow(
        scheduler=service.scheduler,
        job_id=job.job_id,
        on_progress=progress.append,
    )

    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_tasks == 2
    assert progress
    assert progress[-1].endswith("status=completed")


def test_flow_stops_on_paused_job(service: CourseOrchestratorService) -> None:
    job = submit(service, [TaskSpec(key="a", task_type="lesson_section")])
    service.pause_job(job.job_id)

    finished = run_job_flow(scheduler=service.scheduler, job_id=job.job_id)

    assert finished.is_paused is True
    assert finished.status == JobStatus.PENDING


def test_flow_rejects_unknown_job(service: CourseOrchestratorService) -> None:
    with pytest.raises(JobNotFoundError):
        run_job_flow(scheduler=service.scheduler, job_id="missing-job")
