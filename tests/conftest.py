"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from course_orchestrator.config import (
    ExecutionSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
)
from course_orchestrator.orchestrator.generation import EchoGenerationBackend
from course_orchestrator.orchestrator.models import JobView, TaskSpec, TaskView
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.orchestrator.services import CourseOrchestratorService, SubmitJob


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Local settings: echo backend, no retry backoff, fast polling."""

    return Settings(
        db_path=tmp_path / "orchestrator.db",
        artifacts_root=tmp_path / "artifacts",
        scheduler=SchedulerSettings(
            scheduler_id="scheduler-test",
            poll_interval_seconds=0.01,
            max_workers=4,
        ),
        retry=RetrySettings(base_seconds=0.0, max_seconds=0.0),
        execution=ExecutionSettings(backend="echo", timeout_seconds=5.0),
    )


@pytest.fixture()
def echo_backend() -> EchoGenerationBackend:
    return EchoGenerationBackend()


@pytest.fixture()
def service(
    settings: Settings,
    echo_backend: EchoGenerationBackend,
) -> Iterator[CourseOrchestratorService]:
    orchestrator = CourseOrchestratorService.from_settings(settings, backend=echo_backend)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "repository.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def submit(
    service: CourseOrchestratorService,
    specs: list[TaskSpec],
    *,
    user_id: str = "teacher-1",
    role: str = "admin",
    request: dict[str, Any] | None = None,
) -> JobView:
    """Submit a job with a subject so known task types pass the input contract."""

    return service.submit_job(
        SubmitJob(
            user_id=user_id,
            role=role,
            request=request if request is not None else {"topic": "Intro to Python"},
            tasks=specs,
        ),
    )


def tasks_by_key(service: CourseOrchestratorService, job_id: str) -> dict[str, TaskView]:
    return {
        task.input_payload.get("key", task.task_id): task for task in service.list_tasks(job_id)
    }
