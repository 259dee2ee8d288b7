from pathlib import Path

import allure
from sqlalchemy import inspect

from course_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    try:
        assert repository.schema_revision() is None

        repository.init_schema()

        assert repository.schema_revision() == "20261001_0001"
        tables = set(inspect(repository.engine).get_table_names())
        assert {
            "users",
            "generation_jobs",
            "generation_tasks",
            "generation_task_events",
            "job_log_entries",
            "rate_limit_records",
        } <= tables
    finally:
        repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    try:
        repository.init_schema()
        repository.init_schema()

        assert repository.schema_revision() == "20261001_0001"
    finally:
        repository.close()
