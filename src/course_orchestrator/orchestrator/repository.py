"""Persistent job/task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from course_orchestrator.orchestrator.models import (
    AttemptUsage,
    ErrorCategory,
    JobCreate,
    JobStatus,
    JobView,
    LogEntryView,
    LogEntryWrite,
    LogLevel,
    Severity,
    TaskCreate,
    TaskEventView,
    TaskFailure,
    TaskStatus,
    TaskView,
)
from course_orchestrator.storage.alembic_runner import current_revision, upgrade_head
from course_orchestrator.storage.common import (
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from course_orchestrator.storage.sqlmodel_models import (
    AppUser,
    GenerationJob,
    GenerationTask,
    GenerationTaskEvent,
    JobLogEntry,
)

SKIPPABLE_STATUSES = (
    TaskStatus.PENDING,
    TaskStatus.QUEUED,
    TaskStatus.RUNNING,
    TaskStatus.FAILED,
)


class OrchestratorRepository:
    """Task Store facade: jobs, task graphs, audit events and the job log."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    # -- users -----------------------------------------------------------------

    def ensure_user(self, *, user_id: str, role: str, display_name: str | None = None) -> None:
        """Create the user row on first sight; role is refreshed on later submissions."""

        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if user is None:
                session.add(
                    AppUser(
                        user_id=user_id,
                        display_name=display_name or user_id,
                        role=role,
                        created_at=utc_now(),
                    ),
                )
            elif user.role != role:
                user.role = role
                session.add(user)
            session.commit()

    # -- jobs ------------------------------------------------------------------

    def create_job_with_tasks(self, job: JobCreate, tasks: list[TaskCreate]) -> JobView:
        """Persist a job and its full task graph in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job.job_id,
                user_id=job.user_id,
                role=job.role,
                request_json=json.dumps(job.request, ensure_ascii=False, sort_keys=True),
                status=JobStatus.PENDING.value,
                is_paused=False,
                total_tasks=len(tasks),
                created_at=now,
                updated_at=now,
                last_activity_at=now,
            )
            session.add(row)
            session.flush()
            for task in tasks:
                session.add(_new_task_row(job_id=job.job_id, task=task, now=now))
            session.flush()
            for task in tasks:
                self._add_event(
                    session=session,
                    job_id=job.job_id,
                    task_id=task.task_id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={
                        "task_type": task.task_type,
                        "priority": task.priority,
                        "depends_on": list(task.dependency_ids),
                    },
                )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by owner and status."""

        with Session(self.engine) as session:
            statement = select(GenerationJob).order_by(col(GenerationJob.created_at).desc())
            if user_id is not None:
                statement = statement.where(GenerationJob.user_id == user_id)
            if statuses is not None:
                statement = statement.where(
                    col(GenerationJob.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job_view(row) for row in rows]

    def list_dispatchable_job_ids(self) -> list[str]:
        """Jobs the scheduler should consider: not terminal and not paused."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob.job_id)
                .where(
                    col(GenerationJob.status).in_(
                        [JobStatus.PENDING.value, JobStatus.PROCESSING.value],
                    ),
                    col(GenerationJob.is_paused).is_(False),
                )
                .order_by(col(GenerationJob.created_at).asc()),
            ).all()
        return list(rows)

    def set_job_paused(self, *, job_id: str, paused: bool) -> bool:
        """Flip the pause flag; returns False when it already had that value."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.is_paused).is_(not paused),
                )
                .values(
                    is_paused=paused,
                    updated_at=to_db_datetime(now),
                    last_activity_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_job_progress(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected_status: JobStatus,
        status: JobStatus,
        counters: dict[str, int],
        error_summary: str | None = None,
        output_ref: str | None = None,
    ) -> bool:
        """Write recomputed counters and status if no other actor changed the status first."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": status.value,
            "total_tasks": counters["total"],
            "completed_tasks": counters["completed"],
            "failed_tasks": counters["failed"],
            "skipped_tasks": counters["skipped"],
            "updated_at": to_db_datetime(now),
        }
        if status != expected_status:
            values["error_summary"] = error_summary
            values["last_activity_at"] = to_db_datetime(now)
            if status == JobStatus.PROCESSING:
                values["finished_at"] = None
            if status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}:
                values["finished_at"] = to_db_datetime(now)
        if output_ref is not None:
            values["output_ref"] = output_ref
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == expected_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_job_started(self, *, job_id: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.started_at).is_(None),
                )
                .values(started_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()

    def record_peak_memory(self, *, job_id: str, peak_memory_mb: float) -> bool:
        """Keep the highest externally observed memory figure for the job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    or_(
                        col(GenerationJob.peak_memory_mb).is_(None),
                        col(GenerationJob.peak_memory_mb) < peak_memory_mb,
                    ),
                )
                .values(peak_memory_mb=peak_memory_mb),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- tasks: reads ----------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(self, job_id: str, *, status: TaskStatus | None = None) -> list[TaskView]:
        """Consistent read of a job's task set in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(GenerationTask)
                .where(GenerationTask.job_id == job_id)
                .order_by(col(GenerationTask.seq).asc())
            )
            if status is not None:
                statement = statement.where(GenerationTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_ready_tasks(self, job_id: str, *, now: datetime | None = None) -> list[TaskView]:
        """Unclaimed tasks whose dependencies are all completed or skipped.

        Ordered by priority (lower first), then creation order.
        """

        moment = now or utc_now()
        tasks = self.list_tasks(job_id)
        status_by_id = {task.task_id: task.status for task in tasks}
        ready = [
            task
            for task in tasks
            if is_unclaimed(task)
            and task.run_after <= moment
            and all(
                status_by_id.get(dep) in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
                for dep in task.dependency_ids
            )
        ]
        return sorted(ready, key=lambda task: (task.priority, task.seq))

    def next_seq(self, job_id: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask.seq)
                .where(GenerationTask.job_id == job_id)
                .order_by(col(GenerationTask.seq).desc())
                .limit(1),
            ).all()
        return (rows[0] + 1) if rows else 0

    # -- tasks: compare-and-set transitions -----------------------------------

    def claim_task(self, *, task_id: str, worker_id: str) -> bool:
        """Reserve an unclaimed ready task for one scheduler (`-> queued`)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                return False
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.PENDING, TaskStatus.QUEUED}:
                return False
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                    col(GenerationTask.worker_id).is_(None),
                    col(GenerationTask.run_after) <= to_db_datetime(now),
                )
                .values(
                    status=TaskStatus.QUEUED.value,
                    worker_id=worker_id,
                    claimed_at=to_db_datetime(now),
                    queued_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="claimed",
                status_from=previous,
                status_to=TaskStatus.QUEUED,
                details={"worker_id": worker_id},
            )
            session.commit()
            return True

    def start_task(self, *, task_id: str, worker_id: str) -> TaskView | None:
        """Move a claimed task to `running` right before execution."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.QUEUED.value,
                    col(GenerationTask.worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    completed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one()
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id, "retry_count": row.retry_count},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def release_claim(self, *, task_id: str, worker_id: str) -> bool:
        """Give back a claim that never started (denied admission, shutdown)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                return False
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.QUEUED.value,
                    col(GenerationTask.worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="claim_released",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.PENDING,
                details={"worker_id": worker_id},
            )
            session.commit()
            return True

    def complete_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        output_ref: str,
        usage: AttemptUsage,
    ) -> bool:
        """Mark a running task as completed and attach its output pointer."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    col(GenerationTask.worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    output_ref=output_ref,
                    completed_at=to_db_datetime(now),
                    error_category=None,
                    severity=None,
                    error_message=None,
                    recovery_suggestions_json=None,
                    needs_review=False,
                    updated_at=to_db_datetime(now),
                    **_usage_values(usage),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"output_ref": output_ref},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        run_after: datetime,
        failure: TaskFailure,
        usage: AttemptUsage,
    ) -> bool:
        """Return a running task to `pending` for automatic retry, consuming one retry."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    col(GenerationTask.worker_id) == worker_id,
                    col(GenerationTask.retry_count) < col(GenerationTask.max_retries),
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    retry_count=col(GenerationTask.retry_count) + 1,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    claimed_at=None,
                    started_at=None,
                    updated_at=to_db_datetime(now),
                    **_failure_values(failure),
                    **_usage_values(usage),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.PENDING,
                details={
                    "run_after": to_utc_aware(run_after).isoformat(),
                    "retry_count": row.retry_count + 1,
                    "error_category": failure.category.value,
                    "severity": failure.severity.value,
                },
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        failure: TaskFailure,
        usage: AttemptUsage,
    ) -> bool:
        """Mark a running task as terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    col(GenerationTask.worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **_failure_values(failure),
                    **_usage_values(usage),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={
                    "error_category": failure.category.value,
                    "severity": failure.severity.value,
                    "needs_review": failure.needs_review,
                },
            )
            session.commit()
            return True

    def fail_unexecuted_task(self, *, task_id: str, failure: TaskFailure) -> bool:
        """Fail an unclaimed task that can never run (its prerequisite failed)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.PENDING, TaskStatus.QUEUED}:
                return False
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                    col(GenerationTask.worker_id).is_(None),
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **_failure_values(failure),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="dependency_failed",
                status_from=previous,
                status_to=TaskStatus.FAILED,
                details={"error_category": failure.category.value},
            )
            session.commit()
            return True

    def requeue_failed_task(self, *, task_id: str, event_type: str = "manual_retry") -> bool:
        """Operator retry: `failed -> queued` (unclaimed), retry counter untouched."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.QUEUED.value,
                    run_after=to_db_datetime(now),
                    worker_id=None,
                    claimed_at=None,
                    started_at=None,
                    completed_at=None,
                    error_category=None,
                    severity=None,
                    error_message=None,
                    recovery_suggestions_json=None,
                    needs_review=False,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.QUEUED,
                details={"previous_category": row.error_category},
            )
            session.commit()
            return True

    def reset_dependency_failure(self, *, task_id: str) -> bool:
        """Reopen a task that failed only because a prerequisite failed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.FAILED.value,
                    col(GenerationTask.error_category) == ErrorCategory.DEPENDENCY_FAILURE.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    run_after=to_db_datetime(now),
                    completed_at=None,
                    error_category=None,
                    severity=None,
                    error_message=None,
                    recovery_suggestions_json=None,
                    needs_review=False,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type="dependency_reset",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={},
            )
            session.commit()
            return True

    def transition_task(
        self,
        *,
        task_id: str,
        expected: TaskStatus,
        status: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Generic operator transition (skip/cancel) guarded by the observed status."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == expected.value,
                )
                .values(
                    status=status.value,
                    worker_id=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type=event_type,
                status_from=expected,
                status_to=status,
                details=details or {},
            )
            session.commit()
            return True

    def insert_task(self, *, job_id: str, task: TaskCreate, parent_task_id: str) -> TaskView | None:
        """Insert one expansion task if its parent is still `completed`."""

        now = utc_now()
        with Session(self.engine) as session:
            parent = session.exec(
                select(GenerationTask).where(
                    GenerationTask.task_id == parent_task_id,
                    GenerationTask.job_id == job_id,
                    GenerationTask.status == TaskStatus.COMPLETED.value,
                ),
            ).one_or_none()
            if parent is None:
                return None
            row = _new_task_row(job_id=job_id, task=task, now=now)
            session.add(row)
            session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == job_id)
                .values(
                    total_tasks=col(GenerationJob.total_tasks) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                task_id=task.task_id,
                event_type="expanded",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"parent_task_id": parent_task_id, "task_type": task.task_type},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def find_stale_claims(self, *, claimed_before: datetime) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask).where(
                    GenerationTask.status == TaskStatus.QUEUED.value,
                    col(GenerationTask.worker_id).is_not(None),
                    col(GenerationTask.claimed_at) <= to_db_datetime(claimed_before),
                ),
            ).all()
        return [_to_task_view(row) for row in rows]

    def find_stale_running(self, *, started_before: datetime) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask).where(
                    GenerationTask.status == TaskStatus.RUNNING.value,
                    col(GenerationTask.started_at) <= to_db_datetime(started_before),
                ),
            ).all()
        return [_to_task_view(row) for row in rows]

    # -- audit and log stream --------------------------------------------------

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an event without changing task state."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            status = TaskStatus(row.status)
            self._add_event(
                session=session,
                job_id=row.job_id,
                task_id=task_id,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details or {},
            )
            session.commit()

    def list_task_events(self, *, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.task_id == task_id)
                .order_by(col(GenerationTaskEvent.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware(row.created_at),
                details=_load_json_dict(row.details_json),
            )
            for row in rows
        ]

    def add_log_entry(self, entry: LogEntryWrite) -> None:
        """Append one immutable job log entry."""

        with Session(self.engine) as session:
            session.add(
                JobLogEntry(
                    job_id=entry.job_id,
                    task_id=entry.task_id,
                    level=entry.level.value,
                    source=entry.source,
                    message=entry.message,
                    payload_json=json.dumps(entry.payload, ensure_ascii=False, sort_keys=True)
                    if entry.payload
                    else None,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_log_entries(
        self,
        job_id: str,
        *,
        levels: Iterable[LogLevel] | None = None,
        task_id: str | None = None,
    ) -> list[LogEntryView]:
        with Session(self.engine) as session:
            statement = (
                select(JobLogEntry)
                .where(JobLogEntry.job_id == job_id)
                .order_by(col(JobLogEntry.id).asc())
            )
            if levels is not None:
                statement = statement.where(
                    col(JobLogEntry.level).in_([level.value for level in levels]),
                )
            if task_id is not None:
                statement = statement.where(JobLogEntry.task_id == task_id)
            rows = session.exec(statement).all()
        return [
            LogEntryView(
                entry_id=row.id or 0,
                job_id=row.job_id,
                task_id=row.task_id,
                level=LogLevel(row.level),
                source=row.source,
                message=row.message,
                payload=_load_json_dict(row.payload_json),
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def _get_task_row(self, *, session: Session, task_id: str) -> GenerationTask:
        row = session.exec(
            select(GenerationTask).where(GenerationTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise LookupError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        now = utc_now()
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=now,
            ),
        )
        session.exec(
            sa_update(GenerationJob)
            .where(col(GenerationJob.job_id) == job_id)
            .values(last_activity_at=to_db_datetime(now)),
        )


def is_unclaimed(task: TaskView) -> bool:
    """Pending, or queued by an operator retry and not yet claimed by a scheduler."""

    if task.status == TaskStatus.PENDING:
        return True
    return task.status == TaskStatus.QUEUED and task.worker_id is None


def _new_task_row(*, job_id: str, task: TaskCreate, now: datetime) -> GenerationTask:
    return GenerationTask(
        task_id=task.task_id,
        job_id=job_id,
        task_type=task.task_type,
        seq=task.seq,
        dependency_ids_json=json.dumps(list(task.dependency_ids)),
        priority=task.priority,
        status=TaskStatus.PENDING.value,
        retry_count=0,
        max_retries=task.max_retries,
        run_after=to_db_datetime(now),
        input_json=json.dumps(task.input_payload, ensure_ascii=False, sort_keys=True),
        estimated_duration_seconds=task.estimated_duration_seconds,
        created_at=now,
        updated_at=now,
    )


def _failure_values(failure: TaskFailure) -> dict[str, Any]:
    return {
        "error_category": failure.category.value,
        "severity": failure.severity.value,
        "error_message": failure.message,
        "recovery_suggestions_json": json.dumps(failure.recovery_suggestions, ensure_ascii=False)
        if failure.recovery_suggestions
        else None,
        "needs_review": failure.needs_review,
    }


def _usage_values(usage: AttemptUsage) -> dict[str, Any]:
    values: dict[str, Any] = {
        "api_calls": col(GenerationTask.api_calls) + usage.api_calls,
        "api_failures": col(GenerationTask.api_failures) + usage.api_failures,
        "prompt_tokens": col(GenerationTask.prompt_tokens) + usage.prompt_tokens,
        "completion_tokens": col(GenerationTask.completion_tokens) + usage.completion_tokens,
        "estimated_cost_usd": col(GenerationTask.estimated_cost_usd) + usage.estimated_cost_usd,
    }
    if usage.duration_seconds is not None:
        values["actual_duration_seconds"] = usage.duration_seconds
    return values


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        role=row.role,
        request=_load_json_dict(row.request_json),
        status=JobStatus(row.status),
        is_paused=bool(row.is_paused),
        total_tasks=row.total_tasks,
        completed_tasks=row.completed_tasks,
        failed_tasks=row.failed_tasks,
        skipped_tasks=row.skipped_tasks,
        output_ref=row.output_ref,
        error_summary=row.error_summary,
        peak_memory_mb=row.peak_memory_mb,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=optional_utc_aware(row.started_at),
        finished_at=optional_utc_aware(row.finished_at),
        last_activity_at=to_utc_aware(row.last_activity_at),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    suggestions: list[str] = []
    if row.recovery_suggestions_json:
        parsed = json.loads(row.recovery_suggestions_json)
        if isinstance(parsed, list):
            suggestions = [str(item) for item in parsed]
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        task_type=row.task_type,
        seq=row.seq,
        dependency_ids=tuple(json.loads(row.dependency_ids_json)),
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        run_after=to_utc_aware(row.run_after),
        error_category=ErrorCategory(row.error_category)
        if row.error_category is not None
        else None,
        severity=Severity(row.severity) if row.severity is not None else None,
        error_message=row.error_message,
        recovery_suggestions=suggestions,
        needs_review=bool(row.needs_review),
        input_payload=_load_json_dict(row.input_json),
        output_ref=row.output_ref,
        worker_id=row.worker_id,
        queued_at=optional_utc_aware(row.queued_at),
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
        estimated_duration_seconds=row.estimated_duration_seconds,
        actual_duration_seconds=row.actual_duration_seconds,
        api_calls=row.api_calls,
        api_failures=row.api_failures,
        prompt_tokens=row.prompt_tokens,
        completion_tokens=row.completion_tokens,
        estimated_cost_usd=row.estimated_cost_usd,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
