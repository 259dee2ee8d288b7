"""Use-case services: the control surface over jobs, tasks and admission."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from course_orchestrator.config import Settings
from course_orchestrator.orchestrator.analytics import JobAnalyticsService
from course_orchestrator.orchestrator.artifacts import OutputStore
from course_orchestrator.orchestrator.errors import (
    JobNotFoundError,
    RateLimitExceededError,
    TaskNotFoundError,
)
from course_orchestrator.orchestrator.executor import ExecutionEngine
from course_orchestrator.orchestrator.generation import (
    GenerationBackend,
    build_generation_backend,
)
from course_orchestrator.orchestrator.graph import build_task_graph
from course_orchestrator.orchestrator.health import JobHealthAggregator
from course_orchestrator.orchestrator.models import (
    AdmissionScope,
    AnalyticsSnapshot,
    ErrorReport,
    JobCreate,
    JobHealthReport,
    JobView,
    LogEntryWrite,
    LogLevel,
    RateLimitUsage,
    RecoveryActionResult,
    ReportFormat,
    ReportSections,
    SmartRecoverySummary,
    TaskSpec,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.progress import JobProgressTracker
from course_orchestrator.orchestrator.rate_limiter import RateLimiter
from course_orchestrator.orchestrator.recovery import RecoveryManager
from course_orchestrator.orchestrator.reports import export_report
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.orchestrator.scheduler import Scheduler
from course_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit one course generation job."""

    user_id: str
    role: str
    request: dict[str, Any]
    tasks: list[TaskSpec]


@dataclass(slots=True)
class JobStatusSnapshot:
    """Job record together with its derived health."""

    job: JobView
    health: JobHealthReport


class CourseOrchestratorService:
    """Wires the orchestrator components and exposes every control operation."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: OrchestratorRepository,
        backend: GenerationBackend,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.backend = backend
        self.clock = clock
        self.output_store = OutputStore(settings.artifacts_root)
        self.rate_limiter = RateLimiter(repository.engine, settings.rate_limits, clock=clock)
        self.progress = JobProgressTracker(
            repository=repository,
            rate_limiter=self.rate_limiter,
            output_store=self.output_store,
        )
        self.recovery = RecoveryManager(
            repository=repository,
            progress=self.progress,
            settings=settings.retry,
            clock=clock,
        )
        self.engine = ExecutionEngine(
            repository=repository,
            backend=backend,
            output_store=self.output_store,
            timeout_seconds=settings.execution.timeout_seconds,
            model=settings.execution.model,
        )
        self.scheduler = Scheduler(
            repository=repository,
            rate_limiter=self.rate_limiter,
            engine=self.engine,
            recovery=self.recovery,
            progress=self.progress,
            settings=settings.scheduler,
        )
        self.health_aggregator = JobHealthAggregator(
            repository=repository,
            settings=settings.health,
            clock=clock,
        )
        self.analytics_service = JobAnalyticsService(repository)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: GenerationBackend | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> CourseOrchestratorService:
        """Open (and migrate) the store and build the configured backend."""

        repository = OrchestratorRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        repository.init_schema()
        return cls(
            settings=settings,
            repository=repository,
            backend=backend or build_generation_backend(settings.execution),
            clock=clock,
        )

    def close(self) -> None:
        close_backend = getattr(self.backend, "close", None)
        if callable(close_backend):
            close_backend()
        self.repository.close()

    # -- inbound ----------------------------------------------------------------

    def submit_job(self, command: SubmitJob) -> JobView:
        """Validate the graph, reserve job admission, then persist atomically.

        Raises InvalidTaskGraphError before any admission is consumed, and
        RateLimitExceededError when a ceiling or the concurrency cap is hit.
        """

        tasks = build_task_graph(
            command.tasks,
            default_max_retries=self.settings.retry.default_max_retries,
        )
        role = command.role.strip().lower() or self.settings.rate_limits.default_role
        self.repository.ensure_user(user_id=command.user_id, role=role)

        decision = self.rate_limiter.check_and_reserve(
            user_id=command.user_id,
            role=role,
            scope=AdmissionScope.JOB,
        )
        if not decision.allowed:
            raise RateLimitExceededError(decision)

        try:
            job = self.repository.create_job_with_tasks(
                JobCreate(
                    job_id=str(uuid4()),
                    user_id=command.user_id,
                    role=role,
                    request=command.request,
                ),
                tasks,
            )
        except Exception:
            self.rate_limiter.release_job_slot(user_id=command.user_id)
            raise

        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=job.job_id,
                level=LogLevel.INFO,
                source="orchestrator",
                message=f"Job submitted with {len(tasks)} task(s).",
                payload={"user_id": command.user_id, "role": role, "total_tasks": len(tasks)},
            ),
        )
        logger.info("Submitted job %s user=%s tasks=%s", job.job_id, command.user_id, len(tasks))
        return job

    # -- reads ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        job = self._require_job(job_id)
        return JobStatusSnapshot(job=job, health=self.health_aggregator.health(job_id))

    def list_tasks(self, job_id: str, *, status: TaskStatus | None = None) -> list[TaskView]:
        self._require_job(job_id)
        return self.repository.list_tasks(job_id, status=status)

    def get_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(user_id=user_id, limit=limit)

    def get_errors(self, job_id: str) -> ErrorReport:
        return self.analytics_service.errors(job_id)

    def get_analytics(self, job_id: str) -> AnalyticsSnapshot:
        return self.analytics_service.analytics(job_id)

    def check_all_health(self, *, user_id: str | None = None) -> list[JobHealthReport]:
        return self.health_aggregator.check_all(user_id=user_id)

    def usage(self, *, user_id: str, role: str) -> list[RateLimitUsage]:
        """Admission usage for both scopes."""

        return [
            self.rate_limiter.usage(user_id=user_id, role=role, scope=scope)
            for scope in (AdmissionScope.JOB, AdmissionScope.TASK)
        ]

    def export_report(
        self,
        job_id: str,
        *,
        report_format: ReportFormat,
        include_analytics: bool = True,
        include_tasks: bool = True,
        include_errors: bool = True,
        include_performance: bool = True,
    ) -> str:
        job = self._require_job(job_id)
        return export_report(
            report_format=report_format,
            job=job,
            tasks=self.repository.list_tasks(job_id),
            analytics=self.analytics_service.analytics(job_id),
            errors=self.analytics_service.errors(job_id),
            generated_at=self.clock(),
            sections=ReportSections(
                analytics=include_analytics,
                tasks=include_tasks,
                errors=include_errors,
                performance=include_performance,
            ),
        )

    # -- control actions --------------------------------------------------------

    def retry_task(self, task_id: str) -> RecoveryActionResult:
        return self.recovery.retry_task(task_id)

    def skip_task(self, task_id: str) -> RecoveryActionResult:
        return self.recovery.skip_task(task_id)

    def pause_job(self, job_id: str) -> RecoveryActionResult:
        return self.recovery.pause_job(job_id)

    def resume_job(self, job_id: str) -> RecoveryActionResult:
        return self.recovery.resume_job(job_id)

    def smart_recover(self, job_id: str) -> SmartRecoverySummary:
        return self.recovery.smart_recover(job_id)

    def cancel_job(self, job_id: str) -> RecoveryActionResult:
        return self.recovery.cancel_job(job_id)

    def expand_task(
        self,
        *,
        parent_task_id: str,
        task_type: str,
        input_payload: dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> TaskView:
        return self.recovery.expand_task(
            parent_task_id=parent_task_id,
            task_type=task_type,
            input_payload=input_payload,
            priority=priority,
        )

    def record_peak_memory(self, job_id: str, *, peak_memory_mb: float) -> bool:
        """Feed an externally sampled memory figure; keeps the maximum."""

        self._require_job(job_id)
        if peak_memory_mb < 0:
            raise ValueError("peak_memory_mb must be >= 0.")
        return self.repository.record_peak_memory(job_id=job_id, peak_memory_mb=peak_memory_mb)

    def run_job(self, job_id: str, *, max_passes: int | None = None) -> JobView:
        return self.scheduler.run_job(job_id, max_passes=max_passes)

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
