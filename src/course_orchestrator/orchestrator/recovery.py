"""Retry & recovery: outcome handling and operator recovery actions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from course_orchestrator.config import RetrySettings
from course_orchestrator.orchestrator.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    TaskNotFoundError,
)
from course_orchestrator.orchestrator.executor import ExecutionResult
from course_orchestrator.orchestrator.failure_classifier import (
    FailureClassification,
    classify_stale_running,
    escalate_for_review,
)
from course_orchestrator.orchestrator.models import (
    FINAL_TASK_STATUSES,
    AttemptUsage,
    ErrorCategory,
    JobStatus,
    JobView,
    LogEntryWrite,
    LogLevel,
    RecoveryActionResult,
    Severity,
    SmartRecoverySummary,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.progress import JobProgressTracker
from course_orchestrator.orchestrator.repository import SKIPPABLE_STATUSES, OrchestratorRepository
from course_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 5


def retry_delay_seconds(*, retry_count: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff `base * 2**retry_count`, capped at `max_seconds`."""

    return min(max_seconds, base_seconds * (2**retry_count))


class RecoveryManager:
    """Owns every task transition after execution and all operator actions."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        progress: JobProgressTracker,
        settings: RetrySettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.progress = progress
        self.settings = settings
        self.clock = clock

    # -- execution outcomes ----------------------------------------------------

    def handle_result(
        self,
        *,
        task: TaskView,
        worker_id: str,
        result: ExecutionResult,
    ) -> TaskStatus | None:
        """Apply the final transition for one attempt.

        Returns the new status, or None when another actor moved the task first
        (operator skip/cancel while the attempt was in flight).
        """

        if result.success and result.output_ref is not None:
            applied = self.repository.complete_task(
                task_id=task.task_id,
                worker_id=worker_id,
                output_ref=result.output_ref,
                usage=result.usage,
            )
            new_status = TaskStatus.COMPLETED if applied else None
        else:
            classification = result.classification
            if classification is None:
                raise ValueError("Failed execution result must carry a classification.")
            new_status = self._handle_failure(
                task=task,
                worker_id=worker_id,
                classification=classification,
                message=result.error or "Generation failed.",
                usage=result.usage,
            )

        if new_status is None:
            logger.info("Result for task %s discarded; state changed concurrently", task.task_id)
        self.progress.refresh(task.job_id)
        return new_status

    def recover_stale_tasks(
        self,
        *,
        stale_claim_seconds: int,
        stale_running_seconds: int,
    ) -> dict[str, int]:
        """Release abandoned claims and resolve `running` tasks whose scheduler vanished."""

        now = self.clock()
        released = 0
        for task in self.repository.find_stale_claims(
            claimed_before=now - timedelta(seconds=stale_claim_seconds),
        ):
            if task.worker_id and self.repository.release_claim(
                task_id=task.task_id,
                worker_id=task.worker_id,
            ):
                released += 1

        resolved = 0
        touched_jobs: set[str] = set()
        for task in self.repository.find_stale_running(
            started_before=now - timedelta(seconds=stale_running_seconds),
        ):
            if task.worker_id is None:
                continue
            classification = classify_stale_running()
            message = f"Task exceeded {stale_running_seconds}s in running state."
            status = self._handle_failure(
                task=task,
                worker_id=task.worker_id,
                classification=classification,
                message=message,
                usage=AttemptUsage(api_calls=0),
            )
            if status is None:
                continue
            resolved += 1
            touched_jobs.add(task.job_id)
            self.repository.add_log_entry(
                LogEntryWrite(
                    job_id=task.job_id,
                    task_id=task.task_id,
                    level=LogLevel.WARNING,
                    source="recovery_manager",
                    message=message,
                    payload={**classification.to_event_details(), "status_to": status.value},
                ),
            )
        for job_id in touched_jobs:
            self.progress.refresh(job_id)
        if released or resolved:
            logger.warning("Recovered stale tasks: released=%s resolved=%s", released, resolved)
        return {"released_claims": released, "resolved_running": resolved}

    def _handle_failure(
        self,
        *,
        task: TaskView,
        worker_id: str,
        classification: FailureClassification,
        message: str,
        usage: AttemptUsage,
    ) -> TaskStatus | None:
        retries_left = task.retry_count < task.max_retries
        if classification.severity == Severity.MEDIUM and retries_left:
            if self._medium_retries_used(task.task_id) >= self.settings.medium_retry_limit:
                classification = escalate_for_review(classification)
                retries_left = False

        if classification.retryable and retries_left:
            delay = retry_delay_seconds(
                retry_count=task.retry_count,
                base_seconds=self.settings.base_seconds,
                max_seconds=self.settings.max_seconds,
            )
            if self.repository.schedule_retry(
                task_id=task.task_id,
                worker_id=worker_id,
                run_after=self.clock() + timedelta(seconds=delay),
                failure=classification.to_task_failure(message),
                usage=usage,
            ):
                return TaskStatus.PENDING
            # Retry budget consumed concurrently; fall through to terminal failure.

        if classification.severity == Severity.MEDIUM and not classification.needs_review:
            classification = escalate_for_review(classification)
        applied = self.repository.fail_task(
            task_id=task.task_id,
            worker_id=worker_id,
            failure=classification.to_task_failure(message),
            usage=usage,
        )
        if not applied:
            return None
        if classification.needs_review or classification.severity == Severity.CRITICAL:
            self.repository.add_task_event(
                task_id=task.task_id,
                event_type="escalated",
                details=classification.to_event_details(),
            )
        return TaskStatus.FAILED

    def _medium_retries_used(self, task_id: str) -> int:
        return sum(
            1
            for event in self.repository.list_task_events(task_id=task_id)
            if event.event_type == "retry_scheduled"
            and event.details.get("severity") == Severity.MEDIUM.value
        )

    # -- operator actions ------------------------------------------------------

    def retry_task(self, task_id: str) -> RecoveryActionResult:
        """Reset a failed task to `queued`; no-op for any other status."""

        task = self._require_task(task_id)
        self._require_open_job(task.job_id)
        if task.status != TaskStatus.FAILED:
            return RecoveryActionResult(
                action="retry",
                target_id=task_id,
                applied=False,
                message=f"Task is {task.status.value}; only failed tasks can be retried.",
            )
        if not self.repository.requeue_failed_task(task_id=task_id):
            return RecoveryActionResult(
                action="retry",
                target_id=task_id,
                applied=False,
                message="Task state changed concurrently; nothing retried.",
            )
        reopened = self._reopen_dependents(job_id=task.job_id, root_ids={task_id})
        self._log_action(
            task=task,
            message=f"Task {task.task_type} queued for retry by operator.",
            payload={"action": "retry", "reopened_dependents": reopened},
        )
        self.progress.refresh(task.job_id)
        return RecoveryActionResult(
            action="retry",
            target_id=task_id,
            applied=True,
            message=f"Task queued for retry; {len(reopened)} dependent task(s) reopened.",
        )

    def skip_task(self, task_id: str) -> RecoveryActionResult:
        """Mark a task `skipped`; terminal tasks are left untouched."""

        task = self._require_task(task_id)
        for _ in range(_MAX_CAS_ATTEMPTS):
            if task.status in FINAL_TASK_STATUSES:
                return RecoveryActionResult(
                    action="skip",
                    target_id=task_id,
                    applied=False,
                    message=f"Task already {task.status.value}; nothing to skip.",
                )
            if task.status in SKIPPABLE_STATUSES and self.repository.transition_task(
                task_id=task_id,
                expected=task.status,
                status=TaskStatus.SKIPPED,
                event_type="skipped",
                details={"previous_category": task.error_category.value}
                if task.error_category
                else {},
            ):
                break
            task = self._require_task(task_id)
        else:
            raise InvalidTransitionError(
                "Task state changed concurrently while skipping; "
                f"please retry (task_id={task_id}).",
            )

        reopened = self._reopen_dependents(job_id=task.job_id, root_ids={task_id})
        self._log_action(
            task=task,
            message=f"Task {task.task_type} skipped by operator.",
            payload={
                "action": "skip",
                "status_from": task.status.value,
                "reopened_dependents": reopened,
            },
        )
        self.progress.refresh(task.job_id)
        return RecoveryActionResult(
            action="skip",
            target_id=task_id,
            applied=True,
            message="Task skipped.",
        )

    def pause_job(self, job_id: str) -> RecoveryActionResult:
        """Stop new dispatches for one job; in-flight attempts still finish."""

        job = self._require_job(job_id)
        if job.status in {JobStatus.COMPLETED, JobStatus.CANCELLED}:
            return RecoveryActionResult(
                action="pause",
                target_id=job_id,
                applied=False,
                message=f"Job is {job.status.value}; nothing to pause.",
            )
        applied = self.repository.set_job_paused(job_id=job_id, paused=True)
        if applied:
            self._log_job_action(job=job, message="Job paused by operator.", action="pause")
        return RecoveryActionResult(
            action="pause",
            target_id=job_id,
            applied=applied,
            message="Job paused." if applied else "Job already paused.",
        )

    def resume_job(self, job_id: str) -> RecoveryActionResult:
        job = self._require_job(job_id)
        applied = self.repository.set_job_paused(job_id=job_id, paused=False)
        if applied:
            self._log_job_action(job=job, message="Job resumed by operator.", action="resume")
        return RecoveryActionResult(
            action="resume",
            target_id=job_id,
            applied=applied,
            message="Job resumed." if applied else "Job is not paused.",
        )

    def smart_recover(self, job_id: str) -> SmartRecoverySummary:
        """Retry low/medium failures with budget left, skip everything else."""

        job = self._require_open_job(job_id)
        summary = SmartRecoverySummary(job_id=job.job_id)
        failed = self.repository.list_tasks(job_id, status=TaskStatus.FAILED)
        # Root causes first: retrying or skipping them reopens dependency failures.
        failed.sort(key=lambda task: task.error_category == ErrorCategory.DEPENDENCY_FAILURE)
        for candidate in failed:
            task = self.repository.get_task(candidate.task_id)
            if task is None or task.status != TaskStatus.FAILED:
                summary.unchanged.append(candidate.task_id)
                continue
            severity = task.severity or Severity.MEDIUM
            if severity.rank <= Severity.MEDIUM.rank and task.retry_count < task.max_retries:
                if self.retry_task(task.task_id).applied:
                    summary.retried.append(task.task_id)
                    continue
            elif self.skip_task(task.task_id).applied:
                summary.skipped.append(task.task_id)
                continue
            summary.unchanged.append(task.task_id)

        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=job_id,
                level=LogLevel.INFO,
                source="recovery_manager",
                message=(
                    f"Smart recovery: {len(summary.retried)} retried, "
                    f"{len(summary.skipped)} skipped."
                ),
                payload={
                    "action": "smart_recover",
                    "retried": summary.retried,
                    "skipped": summary.skipped,
                    "unchanged": summary.unchanged,
                },
            ),
        )
        return summary

    def cancel_job(self, job_id: str) -> RecoveryActionResult:
        """Cancel every open task and the job itself; idempotent."""

        job = self._require_job(job_id)
        if job.status == JobStatus.CANCELLED:
            return RecoveryActionResult(
                action="cancel",
                target_id=job_id,
                applied=False,
                message="Job already cancelled.",
            )
        if job.status == JobStatus.COMPLETED:
            return RecoveryActionResult(
                action="cancel",
                target_id=job_id,
                applied=False,
                message="Job already completed; nothing to cancel.",
            )

        cancelled = 0
        for task in self.repository.list_tasks(job_id):
            current = task
            for _ in range(_MAX_CAS_ATTEMPTS):
                if current.status not in {
                    TaskStatus.PENDING,
                    TaskStatus.QUEUED,
                    TaskStatus.RUNNING,
                }:
                    break
                if self.repository.transition_task(
                    task_id=current.task_id,
                    expected=current.status,
                    status=TaskStatus.CANCELLED,
                    event_type="cancelled",
                ):
                    cancelled += 1
                    break
                current = self._require_task(current.task_id)

        for _ in range(_MAX_CAS_ATTEMPTS):
            if self.progress.cancel(job):
                break
            job = self._require_job(job_id)
        self._log_job_action(
            job=job,
            message=f"Job cancelled by operator; {cancelled} open task(s) cancelled.",
            action="cancel",
        )
        return RecoveryActionResult(
            action="cancel",
            target_id=job_id,
            applied=True,
            message=f"Job cancelled; {cancelled} task(s) cancelled.",
        )

    def expand_task(  # noqa: PLR0913
        self,
        *,
        parent_task_id: str,
        task_type: str,
        input_payload: dict[str, Any] | None = None,
        priority: int | None = None,
        max_retries: int | None = None,
    ) -> TaskView:
        """Insert one new task depending on a completed task (content expansion)."""

        parent = self._require_task(parent_task_id)
        self._require_open_job(parent.job_id)
        if parent.status != TaskStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Only completed tasks can be expanded; task is {parent.status.value}.",
            )
        if not task_type.strip():
            raise InvalidTransitionError("Expansion task type must be a non-empty string.")

        created = self.repository.insert_task(
            job_id=parent.job_id,
            parent_task_id=parent_task_id,
            task=TaskCreate(
                task_id=str(uuid4()),
                task_type=task_type,
                seq=self.repository.next_seq(parent.job_id),
                dependency_ids=(parent_task_id,),
                priority=priority if priority is not None else parent.priority,
                max_retries=(
                    max_retries if max_retries is not None else self.settings.default_max_retries
                ),
                input_payload={"expanded_from": parent_task_id, **(input_payload or {})},
            ),
        )
        if created is None:
            raise InvalidTransitionError(
                f"Parent task {parent_task_id} changed state concurrently; expansion aborted.",
            )
        self._log_action(
            task=created,
            message=f"Task {task_type} added as expansion of {parent.task_type}.",
            payload={"action": "expand", "parent_task_id": parent_task_id},
        )
        self.progress.refresh(parent.job_id)
        return created

    # -- helpers ---------------------------------------------------------------

    def _reopen_dependents(self, *, job_id: str, root_ids: set[str]) -> list[str]:
        """Reset dependency-failure tasks downstream of the reopened/skipped roots."""

        reopened: list[str] = []
        frontier = set(root_ids)
        while frontier:
            next_frontier: set[str] = set()
            for task in self.repository.list_tasks(job_id, status=TaskStatus.FAILED):
                if task.error_category != ErrorCategory.DEPENDENCY_FAILURE:
                    continue
                if not frontier.intersection(task.dependency_ids):
                    continue
                if self.repository.reset_dependency_failure(task_id=task.task_id):
                    reopened.append(task.task_id)
                    next_frontier.add(task.task_id)
            frontier = next_frontier
        return reopened

    def _require_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _require_open_job(self, job_id: str) -> JobView:
        job = self._require_job(job_id)
        if job.status == JobStatus.CANCELLED:
            raise InvalidTransitionError(f"Job {job_id} is cancelled.")
        return job

    def _log_action(self, *, task: TaskView, message: str, payload: dict[str, Any]) -> None:
        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=task.job_id,
                task_id=task.task_id,
                level=LogLevel.INFO,
                source="recovery_manager",
                message=message,
                payload=payload,
            ),
        )

    def _log_job_action(self, *, job: JobView, message: str, action: str) -> None:
        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=job.job_id,
                level=LogLevel.INFO,
                source="recovery_manager",
                message=message,
                payload={"action": action},
            ),
        )
