"""Typed errors raised by orchestrator services."""

from __future__ import annotations

from course_orchestrator.orchestrator.models import AdmissionDecision


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures surfaced to callers."""


class JobNotFoundError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskGraphError(OrchestratorError, ValueError):
    """Submitted task graph is malformed (unknown deps, cycles, duplicates)."""


class InvalidTransitionError(OrchestratorError):
    """Requested action is not valid for the current job/task state."""


class RateLimitExceededError(OrchestratorError):
    """Admission denied by the rate limiter."""

    def __init__(self, decision: AdmissionDecision) -> None:
        reason = decision.reason.value if decision.reason is not None else "unknown"
        message = decision.message or f"Rate limit exceeded ({reason})."
        super().__init__(message)
        self.decision = decision
