"""Execution engine: one generation attempt for one running task."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from course_orchestrator.orchestrator.artifacts import OutputStore
from course_orchestrator.orchestrator.failure_classifier import (
    FailureClassification,
    classify_execution_failure,
    classify_input_contract_failure,
    classify_unexpected_exception,
    classify_validation_failure,
)
from course_orchestrator.orchestrator.generation.base import (
    GenerationBackend,
    GenerationRequest,
    GenerationResponse,
)
from course_orchestrator.orchestrator.models import (
    AttemptUsage,
    JobView,
    LogEntryWrite,
    LogLevel,
    Severity,
    TaskView,
)
from course_orchestrator.orchestrator.pricing import estimate_cost_usd
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.orchestrator.validator import KNOWN_TASK_TYPES, validate_task_output

logger = logging.getLogger(__name__)

_SUBJECT_KEYS = ("title", "topic", "course_title")

SEVERITY_LOG_LEVEL: dict[Severity, LogLevel] = {
    Severity.LOW: LogLevel.WARNING,
    Severity.MEDIUM: LogLevel.WARNING,
    Severity.HIGH: LogLevel.ERROR,
    Severity.CRITICAL: LogLevel.CRITICAL,
}


class InputContractError(ValueError):
    """Task input plus job context cannot form a generation request."""


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one attempt, handed to the recovery manager."""

    success: bool
    output: dict[str, Any] | None = None
    output_ref: str | None = None
    validation_errors: list[str] = field(default_factory=list)
    error: str | None = None
    classification: FailureClassification | None = None
    usage: AttemptUsage = field(default_factory=AttemptUsage)


class ExecutionEngine:
    """Runs single attempts; retries are owned by the recovery manager."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        backend: GenerationBackend,
        output_store: OutputStore,
        timeout_seconds: float,
        model: str = "default",
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.output_store = output_store
        self.timeout_seconds = timeout_seconds
        self.model = model
        self._monotonic = monotonic

    def execute(self, task: TaskView, job: JobView) -> ExecutionResult:
        """Run one attempt and append exactly one job log entry for it."""

        try:
            result = self._execute(task, job)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected executor failure task=%s", task.task_id)
            classification = classify_unexpected_exception(error)
            result = ExecutionResult(
                success=False,
                error=f"{type(error).__name__}: {error}",
                classification=classification,
                usage=AttemptUsage(api_calls=0),
            )
        self._log_attempt(task=task, result=result)
        return result

    def _execute(self, task: TaskView, job: JobView) -> ExecutionResult:
        try:
            request = build_generation_request(
                task=task,
                job=job,
                timeout_seconds=self.timeout_seconds,
                model=self.model,
            )
        except InputContractError as error:
            return ExecutionResult(
                success=False,
                error=str(error),
                classification=classify_input_contract_failure(str(error)),
                usage=AttemptUsage(api_calls=0),
            )

        started = self._monotonic()
        response = self.backend.generate(request)
        usage = self._usage(response=response, duration=self._monotonic() - started)

        if not response.is_success:
            error = response.error or f"HTTP {response.status_code}"
            usage.api_failures = 1
            return ExecutionResult(
                success=False,
                error=error,
                classification=classify_execution_failure(
                    status_code=response.status_code,
                    error=error,
                    timed_out=response.timed_out,
                ),
                usage=usage,
            )

        validation = validate_task_output(task_type=task.task_type, output=response.output)
        if not validation.is_valid or validation.payload is None:
            return ExecutionResult(
                success=False,
                validation_errors=validation.errors,
                error="Output failed validation: " + "; ".join(validation.errors),
                classification=classify_validation_failure(validation.errors),
                usage=usage,
            )

        output_ref = self.output_store.write_task_output(
            job_id=task.job_id,
            task_id=task.task_id,
            payload=validation.payload,
        )
        return ExecutionResult(
            success=True,
            output=validation.payload,
            output_ref=output_ref,
            usage=usage,
        )

    def _usage(self, *, response: GenerationResponse, duration: float) -> AttemptUsage:
        model = response.model or self.model
        return AttemptUsage(
            api_calls=1,
            api_failures=0,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            estimated_cost_usd=estimate_cost_usd(
                model=model,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
            ),
            duration_seconds=round(duration, 3),
        )

    def _log_attempt(self, *, task: TaskView, result: ExecutionResult) -> None:
        attempt = task.retry_count + 1
        if result.success:
            self.repository.add_log_entry(
                LogEntryWrite(
                    job_id=task.job_id,
                    task_id=task.task_id,
                    level=LogLevel.INFO,
                    source="execution_engine",
                    message=f"{task.task_type} completed on attempt {attempt}.",
                    payload={
                        "output_ref": result.output_ref,
                        "duration_seconds": result.usage.duration_seconds,
                        "prompt_tokens": result.usage.prompt_tokens,
                        "completion_tokens": result.usage.completion_tokens,
                    },
                ),
            )
            return

        classification = result.classification
        if classification is None:
            raise ValueError("Failed execution result must carry a classification.")
        self.repository.add_log_entry(
            LogEntryWrite(
                job_id=task.job_id,
                task_id=task.task_id,
                level=SEVERITY_LOG_LEVEL[classification.severity],
                source="execution_engine",
                message=f"{task.task_type} attempt {attempt} failed: {result.error}",
                payload={
                    **classification.to_event_details(),
                    "attempt": attempt,
                    "error": result.error,
                    "validation_errors": result.validation_errors,
                },
            ),
        )
        logger.warning(
            "Task %s attempt %s failed category=%s severity=%s",
            task.task_id,
            attempt,
            classification.category.value,
            classification.severity.value,
        )


def build_generation_request(
    *,
    task: TaskView,
    job: JobView,
    timeout_seconds: float,
    model: str,
) -> GenerationRequest:
    """Merge task input with job context; known task types need a subject."""

    if task.task_type in KNOWN_TASK_TYPES and not any(
        _has_text(source.get(key))
        for source in (task.input_payload, job.request)
        for key in _SUBJECT_KEYS
    ):
        raise InputContractError(
            f"{task.task_type} needs one of {', '.join(_SUBJECT_KEYS)} "
            "in the task input or job request.",
        )
    return GenerationRequest(
        task_id=task.task_id,
        job_id=task.job_id,
        task_type=task.task_type,
        input_payload=dict(task.input_payload),
        job_context=dict(job.request),
        timeout_seconds=timeout_seconds,
        model=model,
    )


def _has_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())
