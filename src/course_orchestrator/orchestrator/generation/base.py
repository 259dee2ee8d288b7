"""Boundary with the external AI content-generation service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class GenerationRequest:
    """One generation call: task type, task input and job-level context."""

    task_id: str
    job_id: str
    task_type: str
    input_payload: dict[str, Any]
    job_context: dict[str, Any]
    timeout_seconds: float
    model: str = "default"


@dataclass(slots=True)
class GenerationResponse:
    """Raw outcome of one generation call.

    `output` may be structured (dict/list) or unstructured text. Service
    failures are reported through `status_code`/`error` rather than raised.
    """

    output: Any = None
    status_code: int = 200
    error: str | None = None
    timed_out: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return not self.timed_out and self.error is None and 200 <= self.status_code < 300


class GenerationBackend(Protocol):
    """Protocol implemented by generation service clients."""

    name: str

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Run one generation attempt and return its raw outcome."""
