"""Deterministic local generator for demos and integration tests.

Produces contract-valid output for every known task type. A task input may
carry `simulate_failure` to exercise the failure paths without a real service:
`timeout`, `network`, `invalid_output`, `quota`, `auth`, `bad_request`,
`server_error`. `simulate_failure_attempts` limits how many calls fail before
the task starts succeeding.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any

from course_orchestrator.orchestrator.generation.base import (
    GenerationRequest,
    GenerationResponse,
)

_SIMULATED_FAILURES: dict[str, GenerationResponse] = {
    "timeout": GenerationResponse(status_code=0, error="timeout", timed_out=True),
    "network": GenerationResponse(status_code=0, error="network error: connection reset"),
    "quota": GenerationResponse(status_code=429, error="HTTP 429: quota exceeded"),
    "auth": GenerationResponse(status_code=401, error="HTTP 401: invalid api key"),
    "bad_request": GenerationResponse(status_code=400, error="HTTP 400: unsupported request"),
    "server_error": GenerationResponse(status_code=503, error="HTTP 503: service unavailable"),
}


class EchoGenerationBackend:
    """Echoes task input into the shape each task type expects."""

    name = "echo"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Counter[str] = Counter()

    def calls_for(self, task_id: str) -> int:
        with self._lock:
            return self._calls[task_id]

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        with self._lock:
            self._calls[request.task_id] += 1
            attempt = self._calls[request.task_id]

        failure = str(request.input_payload.get("simulate_failure", "")).strip().lower()
        failing_attempts = int(request.input_payload.get("simulate_failure_attempts", 0) or 0)
        if failure and (failing_attempts <= 0 or attempt <= failing_attempts):
            if failure == "invalid_output":
                return GenerationResponse(output={"unexpected": True}, prompt_tokens=10)
            simulated = _SIMULATED_FAILURES.get(failure)
            if simulated is not None:
                return GenerationResponse(
                    status_code=simulated.status_code,
                    error=simulated.error,
                    timed_out=simulated.timed_out,
                )

        topic = str(request.input_payload.get("topic") or request.job_context.get("topic") or "")
        title = str(request.input_payload.get("title") or topic or request.task_type)
        output = build_echo_output(task_type=request.task_type, title=title)
        return GenerationResponse(
            output=output,
            prompt_tokens=len(str(request.input_payload)) // 4 + 1,
            completion_tokens=len(str(output)) // 4 + 1,
            model="echo",
        )


def build_echo_output(*, task_type: str, title: str) -> dict[str, Any]:  # noqa: PLR0911
    """Minimal contract-valid payload for a task type."""

    questions = [
        {"prompt": f"What is the key idea of {title}?", "answer": title},
    ]
    if task_type == "outline_generation":
        return {"title": title, "modules": [{"title": f"{title}: introduction"}]}
    if task_type == "knowledge_analysis":
        return {"summary": f"Prerequisites for {title}.", "concepts": [title]}
    if task_type == "lesson_section":
        return {"title": title, "content": f"Lesson content about {title}."}
    if task_type in {"lesson_assessment", "path_quiz", "class_exam"}:
        return {"questions": questions}
    if task_type == "lesson_mind_map":
        return {"root": title, "nodes": [{"label": title}]}
    if task_type == "lesson_brainbytes":
        return {"bytes": [f"{title} in one sentence."]}
    if task_type == "content_validation":
        return {"is_valid": True, "issues": []}
    return {"task_type": task_type, "text": title}
