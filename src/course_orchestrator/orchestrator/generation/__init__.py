"""Generation service clients."""

from course_orchestrator.config import ExecutionSettings
from course_orchestrator.orchestrator.generation.base import (
    GenerationBackend,
    GenerationRequest,
    GenerationResponse,
)
from course_orchestrator.orchestrator.generation.echo_backend import EchoGenerationBackend
from course_orchestrator.orchestrator.generation.http_backend import HttpGenerationBackend

__all__ = [
    "EchoGenerationBackend",
    "GenerationBackend",
    "GenerationRequest",
    "GenerationResponse",
    "HttpGenerationBackend",
    "build_generation_backend",
]


def build_generation_backend(settings: ExecutionSettings) -> GenerationBackend:
    """Instantiate the configured generation client."""

    if settings.backend == "echo":
        return EchoGenerationBackend()
    if settings.backend == "http":
        return HttpGenerationBackend(
            endpoint_url=settings.endpoint_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            verify_tls=settings.verify_tls,
        )
    raise ValueError(f"Unsupported COURSE_ORCH_BACKEND: {settings.backend!r} (use http or echo).")
