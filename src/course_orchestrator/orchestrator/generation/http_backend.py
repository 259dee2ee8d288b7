"""HTTP client for a JSON content-generation endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from course_orchestrator.orchestrator.generation.base import (
    GenerationRequest,
    GenerationResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "CourseOrchestrator/0.1"
_ERROR_BODY_PREVIEW_CHARS = 500


class HttpGenerationBackend:
    """Posts one JSON request per attempt; never retries on its own."""

    name = "http"

    def __init__(  # noqa: PLR0913
        self,
        *,
        endpoint_url: str,
        api_key: str | None = None,
        model: str = "default",
        timeout_seconds: float = 300.0,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.model = model
        headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=0, verify=verify_tls),
        )

    def close(self) -> None:
        self._client.close()

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Send one attempt; transport failures become error responses."""

        body = {
            "task_id": request.task_id,
            "job_id": request.job_id,
            "task_type": request.task_type,
            "input": request.input_payload,
            "context": request.job_context,
            "model": request.model or self.model,
        }
        try:
            response = self._client.post(
                self.endpoint_url,
                json=body,
                timeout=httpx.Timeout(
                    min(request.timeout_seconds, self._timeout_seconds),
                    connect=DEFAULT_CONNECT_TIMEOUT_SECONDS,
                ),
            )
        except httpx.TimeoutException:
            logger.warning("Generation call timed out task=%s", request.task_id)
            return GenerationResponse(status_code=0, error="timeout", timed_out=True)
        except httpx.HTTPError as exc:
            logger.warning("Generation transport error task=%s: %s", request.task_id, exc)
            return GenerationResponse(status_code=0, error=f"network error: {exc}")

        if not response.is_success:
            return GenerationResponse(
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: "
                f"{response.text[:_ERROR_BODY_PREVIEW_CHARS]}",
            )
        return _parse_success(response)


def _parse_success(response: httpx.Response) -> GenerationResponse:
    try:
        payload: Any = response.json()
    except json.JSONDecodeError:
        return GenerationResponse(status_code=response.status_code, output=response.text)

    if not isinstance(payload, dict) or "output" not in payload:
        return GenerationResponse(status_code=response.status_code, output=payload)

    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    return GenerationResponse(
        status_code=response.status_code,
        output=payload["output"],
        prompt_tokens=_as_int(usage.get("prompt_tokens")),
        completion_tokens=_as_int(usage.get("completion_tokens")),
        model=payload.get("model") if isinstance(payload.get("model"), str) else None,
    )


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    return 0
