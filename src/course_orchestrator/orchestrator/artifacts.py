"""File-backed storage for generated task outputs and job manifests."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

from course_orchestrator.orchestrator.models import TaskStatus, TaskView


class OutputStore:
    """Deterministic `<root>/<job_id>/...` layout; task rows only keep the path."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def write_task_output(self, *, job_id: str, task_id: str, payload: dict[str, Any]) -> str:
        """Persist one validated output and return its reference."""

        path = self.root_dir / job_id / "tasks" / f"{task_id}.json"
        write_json(path, payload)
        return str(path)

    def write_job_manifest(self, *, job_id: str, tasks: list[TaskView]) -> str:
        """Index of completed outputs, written once the job completes."""

        entries = [
            {
                "task_id": task.task_id,
                "task_type": task.task_type,
                "status": task.status.value,
                "output_ref": task.output_ref,
                "checksum_sha256": _checksum(task.output_ref),
            }
            for task in tasks
            if task.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
        ]
        path = self.root_dir / job_id / "manifest.json"
        write_json(path, {"job_id": job_id, "tasks": entries})
        return str(path)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def _checksum(output_ref: str | None) -> str | None:
    if output_ref is None:
        return None
    path = Path(output_ref)
    if not path.exists():
        return None
    return hashlib.sha256(path.read_bytes()).hexdigest()
