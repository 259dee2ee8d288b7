"""Task graph validation and id assignment for job submission."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import uuid4

from course_orchestrator.orchestrator.errors import InvalidTaskGraphError
from course_orchestrator.orchestrator.models import TaskCreate, TaskSpec


def build_task_graph(
    specs: Sequence[TaskSpec],
    *,
    default_max_retries: int,
) -> list[TaskCreate]:
    """Check a caller-built graph and map its keys to fresh task ids.

    Raises InvalidTaskGraphError for empty graphs, duplicate keys, unknown or
    self dependencies and cycles.
    """

    if not specs:
        raise InvalidTaskGraphError("A job needs at least one task.")

    keys: dict[str, TaskSpec] = {}
    for spec in specs:
        if not spec.key.strip():
            raise InvalidTaskGraphError("Task key must be a non-empty string.")
        if not spec.task_type.strip():
            raise InvalidTaskGraphError(f"Task {spec.key!r} has no task type.")
        if spec.key in keys:
            raise InvalidTaskGraphError(f"Duplicate task key: {spec.key!r}")
        if spec.max_retries is not None and spec.max_retries < 0:
            raise InvalidTaskGraphError(f"Task {spec.key!r} has negative max_retries.")
        keys[spec.key] = spec

    for spec in specs:
        for dep in spec.depends_on:
            if dep == spec.key:
                raise InvalidTaskGraphError(f"Task {spec.key!r} depends on itself.")
            if dep not in keys:
                raise InvalidTaskGraphError(f"Task {spec.key!r} depends on unknown task {dep!r}.")

    _ensure_acyclic(specs)

    task_ids = {spec.key: str(uuid4()) for spec in specs}
    return [
        TaskCreate(
            task_id=task_ids[spec.key],
            task_type=spec.task_type,
            seq=seq,
            dependency_ids=tuple(task_ids[dep] for dep in dict.fromkeys(spec.depends_on)),
            priority=spec.priority,
            max_retries=spec.max_retries if spec.max_retries is not None else default_max_retries,
            input_payload={"key": spec.key, **spec.input_payload},
            estimated_duration_seconds=spec.estimated_duration_seconds,
        )
        for seq, spec in enumerate(specs)
    ]


def parse_task_specs(raw_tasks: Any) -> list[TaskSpec]:
    """Parse task specs from a JSON document (`tasks` array of objects)."""

    if not isinstance(raw_tasks, list):
        raise InvalidTaskGraphError("`tasks` must be a JSON array.")
    specs: list[TaskSpec] = []
    for index, item in enumerate(raw_tasks):
        if not isinstance(item, Mapping):
            raise InvalidTaskGraphError(f"tasks[{index}] must be an object.")
        depends_on = item.get("depends_on", [])
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise InvalidTaskGraphError(f"tasks[{index}].depends_on must be a list of keys.")
        payload = item.get("input", {})
        if not isinstance(payload, dict):
            raise InvalidTaskGraphError(f"tasks[{index}].input must be an object.")
        try:
            specs.append(
                TaskSpec(
                    key=str(item.get("key", "")),
                    task_type=str(item.get("type", item.get("task_type", ""))),
                    depends_on=tuple(depends_on),
                    priority=int(item.get("priority", 100)),
                    max_retries=(
                        int(item["max_retries"]) if item.get("max_retries") is not None else None
                    ),
                    input_payload=payload,
                    estimated_duration_seconds=(
                        int(item["estimated_duration_seconds"])
                        if item.get("estimated_duration_seconds") is not None
                        else None
                    ),
                ),
            )
        except (TypeError, ValueError) as error:
            raise InvalidTaskGraphError(f"tasks[{index}] has an invalid number: {error}") from error
    return specs


def _ensure_acyclic(specs: Sequence[TaskSpec]) -> None:
    indegree = {spec.key: len(set(spec.depends_on)) for spec in specs}
    dependents: dict[str, list[str]] = {spec.key: [] for spec in specs}
    for spec in specs:
        for dep in set(spec.depends_on):
            dependents[dep].append(spec.key)

    queue = deque(key for key, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        key = queue.popleft()
        visited += 1
        for child in dependents[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)
    if visited != len(specs):
        cyclic = sorted(key for key, degree in indegree.items() if degree > 0)
        raise InvalidTaskGraphError(f"Task graph has a dependency cycle among: {', '.join(cyclic)}")
