"""Structural output contracts per task type."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class OutputContract:
    """Required top-level keys and their JSON types."""

    required: dict[str, type | tuple[type, ...]]
    requires_questions: bool = False


_QUESTIONS_CONTRACT = OutputContract(required={"questions": list}, requires_questions=True)

TASK_OUTPUT_CONTRACTS: dict[str, OutputContract] = {
    "outline_generation": OutputContract(required={"title": str, "modules": list}),
    "knowledge_analysis": OutputContract(required={"summary": str, "concepts": list}),
    "lesson_section": OutputContract(required={"title": str, "content": str}),
    "lesson_assessment": _QUESTIONS_CONTRACT,
    "lesson_mind_map": OutputContract(required={"root": str, "nodes": list}),
    "lesson_brainbytes": OutputContract(required={"bytes": list}),
    "path_quiz": _QUESTIONS_CONTRACT,
    "class_exam": _QUESTIONS_CONTRACT,
    "content_validation": OutputContract(required={"is_valid": bool, "issues": list}),
}

KNOWN_TASK_TYPES = frozenset(TASK_OUTPUT_CONTRACTS)

_JSON_TYPE_NAMES: dict[type, str] = {
    str: "string",
    list: "array",
    dict: "object",
    bool: "boolean",
    int: "integer",
    float: "number",
}


@dataclass(slots=True)
class ValidationResult:
    """Result of output validation."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    payload: dict[str, Any] | None = None


def validate_task_output(*, task_type: str, output: Any) -> ValidationResult:
    """Validate generation output for a task type.

    Text output is parsed as JSON first. Unknown task types only require a
    JSON object.
    """

    payload = output
    if isinstance(output, str):
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as error:
            return ValidationResult(is_valid=False, errors=[f"Output is not valid JSON: {error}"])
    if not isinstance(payload, dict):
        return ValidationResult(
            is_valid=False,
            errors=[f"Output must be a JSON object, got {_describe(payload)}."],
        )

    contract = TASK_OUTPUT_CONTRACTS.get(task_type)
    if contract is None:
        return ValidationResult(is_valid=True, payload=payload)

    errors: list[str] = []
    for key, expected in contract.required.items():
        if key not in payload:
            errors.append(f"Missing required field `{key}`.")
            continue
        if not _matches(payload[key], expected):
            errors.append(
                f"Field `{key}` must be {_type_label(expected)}, got {_describe(payload[key])}.",
            )
    if contract.requires_questions and not errors:
        errors.extend(_validate_questions(payload["questions"]))

    if errors:
        return ValidationResult(is_valid=False, errors=errors, payload=payload)
    return ValidationResult(is_valid=True, payload=payload)


def _validate_questions(questions: list[Any]) -> list[str]:
    if not questions:
        return ["Field `questions` must not be empty."]
    errors: list[str] = []
    for index, question in enumerate(questions):
        if not isinstance(question, dict):
            errors.append(f"questions[{index}] must be an object.")
            continue
        prompt = question.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            errors.append(f"questions[{index}].prompt must be a non-empty string.")
    return errors


def _matches(value: Any, expected: type | tuple[type, ...]) -> bool:
    # bool is an int subclass; keep JSON booleans and numbers apart.
    if isinstance(value, bool) and expected is not bool:
        return False
    return isinstance(value, expected)


def _type_label(expected: type | tuple[type, ...]) -> str:
    types = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(_JSON_TYPE_NAMES.get(item, item.__name__) for item in types)


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    return _JSON_TYPE_NAMES.get(type(value), type(value).__name__)
