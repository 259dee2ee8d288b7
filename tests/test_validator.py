"""Output contract checks per task type."""

from __future__ import annotations

import json

import allure

from course_orchestrator.orchestrator.validator import KNOWN_TASK_TYPES, validate_task_output

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Output validation"),
]


def test_lesson_section_accepts_json_text() -> None:
    result = validate_task_output(
        task_type="lesson_section",
        output=json.dumps({"title": "Loops", "content": "for x in range(3): ..."}),
    )

    assert result.is_valid
    assert result.payload == {"title": "Loops", "content": "for x in range(3): ..."}


def test_missing_and_mistyped_fields_are_reported() -> None:
    result = validate_task_output(
        task_type="outline_generation",
        output={"title": 7},
    )

    assert not result.is_valid
    assert "Field `title` must be string, got integer." in result.errors
    assert "Missing required field `modules`." in result.errors


def test_boolean_is_not_accepted_as_number_or_string() -> None:
    result = validate_task_output(
        task_type="content_validation",
        output={"is_valid": 1, "issues": []},
    )

    assert not result.is_valid
    assert result.errors == ["Field `is_valid` must be boolean, got integer."]


def test_question_sets_require_prompts() -> None:
    empty = validate_task_output(task_type="path_quiz", output={"questions": []})
    broken = validate_task_output(
        task_type="class_exam",
        output={"questions": [{"prompt": "What is a list?"}, {"prompt": "  "}, "q3"]},
    )

    assert empty.errors == ["Field `questions` must not be empty."]
    assert broken.errors == [
        "questions[1].prompt must be a non-empty string.",
        "questions[2] must be an object.",
    ]


def test_invalid_json_and_non_objects_fail() -> None:
    assert not validate_task_output(task_type="lesson_section", output="{not json").is_valid
    result = validate_task_output(task_type="lesson_section", output=[1, 2])

    assert result.errors == ["Output must be a JSON object, got array."]


def test_unknown_task_type_only_requires_object() -> None:
    assert "glossary" not in KNOWN_TASK_TYPES
    assert validate_task_output(task_type="glossary", output={"anything": True}).is_valid
    assert not validate_task_output(task_type="glossary", output='"text"').is_valid
