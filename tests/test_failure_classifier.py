from __future__ import annotations

import allure
import pytest

from course_orchestrator.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_dependency_failure,
    classify_execution_failure,
    classify_input_contract_failure,
    classify_unexpected_exception,
    classify_validation_failure,
    error_pattern_suggestions,
    escalate_for_review,
)
from course_orchestrator.orchestrator.models import ErrorCategory, Severity

pytestmark = [
    allure.epic("Retry & Recovery"),
    allure.feature("Failure classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_timeout_is_transient_low() -> None:
    classified = classify_execution_failure(status_code=None, error="", timed_out=True)

    assert classified.category == ErrorCategory.TRANSIENT
    assert classified.severity == Severity.LOW
    assert classified.retryable is True
    assert classified.matched_rule == "generation_timeout"


@pytest.mark.parametrize(
    ("status_code", "error", "category", "severity"),
    [
        (429, "slow down", ErrorCategory.QUOTA, Severity.CRITICAL),
        (401, "", ErrorCategory.ACCESS_OR_AUTH, Severity.HIGH),
        (403, "", ErrorCategory.ACCESS_OR_AUTH, Severity.HIGH),
        (500, "internal error", ErrorCategory.TRANSIENT, Severity.LOW),
        (503, "", ErrorCategory.TRANSIENT, Severity.LOW),
        (400, "bad request", ErrorCategory.NON_RETRYABLE, Severity.HIGH),
        (None, "Connection reset by peer", ErrorCategory.TRANSIENT, Severity.LOW),
        (None, "something odd happened", ErrorCategory.UNKNOWN, Severity.MEDIUM),
    ],
)
def test_execution_failures_map_to_categories(
    status_code: int | None,
    error: str,
    category: ErrorCategory,
    severity: Severity,
) -> None:
    classified = classify_execution_failure(status_code=status_code, error=error, timed_out=False)

    assert classified.category == category
    assert classified.severity == severity


def test_quota_text_wins_over_server_error_status() -> None:
    classified = classify_execution_failure(
        status_code=503,
        error="Monthly quota exceeded for this project",
        timed_out=False,
    )

    assert classified.category == ErrorCategory.QUOTA
    assert classified.matched_pattern == "quota"
    assert classified.retryable is False


def test_insufficient_content_is_high_severity() -> None:
    classified = classify_execution_failure(
        status_code=None,
        error="Not enough content to build a lesson",
        timed_out=False,
    )

    assert classified.category == ErrorCategory.CONTENT_INSUFFICIENT
    assert classified.severity == Severity.HIGH


def test_validation_and_input_contract_failures() -> None:
    validation = classify_validation_failure(["Missing required field `title`."])
    contract = classify_input_contract_failure("Task input has no subject.")

    assert validation.category == ErrorCategory.VALIDATION
    assert validation.severity == Severity.MEDIUM
    assert validation.matched_pattern == "Missing required field `title`."
    assert contract.category == ErrorCategory.INPUT_CONTRACT
    assert contract.severity == Severity.CRITICAL


def test_unexpected_exception_and_dependency_failure() -> None:
    crashed = classify_unexpected_exception(RuntimeError("boom"))
    blocked = classify_dependency_failure(["a", "b"])

    assert crashed.category == ErrorCategory.UNKNOWN
    assert crashed.matched_rule == "RuntimeError"
    assert blocked.category == ErrorCategory.DEPENDENCY_FAILURE
    assert blocked.matched_pattern == "a,b"


def test_suggestions_attach_only_to_high_and_critical_failures() -> None:
    low = classify_execution_failure(status_code=None, error="", timed_out=True)
    critical = classify_execution_failure(status_code=429, error="", timed_out=False)

    assert low.to_task_failure("timeout").recovery_suggestions == []
    failure = critical.to_task_failure("quota")
    assert failure.severity == Severity.CRITICAL
    assert len(failure.recovery_suggestions) == 3
    assert failure.needs_review is False


def test_escalation_raises_medium_to_high_with_review_flag() -> None:
    validation = classify_validation_failure(["bad"])

    escalated = escalate_for_review(validation)

    assert escalated.category == ErrorCategory.VALIDATION
    assert escalated.severity == Severity.HIGH
    assert escalated.needs_review is True
    assert escalated.matched_rule == "validation_mismatch_escalated"
    assert escalated.to_task_failure("bad").recovery_suggestions
    assert escalated.to_event_details()["needs_review"] is True


def test_error_pattern_suggestions_for_service_dominated_errors() -> None:
    suggestions = error_pattern_suggestions(
        by_category={"transient": 3, "validation": 1},
        by_severity={"low": 3, "medium": 1},
        total=4,
    )

    assert any("generation service" in item for item in suggestions)
    assert any("validation" in item for item in suggestions)
    assert error_pattern_suggestions(by_category={}, by_severity={}, total=0) == []
