"""Deterministic failure classification for retry and escalation policy."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from course_orchestrator.orchestrator.models import ErrorCategory, Severity, TaskFailure

FAILURE_CLASSIFIER_VERSION = 1

_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "rate limit",
    "too many requests",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_CONTENT_INSUFFICIENT_PATTERNS: tuple[str, ...] = (
    "insufficient content",
    "not enough content",
    "insufficient context",
    "no source material",
    "content too short",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
    "overloaded",
)

CATEGORY_SEVERITY: dict[ErrorCategory, Severity] = {
    ErrorCategory.TRANSIENT: Severity.LOW,
    ErrorCategory.VALIDATION: Severity.MEDIUM,
    ErrorCategory.UNKNOWN: Severity.MEDIUM,
    ErrorCategory.DEPENDENCY_FAILURE: Severity.MEDIUM,
    ErrorCategory.ACCESS_OR_AUTH: Severity.HIGH,
    ErrorCategory.CONTENT_INSUFFICIENT: Severity.HIGH,
    ErrorCategory.NON_RETRYABLE: Severity.HIGH,
    ErrorCategory.QUOTA: Severity.CRITICAL,
    ErrorCategory.INPUT_CONTRACT: Severity.CRITICAL,
}

RECOVERY_SUGGESTIONS: dict[ErrorCategory, tuple[str, ...]] = {
    ErrorCategory.TRANSIENT: (
        "Check network connectivity to the generation service.",
        "Retry the task; transient failures usually clear on their own.",
    ),
    ErrorCategory.VALIDATION: (
        "Inspect the generated output for missing or mistyped fields.",
        "Retry the task or skip it and regenerate the content manually.",
    ),
    ErrorCategory.UNKNOWN: (
        "Review the error log for this task.",
        "Retry the task; escalate if the same error repeats.",
    ),
    ErrorCategory.DEPENDENCY_FAILURE: (
        "Resolve the failed prerequisite task first, then retry it.",
        "Skip the prerequisite to let dependent tasks run without it.",
    ),
    ErrorCategory.ACCESS_OR_AUTH: (
        "Verify the generation service API key and its permissions.",
        "Retry the task after credentials are fixed.",
    ),
    ErrorCategory.CONTENT_INSUFFICIENT: (
        "Provide more source material or a more detailed course description.",
        "Skip the task if the section is optional.",
    ),
    ErrorCategory.NON_RETRYABLE: (
        "The generation service rejected the request; review the task input.",
        "Skip the task or adjust the request and retry manually.",
    ),
    ErrorCategory.QUOTA: (
        "Generation service quota is exhausted; wait for the quota window to reset.",
        "Check billing and plan limits for the generation service.",
        "Resume the job or run smart recovery once quota is available.",
    ),
    ErrorCategory.INPUT_CONTRACT: (
        "The task input or job parameters are malformed; fix the request and resubmit.",
        "Contact support if the request was produced by the course builder.",
    ),
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    severity: Severity
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None
    needs_review: bool = False
    recovery_suggestions: list[str] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.severity.rank <= Severity.MEDIUM.rank

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events and log payloads."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_category": self.category.value,
            "severity": self.severity.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "needs_review": self.needs_review,
        }

    def to_task_failure(self, message: str) -> TaskFailure:
        """Task fields; suggestions are attached only for high and critical severities."""

        suggestions = (
            list(self.recovery_suggestions) if self.severity.rank >= Severity.HIGH.rank else []
        )
        return TaskFailure(
            category=self.category,
            severity=self.severity,
            message=message,
            recovery_suggestions=suggestions,
            needs_review=self.needs_review,
        )


def classify_execution_failure(
    *,
    status_code: int | None,
    error: str,
    timed_out: bool,
) -> FailureClassification:
    """Classify a transport/service failure of one generation call."""

    if timed_out:
        return _classification(ErrorCategory.TRANSIENT, "timeout", "generation_timeout")

    haystack = error.lower()
    code = status_code or 0

    if code == 429:
        return _classification(ErrorCategory.QUOTA, "status_429", "service_rate_limited")
    if code in {401, 403}:
        return _classification(ErrorCategory.ACCESS_OR_AUTH, f"status_{code}", "service_auth")

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return _classification(ErrorCategory.QUOTA, "quota", "service_quota", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _classification(
            ErrorCategory.ACCESS_OR_AUTH,
            "access_or_auth",
            "service_auth",
            pattern,
        )

    pattern = _first_match(haystack, _CONTENT_INSUFFICIENT_PATTERNS)
    if pattern is not None:
        return _classification(
            ErrorCategory.CONTENT_INSUFFICIENT,
            "content_insufficient",
            "service_content_insufficient",
            pattern,
        )

    if code == 408 or code >= 500:
        return _classification(ErrorCategory.TRANSIENT, f"status_{code}", "service_transient")
    if 400 <= code < 500:
        return _classification(ErrorCategory.NON_RETRYABLE, f"status_{code}", "service_rejected")

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classification(ErrorCategory.TRANSIENT, "generic_transient", "transport", pattern)

    return _classification(ErrorCategory.UNKNOWN, "fallback_unknown", "service_unknown")


def classify_validation_failure(errors: list[str]) -> FailureClassification:
    """Structurally invalid (but non-erroring) generation output."""

    return _classification(
        ErrorCategory.VALIDATION,
        "output_contract",
        "validation_mismatch",
        errors[0] if errors else None,
    )


def classify_input_contract_failure(message: str) -> FailureClassification:
    """Task input or job context cannot be turned into a request."""

    return _classification(
        ErrorCategory.INPUT_CONTRACT,
        "input_contract",
        "malformed_input",
        message,
    )


def classify_unexpected_exception(error: BaseException) -> FailureClassification:
    """Executor crashed outside the generation call; kept as an `unknown` failure."""

    return _classification(
        ErrorCategory.UNKNOWN,
        "unexpected_exception",
        type(error).__name__,
    )


def classify_dependency_failure(failed_dependency_ids: list[str]) -> FailureClassification:
    return _classification(
        ErrorCategory.DEPENDENCY_FAILURE,
        "dependency_failed",
        "prerequisite_failed",
        ",".join(failed_dependency_ids) or None,
    )


def classify_stale_running() -> FailureClassification:
    """A `running` task that outlived its lease is treated like a timed-out call."""

    return _classification(ErrorCategory.TRANSIENT, "stale_running", "lease_expired")


def escalate_for_review(classification: FailureClassification) -> FailureClassification:
    """Medium failure that exhausted its retry allowance becomes high + needs review."""

    return replace(
        classification,
        severity=Severity.HIGH,
        needs_review=True,
        matched_rule=f"{classification.matched_rule}_escalated",
        recovery_suggestions=list(RECOVERY_SUGGESTIONS[classification.category]),
    )


def error_pattern_suggestions(
    *,
    by_category: Mapping[str, int],
    by_severity: Mapping[str, int],
    total: int,
) -> list[str]:
    """Job-level suggestions derived from error distribution."""

    suggestions: list[str] = []
    if total == 0:
        return suggestions
    if by_severity.get(Severity.CRITICAL.value, 0) > 0:
        suggestions.append(
            "Critical errors stopped the job; resolve them before retrying failed tasks.",
        )
    service_errors = sum(
        by_category.get(category.value, 0)
        for category in (ErrorCategory.TRANSIENT, ErrorCategory.QUOTA, ErrorCategory.UNKNOWN)
    )
    if service_errors > total / 2:
        suggestions.append(
            "Most errors come from the generation service; check its status and quota.",
        )
    if by_category.get(ErrorCategory.VALIDATION.value, 0) > 0:
        suggestions.append(
            "Some outputs failed validation; review the flagged tasks before retrying.",
        )
    if by_category.get(ErrorCategory.DEPENDENCY_FAILURE.value, 0) > 0:
        suggestions.append(
            "Dependent tasks were blocked by failed prerequisites; retrying a prerequisite "
            "reopens them.",
        )
    if by_severity.get(Severity.LOW.value, 0) == total:
        suggestions.append("Only transient errors were seen; smart recovery should clear them.")
    return suggestions


def _classification(
    category: ErrorCategory,
    reason_code: str,
    matched_rule: str,
    matched_pattern: str | None = None,
) -> FailureClassification:
    return FailureClassification(
        category=category,
        severity=CATEGORY_SEVERITY[category],
        reason_code=reason_code,
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
        recovery_suggestions=list(RECOVERY_SUGGESTIONS[category]),
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
