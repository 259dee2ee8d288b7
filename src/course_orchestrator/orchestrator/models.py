"""Domain models for generation jobs, task graphs and admission control."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states derived from task states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    """Failure severity, ascending."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ErrorCategory(str, Enum):
    """Normalized failure categories used by retry policy."""

    TRANSIENT = "transient"
    VALIDATION = "validation"
    QUOTA = "quota"
    DEPENDENCY_FAILURE = "dependency_failure"
    ACCESS_OR_AUTH = "access_or_auth"
    CONTENT_INSUFFICIENT = "content_insufficient"
    NON_RETRYABLE = "non_retryable"
    INPUT_CONTRACT = "input_contract"
    UNKNOWN = "unknown"


class LogLevel(str, Enum):
    """Severity of a durable job log entry."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AdmissionScope(str, Enum):
    """Which admission counters a rate-limit check reserves."""

    JOB = "job"
    TASK = "task"


class RateLimitReason(str, Enum):
    """Binding ceiling for a denied admission."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    CONCURRENCY = "concurrency"


class HealthStatus(str, Enum):
    """Liveness classification of a job."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    STUCK = "stuck"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ReportFormat(str, Enum):
    """Supported job report export formats."""

    JSON = "json"
    CSV = "csv"
    MARKDOWN = "markdown"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
)
RESOLVED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})
ACTIVE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.RUNNING})
FINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.CANCELLED},
)


@dataclass(slots=True, frozen=True)
class ReportSections:
    """Which optional sections an exported report carries."""

    analytics: bool = True
    tasks: bool = True
    errors: bool = True
    performance: bool = True


@dataclass(slots=True)
class TaskSpec:
    """One node of a submitted task graph, addressed by a caller-chosen key."""

    key: str
    task_type: str
    depends_on: tuple[str, ...] = ()
    priority: int = 100
    max_retries: int | None = None
    input_payload: dict[str, Any] = field(default_factory=dict)
    estimated_duration_seconds: int | None = None


@dataclass(slots=True)
class TaskCreate:
    """Resolved task row to insert, dependencies already mapped to task ids."""

    task_id: str
    task_type: str
    seq: int
    dependency_ids: tuple[str, ...]
    priority: int
    max_retries: int
    input_payload: dict[str, Any]
    estimated_duration_seconds: int | None = None


@dataclass(slots=True)
class JobCreate:
    """Input payload for persisting a job with its task graph."""

    job_id: str
    user_id: str
    role: str
    request: dict[str, Any]


@dataclass(slots=True)
class JobView:
    """Readable job view."""

    job_id: str
    user_id: str
    role: str
    request: dict[str, Any]
    status: JobStatus
    is_paused: bool
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    output_ref: str | None
    error_summary: str | None
    peak_memory_mb: float | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    last_activity_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler and recovery logic."""

    task_id: str
    job_id: str
    task_type: str
    seq: int
    dependency_ids: tuple[str, ...]
    priority: int
    status: TaskStatus
    retry_count: int
    max_retries: int
    run_after: datetime
    error_category: ErrorCategory | None
    severity: Severity | None
    error_message: str | None
    recovery_suggestions: list[str]
    needs_review: bool
    input_payload: dict[str, Any]
    output_ref: str | None
    worker_id: str | None
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    estimated_duration_seconds: int | None
    actual_duration_seconds: float | None
    api_calls: int
    api_failures: int
    prompt_tokens: int
    completion_tokens: int
    estimated_cost_usd: float
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task transition entry for the audit trail."""

    event_id: int
    task_id: str
    job_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LogEntryWrite:
    """Append-only job log entry to persist."""

    job_id: str
    level: LogLevel
    message: str
    task_id: str | None = None
    source: str = "orchestrator"
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LogEntryView:
    """Stored job log entry."""

    entry_id: int
    job_id: str
    task_id: str | None
    level: LogLevel
    source: str
    message: str
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class AttemptUsage:
    """Resource counters captured for one execution attempt."""

    api_calls: int = 1
    api_failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0
    duration_seconds: float | None = None


@dataclass(slots=True)
class TaskFailure:
    """Failure fields written together with a failed/retry transition."""

    category: ErrorCategory
    severity: Severity
    message: str
    recovery_suggestions: list[str] = field(default_factory=list)
    needs_review: bool = False


@dataclass(slots=True)
class AdmissionDecision:
    """Rate limiter answer for one admission check."""

    allowed: bool
    reason: RateLimitReason | None = None
    retry_after: timedelta | None = None
    message: str | None = None


@dataclass(slots=True)
class RateLimitUsage:
    """Current counters against ceilings for one user and scope."""

    user_id: str
    role: str
    scope: AdmissionScope
    minute: int
    hour: int
    day: int
    active_jobs: int
    minute_limit: int
    hour_limit: int
    day_limit: int
    concurrent_limit: int | None

    @property
    def percentages(self) -> dict[str, float]:
        """Utilisation percentage per ceiling."""

        values = {
            "minute": _percent(self.minute, self.minute_limit),
            "hour": _percent(self.hour, self.hour_limit),
            "day": _percent(self.day, self.day_limit),
        }
        if self.concurrent_limit is not None:
            values["concurrency"] = _percent(self.active_jobs, self.concurrent_limit)
        return values


@dataclass(slots=True)
class JobHealthReport:
    """Read-only liveness report for monitoring consumers."""

    job_id: str
    status: HealthStatus
    job_status: JobStatus
    progress_percentage: float
    message: str
    recommended_action: str
    last_activity_at: datetime
    seconds_since_activity: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    running_tasks: int
    pending_tasks: int
    is_paused: bool


@dataclass(slots=True)
class AnalyticsSnapshot:
    """Derived per-job analytics recomputed from task records."""

    job_id: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    tasks_by_type: dict[str, int]
    total_duration_seconds: float | None
    average_task_duration_seconds: float | None
    api_calls_made: int
    api_calls_failed: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost_usd: float
    success_rate: float
    retries_performed: int
    peak_memory_mb: float | None


@dataclass(slots=True)
class ErrorReport:
    """Errors recorded for one job with aggregate breakdowns."""

    job_id: str
    entries: list[LogEntryView]
    failed_tasks: list[TaskView]
    by_category: dict[str, int]
    by_severity: dict[str, int]
    critical_count: int
    most_common_category: str | None
    suggestions: list[str]


@dataclass(slots=True)
class RecoveryActionResult:
    """Outcome of one operator recovery action."""

    action: str
    target_id: str
    applied: bool
    message: str


@dataclass(slots=True)
class SmartRecoverySummary:
    """Actions taken by one smart-recovery sweep."""

    job_id: str
    retried: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return len(self.retried) + len(self.skipped)


def _percent(value: int, limit: int) -> float:
    if limit <= 0:
        return 100.0
    return value / limit * 100
