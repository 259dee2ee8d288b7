"""Runtime configuration for the course generation orchestrator."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

JOB_SCOPE = "job"
TASK_SCOPE = "task"


@dataclass(slots=True, frozen=True)
class RoleLimits:
    """Admission ceilings for one role and scope."""

    per_minute: int
    per_hour: int
    per_day: int
    max_concurrent: int | None = None


DEFAULT_ROLE_LIMITS: dict[tuple[str, str], RoleLimits] = {
    ("student", JOB_SCOPE): RoleLimits(2, 10, 50, 1),
    ("teacher", JOB_SCOPE): RoleLimits(5, 30, 200, 3),
    ("admin", JOB_SCOPE): RoleLimits(10, 100, 1_000, 10),
    ("super_admin", JOB_SCOPE): RoleLimits(20, 500, 5_000, 20),
    ("student", TASK_SCOPE): RoleLimits(20, 300, 2_000),
    ("teacher", TASK_SCOPE): RoleLimits(40, 600, 5_000),
    ("admin", TASK_SCOPE): RoleLimits(100, 2_000, 20_000),
    ("super_admin", TASK_SCOPE): RoleLimits(200, 5_000, 50_000),
}


@dataclass(slots=True)
class SchedulerSettings:
    """Dispatch loop settings."""

    scheduler_id: str = field(default_factory=lambda: f"scheduler-{socket.gethostname()}")
    poll_interval_seconds: float = 2.0
    max_workers: int = 4
    stale_running_seconds: int = 1_800
    stale_claim_seconds: int = 120


@dataclass(slots=True)
class RetrySettings:
    """Automatic retry policy."""

    base_seconds: float = 30.0
    max_seconds: float = 900.0
    default_max_retries: int = 3
    medium_retry_limit: int = 1


@dataclass(slots=True)
class ExecutionSettings:
    """Generation service connection settings."""

    backend: str = "http"
    endpoint_url: str = ""
    api_key: str | None = None
    model: str = "default"
    timeout_seconds: float = 300.0
    verify_tls: bool = True


@dataclass(slots=True)
class HealthSettings:
    """Staleness thresholds for job health classification."""

    stall_after_seconds: int = 300
    stuck_after_seconds: int = 600
    abandon_after_seconds: int = 1_800


@dataclass(slots=True)
class RateLimitSettings:
    """Per-role admission ceilings keyed by `(role, scope)`."""

    ceilings: dict[tuple[str, str], RoleLimits] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_LIMITS),
    )
    default_role: str = "student"

    def limits_for(self, *, role: str, scope: str) -> RoleLimits:
        """Resolve ceilings for role, falling back to the default role."""

        limits = self.ceilings.get((role.strip().lower(), scope))
        if limits is not None:
            return limits
        fallback = self.ceilings.get((self.default_role, scope))
        if fallback is None:
            raise ValueError(f"No rate limits configured for default role {self.default_role!r}.")
        return fallback


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".course_orchestrator.db")
    artifacts_root: Path = Path(".course_orchestrator_artifacts")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        default_scheduler = SchedulerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("COURSE_ORCH_DB_PATH", ".course_orchestrator.db")),
            artifacts_root=Path(
                os.getenv("COURSE_ORCH_ARTIFACTS_ROOT", ".course_orchestrator_artifacts"),
            ),
            sqlite_busy_timeout_ms=int(os.getenv("COURSE_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                scheduler_id=os.getenv("COURSE_ORCH_SCHEDULER_ID", default_scheduler.scheduler_id),
                poll_interval_seconds=float(os.getenv("COURSE_ORCH_POLL_INTERVAL_SECONDS", "2.0")),
                max_workers=int(os.getenv("COURSE_ORCH_MAX_WORKERS", "4")),
                stale_running_seconds=int(
                    os.getenv("COURSE_ORCH_STALE_RUNNING_SECONDS", "1800"),
                ),
                stale_claim_seconds=int(os.getenv("COURSE_ORCH_STALE_CLAIM_SECONDS", "120")),
            ),
            retry=RetrySettings(
                base_seconds=float(os.getenv("COURSE_ORCH_RETRY_BASE_SECONDS", "30")),
                max_seconds=float(os.getenv("COURSE_ORCH_RETRY_MAX_SECONDS", "900")),
                default_max_retries=int(os.getenv("COURSE_ORCH_DEFAULT_MAX_RETRIES", "3")),
                medium_retry_limit=int(os.getenv("COURSE_ORCH_MEDIUM_RETRY_LIMIT", "1")),
            ),
            execution=ExecutionSettings(
                backend=os.getenv("COURSE_ORCH_BACKEND", "http").strip().lower(),
                endpoint_url=os.getenv("COURSE_ORCH_ENDPOINT_URL", "").strip(),
                api_key=os.getenv("COURSE_ORCH_API_KEY") or None,
                model=os.getenv("COURSE_ORCH_MODEL", "default"),
                timeout_seconds=float(os.getenv("COURSE_ORCH_TIMEOUT_SECONDS", "300")),
                verify_tls=_env_bool("COURSE_ORCH_VERIFY_TLS", default=True),
            ),
            health=HealthSettings(
                stall_after_seconds=int(os.getenv("COURSE_ORCH_STALL_AFTER_SECONDS", "300")),
                stuck_after_seconds=int(os.getenv("COURSE_ORCH_STUCK_AFTER_SECONDS", "600")),
                abandon_after_seconds=int(
                    os.getenv("COURSE_ORCH_ABANDON_AFTER_SECONDS", "1800"),
                ),
            ),
            rate_limits=RateLimitSettings(
                ceilings={
                    **DEFAULT_ROLE_LIMITS,
                    **_parse_rate_limit_overrides(os.getenv("COURSE_ORCH_RATE_LIMITS", "")),
                },
                default_role=os.getenv("COURSE_ORCH_DEFAULT_ROLE", "student").strip().lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("COURSE_ORCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("COURSE_ORCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_workers <= 0:
            raise ValueError("COURSE_ORCH_MAX_WORKERS must be a positive integer.")
        if self.scheduler.stale_running_seconds <= 0:
            raise ValueError("COURSE_ORCH_STALE_RUNNING_SECONDS must be > 0.")
        if self.scheduler.stale_claim_seconds <= 0:
            raise ValueError("COURSE_ORCH_STALE_CLAIM_SECONDS must be > 0.")
        if self.retry.base_seconds < 0:
            raise ValueError("COURSE_ORCH_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "COURSE_ORCH_RETRY_MAX_SECONDS must be >= COURSE_ORCH_RETRY_BASE_SECONDS.",
            )
        if self.retry.default_max_retries < 0:
            raise ValueError("COURSE_ORCH_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.retry.medium_retry_limit < 0:
            raise ValueError("COURSE_ORCH_MEDIUM_RETRY_LIMIT must be >= 0.")
        if self.execution.timeout_seconds <= 0:
            raise ValueError("COURSE_ORCH_TIMEOUT_SECONDS must be > 0.")
        health = self.health
        if not 0 < health.stall_after_seconds < health.stuck_after_seconds:
            raise ValueError(
                "COURSE_ORCH_STALL_AFTER_SECONDS must be > 0 and below "
                "COURSE_ORCH_STUCK_AFTER_SECONDS.",
            )
        if health.abandon_after_seconds <= health.stuck_after_seconds:
            raise ValueError(
                "COURSE_ORCH_ABANDON_AFTER_SECONDS must be above COURSE_ORCH_STUCK_AFTER_SECONDS.",
            )
        if (self.rate_limits.default_role, JOB_SCOPE) not in self.rate_limits.ceilings:
            raise ValueError(
                "COURSE_ORCH_DEFAULT_ROLE must name a role with configured rate limits, "
                f"got {self.rate_limits.default_role!r}.",
            )

    def validate_for_http_backend(self) -> None:
        """Raise configuration error if the HTTP generation endpoint is unusable."""

        self.validate()
        endpoint = self.execution.endpoint_url
        parsed = urlparse(endpoint)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "COURSE_ORCH_ENDPOINT_URL must be an absolute http:// or https:// URL, "
                f"got {endpoint!r}.",
            )


def _parse_rate_limit_overrides(raw: str) -> dict[tuple[str, str], RoleLimits]:
    """Parse `COURSE_ORCH_RATE_LIMITS` mapping.

    Format:
    - `role:scope:per_minute:per_hour:per_day[:max_concurrent]`
    - multiple entries separated by `,`
    - scope is `job` or `task`
    """

    overrides: dict[tuple[str, str], RoleLimits] = {}
    for entry in raw.split(","):
        token = entry.strip()
        if not token:
            continue
        parts = [part.strip() for part in token.split(":")]
        if len(parts) not in {5, 6}:
            raise ValueError(
                "Invalid COURSE_ORCH_RATE_LIMITS entry: "
                f"{token!r}. Expected format 'role:scope:minute:hour:day[:concurrent]'.",
            )
        role, scope = parts[0].lower(), parts[1].lower()
        if scope not in {JOB_SCOPE, TASK_SCOPE}:
            raise ValueError(
                f"Invalid COURSE_ORCH_RATE_LIMITS scope for {role!r}: {scope!r}",
            )
        try:
            numbers = [int(value) for value in parts[2:]]
        except ValueError as error:
            raise ValueError(
                f"Invalid COURSE_ORCH_RATE_LIMITS ceilings for {role!r}: {token!r}",
            ) from error
        if any(value <= 0 for value in numbers):
            raise ValueError(
                f"COURSE_ORCH_RATE_LIMITS ceilings must be positive: {token!r}",
            )
        overrides[(role, scope)] = RoleLimits(
            per_minute=numbers[0],
            per_hour=numbers[1],
            per_day=numbers[2],
            max_concurrent=numbers[3] if len(numbers) == 4 else None,
        )
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
