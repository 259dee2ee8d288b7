"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    role: str = Field(default="student", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_user_status", "user_id", "status"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    is_paused: bool = Field(default=False)
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    output_ref: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    peak_memory_mb: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_tasks_ready", "job_id", "status", "priority", "seq"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_type: str = Field(index=True)
    seq: int = Field(default=0)
    dependency_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=100, index=True)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    error_category: str | None = Field(default=None, index=True)
    severity: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    recovery_suggestions_json: str | None = Field(default=None, sa_column=Column(Text))
    needs_review: bool = Field(default=False)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_ref: str | None = None
    worker_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    estimated_duration_seconds: int | None = None
    actual_duration_seconds: float | None = None
    api_calls: int = 0
    api_failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLogEntry(SQLModel, table=True):
    __tablename__ = "job_log_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_log_entries_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(default=None, index=True)
    level: str = Field(index=True)
    source: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitRecord(SQLModel, table=True):
    __tablename__ = "rate_limit_records"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("user_id", "scope", name="pk_rate_limit_records"),)

    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    scope: str
    minute_count: int = 0
    minute_window_start: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    hour_count: int = 0
    hour_window_start: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    day_count: int = 0
    day_window_start: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    active_jobs: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
