"""Per-user admission control over persisted fixed-window counters.

Every reservation is one conditional ``UPDATE ... SET count = count + 1 WHERE
count < ceiling`` so concurrent callers for the same user can never overshoot a
ceiling. Expired windows are zeroed first with their own conditional update
keyed on the observed window start.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import ColumnElement, and_, func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from course_orchestrator.config import RateLimitSettings, RoleLimits
from course_orchestrator.orchestrator.models import (
    AdmissionDecision,
    AdmissionScope,
    RateLimitReason,
    RateLimitUsage,
)
from course_orchestrator.storage.common import to_db_datetime, to_utc_aware, utc_now
from course_orchestrator.storage.sqlmodel_models import RateLimitRecord

logger = logging.getLogger(__name__)

WINDOWS: tuple[tuple[RateLimitReason, timedelta], ...] = (
    (RateLimitReason.MINUTE, timedelta(minutes=1)),
    (RateLimitReason.HOUR, timedelta(hours=1)),
    (RateLimitReason.DAY, timedelta(days=1)),
)


class RateLimiter:
    """Stateless admission logic over the `rate_limit_records` table."""

    def __init__(
        self,
        engine: Engine,
        settings: RateLimitSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.clock = clock

    def check_and_reserve(
        self,
        *,
        user_id: str,
        role: str,
        scope: AdmissionScope = AdmissionScope.TASK,
    ) -> AdmissionDecision:
        """Reserve one admission if every ceiling has room, else explain the denial."""

        limits = self.settings.limits_for(role=role, scope=scope.value)
        now = self.clock()
        self._ensure_record(user_id=user_id, scope=scope, now=now)
        self._reset_expired_windows(user_id=user_id, scope=scope, now=now)

        conditions = [
            col(RateLimitRecord.minute_count) < limits.per_minute,
            col(RateLimitRecord.hour_count) < limits.per_hour,
            col(RateLimitRecord.day_count) < limits.per_day,
        ]
        values = {
            "minute_count": col(RateLimitRecord.minute_count) + 1,
            "hour_count": col(RateLimitRecord.hour_count) + 1,
            "day_count": col(RateLimitRecord.day_count) + 1,
            "updated_at": to_db_datetime(now),
        }
        if scope == AdmissionScope.JOB and limits.max_concurrent is not None:
            conditions.append(col(RateLimitRecord.active_jobs) < limits.max_concurrent)
            values["active_jobs"] = col(RateLimitRecord.active_jobs) + 1

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RateLimitRecord)
                .where(_record_key(user_id=user_id, scope=scope), *conditions)
                .values(**values),
            )
            if result.rowcount == 1:
                session.commit()
                return AdmissionDecision(allowed=True)
            session.rollback()
            record = self._get_record(session=session, user_id=user_id, scope=scope)

        decision = _explain_denial(record=record, limits=limits, scope=scope, now=now)
        logger.info(
            "Admission denied user=%s scope=%s reason=%s retry_after=%s",
            user_id,
            scope.value,
            decision.reason.value if decision.reason else None,
            decision.retry_after,
        )
        return decision

    def release_job_slot(self, *, user_id: str) -> bool:
        """Free one concurrently-active job slot; never goes below zero."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RateLimitRecord)
                .where(
                    _record_key(user_id=user_id, scope=AdmissionScope.JOB),
                    col(RateLimitRecord.active_jobs) > 0,
                )
                .values(
                    active_jobs=col(RateLimitRecord.active_jobs) - 1,
                    updated_at=to_db_datetime(self.clock()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def refund(self, *, user_id: str, scope: AdmissionScope = AdmissionScope.TASK) -> None:
        """Give back a reservation whose work never started (lost claim race)."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(RateLimitRecord)
                .where(_record_key(user_id=user_id, scope=scope))
                .values(
                    minute_count=func.max(col(RateLimitRecord.minute_count) - 1, 0),
                    hour_count=func.max(col(RateLimitRecord.hour_count) - 1, 0),
                    day_count=func.max(col(RateLimitRecord.day_count) - 1, 0),
                    updated_at=to_db_datetime(self.clock()),
                ),
            )
            session.commit()

    def reacquire_job_slot(self, *, user_id: str) -> None:
        """Count a reopened job as active again (operator action, not ceiling-checked)."""

        now = self.clock()
        self._ensure_record(user_id=user_id, scope=AdmissionScope.JOB, now=now)
        with Session(self.engine) as session:
            session.exec(
                sa_update(RateLimitRecord)
                .where(_record_key(user_id=user_id, scope=AdmissionScope.JOB))
                .values(
                    active_jobs=col(RateLimitRecord.active_jobs) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def usage(
        self,
        *,
        user_id: str,
        role: str,
        scope: AdmissionScope = AdmissionScope.JOB,
    ) -> RateLimitUsage:
        """Current counters, treating already-expired windows as empty."""

        limits = self.settings.limits_for(role=role, scope=scope.value)
        now = self.clock()
        with Session(self.engine) as session:
            record = session.exec(
                select(RateLimitRecord).where(_record_key(user_id=user_id, scope=scope)),
            ).one_or_none()

        counts = {reason: 0 for reason, _ in WINDOWS}
        active_jobs = 0
        if record is not None:
            active_jobs = record.active_jobs
            for reason, length in WINDOWS:
                count, window_start = _window_fields(record, reason)
                if to_utc_aware(window_start) + length > now:
                    counts[reason] = count
        return RateLimitUsage(
            user_id=user_id,
            role=role,
            scope=scope,
            minute=counts[RateLimitReason.MINUTE],
            hour=counts[RateLimitReason.HOUR],
            day=counts[RateLimitReason.DAY],
            active_jobs=active_jobs,
            minute_limit=limits.per_minute,
            hour_limit=limits.per_hour,
            day_limit=limits.per_day,
            concurrent_limit=limits.max_concurrent if scope == AdmissionScope.JOB else None,
        )

    def _ensure_record(self, *, user_id: str, scope: AdmissionScope, now: datetime) -> None:
        stamp = to_db_datetime(now)
        with Session(self.engine) as session:
            session.exec(
                sqlite_insert(RateLimitRecord)
                .values(
                    user_id=user_id,
                    scope=scope.value,
                    minute_count=0,
                    minute_window_start=stamp,
                    hour_count=0,
                    hour_window_start=stamp,
                    day_count=0,
                    day_window_start=stamp,
                    active_jobs=0,
                    updated_at=stamp,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "scope"]),
            )
            session.commit()

    def _reset_expired_windows(
        self,
        *,
        user_id: str,
        scope: AdmissionScope,
        now: datetime,
    ) -> None:
        stamp = to_db_datetime(now)
        with Session(self.engine) as session:
            for reason, length in WINDOWS:
                count_column, start_column = _WINDOW_COLUMNS[reason]
                session.exec(
                    sa_update(RateLimitRecord)
                    .where(
                        _record_key(user_id=user_id, scope=scope),
                        col(getattr(RateLimitRecord, start_column)) <= to_db_datetime(now - length),
                    )
                    .values(**{count_column: 0, start_column: stamp}),
                )
            session.commit()

    def _get_record(
        self,
        *,
        session: Session,
        user_id: str,
        scope: AdmissionScope,
    ) -> RateLimitRecord:
        return session.exec(
            select(RateLimitRecord).where(_record_key(user_id=user_id, scope=scope)),
        ).one()


_WINDOW_COLUMNS: dict[RateLimitReason, tuple[str, str]] = {
    RateLimitReason.MINUTE: ("minute_count", "minute_window_start"),
    RateLimitReason.HOUR: ("hour_count", "hour_window_start"),
    RateLimitReason.DAY: ("day_count", "day_window_start"),
}


def _record_key(*, user_id: str, scope: AdmissionScope) -> ColumnElement[bool]:
    return and_(
        col(RateLimitRecord.user_id) == user_id,
        col(RateLimitRecord.scope) == scope.value,
    )


def _window_fields(record: RateLimitRecord, reason: RateLimitReason) -> tuple[int, datetime]:
    count_column, start_column = _WINDOW_COLUMNS[reason]
    return getattr(record, count_column), getattr(record, start_column)


def _explain_denial(
    *,
    record: RateLimitRecord,
    limits: RoleLimits,
    scope: AdmissionScope,
    now: datetime,
) -> AdmissionDecision:
    if (
        scope == AdmissionScope.JOB
        and limits.max_concurrent is not None
        and record.active_jobs >= limits.max_concurrent
    ):
        return AdmissionDecision(
            allowed=False,
            reason=RateLimitReason.CONCURRENCY,
            message=(
                f"Maximum concurrent jobs ({limits.max_concurrent}) reached. "
                "Wait for a running job to finish."
            ),
        )

    ceilings = {
        RateLimitReason.MINUTE: limits.per_minute,
        RateLimitReason.HOUR: limits.per_hour,
        RateLimitReason.DAY: limits.per_day,
    }
    for reason, length in WINDOWS:
        count, window_start = _window_fields(record, reason)
        if count >= ceilings[reason]:
            retry_after = max(timedelta(0), to_utc_aware(window_start) + length - now)
            return AdmissionDecision(
                allowed=False,
                reason=reason,
                retry_after=retry_after,
                message=(
                    f"{reason.value.capitalize()} limit ({ceilings[reason]}) reached. "
                    f"Try again in {int(retry_after.total_seconds()) + 1}s."
                ),
            )

    # Counters moved between the failed increment and this read.
    return AdmissionDecision(
        allowed=False,
        reason=RateLimitReason.MINUTE,
        retry_after=timedelta(seconds=1),
        message="Admission contended; try again shortly.",
    )
