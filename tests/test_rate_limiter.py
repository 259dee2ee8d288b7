from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from course_orchestrator.config import RateLimitSettings, RoleLimits
from course_orchestrator.orchestrator.models import AdmissionScope, RateLimitReason
from course_orchestrator.orchestrator.rate_limiter import RateLimiter
from course_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Rate Limiter"),
    allure.feature("Admission control"),
]


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _limiter(
    repository: OrchestratorRepository,
    *,
    job: RoleLimits | None = None,
    task: RoleLimits | None = None,
    clock: _Clock | None = None,
) -> RateLimiter:
    settings = RateLimitSettings()
    if job is not None:
        settings.ceilings[("student", "job")] = job
    if task is not None:
        settings.ceilings[("student", "task")] = task
    repository.ensure_user(user_id="s1", role="student")
    if clock is None:
        return RateLimiter(repository.engine, settings)
    return RateLimiter(repository.engine, settings, clock=clock)


def test_minute_ceiling_denies_exactly_one_extra_request(
    repository: OrchestratorRepository,
) -> None:
    limiter = _limiter(repository, task=RoleLimits(3, 100, 1_000))

    decisions = [
        limiter.check_and_reserve(user_id="s1", role="student", scope=AdmissionScope.TASK)
        for _ in range(4)
    ]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    denied = decisions[-1]
    assert denied.reason == RateLimitReason.MINUTE
    assert denied.retry_after is not None
    assert timedelta(0) < denied.retry_after <= timedelta(minutes=1)
    usage = limiter.usage(user_id="s1", role="student", scope=AdmissionScope.TASK)
    assert usage.minute == 3
    assert usage.hour == 3


def test_concurrency_denial_takes_precedence_and_slot_release_readmits(
    repository: OrchestratorRepository,
) -> None:
    limiter = _limiter(repository, job=RoleLimits(1, 10, 50, 1))

    first = limiter.check_and_reserve(user_id="s1", role="student", scope=AdmissionScope.JOB)
    second = limiter.check_and_reserve(user_id="s1", role="student", scope=AdmissionScope.JOB)

    assert first.allowed is True
    assert second.allowed is False
    # Both the minute window and the concurrency slot are exhausted here.
    assert second.reason == RateLimitReason.CONCURRENCY
    assert second.retry_after is None

    assert limiter.release_job_slot(user_id="s1") is True
    assert limiter.release_job_slot(user_id="s1") is False
    usage = limiter.usage(user_id="s1", role="student", scope=AdmissionScope.JOB)
    assert usage.active_jobs == 0
    assert usage.concurrent_limit == 1


def test_window_expiry_resets_counter(repository: OrchestratorRepository) -> None:
    clock = _Clock(datetime(2026, 10, 1, 12, 0, 30, tzinfo=UTC))
    limiter = _limiter(repository, task=RoleLimits(1, 10, 100), clock=clock)

    assert limiter.check_and_reserve(user_id="s1", role="student").allowed
    clock.advance(timedelta(seconds=20))
    denied = limiter.check_and_reserve(user_id="s1", role="student")
    assert denied.allowed is False
    assert denied.retry_after == timedelta(seconds=40)

    clock.advance(timedelta(seconds=41))
    assert limiter.check_and_reserve(user_id="s1", role="student").allowed
    usage = limiter.usage(user_id="s1", role="student", scope=AdmissionScope.TASK)
    assert usage.minute == 1
    assert usage.hour == 2


def test_hour_ceiling_reports_hour_reason(repository: OrchestratorRepository) -> None:
    clock = _Clock(datetime(2026, 10, 1, 12, 0, tzinfo=UTC))
    limiter = _limiter(repository, task=RoleLimits(5, 2, 100), clock=clock)

    assert limiter.check_and_reserve(user_id="s1", role="student").allowed
    assert limiter.check_and_reserve(user_id="s1", role="student").allowed
    denied = limiter.check_and_reserve(user_id="s1", role="student")

    assert denied.reason == RateLimitReason.HOUR
    assert denied.retry_after == timedelta(hours=1)


def test_refund_returns_reservation_and_floors_at_zero(
    repository: OrchestratorRepository,
) -> None:
    limiter = _limiter(repository, task=RoleLimits(1, 10, 100))

    assert limiter.check_and_reserve(user_id="s1", role="student").allowed
    assert limiter.check_and_reserve(user_id="s1", role="student").allowed is False
    limiter.refund(user_id="s1")
    assert limiter.check_and_reserve(user_id="s1", role="student").allowed

    limiter.refund(user_id="s1")
    limiter.refund(user_id="s1")
    usage = limiter.usage(user_id="s1", role="student", scope=AdmissionScope.TASK)
    assert (usage.minute, usage.hour, usage.day) == (0, 0, 0)


def test_unknown_role_falls_back_to_default_role(repository: OrchestratorRepository) -> None:
    limiter = _limiter(repository, task=RoleLimits(1, 10, 100))

    assert limiter.check_and_reserve(user_id="s1", role="guest").allowed
    assert limiter.check_and_reserve(user_id="s1", role="guest").allowed is False


def test_parallel_reservations_never_overshoot(repository: OrchestratorRepository) -> None:
    limiter = _limiter(repository, task=RoleLimits(5, 100, 1_000))
    barrier = threading.Barrier(10)
    allowed: list[bool] = []
    lock = threading.Lock()

    def _reserve() -> None:
        barrier.wait(timeout=5)
        decision = limiter.check_and_reserve(user_id="s1", role="student")
        with lock:
            allowed.append(decision.allowed)

    threads = [threading.Thread(target=_reserve) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=15)

    assert len(allowed) == 10
    assert allowed.count(True) == 5


def test_settings_reject_missing_default_role() -> None:
    settings = RateLimitSettings(ceilings={}, default_role="student")

    with pytest.raises(ValueError, match="default role"):
        settings.limits_for(role="nobody", scope="task")
