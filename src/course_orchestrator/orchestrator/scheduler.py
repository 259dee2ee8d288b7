"""Scheduler: dependency-aware, rate-limited dispatch onto a bounded worker pool."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from course_orchestrator.config import SchedulerSettings
from course_orchestrator.orchestrator.errors import JobNotFoundError
from course_orchestrator.orchestrator.executor import ExecutionEngine, ExecutionResult
from course_orchestrator.orchestrator.failure_classifier import classify_unexpected_exception
from course_orchestrator.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    AdmissionScope,
    AttemptUsage,
    JobView,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.progress import JobProgressTracker
from course_orchestrator.orchestrator.rate_limiter import RateLimiter
from course_orchestrator.orchestrator.recovery import RecoveryManager
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerPassSummary:
    """Aggregate scheduler counters for CLI reporting."""

    dispatched: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0
    rate_limited: int = 0
    dependency_failed: int = 0
    recovered: int = 0

    def merge(self, other: SchedulerPassSummary) -> None:
        self.dispatched += other.dispatched
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.discarded += other.discarded
        self.rate_limited += other.rate_limited
        self.dependency_failed += other.dependency_failed
        self.recovered += other.recovered


class Scheduler:
    """Picks ready tasks, reserves admission, claims and hands them to the engine.

    At most `max_workers` generation calls are in flight per scheduler process;
    every claim is a compare-and-set, so several schedulers may share one store.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        rate_limiter: RateLimiter,
        engine: ExecutionEngine,
        recovery: RecoveryManager,
        progress: JobProgressTracker,
        settings: SchedulerSettings,
    ) -> None:
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.engine = engine
        self.recovery = recovery
        self.progress = progress
        self.settings = settings
        self.worker_id = settings.scheduler_id
        self._stop = threading.Event()
        # Users denied task admission; not offered work again until the window frees up.
        self._blocked_until: dict[str, datetime] = {}

    def run_pass(self, *, job_ids: list[str] | None = None) -> SchedulerPassSummary:
        """One dispatch round: recover stale work, dispatch ready tasks, await results."""

        summary = SchedulerPassSummary()
        recovered = self.recovery.recover_stale_tasks(
            stale_claim_seconds=self.settings.stale_claim_seconds,
            stale_running_seconds=self.settings.stale_running_seconds,
        )
        summary.recovered = sum(recovered.values())

        dispatchable = self.repository.list_dispatchable_job_ids()
        if job_ids is not None:
            wanted = set(job_ids)
            dispatchable = [job_id for job_id in dispatchable if job_id in wanted]

        batch: list[tuple[TaskView, JobView]] = []
        blocked_users: set[str] = set()
        for job_id in dispatchable:
            if self._stop.is_set():
                break
            summary.dependency_failed += len(
                self.progress.propagate_dependency_failures(job_id),
            )
            job = self.progress.refresh(job_id)
            if job is None or job.status in TERMINAL_JOB_STATUSES or job.is_paused:
                continue
            if job.user_id in blocked_users or self._user_blocked(job.user_id):
                continue
            for task in self.repository.get_ready_tasks(job_id):
                if len(batch) >= self.settings.max_workers or self._stop.is_set():
                    break
                started, denied = self._admit_and_start(task=task, job=job)
                if denied:
                    summary.rate_limited += 1
                    blocked_users.add(job.user_id)
                    break
                if started is None:
                    continue
                batch.append((started, job))
            if len(batch) >= self.settings.max_workers:
                break

        summary.dispatched = len(batch)
        if batch:
            self._execute_batch(batch=batch, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_passes: int | None = None,
        max_idle_polls: int | None = None,
    ) -> SchedulerPassSummary:
        """Dispatch until stopped (signal), `max_passes` reached or idle too long."""

        aggregate = SchedulerPassSummary()
        passes = 0
        consecutive_idle = 0
        self._stop.clear()
        with self._signal_handlers():
            while not self._stop.is_set():
                if max_passes is not None and passes >= max_passes:
                    break
                summary = self.run_pass()
                passes += 1
                aggregate.merge(summary)
                if summary.dispatched:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.settings.poll_interval_seconds)
        return aggregate

    def run_job(self, job_id: str, *, max_passes: int | None = None) -> JobView:
        """Drive one job until it is terminal or paused."""

        job = self._require_job(job_id)
        aggregate = SchedulerPassSummary()
        passes = 0
        self._stop.clear()
        with self._signal_handlers():
            while not self._stop.is_set():
                job = self.progress.refresh(job_id) or self._require_job(job_id)
                if job.status in TERMINAL_JOB_STATUSES or job.is_paused:
                    break
                if max_passes is not None and passes >= max_passes:
                    break
                summary = self.run_pass(job_ids=[job_id])
                passes += 1
                aggregate.merge(summary)
                if not summary.dispatched:
                    self._sleep_with_stop(self.settings.poll_interval_seconds)
        logger.info(
            "Job %s run finished status=%s dispatched=%s passes=%s",
            job_id,
            job.status.value,
            aggregate.dispatched,
            passes,
        )
        return job

    def request_stop(self) -> None:
        self._stop.set()

    def idle_wait(self) -> None:
        """Sleep one poll interval unless a stop was requested."""

        self._sleep_with_stop(self.settings.poll_interval_seconds)

    # -- dispatch ---------------------------------------------------------------

    def _admit_and_start(
        self,
        *,
        task: TaskView,
        job: JobView,
    ) -> tuple[TaskView | None, bool]:
        """Reserve admission, claim and start; returns `(started, denied)`.

        A denied task is never touched, so it stays `pending` with no audit event.
        """

        decision = self.rate_limiter.check_and_reserve(
            user_id=job.user_id,
            role=job.role,
            scope=AdmissionScope.TASK,
        )
        if not decision.allowed:
            if decision.retry_after is not None:
                until = self.rate_limiter.clock() + decision.retry_after
                self._blocked_until[job.user_id] = until
            return None, True
        if not self.repository.claim_task(task_id=task.task_id, worker_id=self.worker_id):
            self.rate_limiter.refund(user_id=job.user_id, scope=AdmissionScope.TASK)
            return None, False
        started = self.repository.start_task(task_id=task.task_id, worker_id=self.worker_id)
        if started is None:
            self.rate_limiter.refund(user_id=job.user_id, scope=AdmissionScope.TASK)
            return None, False
        self.repository.mark_job_started(job_id=job.job_id)
        return started, False

    def _user_blocked(self, user_id: str) -> bool:
        until = self._blocked_until.get(user_id)
        if until is None:
            return False
        if self.rate_limiter.clock() >= until:
            del self._blocked_until[user_id]
            return False
        return True

    def _execute_batch(
        self,
        *,
        batch: list[tuple[TaskView, JobView]],
        summary: SchedulerPassSummary,
    ) -> None:
        with ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="course-orch",
        ) as pool:
            futures: list[Future[TaskStatus | None]] = [
                pool.submit(self._run_task, task, job) for task, job in batch
            ]
            wait(futures)
        for future in futures:
            status = future.result()
            if status == TaskStatus.COMPLETED:
                summary.completed += 1
            elif status == TaskStatus.PENDING:
                summary.retried += 1
            elif status == TaskStatus.FAILED:
                summary.failed += 1
            else:
                summary.discarded += 1

    def _run_task(self, task: TaskView, job: JobView) -> TaskStatus | None:
        result = self.engine.execute(task, job)
        try:
            return self.recovery.handle_result(
                task=task,
                worker_id=self.worker_id,
                result=result,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Recording result failed task=%s", task.task_id)
            fallback = ExecutionResult(
                success=False,
                error=f"{type(error).__name__}: {error}",
                classification=classify_unexpected_exception(error),
                usage=AttemptUsage(api_calls=0),
            )
            return self.recovery.handle_result(
                task=task,
                worker_id=self.worker_id,
                result=fallback,
            )

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # -- process control --------------------------------------------------------

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; finishing in-flight tasks before exit", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

