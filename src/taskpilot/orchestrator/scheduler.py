"""Periodic scheduler that turns due recurring tasks into queue jobs."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime

from taskpilot.config import Settings
from taskpilot.errors import NotFoundError, QueueUnavailableError
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.models import ExecutionResult, TaskStatus, TaskView
from taskpilot.orchestrator.queue import TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.schedule import compute_next_run
from taskpilot.orchestrator.worker import WorkerPool
from taskpilot.storage.common import utc_now

__all__ = [
    "AgentOrchestrator",
    "OrchestratorStatus",
    "ScheduledCheckResult",
    "ScheduledPreview",
    "compute_next_run",
]

logger = logging.getLogger(__name__)

INSUFFICIENT_SCHEDULED_CREDITS = "Insufficient credits for scheduled execution"


@dataclass(slots=True)
class ScheduledCheckResult:
    """Outcome of one scheduler tick."""

    checked_at: datetime
    tasks_queued: int = 0
    tasks_skipped: int = 0
    tasks_failed: int = 0
    errors: list[str] = field(default_factory=list)
    tick_skipped: bool = False


@dataclass(slots=True)
class ScheduledPreview:
    """Read-only view of the schedule backlog."""

    scheduled_tasks: int
    tasks_currently_due: int
    checked_at: datetime


@dataclass(slots=True)
class OrchestratorStatus:
    running: bool
    active_agents: int
    queued_tasks: int
    completed_today: int
    failed_today: int
    uptime_seconds: float
    queue_available: bool


class AgentOrchestrator:
    """Owns the scheduler timer, the embedded worker pool, and daily counters.

    Ticks never overlap: a tick that starts while another is still running is
    skipped rather than queued behind it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: TaskRepository,
        queue: TaskQueue,
        ledger: CreditLedger,
        worker_pool: WorkerPool | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.queue = queue
        self.ledger = ledger
        self.worker_pool = worker_pool
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: threading.Thread | None = None
        self._started_at: float | None = None
        self._completed_today = 0
        self._failed_today = 0
        self._counter_day = date.today()

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        with self._state_lock:
            if self._timer is not None:
                return
            self._stop.clear()
            self._started_at = time.monotonic()
            if self.worker_pool is not None and self.settings.orchestrator.embedded_workers:
                self.worker_pool.start()
            self._timer = threading.Thread(
                target=self._timer_loop,
                daemon=True,
                name="taskpilot-scheduler",
            )
            self._timer.start()
        logger.info(
            "Scheduler started (interval %.0fs, %d agents)",
            self.settings.orchestrator.poll_interval_seconds,
            self.settings.orchestrator.max_concurrent_agents,
        )

    def stop(self, timeout: float | None = 15.0) -> None:
        with self._state_lock:
            timer = self._timer
            if timer is None:
                return
            self._timer = None
            self._started_at = None
            self._stop.set()
        timer.join(timeout=timeout)
        if self.worker_pool is not None:
            self.worker_pool.stop(timeout=timeout)
        logger.info("Scheduler stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is called; True when stopped."""

        return self._stop.wait(timeout=timeout)

    def _timer_loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = self.check_scheduled_tasks()
                if result.tasks_queued or result.tasks_failed or result.tasks_skipped:
                    logger.info(
                        "Scheduled check: queued=%d skipped=%d failed=%d",
                        result.tasks_queued,
                        result.tasks_skipped,
                        result.tasks_failed,
                    )
            except Exception:
                logger.exception("Scheduler tick error")
            self._stop.wait(timeout=self.settings.orchestrator.poll_interval_seconds)

    def check_scheduled_tasks(self, now: datetime | None = None) -> ScheduledCheckResult:
        """Enqueue every due recurring task that the owner can afford."""

        now = now or utc_now()
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Previous scheduled check still running; skipping tick")
            return ScheduledCheckResult(checked_at=now, tick_skipped=True)
        try:
            return self._check(now)
        finally:
            self._tick_lock.release()

    def _check(self, now: datetime) -> ScheduledCheckResult:
        result = ScheduledCheckResult(checked_at=now)
        due = self.repository.find_due_tasks(
            now=now,
            limit=self.settings.orchestrator.scheduler_batch_size,
        )
        if not due:
            return result

        queue_available = self.queue.is_available()
        for task in due:
            if not queue_available:
                result.tasks_failed += 1
                result.errors.append(
                    f"Task {task.task_id}: Queue unavailable; manual processing required.",
                )
                continue
            estimate = (
                task.plan.estimated_credits
                if task.plan is not None
                else self.settings.credits.scheduled_task_default_estimate
            )
            try:
                affordable = self.ledger.has_enough(task.user_id, estimate, now=now)
            except NotFoundError as error:
                result.tasks_failed += 1
                result.errors.append(f"Task {task.task_id}: {error}")
                continue
            if not affordable:
                self.repository.fail_task_without_claim(
                    task_id=task.task_id,
                    error=INSUFFICIENT_SCHEDULED_CREDITS,
                )
                logger.warning(
                    "Scheduled task %s skipped: user %s cannot cover %d credits",
                    task.task_id,
                    task.user_id,
                    estimate,
                )
                result.tasks_skipped += 1
                continue
            if self._enqueue_due(task, now=now, result=result):
                result.tasks_queued += 1
            else:
                result.tasks_failed += 1

        if queue_available:
            self.queue.clean(now=now)
        return result

    def _enqueue_due(self, task: TaskView, *, now: datetime, result: ScheduledCheckResult) -> bool:
        next_run_at = compute_next_run(task.schedule, task.timezone, now)
        if not self.repository.mark_scheduled_run(
            task_id=task.task_id,
            next_run_at=next_run_at,
            last_run_at=now,
        ):
            result.errors.append(f"Task {task.task_id}: schedule changed concurrently")
            return False
        try:
            job_id = self.queue.enqueue(
                task.task_id,
                task.user_id,
                priority=task.priority_weight,
            )
        except QueueUnavailableError as error:
            self.repository.mark_scheduled_run(
                task_id=task.task_id,
                next_run_at=task.next_run_at or now,
                last_run_at=task.last_run_at or now,
            )
            result.errors.append(f"Task {task.task_id}: {error}")
            return False
        logger.info(
            "Queued scheduled task %s as job %s; next run at %s",
            task.task_id,
            job_id,
            next_run_at.isoformat(),
        )
        return True

    def preview(self, now: datetime | None = None) -> ScheduledPreview:
        now = now or utc_now()
        return ScheduledPreview(
            scheduled_tasks=self.repository.count_scheduled(),
            tasks_currently_due=self.repository.count_due(now=now),
            checked_at=now,
        )

    def execute_task(self, task_id: str) -> str:
        """Enqueue a task for immediate execution, outside its schedule."""

        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return self.queue.enqueue(task.task_id, task.user_id, priority=task.priority_weight)

    def get_status(self) -> OrchestratorStatus:
        self._roll_day()
        stats = self.queue.stats()
        return OrchestratorStatus(
            running=self.running,
            active_agents=self.worker_pool.active_count if self.worker_pool is not None else 0,
            queued_tasks=stats.waiting + stats.delayed,
            completed_today=self._completed_today,
            failed_today=self._failed_today,
            uptime_seconds=(
                time.monotonic() - self._started_at if self._started_at is not None else 0.0
            ),
            queue_available=stats.available,
        )

    def record_outcome(self, result: ExecutionResult) -> None:
        """Worker callback: count finished runs toward today's totals."""

        if result.status in (TaskStatus.COMPLETED, TaskStatus.PENDING):
            self.record_completion()
        elif result.status is TaskStatus.FAILED:
            self.record_failure()

    def record_completion(self) -> None:
        with self._counter_lock:
            self._roll_day_locked()
            self._completed_today += 1

    def record_failure(self) -> None:
        with self._counter_lock:
            self._roll_day_locked()
            self._failed_today += 1

    def _roll_day(self) -> None:
        with self._counter_lock:
            self._roll_day_locked()

    def _roll_day_locked(self) -> None:
        today = date.today()
        if today != self._counter_day:
            self._counter_day = today
            self._completed_today = 0
            self._failed_today = 0
