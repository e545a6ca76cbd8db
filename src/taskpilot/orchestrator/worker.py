"""Queue consumers that execute claimed tasks."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from taskpilot.config import Settings
from taskpilot.errors import InsufficientCreditsError
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.executor import PlanExecutor
from taskpilot.orchestrator.models import ExecutionResult, TaskStatus, TaskView
from taskpilot.orchestrator.queue import QueueJobView, TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.tools import ToolRegistry

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[ExecutionResult], None]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    rescheduled: int = 0
    duplicates: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.paused += other.paused
        self.rescheduled += other.rescheduled
        self.duplicates += other.duplicates
        self.idle_polls += other.idle_polls


class AgentWorker:
    """Consumes queue jobs and runs the referenced task's plan.

    Deliveries are at-least-once. The task claim is what makes them safe: a
    job whose task is already owned, or no longer claimable, is treated as a
    duplicate and acknowledged without running anything.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        queue: TaskQueue,
        executor: PlanExecutor,
        ledger: CreditLedger,
        settings: Settings,
        worker_id: str,
        on_outcome: OutcomeCallback | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.executor = executor
        self.ledger = ledger
        self.settings = settings
        self.worker_id = worker_id
        self.poll_interval_seconds = settings.orchestrator.worker_poll_interval_seconds
        self._on_outcome = on_outcome
        self._stop_event = stop_event or threading.Event()
        self._stop_signal_name: str | None = None
        self.current_task_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.current_task_id = job.task_id
        try:
            self._handle_job(job, summary)
        finally:
            self.current_task_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Set to a higher value when a scheduler enqueues work
                concurrently.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str | None = None) -> None:
        self._stop_signal_name = signal_name
        self._stop_event.set()
        if self.current_task_id is not None:
            logger.info(
                "Stop requested (%s) while task %s is running; finishing current step",
                signal_name or "api",
                self.current_task_id,
            )

    def _claim_job(self) -> QueueJobView | None:
        self._recover_stale()
        if self.stop_requested:
            return None
        return self.queue.dequeue(worker_id=self.worker_id)

    def _recover_stale(self) -> None:
        self.repository.release_stale_claims(
            stale_after=timedelta(seconds=self.settings.orchestrator.stale_claim_seconds),
        )
        self.queue.recover_stale(
            stale_after=timedelta(seconds=self.settings.queue.stale_job_seconds),
        )

    def _handle_job(self, job: QueueJobView, summary: WorkerRunSummary) -> None:
        task = self.repository.get_task(job.task_id)
        if task is None:
            self.queue.fail(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error=f"Task not found: {job.task_id}",
                retry=False,
            )
            summary.failed += 1
            return
        if task.user_id != job.user_id:
            self.queue.fail(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error=f"Job user {job.user_id} does not own task {job.task_id}",
                retry=False,
            )
            summary.failed += 1
            return

        claimed = self.repository.claim_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            run_no=job.run_no,
        )
        if claimed is None:
            logger.info(
                "Job %s: task %s is %s (claimed by %s); acknowledging duplicate delivery",
                job.job_id,
                task.task_id,
                task.status.value,
                task.claimed_by or "nobody",
            )
            self.queue.complete(job_id=job.job_id, worker_id=self.worker_id)
            summary.duplicates += 1
            return

        try:
            result = self._execute_claimed(job, claimed)
        except Exception as error:
            self.repository.release_claim(
                task_id=claimed.task_id,
                worker_id=self.worker_id,
                reason=f"{type(error).__name__}: {error}",
            )
            self.queue.fail(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error=f"{type(error).__name__}: {error}",
            )
            raise

        self.queue.complete(job_id=job.job_id, worker_id=self.worker_id)
        _count_outcome(summary, result)
        if self._on_outcome is not None:
            self._on_outcome(result)

    def _execute_claimed(self, job: QueueJobView, task: TaskView) -> ExecutionResult:
        plan = task.plan
        if plan is None:
            return self._fail_claimed(task, error="Task has no execution plan")

        needed = sum(step.estimated_credits for step in plan.steps[task.current_step :])
        try:
            self.ledger.require(task.user_id, needed)
        except InsufficientCreditsError as error:
            logger.warning("Task %s not started: %s", task.task_id, error)
            return self._fail_claimed(task, error=str(error))

        def _heartbeat() -> None:
            self.queue.touch(job_id=job.job_id, worker_id=self.worker_id)
            self.repository.touch_task(task_id=task.task_id, worker_id=self.worker_id)

        return self.executor.execute(task, worker_id=self.worker_id, heartbeat=_heartbeat)

    def _fail_claimed(self, task: TaskView, *, error: str) -> ExecutionResult:
        self.repository.finish_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            version=task.version,
            status=TaskStatus.FAILED,
            error=error,
        )
        return ExecutionResult(
            task_id=task.task_id,
            status=TaskStatus.FAILED,
            credits_used=task.total_credits,
            tokens_used=task.total_tokens,
            current_step=task.current_step,
            total_steps=task.total_steps,
            error=error,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(timeout=max(0.0, seconds))

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
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _count_outcome(summary: WorkerRunSummary, result: ExecutionResult) -> None:
    if result.status is TaskStatus.COMPLETED:
        summary.completed += 1
    elif result.status is TaskStatus.PENDING:
        summary.rescheduled += 1
    elif result.status is TaskStatus.PAUSED:
        summary.paused += 1
    elif result.status is TaskStatus.FAILED:
        summary.failed += 1
    else:
        summary.duplicates += 1


WorkerFactory = Callable[[str, threading.Event], AgentWorker]


class WorkerPool:
    """Fixed number of daemon threads, each running its own AgentWorker."""

    def __init__(
        self,
        *,
        size: int,
        build_worker: WorkerFactory,
        worker_id_prefix: str = "worker",
        error_backoff_seconds: float = 5.0,
    ) -> None:
        if size <= 0:
            raise ValueError("Worker pool size must be > 0.")
        self.size = size
        self._build_worker = build_worker
        self._worker_id_prefix = worker_id_prefix
        self._error_backoff_seconds = error_backoff_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers: list[AgentWorker] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._threads)

    @property
    def active_count(self) -> int:
        """Workers currently executing a task."""

        return sum(1 for worker in self._workers if worker.current_task_id is not None)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            self._stop.clear()
            self._workers = [
                self._build_worker(f"{self._worker_id_prefix}-{index}", self._stop)
                for index in range(1, self.size + 1)
            ]
            for worker in self._workers:
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(worker,),
                    daemon=True,
                    name=worker.worker_id,
                )
                self._threads.append(thread)
                thread.start()
        logger.info("Worker pool started with %d threads", self.size)

    def stop(self, timeout: float | None = 15.0) -> None:
        with self._lock:
            if not self._threads:
                return
            self._stop.set()
            for thread in self._threads:
                thread.join(timeout=timeout)
            self._threads = []
            self._workers = []
        logger.info("Worker pool stopped")

    def _worker_loop(self, worker: AgentWorker) -> None:
        while not self._stop.is_set():
            try:
                summary = worker.run_once()
                if summary.processed == 0:
                    self._stop.wait(timeout=worker.poll_interval_seconds)
            except Exception:
                logger.exception("Worker %s error", worker.worker_id)
                self._stop.wait(timeout=self._error_backoff_seconds)


def build_worker(  # noqa: PLR0913
    *,
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
    tools: ToolRegistry,
    settings: Settings,
    worker_id: str,
    on_outcome: OutcomeCallback | None = None,
    stop_event: threading.Event | None = None,
) -> AgentWorker:
    return AgentWorker(
        repository=repository,
        queue=queue,
        executor=PlanExecutor(repository=repository, tools=tools, settings=settings),
        ledger=ledger,
        settings=settings,
        worker_id=worker_id,
        on_outcome=on_outcome,
        stop_event=stop_event,
    )
