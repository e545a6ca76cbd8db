from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from taskpilot.config import Settings
from taskpilot.errors import NotFoundError, QueueUnavailableError
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.models import ExecutionResult, TaskPriority, TaskStatus, TaskView
from taskpilot.orchestrator.queue import TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.scheduler import INSUFFICIENT_SCHEDULED_CREDITS, AgentOrchestrator
from taskpilot.orchestrator.worker import AgentWorker, WorkerPool, build_worker
from taskpilot.storage.common import build_sqlite_engine, utc_now
from taskpilot.tools import default_registry

from conftest import USER_ID

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Orchestrator"),
]

MakeTask = Callable[..., TaskView]
EVERY_MINUTE = "* * * * *"


class BrokenEnqueueQueue(TaskQueue):
    """Reports itself available, then refuses the job."""

    def enqueue(self, *args: object, **kwargs: object) -> str:
        raise QueueUnavailableError("Queue unavailable; manual processing required.")


@pytest.fixture()
def orchestrator(
    settings: Settings,
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
) -> AgentOrchestrator:
    return AgentOrchestrator(settings=settings, repository=repository, queue=queue, ledger=ledger)


def _due_task(make_task: MakeTask, **kwargs: object) -> TaskView:
    return make_task(
        schedule=EVERY_MINUTE,
        next_run_at=utc_now() - timedelta(minutes=1),
        **kwargs,
    )


def _result(status: TaskStatus) -> ExecutionResult:
    return ExecutionResult(
        task_id="t",
        status=status,
        credits_used=0,
        tokens_used=0,
        current_step=0,
        total_steps=1,
    )


def test_due_task_is_queued_and_schedule_advanced(
    orchestrator: AgentOrchestrator,
    repository: TaskRepository,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    task = _due_task(make_task, priority=TaskPriority.URGENT)
    now = utc_now()

    result = orchestrator.check_scheduled_tasks(now)

    assert (result.tasks_queued, result.tasks_skipped, result.tasks_failed) == (1, 0, 0)
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING
    assert stored.next_run_at is not None
    assert stored.next_run_at > now
    jobs = queue.list_jobs(task_id=task.task_id)
    assert [(job.priority, job.user_id) for job in jobs] == [(10, USER_ID)]
    assert orchestrator.check_scheduled_tasks(now).tasks_queued == 0


def test_completed_recurring_task_is_picked_up_again(
    orchestrator: AgentOrchestrator,
    repository: TaskRepository,
    make_task: MakeTask,
) -> None:
    task = _due_task(make_task)
    claimed = repository.claim_task(task_id=task.task_id, worker_id="w1")
    assert claimed is not None
    repository.finish_task(
        task_id=task.task_id,
        worker_id="w1",
        version=claimed.version,
        status=TaskStatus.COMPLETED,
    )

    result = orchestrator.check_scheduled_tasks()

    assert result.tasks_queued == 1
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING


def test_unaffordable_task_is_failed_and_never_queued(
    orchestrator: AgentOrchestrator,
    repository: TaskRepository,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    repository.set_monthly_credits(user_id=USER_ID, monthly_credits=2)
    task = _due_task(make_task)

    result = orchestrator.check_scheduled_tasks()

    assert (result.tasks_queued, result.tasks_skipped) == (0, 1)
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.FAILED
    assert stored.error == INSUFFICIENT_SCHEDULED_CREDITS
    assert queue.list_jobs(task_id=task.task_id) == []


def test_unavailable_queue_leaves_tasks_due(
    settings: Settings,
    repository: TaskRepository,
    ledger: CreditLedger,
    make_task: MakeTask,
    tmp_path: Path,
) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "broker.db", busy_timeout_ms=100)
    orchestrator = AgentOrchestrator(
        settings=settings,
        repository=repository,
        queue=TaskQueue(engine),
        ledger=ledger,
    )
    task = _due_task(make_task)

    try:
        result = orchestrator.check_scheduled_tasks()
    finally:
        engine.dispose()

    assert result.tasks_failed == 1
    assert "manual processing required" in result.errors[0]
    assert [due.task_id for due in repository.find_due_tasks(now=utc_now(), limit=5)] == [
        task.task_id,
    ]


def test_failed_enqueue_restores_previous_run_time(
    settings: Settings,
    repository: TaskRepository,
    ledger: CreditLedger,
    make_task: MakeTask,
) -> None:
    orchestrator = AgentOrchestrator(
        settings=settings,
        repository=repository,
        queue=BrokenEnqueueQueue(repository.engine, settings.queue),
        ledger=ledger,
    )
    task = _due_task(make_task)

    result = orchestrator.check_scheduled_tasks()

    assert (result.tasks_queued, result.tasks_failed) == (0, 1)
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.next_run_at == task.next_run_at
    assert repository.count_due(now=utc_now()) == 1


def test_overlapping_tick_is_skipped(
    orchestrator: AgentOrchestrator,
    make_task: MakeTask,
) -> None:
    _due_task(make_task)
    release = threading.Event()
    entered = threading.Event()
    original = orchestrator.repository.find_due_tasks

    def _slow_find(**kwargs: object) -> list[TaskView]:
        entered.set()
        release.wait(timeout=5)
        return original(**kwargs)  # type: ignore[arg-type]

    orchestrator.repository.find_due_tasks = _slow_find  # type: ignore[method-assign]
    first: list[object] = []
    thread = threading.Thread(target=lambda: first.append(orchestrator.check_scheduled_tasks()))
    thread.start()
    try:
        assert entered.wait(timeout=5)
        skipped = orchestrator.check_scheduled_tasks()
    finally:
        release.set()
        thread.join(timeout=5)

    assert skipped.tick_skipped is True
    assert skipped.tasks_queued == 0
    assert first[0].tasks_queued == 1  # type: ignore[attr-defined]


def test_preview_counts_without_changes(
    orchestrator: AgentOrchestrator,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    _due_task(make_task)
    make_task(schedule=EVERY_MINUTE, next_run_at=utc_now() + timedelta(hours=1))

    preview = orchestrator.preview()

    assert (preview.scheduled_tasks, preview.tasks_currently_due) == (2, 1)
    assert queue.stats().waiting == 0


def test_execute_task_enqueues_immediately(
    orchestrator: AgentOrchestrator,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    task = make_task(priority=TaskPriority.HIGH)

    job_id = orchestrator.execute_task(task.task_id)

    job = queue.get_job(job_id)
    assert job is not None
    assert job.priority == 5
    with pytest.raises(NotFoundError):
        orchestrator.execute_task("missing")


def test_status_counts_todays_outcomes(
    orchestrator: AgentOrchestrator,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    queue.enqueue(make_task().task_id, USER_ID, priority=3)
    orchestrator.record_outcome(_result(TaskStatus.COMPLETED))
    orchestrator.record_outcome(_result(TaskStatus.PENDING))
    orchestrator.record_outcome(_result(TaskStatus.FAILED))
    orchestrator.record_outcome(_result(TaskStatus.PAUSED))

    status = orchestrator.get_status()

    assert status.running is False
    assert (status.completed_today, status.failed_today) == (2, 1)
    assert status.queued_tasks == 1
    assert status.queue_available is True
    assert status.uptime_seconds == 0.0


def test_embedded_workers_run_scheduled_tasks(
    settings: Settings,
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
    make_task: MakeTask,
) -> None:
    settings.orchestrator.poll_interval_seconds = 0.05
    settings.orchestrator.worker_poll_interval_seconds = 0.01
    tools = default_registry()

    def _build(worker_id: str, stop_event: threading.Event) -> AgentWorker:
        return build_worker(
            repository=repository,
            queue=queue,
            ledger=ledger,
            tools=tools,
            settings=settings,
            worker_id=worker_id,
            on_outcome=orchestrator.record_outcome,
            stop_event=stop_event,
        )

    orchestrator = AgentOrchestrator(
        settings=settings,
        repository=repository,
        queue=queue,
        ledger=ledger,
        worker_pool=WorkerPool(size=2, build_worker=_build),
    )
    task = _due_task(make_task)

    orchestrator.start()
    try:
        assert orchestrator.running
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            stored = repository.get_task(task.task_id)
            if stored is not None and stored.run_count >= 1 and stored.claimed_by is None:
                break
            time.sleep(0.05)
    finally:
        orchestrator.stop(timeout=5)

    assert not orchestrator.running
    assert orchestrator.wait(timeout=0)
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING
    assert stored.run_count >= 1
    assert orchestrator.get_status().completed_today >= 1
