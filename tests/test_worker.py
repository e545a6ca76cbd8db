from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from taskpilot.config import Settings
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.executor import PlanExecutor
from taskpilot.orchestrator.models import ExecutionResult, TaskStatus, TaskView
from taskpilot.orchestrator.queue import JobStatus, TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.worker import AgentWorker, WorkerPool, build_worker
from taskpilot.tools import default_registry

from conftest import USER_ID, echo_step, plan_of

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Queue Consumer"),
]

MakeTask = Callable[..., TaskView]


class ExplodingExecutor:
    def execute(self, task: TaskView, **_: object) -> ExecutionResult:
        raise RuntimeError("executor crashed")


@pytest.fixture()
def outcomes() -> list[ExecutionResult]:
    return []


@pytest.fixture()
def worker(
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
    settings: Settings,
    outcomes: list[ExecutionResult],
) -> AgentWorker:
    return build_worker(
        repository=repository,
        queue=queue,
        ledger=ledger,
        tools=default_registry(("browser",)),
        settings=settings,
        worker_id="w1",
        on_outcome=outcomes.append,
    )


def _enqueue(queue: TaskQueue, task: TaskView, user_id: str = USER_ID) -> str:
    return queue.enqueue(task.task_id, user_id, priority=task.priority_weight)


def test_worker_runs_job_to_completion(
    worker: AgentWorker,
    queue: TaskQueue,
    repository: TaskRepository,
    make_task: MakeTask,
    outcomes: list[ExecutionResult],
) -> None:
    plan = plan_of(
        echo_step(1, action="browser.navigate", params={"url": "https://example.com"}),
        echo_step(2),
    )
    task = make_task(plan)
    job_id = _enqueue(queue, task)

    summary = worker.run_once()

    assert (summary.processed, summary.completed, summary.failed) == (1, 1, 0)
    assert worker.current_task_id is None
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.COMPLETED
    assert [result.task_id for result in outcomes] == [task.task_id]


def test_duplicate_delivery_is_acknowledged_without_rerun(
    worker: AgentWorker,
    queue: TaskQueue,
    repository: TaskRepository,
    make_task: MakeTask,
) -> None:
    task = make_task()
    _enqueue(queue, task)
    duplicate_job = _enqueue(queue, task)

    first = worker.run_once()
    second = worker.run_once()

    assert first.completed == 1
    assert (second.processed, second.duplicates, second.completed) == (1, 1, 0)
    job = queue.get_job(duplicate_job)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.run_count == 1
    assert len(repository.list_usage(user_id=USER_ID, task_id=task.task_id)) == 3


def test_redelivered_job_does_not_rerun_finished_recurring_task(
    worker: AgentWorker,
    queue: TaskQueue,
    repository: TaskRepository,
    make_task: MakeTask,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = make_task(schedule="0 9 * * *")
    job_id = _enqueue(queue, task)

    # the worker finishes the run but dies before acknowledging the job
    with monkeypatch.context() as patched:
        patched.setattr(queue, "complete", lambda **_: True)
        first = worker.run_once()
    assert first.rescheduled == 1
    assert queue.recover_stale(stale_after=timedelta(seconds=-1)) == 1

    second = worker.run_once()

    assert (second.processed, second.duplicates, second.rescheduled) == (1, 1, 0)
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING
    assert stored.run_count == 1
    assert len(repository.list_usage(user_id=USER_ID, task_id=task.task_id)) == 3
    assert repository.get_user(USER_ID).credits_used == 3  # type: ignore[union-attr]

    # a job enqueued for the next run still starts it
    _enqueue(queue, stored)
    assert worker.run_once().rescheduled == 1
    rerun = repository.get_task(task.task_id)
    assert rerun is not None
    assert rerun.run_count == 2


def test_insufficient_credits_fails_task_before_any_step(
    worker: AgentWorker,
    queue: TaskQueue,
    repository: TaskRepository,
    make_task: MakeTask,
) -> None:
    repository.set_monthly_credits(user_id=USER_ID, monthly_credits=1)
    task = make_task()
    _enqueue(queue, task)

    summary = worker.run_once()

    assert summary.failed == 1
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.FAILED
    assert stored.error == "Insufficient credits. Required: 3, Available: 1"
    assert stored.current_step == 0
    assert repository.list_usage(user_id=USER_ID) == []


def test_job_for_another_users_task_is_rejected(
    worker: AgentWorker,
    queue: TaskQueue,
    repository: TaskRepository,
    make_task: MakeTask,
) -> None:
    task = make_task()
    job_id = _enqueue(queue, task, user_id="intruder")

    summary = worker.run_once()

    assert summary.failed == 1
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING


def test_unexpected_error_releases_claim_and_retries_job(
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    worker = AgentWorker(
        repository=repository,
        queue=queue,
        executor=ExplodingExecutor(),  # type: ignore[arg-type]
        ledger=ledger,
        settings=settings,
        worker_id="w1",
    )
    task = make_task()
    job_id = _enqueue(queue, task)

    with pytest.raises(RuntimeError, match="executor crashed"):
        worker.run_once()

    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.claimed_by is None
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.DELAYED
    assert job.last_error == "RuntimeError: executor crashed"
    assert repository.list_events(task_id=task.task_id)[-1].event_type == "claim_released"


def test_run_loop_drains_queue(
    worker: AgentWorker,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    for index in range(3):
        _enqueue(queue, make_task(title=f"task {index}"))

    summary = worker.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.completed, summary.idle_polls) == (3, 3, 1)


def test_run_loop_respects_max_jobs(
    worker: AgentWorker,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    for index in range(3):
        _enqueue(queue, make_task(title=f"task {index}"))

    summary = worker.run_loop(max_jobs=2)

    assert summary.processed == 2
    assert queue.stats().waiting == 1


def test_stopped_worker_takes_no_jobs(
    worker: AgentWorker,
    queue: TaskQueue,
    make_task: MakeTask,
) -> None:
    _enqueue(queue, make_task())
    worker.request_stop(signal_name="SIGTERM")

    summary = worker.run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)
    assert queue.stats().waiting == 1


def _statuses(repository: TaskRepository, tasks: list[TaskView]) -> set[TaskStatus]:
    views = [repository.get_task(task.task_id) for task in tasks]
    return {view.status for view in views if view is not None}


def test_pool_processes_jobs_concurrently(
    repository: TaskRepository,
    queue: TaskQueue,
    ledger: CreditLedger,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    settings.orchestrator.worker_poll_interval_seconds = 0.01
    tools = default_registry()

    def _build(worker_id: str, stop_event: threading.Event) -> AgentWorker:
        return AgentWorker(
            repository=repository,
            queue=queue,
            executor=PlanExecutor(repository=repository, tools=tools, settings=settings),
            ledger=ledger,
            settings=settings,
            worker_id=worker_id,
            stop_event=stop_event,
        )

    tasks = [make_task(title=f"task {index}") for index in range(4)]
    for task in tasks:
        _enqueue(queue, task)
    pool = WorkerPool(size=2, build_worker=_build, error_backoff_seconds=0.01)

    pool.start()
    pool.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            statuses = _statuses(repository, tasks)
            if statuses == {TaskStatus.COMPLETED}:
                break
            time.sleep(0.05)
    finally:
        pool.stop(timeout=5)

    assert statuses == {TaskStatus.COMPLETED}
    assert not pool.running
    assert queue.stats().completed == 4


def test_pool_requires_positive_size() -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        WorkerPool(size=0, build_worker=lambda *_: None)  # type: ignore[arg-type,return-value]
