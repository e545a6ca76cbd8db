from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import allure
import pytest

from taskpilot.config import Settings
from taskpilot.errors import ToolExecutionError
from taskpilot.orchestrator.executor import PlanExecutor
from taskpilot.orchestrator.models import AgentState, TaskStatus, TaskView
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.trace import TraceKind
from taskpilot.storage.common import utc_now
from taskpilot.tools import ControlTool, EchoTool, ToolContext, ToolRegistry, ToolResult

from conftest import USER_ID, echo_step, plan_of

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Plan Executor"),
]

MakeTask = Callable[..., TaskView]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FlakyTool:
    """Fails the first `failures` calls, then echoes."""

    name = "flaky"
    category = "utility"

    def __init__(self, failures: int, *, retryable: bool = True) -> None:
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    def validate(self, params: Mapping[str, Any]) -> str | None:
        return None

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolExecutionError(
                f"flaky failure {self.calls}",
                action=context.action,
                retryable=self.retryable,
            )
        return ToolResult(success=True, data={"calls": self.calls}, credits=2)

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        return 2


class PausingTool:
    """Simulates the user pausing the task while this step runs."""

    name = "pauser"
    category = "utility"

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def validate(self, params: Mapping[str, Any]) -> str | None:
        return None

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        self.repository.request_pause(task_id=context.task_id, user_id=context.user_id)
        return ToolResult(success=True, data={"paused": True}, credits=params.get("credits", 0))

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        return 0


class SlowTool:
    """Advances the fake clock on every call."""

    name = "slow"
    category = "utility"

    def __init__(self, clock: FakeClock, seconds: float) -> None:
        self.clock = clock
        self.seconds = seconds

    def validate(self, params: Mapping[str, Any]) -> str | None:
        return None

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        self.clock.now += self.seconds
        return ToolResult(success=True, data={}, credits=1)

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        return 1


def _executor(
    repository: TaskRepository,
    settings: Settings,
    *tools: Any,
    clock: Callable[[], float] | None = None,
) -> PlanExecutor:
    return PlanExecutor(
        repository=repository,
        tools=ToolRegistry([EchoTool(), ControlTool(), *tools]),
        settings=settings,
        sleep=lambda _: None,
        clock=clock or FakeClock(),
    )


def _claim(repository: TaskRepository, task: TaskView, worker_id: str = "w1") -> TaskView:
    claimed = repository.claim_task(task_id=task.task_id, worker_id=worker_id)
    assert claimed is not None
    return claimed


def test_plan_runs_to_completion(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    plan = plan_of(
        echo_step(1, params={"url": "https://example.com", "credits": 3, "tokens": 120}),
        echo_step(2, params={"credits": 2}, metadata={"outputName": "summary"}),
    )
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings).execute(task, worker_id="w1")

    assert result.status is TaskStatus.COMPLETED
    assert (result.current_step, result.total_steps) == (2, 2)
    assert result.credits_used == 5
    assert result.tokens_used == 120
    assert result.result is not None
    assert "summary" in result.result["outputs"]
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.COMPLETED
    assert stored.claimed_by is None
    assert stored.progress == 100
    assert stored.state.context["step1"]["params"] == {"url": "https://example.com"}
    assert [entry.kind for entry in stored.state.trace] == [TraceKind.STEP_COMPLETED] * 2
    user = repository.get_user(USER_ID)
    assert user is not None
    assert user.credits_used == 5


def test_retryable_step_gets_max_retries_plus_one_attempts(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    flaky = FlakyTool(failures=10)
    plan = plan_of(
        echo_step(1, action="flaky.run", retryable=True, metadata={"maxRetries": 2}),
        echo_step(2),
    )
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings, flaky).execute(task, worker_id="w1")

    assert flaky.calls == 3
    assert result.status is TaskStatus.FAILED
    assert result.error == "Step 1 (flaky.run) failed: flaky failure 3"
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.FAILED
    assert stored.error == result.error
    assert [entry.kind for entry in stored.state.trace] == [
        TraceKind.STEP_RETRY,
        TraceKind.STEP_RETRY,
        TraceKind.STEP_FAILED,
    ]
    assert stored.state.trace[-1].attempt == 3


def test_retry_recovers_from_transient_failure(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    flaky = FlakyTool(failures=1)
    plan = plan_of(echo_step(1, action="flaky.run", retryable=True))
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings, flaky).execute(task, worker_id="w1")

    assert result.status is TaskStatus.COMPLETED
    assert result.credits_used == 2
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.state.trace[-1].attempt == 2


def test_non_retryable_step_fails_on_first_error(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    flaky = FlakyTool(failures=5)
    plan = plan_of(echo_step(1, action="flaky.run", metadata={"maxRetries": 4}))
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings, flaky).execute(task, worker_id="w1")

    assert flaky.calls == 1
    assert result.status is TaskStatus.FAILED


def test_skip_mode_continues_after_failure(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    plan = plan_of(
        echo_step(1),
        echo_step(2, action="flaky.run", metadata={"errorHandling": "skip"}),
        echo_step(3),
    )
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings, FlakyTool(failures=1)).execute(task, worker_id="w1")

    assert result.status is TaskStatus.COMPLETED
    assert result.current_step == 3
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert [entry.kind for entry in stored.state.trace] == [
        TraceKind.STEP_COMPLETED,
        TraceKind.STEP_SKIPPED,
        TraceKind.STEP_COMPLETED,
    ]


def test_conditional_false_skips_next_step(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    plan = plan_of(
        echo_step(1, params={"price": 150}),
        echo_step(
            2,
            action="control.conditional",
            params={
                "variable": "step1.params.price",
                "operator": "less_than",
                "value": 100,
                "skipIfFalse": True,
            },
        ),
        echo_step(3, params={"buy": True}),
        echo_step(4),
    )
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings).execute(task, worker_id="w1")

    assert result.status is TaskStatus.COMPLETED
    stored = repository.get_task(task.task_id)
    assert stored is not None
    kinds = {entry.step_number: entry.kind for entry in stored.state.trace}
    assert kinds == {
        1: TraceKind.STEP_COMPLETED,
        2: TraceKind.STEP_COMPLETED,
        3: TraceKind.STEP_SKIPPED,
        4: TraceKind.STEP_COMPLETED,
    }
    assert "step3" not in stored.state.context


def test_pause_then_resume_keeps_progress_and_charges_once(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    credits = [10, 10, 11, 11, 1, 1, 1, 1, 1, 1]
    steps = [echo_step(n, params={"credits": c}) for n, c in enumerate(credits, start=1)]
    steps[3] = echo_step(4, action="pauser.run", params={"credits": 11})
    task = _claim(repository, make_task(plan_of(*steps)))
    executor = _executor(repository, settings, PausingTool(repository))

    paused = executor.execute(task, worker_id="w1")

    assert paused.status is TaskStatus.PAUSED
    assert (paused.current_step, paused.credits_used) == (4, 42)
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PAUSED
    assert stored.progress == 40
    assert stored.total_credits == 42
    assert stored.state.trace[-1].kind is TraceKind.TASK_PAUSED

    resumed = repository.prepare_resume(task_id=task.task_id, user_id=USER_ID)
    state = AgentState.from_task(resumed)
    assert (state.progress, state.credits_used, state.current_step) == (40, 42, 4)

    finished = executor.execute(_claim(repository, resumed, "w2"), worker_id="w2")

    assert finished.status is TaskStatus.COMPLETED
    assert finished.credits_used == sum(credits)
    usage = repository.list_usage(user_id=USER_ID, task_id=task.task_id)
    assert [record.step_number for record in usage] == list(range(1, 11))
    user = repository.get_user(USER_ID)
    assert user is not None
    assert user.credits_used == sum(credits)


def test_wall_clock_timeout_fails_task(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    clock = FakeClock()
    plan = plan_of(*(echo_step(n, action="slow.run") for n in range(1, 5)))
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings, SlowTool(clock, 200.0), clock=clock).execute(
        task,
        worker_id="w1",
    )

    assert result.status is TaskStatus.FAILED
    assert result.current_step == 2
    assert result.error == "Task exceeded timeout of 300s"


def test_per_step_cost_limit_fails_before_running(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    settings.credits.max_credits_per_step = 50
    plan = plan_of(echo_step(1), echo_step(2, estimated_credits=75))
    task = _claim(repository, make_task(plan))

    result = _executor(repository, settings).execute(task, worker_id="w1")

    assert result.status is TaskStatus.FAILED
    assert result.current_step == 1
    assert result.error == "Step would use 75 credits, exceeding per-step limit of 50"


def test_recurring_task_returns_to_pending(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    task = _claim(
        repository,
        make_task(schedule="0 9 * * *", timezone="Europe/London", next_run_at=utc_now()),
    )

    result = _executor(repository, settings).execute(task, worker_id="w1")

    assert result.status is TaskStatus.PENDING
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.PENDING
    assert stored.next_run_at is not None
    assert stored.next_run_at > utc_now()
    assert stored.last_run_at is not None

    rerun = _claim(repository, stored, "w2")
    assert rerun.run_count == 2
    assert rerun.current_step == 0


def test_executor_requires_claim(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    task = make_task()

    with pytest.raises(ValueError, match="not claimed"):
        _executor(repository, settings).execute(task, worker_id="w1")


def test_lost_claim_stops_without_writes(
    repository: TaskRepository,
    settings: Settings,
    make_task: MakeTask,
) -> None:
    task = _claim(repository, make_task())
    repository.release_claim(task_id=task.task_id, worker_id="w1", reason="test")

    result = _executor(repository, settings).execute(task, worker_id="w1")

    assert result.status is TaskStatus.EXECUTING
    assert result.error == "claim lost"
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.current_step == 0
