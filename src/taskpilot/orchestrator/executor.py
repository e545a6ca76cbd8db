"""Step-wise plan executor with durable checkpoints, retries, and cooperative pause."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from taskpilot.config import Settings
from taskpilot.errors import ClaimConflictError, TaskTimeoutError, ToolExecutionError
from taskpilot.orchestrator.credits import check_step_cost
from taskpilot.orchestrator.models import (
    AgentState,
    ErrorHandlingMode,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStep,
    StepCharge,
    TaskStatus,
    TaskView,
)
from taskpilot.orchestrator.pricing import calculate_credits
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.schedule import compute_next_run
from taskpilot.orchestrator.trace import ExecutionState, TraceEntry, TraceKind
from taskpilot.storage.common import utc_now
from taskpilot.tools import ToolContext, ToolRegistry, ToolResult, tool_timeout

logger = logging.getLogger(__name__)

CONDITIONAL_ACTION = "control.conditional"


@dataclass(slots=True)
class _RunContext:
    task: TaskView
    plan: ExecutionPlan
    worker_id: str
    state: AgentState
    version: int
    deadline: float


class _StepFailed(Exception):
    def __init__(self, error: ToolExecutionError, attempts: int) -> None:
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


class PlanExecutor:
    """Run a claimed task's plan from its cursor to completion, failure, or pause.

    The caller must own the task (``claimed_by == worker_id``). Every step
    outcome is checkpointed before the next step starts, so a redelivered job
    resumes at the first step without a recorded outcome and never charges a
    step twice.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        tools: ToolRegistry,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.tools = tools
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    def execute(
        self,
        task: TaskView,
        *,
        worker_id: str,
        pause_requested: Callable[[], bool] | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> ExecutionResult:
        if task.plan is None:
            raise ValueError(f"Task {task.task_id} has no execution plan.")
        if task.claimed_by != worker_id:
            raise ValueError(f"Task {task.task_id} is not claimed by {worker_id}.")

        run = _RunContext(
            task=task,
            plan=task.plan,
            worker_id=worker_id,
            state=AgentState.from_task(task),
            version=task.version,
            deadline=self._clock() + self.settings.orchestrator.default_timeout_seconds,
        )
        should_pause = pause_requested or (
            lambda: self.repository.is_pause_requested(task_id=task.task_id)
        )
        logger.info(
            "Executing task %s from step %d/%d (run %d, worker %s)",
            task.task_id,
            run.state.current_step,
            run.plan.total_steps,
            task.run_count,
            worker_id,
        )

        try:
            return self._drive(run, should_pause=should_pause, heartbeat=heartbeat)
        except ClaimConflictError:
            logger.warning(
                "Task %s changed under worker %s; stopping without further writes",
                task.task_id,
                worker_id,
            )
            return self._result(run, status=TaskStatus.EXECUTING, error="claim lost")

    def _drive(
        self,
        run: _RunContext,
        *,
        should_pause: Callable[[], bool],
        heartbeat: Callable[[], None] | None,
    ) -> ExecutionResult:
        task_id = run.task.task_id
        try:
            for step in run.plan.steps[run.state.current_step :]:
                if should_pause():
                    return self._pause(run)
                self._check_deadline(run)
                if heartbeat is not None:
                    heartbeat()
                cost = check_step_cost(
                    estimated_credits=step.estimated_credits,
                    task_credits=run.state.credits_used,
                    settings=self.settings.credits,
                )
                if not cost.allowed:
                    return self._fail(run, step=step, error=cost.reason or "Cost limit exceeded")
                if self._skipped_by_condition(run, step):
                    self._record_skip(run, step=step, reason="condition not met")
                    continue
                try:
                    result, attempts, duration_ms = self._run_with_retries(run, step, heartbeat)
                except _StepFailed as failure:
                    if step.error_handling is ErrorHandlingMode.SKIP:
                        logger.warning(
                            "Step %d of task %s failed; skipping: %s",
                            step.step_number,
                            task_id,
                            failure.error,
                        )
                        self._record_skip(run, step=step, reason=str(failure.error))
                        continue
                    return self._fail(
                        run,
                        step=step,
                        error=f"Step {step.step_number} ({step.action}) failed: {failure.error}",
                        attempt=failure.attempts,
                    )
                self._record_success(
                    run,
                    step=step,
                    result=result,
                    attempt=attempts,
                    duration_ms=duration_ms,
                )
        except TaskTimeoutError as error:
            logger.warning("Task %s timed out: %s", task_id, error)
            next_step = min(run.state.current_step + 1, run.plan.total_steps)
            return self._fail(run, step=run.plan.step(next_step), error=str(error))
        return self._complete(run)

    def _run_with_retries(
        self,
        run: _RunContext,
        step: ExecutionStep,
        heartbeat: Callable[[], None] | None,
    ) -> tuple[ToolResult, int, int]:
        max_retries = step.max_retries
        if max_retries is None:
            max_retries = self.settings.orchestrator.max_retries
        retry_budget = max_retries if step.retryable else 0
        params = {**run.state.context, **step.params}
        attempt = 0
        while True:
            attempt += 1
            self._check_deadline(run)
            started = self._clock()
            try:
                result = self.tools.invoke(
                    step.action,
                    params,
                    ToolContext(
                        user_id=run.task.user_id,
                        task_id=run.task.task_id,
                        step_number=step.step_number,
                        action=step.action,
                        timeout_seconds=tool_timeout(step.action),
                        variables=run.state.context,
                    ),
                )
                duration_ms = result.duration_ms or int((self._clock() - started) * 1000)
                return result, attempt, duration_ms
            except ToolExecutionError as error:
                if not error.retryable or attempt > retry_budget:
                    raise _StepFailed(error, attempt) from error
                delay = min(
                    self.settings.orchestrator.step_retry_base_seconds * (2 ** (attempt - 1)),
                    self.settings.orchestrator.step_retry_max_seconds,
                )
                run.state.trace.append(
                    TraceEntry(
                        kind=TraceKind.STEP_RETRY,
                        step_number=step.step_number,
                        step_id=step.id,
                        action=step.action,
                        tool=step.tool,
                        input=step.params,
                        error=str(error),
                        attempt=attempt,
                        duration_ms=int((self._clock() - started) * 1000),
                    ),
                )
                logger.warning(
                    "Step %d of task %s failed (attempt %d/%d); retrying in %.1fs: %s",
                    step.step_number,
                    run.task.task_id,
                    attempt,
                    retry_budget + 1,
                    delay,
                    error,
                )
                if self._clock() + delay > run.deadline:
                    raise TaskTimeoutError(
                        timeout_seconds=self.settings.orchestrator.default_timeout_seconds,
                    ) from error
                self._sleep(delay)
                if heartbeat is not None:
                    heartbeat()

    def _record_success(
        self,
        run: _RunContext,
        *,
        step: ExecutionStep,
        result: ToolResult,
        attempt: int,
        duration_ms: int,
    ) -> None:
        credits = result.credits
        if credits is None:
            credits = calculate_credits(result.model, result.tokens)
        state = run.state
        state.context[f"step{step.step_number}"] = result.data
        if step.output_name:
            state.context[step.output_name] = result.data
        state.trace.append(
            TraceEntry(
                kind=TraceKind.STEP_COMPLETED,
                step_number=step.step_number,
                step_id=step.id,
                action=step.action,
                tool=step.tool,
                input=step.params,
                output=result.data,
                attempt=attempt,
                duration_ms=duration_ms,
                credits=credits,
                tokens=result.tokens,
            ),
        )
        state.current_step = step.step_number
        state.credits_used += credits
        state.tokens_used += result.tokens
        state.execution_time_ms += duration_ms
        run.version = self.repository.checkpoint_step(
            task_id=run.task.task_id,
            worker_id=run.worker_id,
            version=run.version,
            run_no=run.task.run_count,
            current_step=state.current_step,
            state=ExecutionState(context=state.context, trace=state.trace),
            charge=StepCharge(
                step_number=step.step_number,
                action=step.action,
                credits=credits,
                tokens=result.tokens,
                model=result.model,
                duration_ms=duration_ms,
            ),
        )
        logger.info(
            "Task %s step %d/%d completed (%d credits, %d tokens)",
            run.task.task_id,
            step.step_number,
            run.plan.total_steps,
            credits,
            result.tokens,
        )

    def _record_skip(self, run: _RunContext, *, step: ExecutionStep, reason: str) -> None:
        state = run.state
        state.trace.append(
            TraceEntry(
                kind=TraceKind.STEP_SKIPPED,
                step_number=step.step_number,
                step_id=step.id,
                action=step.action,
                tool=step.tool,
                input=step.params,
                error=reason,
            ),
        )
        state.current_step = step.step_number
        run.version = self.repository.checkpoint_step(
            task_id=run.task.task_id,
            worker_id=run.worker_id,
            version=run.version,
            run_no=run.task.run_count,
            current_step=state.current_step,
            state=ExecutionState(context=state.context, trace=state.trace),
        )

    def _skipped_by_condition(self, run: _RunContext, step: ExecutionStep) -> bool:
        if step.step_number == 1:
            return False
        previous = run.plan.step(step.step_number - 1)
        if previous.action != CONDITIONAL_ACTION:
            return False
        outcome = run.state.context.get(f"step{previous.step_number}")
        return isinstance(outcome, dict) and bool(outcome.get("skipNext"))

    def _pause(self, run: _RunContext) -> ExecutionResult:
        state = run.state
        state.trace.append(
            TraceEntry(kind=TraceKind.TASK_PAUSED, step_number=state.current_step),
        )
        run.version = self.repository.finish_task(
            task_id=run.task.task_id,
            worker_id=run.worker_id,
            version=run.version,
            status=TaskStatus.PAUSED,
            state=ExecutionState(context=state.context, trace=state.trace),
        )
        logger.info(
            "Task %s paused at step %d/%d",
            run.task.task_id,
            state.current_step,
            run.plan.total_steps,
        )
        return self._result(run, status=TaskStatus.PAUSED)

    def _fail(
        self,
        run: _RunContext,
        *,
        step: ExecutionStep,
        error: str,
        attempt: int = 1,
    ) -> ExecutionResult:
        state = run.state
        state.trace.append(
            TraceEntry(
                kind=TraceKind.STEP_FAILED,
                step_number=step.step_number,
                step_id=step.id,
                action=step.action,
                tool=step.tool,
                input=step.params,
                error=error,
                attempt=attempt,
            ),
        )
        run.version = self.repository.finish_task(
            task_id=run.task.task_id,
            worker_id=run.worker_id,
            version=run.version,
            status=TaskStatus.FAILED,
            state=ExecutionState(context=state.context, trace=state.trace),
            error=error,
        )
        logger.warning("Task %s failed at step %s: %s", run.task.task_id, step.id, error)
        return self._result(run, status=TaskStatus.FAILED, error=error)

    def _complete(self, run: _RunContext) -> ExecutionResult:
        state = run.state
        outputs = {
            step.output_name: state.context[step.output_name]
            for step in run.plan.steps
            if step.output_name and step.output_name in state.context
        }
        result = {"outputs": outputs, "context": state.context}
        task = run.task
        status = TaskStatus.COMPLETED
        next_run_at = None
        if task.is_recurring:
            status = TaskStatus.PENDING
            now = utc_now()
            next_run_at = task.next_run_at
            if next_run_at is None or next_run_at <= now:
                next_run_at = compute_next_run(task.schedule, task.timezone, now)
        run.version = self.repository.finish_task(
            task_id=task.task_id,
            worker_id=run.worker_id,
            version=run.version,
            status=status,
            state=ExecutionState(context=state.context, trace=state.trace),
            result=result,
            next_run_at=next_run_at,
        )
        logger.info(
            "Task %s completed %d steps (%d credits total)",
            task.task_id,
            run.plan.total_steps,
            state.credits_used,
        )
        return self._result(run, status=status, result=result)

    def _check_deadline(self, run: _RunContext) -> None:
        if self._clock() > run.deadline:
            raise TaskTimeoutError(
                timeout_seconds=self.settings.orchestrator.default_timeout_seconds,
            )

    def _result(
        self,
        run: _RunContext,
        *,
        status: TaskStatus,
        result: dict[str, object] | None = None,
        error: str | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            task_id=run.task.task_id,
            status=status,
            credits_used=run.state.credits_used,
            tokens_used=run.state.tokens_used,
            current_step=run.state.current_step,
            total_steps=run.plan.total_steps,
            result=result,
            error=error,
        )
