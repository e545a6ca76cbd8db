"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from taskpilot.config import Settings
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.models import (
    ExecutionPlan,
    ExecutionStep,
    TaskCreate,
    TaskPriority,
    TaskView,
)
from taskpilot.orchestrator.queue import TaskQueue
from taskpilot.orchestrator.repository import TaskRepository

USER_ID = "user-1"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with zero backoff so retry paths never sleep."""

    settings = Settings(db_path=tmp_path / "taskpilot.db")
    settings.orchestrator.step_retry_base_seconds = 0.0
    settings.orchestrator.step_retry_max_seconds = 0.0
    settings.orchestrator.worker_poll_interval_seconds = 0.0
    settings.queue.backoff_base_seconds = 0.0
    return settings


@pytest.fixture()
def repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        default_monthly_credits=settings.credits.default_monthly_credits,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def queue(repository: TaskRepository, settings: Settings) -> TaskQueue:
    return TaskQueue(repository.engine, settings.queue)


@pytest.fixture()
def ledger(repository: TaskRepository) -> CreditLedger:
    ledger = CreditLedger(repository)
    ledger.ensure_user(USER_ID, display_name="Test User")
    return ledger


def echo_step(  # noqa: PLR0913
    step_number: int,
    *,
    action: str = "echo.run",
    params: dict[str, Any] | None = None,
    estimated_credits: int = 1,
    retryable: bool = False,
    metadata: dict[str, Any] | None = None,
) -> ExecutionStep:
    return ExecutionStep(
        id=f"step_{step_number}",
        step_number=step_number,
        action=action,
        tool=action.split(".", 1)[0],
        params=params if params is not None else {"n": step_number},
        dependencies=(f"step_{step_number - 1}",) if step_number > 1 else (),
        retryable=retryable,
        estimated_credits=estimated_credits,
        estimated_duration=100,
        metadata=metadata or {},
    )


def plan_of(*steps: ExecutionStep) -> ExecutionPlan:
    return ExecutionPlan(
        steps=steps,
        estimated_credits=sum(step.estimated_credits for step in steps),
        estimated_duration=sum(step.estimated_duration for step in steps),
    )


def echo_plan(total_steps: int) -> ExecutionPlan:
    return plan_of(*(echo_step(number) for number in range(1, total_steps + 1)))


@pytest.fixture()
def make_task(repository: TaskRepository, ledger: CreditLedger) -> Callable[..., TaskView]:
    """Create a task for USER_ID with the given plan (default: three echo steps)."""

    def _make(  # noqa: PLR0913
        plan: ExecutionPlan | None = None,
        *,
        title: str = "test task",
        priority: TaskPriority = TaskPriority.MEDIUM,
        schedule: str | None = None,
        timezone: str = "UTC",
        next_run_at: datetime | None = None,
        user_id: str = USER_ID,
    ) -> TaskView:
        return repository.create_task(
            user_id=user_id,
            payload=TaskCreate(
                title=title,
                priority=priority,
                plan=plan if plan is not None else echo_plan(3),
                schedule=schedule,
                timezone=timezone,
                schedule_enabled=schedule is not None,
                next_run_at=next_run_at,
            ),
        )

    return _make
