"""Use-case services for workflow execution, pause/resume, and the cron entrypoint."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from taskpilot.config import Settings
from taskpilot.errors import (
    AuthError,
    NotFoundError,
    QueueUnavailableError,
    SchedulingError,
    ValidationError,
)
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.models import AgentState, TaskCreate, TaskPriority, TaskView
from taskpilot.orchestrator.queue import TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.schedule import compute_next_run, validate_schedule
from taskpilot.orchestrator.scheduler import (
    AgentOrchestrator,
    ScheduledCheckResult,
    ScheduledPreview,
)
from taskpilot.workflow.converter import convert

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecuteWorkflow:
    """Request to run a visual workflow once."""

    steps: Sequence[Mapping[str, Any]]
    name: str
    description: str = ""
    priority: TaskPriority | str | None = None


@dataclass(slots=True)
class CreateScheduledTask:
    """Request to register a recurring workflow."""

    steps: Sequence[Mapping[str, Any]]
    name: str
    schedule: str
    timezone: str = "UTC"
    description: str = ""
    priority: TaskPriority | str | None = None


@dataclass(slots=True)
class WorkflowExecution:
    """Immediate answer of the execute-workflow entrypoint."""

    task_id: str
    estimated_credits: int
    estimated_duration: int
    job_id: str | None
    manual_processing_required: bool = False


@dataclass(slots=True)
class ResumeResult:
    task_id: str
    job_id: str | None
    current_step: int
    total_steps: int
    progress: int
    credits_used: int
    manual_processing_required: bool = False


class TaskService:
    """Coordinates plan conversion, credit checks, task rows, and the queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: TaskRepository,
        queue: TaskQueue,
        ledger: CreditLedger,
        orchestrator: AgentOrchestrator,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.queue = queue
        self.ledger = ledger
        self.orchestrator = orchestrator

    def execute_workflow(self, *, user_id: str, command: ExecuteWorkflow) -> WorkflowExecution:
        """Convert, check credits, persist, and enqueue; nothing is written on rejection."""

        name = command.name.strip()
        if not name:
            raise ValidationError("Workflow name is required.")
        priority = TaskPriority.parse(command.priority)
        task_id = str(uuid4())
        plan = convert(command.steps, name, command.description, task_id=task_id)

        self.ledger.ensure_user(user_id)
        self.ledger.require(user_id, plan.estimated_credits)

        task = self.repository.create_task(
            user_id=user_id,
            payload=TaskCreate(
                title=name,
                description=command.description,
                priority=priority,
                task_id=task_id,
                plan=plan,
            ),
        )
        job_id = self._enqueue(task)
        logger.info(
            "Workflow %r submitted as task %s (%d steps, ~%d credits)",
            name,
            task.task_id,
            plan.total_steps,
            plan.estimated_credits,
        )
        return WorkflowExecution(
            task_id=task.task_id,
            estimated_credits=plan.estimated_credits,
            estimated_duration=plan.estimated_duration,
            job_id=job_id,
            manual_processing_required=job_id is None,
        )

    def create_scheduled_task(self, *, user_id: str, command: CreateScheduledTask) -> TaskView:
        name = command.name.strip()
        if not name:
            raise ValidationError("Workflow name is required.")
        try:
            validate_schedule(command.schedule, command.timezone)
        except SchedulingError as error:
            raise ValidationError(str(error)) from error
        priority = TaskPriority.parse(command.priority)
        task_id = str(uuid4())
        plan = convert(command.steps, name, command.description, task_id=task_id)

        self.ledger.ensure_user(user_id)
        return self.repository.create_task(
            user_id=user_id,
            payload=TaskCreate(
                title=name,
                description=command.description,
                priority=priority,
                task_id=task_id,
                plan=plan,
                schedule=command.schedule,
                timezone=command.timezone,
                schedule_enabled=True,
                next_run_at=compute_next_run(command.schedule, command.timezone),
            ),
        )

    def pause_task(self, *, user_id: str, task_id: str) -> TaskView:
        return self.repository.request_pause(task_id=task_id, user_id=user_id)

    def resume_task(self, *, user_id: str, task_id: str) -> ResumeResult:
        """Re-enqueue a paused task at its own priority; the cursor and costs are kept.

        When the queue is unavailable the task goes back to paused so it can be
        resumed again later.
        """

        task = self.repository.prepare_resume(task_id=task_id, user_id=user_id)
        job_id = self._enqueue(task)
        if job_id is None:
            task = (
                self.repository.revert_resume(
                    task_id=task.task_id,
                    version=task.version,
                    reason="queue unavailable",
                )
                or task
            )
        state = AgentState.from_task(task)
        return ResumeResult(
            task_id=task.task_id,
            job_id=job_id,
            current_step=state.current_step,
            total_steps=state.total_steps,
            progress=state.progress,
            credits_used=state.credits_used,
            manual_processing_required=job_id is None,
        )

    def task_status(self, *, user_id: str, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id, user_id=user_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def check_scheduled_tasks(self, *, authorization: str | None) -> ScheduledCheckResult:
        self._authorize(authorization)
        return self.orchestrator.check_scheduled_tasks()

    def preview_scheduled_tasks(self, *, authorization: str | None) -> ScheduledPreview:
        self._authorize(authorization)
        return self.orchestrator.preview()

    def _enqueue(self, task: TaskView) -> str | None:
        try:
            return self.queue.enqueue(task.task_id, task.user_id, priority=task.priority_weight)
        except QueueUnavailableError as error:
            logger.warning("Task %s stays %s: %s", task.task_id, task.status.value, error)
            return None

    def _authorize(self, authorization: str | None) -> None:
        secret = self.settings.cron_secret
        if not secret:
            raise AuthError("TASKPILOT_CRON_SECRET is not configured.")
        expected = f"Bearer {secret}".encode()
        if not authorization or not hmac.compare_digest(authorization.encode(), expected):
            raise AuthError("Unauthorized")
