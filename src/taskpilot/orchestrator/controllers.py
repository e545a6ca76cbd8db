"""Controllers for taskpilot CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskpilot.config import Settings
from taskpilot.errors import NotFoundError, ValidationError
from taskpilot.orchestrator.credits import CreditLedger
from taskpilot.orchestrator.models import TaskStatus, TaskView
from taskpilot.orchestrator.queue import TaskQueue
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.orchestrator.scheduler import AgentOrchestrator
from taskpilot.orchestrator.services import (
    CreateScheduledTask,
    ExecuteWorkflow,
    TaskService,
)
from taskpilot.orchestrator.worker import WorkerPool, build_worker
from taskpilot.tools import ToolRegistry, default_registry


@dataclass(slots=True)
class CreateWorkflowCommand:
    """CLI input for workflow submission."""

    db_path: Path | None
    user_id: str | None
    steps_file: Path
    name: str
    description: str
    priority: str | None
    schedule: str | None
    timezone: str


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    user_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    user_id: str | None
    task_id: str


@dataclass(slots=True)
class SchedulerCheckCommand:
    db_path: Path | None
    dry_run: bool


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for the long-running scheduler process."""

    db_path: Path | None
    max_seconds: float | None
    embedded_workers: bool


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None
    clean: bool = False


@dataclass(slots=True)
class CreditsCommand:
    db_path: Path | None
    user_id: str | None
    monthly_credits: int | None = None
    usage_limit: int = 20


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    repository: TaskRepository
    queue: TaskQueue
    ledger: CreditLedger
    tools: ToolRegistry
    orchestrator: AgentOrchestrator
    service: TaskService


class TaskPilotCliController:
    """Coordinates workflow submission, scheduling, workers, and credit inspection."""

    def create_workflow(self, command: CreateWorkflowCommand) -> list[str]:
        steps = _load_steps(command.steps_file)
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            runtime.ledger.ensure_user(user_id, display_name=_display_name(settings, user_id))
            if command.schedule:
                task = runtime.service.create_scheduled_task(
                    user_id=user_id,
                    command=CreateScheduledTask(
                        steps=steps,
                        name=command.name,
                        schedule=command.schedule,
                        timezone=command.timezone,
                        description=command.description,
                        priority=command.priority,
                    ),
                )
                next_run = task.next_run_at.isoformat() if task.next_run_at else "-"
                return [
                    f"Scheduled task created: task_id={task.task_id} "
                    f"schedule={task.schedule!r} timezone={task.timezone} next_run_at={next_run}",
                    f"Plan: {task.total_steps} steps, "
                    f"estimated_credits={task.plan.estimated_credits if task.plan else 0}",
                ]

            execution = runtime.service.execute_workflow(
                user_id=user_id,
                command=ExecuteWorkflow(
                    steps=steps,
                    name=command.name,
                    description=command.description,
                    priority=command.priority,
                ),
            )
        lines = [
            f"Task submitted: task_id={execution.task_id} "
            f"estimated_credits={execution.estimated_credits} "
            f"estimated_duration_ms={execution.estimated_duration}",
        ]
        if execution.manual_processing_required:
            lines.append("Queue unavailable; manual processing required.")
        else:
            lines.append(f"Job: {execution.job_id}")
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            tasks = runtime.repository.list_tasks(
                user_id=command.user_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(f"  {_task_summary(task)}")
        return lines

    def task_status(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            task = runtime.service.task_status(user_id=user_id, task_id=command.task_id)
        lines = [
            _task_summary(task),
            f"Credits: {task.total_credits} Tokens: {task.total_tokens} "
            f"Execution time: {task.execution_time_ms} ms",
            f"Runs: {task.run_count} Attempts: {task.attempts}",
        ]
        if task.schedule:
            next_run = task.next_run_at.isoformat() if task.next_run_at else "-"
            last_run = task.last_run_at.isoformat() if task.last_run_at else "-"
            lines.append(
                f"Schedule: {task.schedule} ({task.timezone}) enabled={task.schedule_enabled} "
                f"next_run_at={next_run} last_run_at={last_run}",
            )
        if task.error:
            lines.append(f"Error: {task.error}")
        for entry in task.state.trace:
            lines.append(
                f"  step={entry.step_number} {entry.kind.value} "
                f"action={entry.action or '-'} attempt={entry.attempt} "
                f"credits={entry.credits} error={entry.error or '-'}",
            )
        return lines

    def pause_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            task = runtime.service.pause_task(user_id=user_id, task_id=command.task_id)
        if task.status is TaskStatus.PAUSED:
            return [f"Task paused: {task.task_id} at step {task.current_step}/{task.total_steps}"]
        return [f"Pause requested: {task.task_id} (takes effect at the next step boundary)"]

    def resume_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            result = runtime.service.resume_task(user_id=user_id, task_id=command.task_id)
        lines = [
            f"Task resumed: {result.task_id} step {result.current_step}/{result.total_steps} "
            f"progress={result.progress}% credits_used={result.credits_used}",
        ]
        if result.manual_processing_required:
            lines.append("Queue unavailable; manual processing required.")
        else:
            lines.append(f"Job: {result.job_id}")
        return lines

    def task_events(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            runtime.service.task_status(user_id=user_id, task_id=command.task_id)
            events = runtime.repository.list_events(task_id=command.task_id)
        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def check_scheduled(self, command: SchedulerCheckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            if command.dry_run:
                preview = runtime.orchestrator.preview()
                return [
                    f"Scheduled tasks: {preview.scheduled_tasks} "
                    f"due now: {preview.tasks_currently_due}",
                ]
            result = runtime.orchestrator.check_scheduled_tasks()
        lines = [
            f"Scheduled check: queued={result.tasks_queued} skipped={result.tasks_skipped} "
            f"failed={result.tasks_failed}",
        ]
        for error in result.errors:
            lines.append(f"  error: {error}")
        return lines

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.orchestrator.embedded_workers = command.embedded_workers
        with _runtime(settings) as runtime:
            orchestrator = runtime.orchestrator
            orchestrator.start()
            deadline = (
                time.monotonic() + command.max_seconds if command.max_seconds is not None else None
            )
            try:
                while not orchestrator.wait(timeout=0.5):
                    if deadline is not None and time.monotonic() >= deadline:
                        break
            except KeyboardInterrupt:
                pass
            finally:
                status = orchestrator.get_status()
                orchestrator.stop()
        return [
            f"Scheduler stopped: completed_today={status.completed_today} "
            f"failed_today={status.failed_today} uptime={status.uptime_seconds:.0f}s",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            worker = build_worker(
                repository=runtime.repository,
                queue=runtime.queue,
                ledger=runtime.ledger,
                tools=runtime.tools,
                settings=settings,
                worker_id=settings.orchestrator.worker_id,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} paused={summary.paused} "
            f"rescheduled={summary.rescheduled} duplicates={summary.duplicates} "
            f"idle_polls={summary.idle_polls}",
        ]

    def queue_stats(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            removed = runtime.queue.clean() if command.clean else None
            stats = runtime.queue.stats()
            status = runtime.orchestrator.get_status()
        if not stats.available:
            return ["Queue unavailable; manual processing required."]
        lines = [
            f"Queue: waiting={stats.waiting} delayed={stats.delayed} active={stats.active} "
            f"completed={stats.completed} failed={stats.failed}",
            f"Queued tasks: {status.queued_tasks}",
        ]
        if removed is not None:
            lines.append(f"Removed finished jobs: {removed}")
        return lines

    def show_credits(self, command: CreditsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            runtime.ledger.ensure_user(user_id, display_name=_display_name(settings, user_id))
            user = runtime.ledger.check_and_reset(user_id)
            usage = runtime.repository.list_usage(user_id=user_id, limit=command.usage_limit)
        lines = [
            f"User: {user.user_id} ({user.display_name})",
            f"Credits: used={user.credits_used} monthly={user.monthly_credits} "
            f"remaining={user.remaining} resets_at={user.credits_reset_at.isoformat()}",
            f"Recent usage: {len(usage)}",
        ]
        for record in usage:
            lines.append(
                f"  {record.created_at.isoformat()} {record.type} task={record.task_id or '-'} "
                f"step={record.step_number if record.step_number is not None else '-'} "
                f"credits={record.credits} tokens={record.tokens} model={record.model or '-'}",
            )
        return lines

    def set_budget(self, command: CreditsCommand) -> list[str]:
        if command.monthly_credits is None:
            raise ValidationError("monthly credits are required")
        settings = Settings.from_env(db_path=command.db_path)
        user_id = command.user_id or settings.user_context.user_id
        with _runtime(settings) as runtime:
            runtime.ledger.ensure_user(user_id, display_name=_display_name(settings, user_id))
            user = runtime.repository.set_monthly_credits(
                user_id=user_id,
                monthly_credits=command.monthly_credits,
            )
        return [f"Monthly credits for {user.user_id}: {user.monthly_credits}"]


def _task_summary(task: TaskView) -> str:
    return (
        f"{task.task_id} [{task.status.value}] {task.title!r} priority={task.priority.value} "
        f"step={task.current_step}/{task.total_steps} progress={task.progress}%"
    )


def _display_name(settings: Settings, user_id: str) -> str | None:
    if user_id == settings.user_context.user_id:
        return settings.user_context.user_name
    return None


def _load_steps(path: Path) -> list[dict[str, Any]]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise NotFoundError(f"Steps file not found: {path}") from error
    except json.JSONDecodeError as error:
        raise ValidationError(f"Steps file is not valid JSON: {error}") from error
    if isinstance(raw, dict):
        raw = raw.get("steps")
    if not isinstance(raw, list) or not all(isinstance(node, dict) for node in raw):
        raise ValidationError("Steps file must contain a list of workflow nodes.")
    return raw


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    settings.validate()
    repository = TaskRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        default_monthly_credits=settings.credits.default_monthly_credits,
    )
    repository.init_schema()
    try:
        queue = TaskQueue(repository.engine, settings.queue)
        ledger = CreditLedger(repository)
        tools = default_registry(settings.orchestrator.simulated_tools)
        orchestrator = AgentOrchestrator(
            settings=settings,
            repository=repository,
            queue=queue,
            ledger=ledger,
        )
        orchestrator.worker_pool = WorkerPool(
            size=settings.orchestrator.max_concurrent_agents,
            worker_id_prefix=settings.orchestrator.worker_id,
            build_worker=lambda worker_id, stop_event: build_worker(
                repository=repository,
                queue=queue,
                ledger=ledger,
                tools=tools,
                settings=settings,
                worker_id=worker_id,
                on_outcome=orchestrator.record_outcome,
                stop_event=stop_event,
            ),
        )
        yield _Runtime(
            settings=settings,
            repository=repository,
            queue=queue,
            ledger=ledger,
            tools=tools,
            orchestrator=orchestrator,
            service=TaskService(
                settings=settings,
                repository=repository,
                queue=queue,
                ledger=ledger,
                orchestrator=orchestrator,
            ),
        )
    finally:
        repository.close()
