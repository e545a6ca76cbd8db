"""CLI entrypoint for taskpilot."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskpilot import __version__
from taskpilot.errors import TaskPilotError
from taskpilot.orchestrator.controllers import (
    CreateWorkflowCommand,
    CreditsCommand,
    ListTasksCommand,
    QueueCommand,
    SchedulerCheckCommand,
    SchedulerRunCommand,
    TaskCommand,
    TaskPilotCliController,
    WorkerCommand,
)
from taskpilot.orchestrator.models import TaskPriority, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskPilotCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
USER_OPTION = click.option(
    "--user-id",
    default=None,
    help="Acting user; defaults to TASKPILOT_USER_ID.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskpilot")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def taskpilot(log_level: str) -> None:
    """Scheduled agent task orchestrator."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskpilot.group()
def tasks() -> None:
    """Workflow submission and task control."""


@tasks.command("create-workflow")
@DB_PATH_OPTION
@USER_OPTION
@click.option(
    "--steps-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with workflow nodes (a list, or an object with a `steps` list).",
)
@click.option("--name", required=True, help="Workflow name.")
@click.option("--description", default="", help="Workflow description.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in TaskPriority], case_sensitive=False),
    default=None,
    help="Task priority (default medium).",
)
@click.option("--schedule", default=None, help="Cron expression; makes the task recurring.")
@click.option(
    "--timezone",
    default="UTC",
    show_default=True,
    help="IANA timezone the cron expression is evaluated in.",
)
def tasks_create_workflow(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str | None,
    steps_file: Path,
    name: str,
    description: str,
    priority: str | None,
    schedule: str | None,
    timezone: str,
) -> None:
    """Convert a workflow into a plan and submit it (once, or on a schedule)."""

    _run(
        lambda: CONTROLLER.create_workflow(
            CreateWorkflowCommand(
                db_path=db_path,
                user_id=user_id,
                steps_file=steps_file,
                name=name,
                description=description,
                priority=priority,
                schedule=schedule,
                timezone=timezone,
            ),
        ),
    )


@tasks.command("list")
@DB_PATH_OPTION
@USER_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, user_id: str | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                user_id=user_id,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@tasks.command("status")
@DB_PATH_OPTION
@USER_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_status(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Show progress, costs, and the execution trace of one task."""

    _run(lambda: CONTROLLER.task_status(_task_command(db_path, user_id, task_id)))


@tasks.command("pause")
@DB_PATH_OPTION
@USER_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_pause(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Pause a task at its next step boundary."""

    _run(lambda: CONTROLLER.pause_task(_task_command(db_path, user_id, task_id)))


@tasks.command("resume")
@DB_PATH_OPTION
@USER_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_resume(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Re-enqueue a paused task from its saved step."""

    _run(lambda: CONTROLLER.resume_task(_task_command(db_path, user_id, task_id)))


@tasks.command("events")
@DB_PATH_OPTION
@USER_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_events(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Show the audit trail of one task."""

    _run(lambda: CONTROLLER.task_events(_task_command(db_path, user_id, task_id)))


@taskpilot.group()
def scheduler() -> None:
    """Recurring task scheduling."""


@scheduler.command("check")
@DB_PATH_OPTION
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Only count scheduled and due tasks.",
)
def scheduler_check(db_path: Path | None, dry_run: bool) -> None:
    """Run one scheduler tick: enqueue every due task."""

    _run(
        lambda: CONTROLLER.check_scheduled(
            SchedulerCheckCommand(db_path=db_path, dry_run=dry_run),
        ),
    )


@scheduler.command("run")
@DB_PATH_OPTION
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds (default: until interrupted).",
)
@click.option(
    "--embedded-workers/--no-embedded-workers",
    default=True,
    show_default=True,
    help="Run the worker pool in this process.",
)
def scheduler_run(db_path: Path | None, max_seconds: float | None, embedded_workers: bool) -> None:
    """Run the scheduler loop (and worker pool) until interrupted."""

    _run(
        lambda: CONTROLLER.run_scheduler(
            SchedulerRunCommand(
                db_path=db_path,
                max_seconds=max_seconds,
                embedded_workers=embedded_workers,
            ),
        ),
    )


@taskpilot.group()
def worker() -> None:
    """Queue workers."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one dequeue-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run a task worker."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@taskpilot.group()
def queue() -> None:
    """Job queue inspection."""


@queue.command("stats")
@DB_PATH_OPTION
@click.option(
    "--clean",
    is_flag=True,
    default=False,
    help="Drop finished jobs past their retention window first.",
)
def queue_stats(db_path: Path | None, clean: bool) -> None:
    """Show job counts per state."""

    _run(lambda: CONTROLLER.queue_stats(QueueCommand(db_path=db_path, clean=clean)))


@taskpilot.group()
def credits() -> None:
    """Credit budgets and usage."""


@credits.command("show")
@DB_PATH_OPTION
@USER_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=0, max=500),
    default=20,
    show_default=True,
    help="How many usage records to print.",
)
def credits_show(db_path: Path | None, user_id: str | None, limit: int) -> None:
    """Show the monthly budget and recent usage records."""

    _run(
        lambda: CONTROLLER.show_credits(
            CreditsCommand(db_path=db_path, user_id=user_id, usage_limit=limit),
        ),
    )


@credits.command("set-budget")
@DB_PATH_OPTION
@USER_OPTION
@click.argument("monthly_credits", type=click.IntRange(min=0))
def credits_set_budget(db_path: Path | None, user_id: str | None, monthly_credits: int) -> None:
    """Set the monthly credit budget of a user."""

    _run(
        lambda: CONTROLLER.set_budget(
            CreditsCommand(db_path=db_path, user_id=user_id, monthly_credits=monthly_credits),
        ),
    )


def _task_command(db_path: Path | None, user_id: str | None, task_id: str) -> TaskCommand:
    return TaskCommand(db_path=db_path, user_id=user_id, task_id=task_id)


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TaskPilotError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskpilot()
