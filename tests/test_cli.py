from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskpilot.main import taskpilot

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Task Operations"),
]


@pytest.fixture(autouse=True)
def _cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_SIMULATED_TOOLS", "browser")
    monkeypatch.setenv("TASKPILOT_WORKER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.delenv("TASKPILOT_CRON_SECRET", raising=False)
    monkeypatch.delenv("TASKPILOT_USER_ID", raising=False)


@pytest.fixture()
def steps_file(tmp_path: Path) -> Path:
    path = tmp_path / "steps.json"
    path.write_text(
        json.dumps(
            {
                "steps": [
                    {
                        "id": "open",
                        "type": "navigate",
                        "position": {"x": 0, "y": 0},
                        "config": {"action": {"url": "https://shop.example"}},
                    },
                    {
                        "id": "price",
                        "type": "extract",
                        "position": {"x": 0, "y": 120},
                        "config": {"action": {"selector": ".price"}, "outputName": "price"},
                    },
                ],
            },
        ),
        encoding="utf-8",
    )
    return path


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(taskpilot, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def test_submit_run_and_inspect_workflow(tmp_path: Path, steps_file: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    submitted = _invoke(
        "tasks",
        "create-workflow",
        "--db-path",
        db_path,
        "--steps-file",
        str(steps_file),
        "--name",
        "Price check",
        "--priority",
        "high",
    )
    match = re.search(r"task_id=(\S+) estimated_credits=70", submitted)
    assert match is not None, submitted
    task_id = match.group(1)
    assert "Job: job-" in submitted

    worker_output = _invoke("worker", "run", "--db-path", db_path, "--loop")
    assert "processed=1 completed=1" in worker_output

    status = _invoke("tasks", "status", "--db-path", db_path, "--task-id", task_id)
    assert "[completed]" in status
    assert "progress=100%" in status
    assert "step=2 step_completed action=browser.extract" in status

    listing = _invoke("tasks", "list", "--db-path", db_path, "--status", "completed")
    assert "Tasks: 1" in listing

    events = _invoke("tasks", "events", "--db-path", db_path, "--task-id", task_id)
    assert "created - -> pending" in events
    assert "completed executing -> completed" in events

    credits = _invoke("credits", "show", "--db-path", db_path)
    assert "User: default_user (Default User)" in credits
    assert "used=2 monthly=1000 remaining=998" in credits
    assert "Recent usage: 2" in credits

    stats = _invoke("queue", "stats", "--db-path", db_path, "--clean")
    assert "completed=1" in stats
    assert "Removed finished jobs: 0" in stats


def test_scheduled_workflow_and_dry_run_check(tmp_path: Path, steps_file: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    created = _invoke(
        "tasks",
        "create-workflow",
        "--db-path",
        db_path,
        "--steps-file",
        str(steps_file),
        "--name",
        "Morning prices",
        "--schedule",
        "0 9 * * MON-FRI",
        "--timezone",
        "America/New_York",
    )
    assert "Scheduled task created" in created
    assert "timezone=America/New_York" in created

    preview = _invoke("scheduler", "check", "--db-path", db_path, "--dry-run")
    assert "Scheduled tasks: 1 due now: 0" in preview

    tick = _invoke("scheduler", "check", "--db-path", db_path)
    assert "queued=0 skipped=0 failed=0" in tick


def test_pause_and_resume_from_cli(tmp_path: Path, steps_file: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    submitted = _invoke(
        "tasks",
        "create-workflow",
        "--db-path",
        db_path,
        "--steps-file",
        str(steps_file),
        "--name",
        "Pausable",
    )
    match = re.search(r"task_id=(\S+)", submitted)
    assert match is not None
    task_id = match.group(1)

    paused = _invoke("tasks", "pause", "--db-path", db_path, "--task-id", task_id)
    assert f"Task paused: {task_id} at step 0/2" in paused

    resumed = _invoke("tasks", "resume", "--db-path", db_path, "--task-id", task_id)
    assert "step 0/2 progress=0% credits_used=0" in resumed


def test_set_budget_limits_new_submissions(tmp_path: Path, steps_file: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    assert "Monthly credits for default_user: 10" in _invoke(
        "credits",
        "set-budget",
        "--db-path",
        db_path,
        "10",
    )

    result = CliRunner().invoke(
        taskpilot,
        [
            "tasks",
            "create-workflow",
            "--db-path",
            db_path,
            "--steps-file",
            str(steps_file),
            "--name",
            "Too big",
        ],
    )
    assert result.exit_code == 1
    assert "Insufficient credits" in result.output


def test_invalid_steps_file_is_reported(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")

    result = CliRunner().invoke(
        taskpilot,
        [
            "tasks",
            "create-workflow",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--steps-file",
            str(bad),
            "--name",
            "broken",
        ],
    )

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_unknown_task_is_reported(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        taskpilot,
        ["tasks", "status", "--db-path", str(tmp_path / "cli.db"), "--task-id", "nope"],
    )

    assert result.exit_code == 1
    assert "Task not found: nope" in result.output
