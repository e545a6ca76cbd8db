from pathlib import Path

import allure
from sqlalchemy import inspect, text

from taskpilot.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261019_0004"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(repository.engine)
    assert {"users", "tasks", "task_events", "usage_records", "queue_jobs"} <= set(
        inspector.get_table_names(),
    )
    task_columns = {column["name"] for column in inspector.get_columns("tasks")}
    assert {"claimed_by", "heartbeat_at", "version", "pause_requested"} <= task_columns
    job_columns = {column["name"] for column in inspector.get_columns("queue_jobs")}
    assert "run_no" in job_columns
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert rows == 1
    repository.close()
