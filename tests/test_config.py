from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskpilot.config import OrchestratorSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_match_documented_values() -> None:
    settings = Settings()

    assert settings.orchestrator.max_concurrent_agents == 10
    assert settings.orchestrator.poll_interval_seconds == 60.0
    assert settings.orchestrator.default_timeout_seconds == 300.0
    assert settings.orchestrator.max_retries == 3
    assert settings.orchestrator.scheduler_batch_size == 50
    assert settings.queue.backoff_base_seconds == 5.0
    assert settings.credits.scheduled_task_default_estimate == 100
    settings.validate()


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_DB_PATH", "/tmp/custom.db")
    monkeypatch.setenv("TASKPILOT_MAX_CONCURRENT_AGENTS", "4")
    monkeypatch.setenv("TASKPILOT_POLL_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("TASKPILOT_CRON_SECRET", "s3cret")
    monkeypatch.setenv("TASKPILOT_EMBEDDED_WORKERS", "off")
    monkeypatch.setenv("TASKPILOT_SIMULATED_TOOLS", "browser, email,,")
    monkeypatch.setenv("TASKPILOT_DEFAULT_MONTHLY_CREDITS", "250")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/custom.db")
    assert settings.orchestrator.max_concurrent_agents == 4
    assert settings.orchestrator.poll_interval_seconds == 15.0
    assert settings.cron_secret == "s3cret"
    assert settings.orchestrator.embedded_workers is False
    assert settings.orchestrator.simulated_tools == ("browser", "email")
    assert settings.credits.default_monthly_credits == 250


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKPILOT_DB_PATH", "/tmp/ignored.db")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"


def test_empty_cron_secret_is_treated_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_CRON_SECRET", "")

    assert Settings.from_env().cron_secret is None


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKPILOT_EMBEDDED_WORKERS", "maybe")

    with pytest.raises(ValueError, match="TASKPILOT_EMBEDDED_WORKERS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("orchestrator", "message"),
    [
        (OrchestratorSettings(max_concurrent_agents=0), "TASKPILOT_MAX_CONCURRENT_AGENTS"),
        (OrchestratorSettings(poll_interval_seconds=0), "TASKPILOT_POLL_INTERVAL_SECONDS"),
        (OrchestratorSettings(max_retries=-1), "TASKPILOT_MAX_RETRIES"),
        (OrchestratorSettings(scheduler_batch_size=0), "TASKPILOT_SCHEDULER_BATCH_SIZE"),
    ],
)
def test_validate_names_the_offending_variable(
    orchestrator: OrchestratorSettings,
    message: str,
) -> None:
    settings = Settings(orchestrator=orchestrator)

    with pytest.raises(ValueError, match=message):
        settings.validate()
