"""Runtime configuration for scheduler, queue, workers, and credit accounting."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class OrchestratorSettings:
    """Scheduler loop and executor settings."""

    max_concurrent_agents: int = 10
    poll_interval_seconds: float = 60.0
    default_timeout_seconds: float = 300.0
    max_retries: int = 3
    scheduler_batch_size: int = 50
    worker_poll_interval_seconds: float = 2.0
    step_retry_base_seconds: float = 1.0
    step_retry_max_seconds: float = 30.0
    stale_claim_seconds: int = 1_800
    embedded_workers: bool = True
    simulated_tools: tuple[str, ...] = ()
    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")


@dataclass(slots=True)
class QueueSettings:
    """Durable job queue settings."""

    default_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 900.0
    stale_job_seconds: int = 1_800
    completed_retention_hours: int = 24
    failed_retention_days: int = 7


@dataclass(slots=True)
class CreditSettings:
    """Credit budget and cost guard settings."""

    default_monthly_credits: int = 1_000
    max_credits_per_step: int = 1_000
    max_credits_per_task: int = 10_000
    scheduled_task_default_estimate: int = 100


@dataclass(slots=True)
class UserContextSettings:
    """Default actor for CLI operations."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskpilot.db")
    sqlite_busy_timeout_ms: int = 5_000
    cron_secret: str | None = None
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    credits: CreditSettings = field(default_factory=CreditSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = OrchestratorSettings()
        return cls(
            db_path=db_path or Path(os.getenv("TASKPILOT_DB_PATH", ".taskpilot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKPILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cron_secret=os.getenv("TASKPILOT_CRON_SECRET") or None,
            orchestrator=OrchestratorSettings(
                max_concurrent_agents=int(os.getenv("TASKPILOT_MAX_CONCURRENT_AGENTS", "10")),
                poll_interval_seconds=float(os.getenv("TASKPILOT_POLL_INTERVAL_SECONDS", "60")),
                default_timeout_seconds=float(
                    os.getenv("TASKPILOT_DEFAULT_TIMEOUT_SECONDS", "300"),
                ),
                max_retries=int(os.getenv("TASKPILOT_MAX_RETRIES", "3")),
                scheduler_batch_size=int(os.getenv("TASKPILOT_SCHEDULER_BATCH_SIZE", "50")),
                worker_poll_interval_seconds=float(
                    os.getenv("TASKPILOT_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                step_retry_base_seconds=float(
                    os.getenv("TASKPILOT_STEP_RETRY_BASE_SECONDS", "1.0"),
                ),
                step_retry_max_seconds=float(
                    os.getenv("TASKPILOT_STEP_RETRY_MAX_SECONDS", "30.0"),
                ),
                stale_claim_seconds=int(os.getenv("TASKPILOT_STALE_CLAIM_SECONDS", "1800")),
                embedded_workers=_env_bool("TASKPILOT_EMBEDDED_WORKERS", default=True),
                simulated_tools=_env_list("TASKPILOT_SIMULATED_TOOLS"),
                worker_id=os.getenv("TASKPILOT_WORKER_ID", defaults.worker_id),
            ),
            queue=QueueSettings(
                default_attempts=int(os.getenv("TASKPILOT_QUEUE_DEFAULT_ATTEMPTS", "3")),
                backoff_base_seconds=float(
                    os.getenv("TASKPILOT_QUEUE_BACKOFF_BASE_SECONDS", "5.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("TASKPILOT_QUEUE_BACKOFF_MAX_SECONDS", "900.0"),
                ),
                stale_job_seconds=int(os.getenv("TASKPILOT_QUEUE_STALE_JOB_SECONDS", "1800")),
                completed_retention_hours=int(
                    os.getenv("TASKPILOT_QUEUE_COMPLETED_RETENTION_HOURS", "24"),
                ),
                failed_retention_days=int(
                    os.getenv("TASKPILOT_QUEUE_FAILED_RETENTION_DAYS", "7"),
                ),
            ),
            credits=CreditSettings(
                default_monthly_credits=int(
                    os.getenv("TASKPILOT_DEFAULT_MONTHLY_CREDITS", "1000"),
                ),
                max_credits_per_step=int(os.getenv("TASKPILOT_MAX_CREDITS_PER_STEP", "1000")),
                max_credits_per_task=int(os.getenv("TASKPILOT_MAX_CREDITS_PER_TASK", "10000")),
                scheduled_task_default_estimate=int(
                    os.getenv("TASKPILOT_SCHEDULED_TASK_DEFAULT_ESTIMATE", "100"),
                ),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("TASKPILOT_USER_ID", "default_user"),
                user_name=os.getenv("TASKPILOT_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        orchestrator = self.orchestrator
        if orchestrator.max_concurrent_agents <= 0:
            raise ValueError("TASKPILOT_MAX_CONCURRENT_AGENTS must be > 0.")
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("TASKPILOT_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestrator.default_timeout_seconds <= 0:
            raise ValueError("TASKPILOT_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.max_retries < 0:
            raise ValueError("TASKPILOT_MAX_RETRIES must be >= 0.")
        if orchestrator.scheduler_batch_size <= 0:
            raise ValueError("TASKPILOT_SCHEDULER_BATCH_SIZE must be > 0.")
        if orchestrator.step_retry_max_seconds < orchestrator.step_retry_base_seconds:
            raise ValueError(
                "TASKPILOT_STEP_RETRY_MAX_SECONDS must be >= TASKPILOT_STEP_RETRY_BASE_SECONDS.",
            )
        if self.queue.default_attempts <= 0:
            raise ValueError("TASKPILOT_QUEUE_DEFAULT_ATTEMPTS must be > 0.")
        if self.queue.backoff_base_seconds < 0:
            raise ValueError("TASKPILOT_QUEUE_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.credits.default_monthly_credits < 0:
            raise ValueError("TASKPILOT_DEFAULT_MONTHLY_CREDITS must be >= 0.")
        if self.credits.max_credits_per_step > self.credits.max_credits_per_task:
            raise ValueError(
                "TASKPILOT_MAX_CREDITS_PER_STEP must not exceed TASKPILOT_MAX_CREDITS_PER_TASK.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())
