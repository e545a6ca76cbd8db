"""Domain models for agent tasks, execution plans, and credit accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskpilot.errors import ValidationError
from taskpilot.orchestrator.trace import ExecutionState, TraceEntry


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    """Closed priority scale, highest first."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self]

    @classmethod
    def parse(cls, value: str | TaskPriority | None) -> TaskPriority:
        """Parse user-facing priority; `normal` is accepted as `medium`."""

        if value is None:
            return cls.MEDIUM
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "normal":
            return cls.MEDIUM
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(item.value for item in cls)
            raise ValidationError(
                f"Unknown priority {value!r}; expected one of: {allowed}.",
            ) from error


PRIORITY_WEIGHTS: dict[TaskPriority, int] = {
    TaskPriority.URGENT: 10,
    TaskPriority.HIGH: 5,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 1,
}


class ErrorHandlingMode(str, Enum):
    """Per-node failure policy."""

    STOP = "stop"
    RETRY = "retry"
    AI_RECOVERY = "ai_recovery"
    SKIP = "skip"

    @property
    def retryable(self) -> bool:
        return self in {ErrorHandlingMode.RETRY, ErrorHandlingMode.AI_RECOVERY}

    @classmethod
    def parse(cls, value: str | ErrorHandlingMode | None) -> ErrorHandlingMode:
        if value is None or value == "":
            return cls.STOP
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as error:
            raise ValidationError(f"Unknown error handling mode: {value!r}") from error


@dataclass(slots=True, frozen=True)
class ExecutionStep:
    """One tool invocation inside a plan."""

    id: str
    step_number: int
    action: str
    tool: str
    params: dict[str, Any]
    dependencies: tuple[str, ...] = ()
    retryable: bool = False
    estimated_credits: int = 0
    estimated_duration: int = 0
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def error_handling(self) -> ErrorHandlingMode:
        return ErrorHandlingMode.parse(self.metadata.get("errorHandling"))

    @property
    def max_retries(self) -> int | None:
        value = self.metadata.get("maxRetries")
        return None if value is None else int(value)

    @property
    def output_name(self) -> str | None:
        value = self.metadata.get("outputName")
        return str(value) if value else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stepNumber": self.step_number,
            "action": self.action,
            "tool": self.tool,
            "params": self.params,
            "dependencies": list(self.dependencies),
            "retryable": self.retryable,
            "estimatedCredits": self.estimated_credits,
            "estimatedDuration": self.estimated_duration,
            "description": self.description,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionStep:
        return cls(
            id=str(raw["id"]),
            step_number=int(raw["stepNumber"]),
            action=str(raw["action"]),
            tool=str(raw["tool"]),
            params=dict(raw.get("params") or {}),
            dependencies=tuple(raw.get("dependencies") or ()),
            retryable=bool(raw.get("retryable", False)),
            estimated_credits=int(raw.get("estimatedCredits", 0) or 0),
            estimated_duration=int(raw.get("estimatedDuration", 0) or 0),
            description=str(raw.get("description") or ""),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    """Ordered, immutable step sequence attached to a task."""

    steps: tuple[ExecutionStep, ...]
    estimated_credits: int
    estimated_duration: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for expected, step in enumerate(self.steps, start=1):
            if step.step_number != expected:
                raise ValidationError(
                    f"Plan step numbers must be gapless from 1; got {step.step_number} "
                    f"at position {expected}.",
                )

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, step_number: int) -> ExecutionStep:
        return self.steps[step_number - 1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [step.to_dict() for step in self.steps],
            "totalSteps": self.total_steps,
            "estimatedCredits": self.estimated_credits,
            "estimatedDuration": self.estimated_duration,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionPlan:
        steps = tuple(ExecutionStep.from_dict(item) for item in raw.get("steps") or [])
        declared_total = raw.get("totalSteps")
        if declared_total is not None and int(declared_total) != len(steps):
            raise ValidationError(
                f"Plan declares {declared_total} steps but contains {len(steps)}.",
            )
        return cls(
            steps=steps,
            estimated_credits=int(raw.get("estimatedCredits", 0) or 0),
            estimated_duration=int(raw.get("estimatedDuration", 0) or 0),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    task_id: str | None = None
    plan: ExecutionPlan | None = None
    schedule: str | None = None
    timezone: str = "UTC"
    schedule_enabled: bool = False
    next_run_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, CLI, and worker logic."""

    task_id: str
    user_id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    priority_weight: int
    schedule: str | None
    timezone: str
    schedule_enabled: bool
    next_run_at: datetime | None
    last_run_at: datetime | None
    current_step: int
    total_steps: int
    attempts: int
    run_count: int
    total_credits: int
    total_tokens: int
    execution_time_ms: int
    error: str | None
    claimed_by: str | None
    heartbeat_at: datetime | None
    version: int
    pause_requested: bool
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    plan: ExecutionPlan | None = None
    state: ExecutionState = field(default_factory=ExecutionState)
    result: dict[str, Any] | None = None

    @property
    def progress(self) -> int:
        return compute_progress(self.current_step, self.total_steps)

    @property
    def is_recurring(self) -> bool:
        return self.schedule_enabled and bool(self.schedule)


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UsageRecordView:
    """Persisted credit/token charge."""

    record_id: int
    user_id: str
    task_id: str | None
    type: str
    model: str | None
    run_no: int | None
    step_number: int | None
    credits: int
    tokens: int
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UserCreditView:
    """Monthly credit budget snapshot for one user."""

    user_id: str
    display_name: str
    monthly_credits: int
    credits_used: int
    credits_reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.monthly_credits - self.credits_used)


@dataclass(slots=True)
class StepCharge:
    """Actual cost of one completed or skipped step."""

    step_number: int
    action: str
    credits: int = 0
    tokens: int = 0
    model: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class AgentState:
    """In-memory view of a task's progress, rebuilt from the persisted row."""

    task_id: str
    status: TaskStatus
    current_step: int
    total_steps: int
    credits_used: int
    tokens_used: int
    execution_time_ms: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    trace: list[TraceEntry] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return compute_progress(self.current_step, self.total_steps)

    @classmethod
    def from_task(cls, task: TaskView) -> AgentState:
        return cls(
            task_id=task.task_id,
            status=task.status,
            current_step=task.current_step,
            total_steps=task.total_steps,
            credits_used=task.total_credits,
            tokens_used=task.total_tokens,
            execution_time_ms=task.execution_time_ms,
            context=dict(task.state.context),
            trace=list(task.state.trace),
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one executor run."""

    task_id: str
    status: TaskStatus
    credits_used: int
    tokens_used: int
    current_step: int
    total_steps: int
    result: dict[str, Any] | None = None
    error: str | None = None


def compute_progress(current_step: int, total_steps: int) -> int:
    """Percent of plan completed, rounded half up."""

    if total_steps <= 0:
        return 0
    return int(100 * current_step / total_steps + 0.5)
