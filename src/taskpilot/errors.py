"""Error taxonomy shared by the engine, services, and CLI."""

from __future__ import annotations


class TaskPilotError(Exception):
    """Base class for all engine errors."""


class ValidationError(TaskPilotError):
    """Malformed request, rejected before any mutation."""


class AuthError(TaskPilotError):
    """Unauthenticated or unauthorized caller."""


class NotFoundError(TaskPilotError):
    """Requested task or user does not exist in caller scope."""


class InsufficientCreditsError(TaskPilotError):
    """Remaining credit budget does not cover the estimated cost."""

    def __init__(self, *, needed: int, available: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Insufficient credits. Required: {needed}, Available: {available}",
        )
        self.needed = needed
        self.available = available


class ConversionError(TaskPilotError):
    """Workflow node cannot be mapped onto a tool action."""

    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unknown node type: {node_type}")
        self.node_type = node_type


class ToolExecutionError(TaskPilotError):
    """Step-level tool failure, retried according to node policy."""

    def __init__(self, message: str, *, action: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.action = action
        self.retryable = retryable


class SchedulingError(TaskPilotError):
    """Cron expression or timezone could not be evaluated."""


class TaskTimeoutError(TaskPilotError, TimeoutError):
    """Task exceeded its wall-clock budget."""

    def __init__(self, *, timeout_seconds: float) -> None:
        super().__init__(f"Task exceeded timeout of {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class QueueUnavailableError(TaskPilotError):
    """Broker cannot accept jobs; the task needs manual processing."""


class ClaimConflictError(TaskPilotError):
    """Optimistic version check lost against a concurrent writer."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} was modified concurrently; claim lost.")
        self.task_id = task_id
