"""Tool interface used by plan steps."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

TOOL_TIMEOUTS: dict[str, float] = {
    "browser": 30.0,
    "email": 10.0,
    "drive": 60.0,
    "calendar": 10.0,
    "http": 15.0,
    "ai": 45.0,
    "default": 30.0,
}


def tool_timeout(action: str) -> float:
    """Timeout in seconds for the category prefix of an action."""

    category = action.split(".", 1)[0]
    return TOOL_TIMEOUTS.get(category, TOOL_TIMEOUTS["default"])


@dataclass(slots=True)
class ToolResult:
    """Tool outcome with optional usage metadata."""

    success: bool
    data: Any = None
    error: str | None = None
    credits: int | None = None
    tokens: int = 0
    model: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class ToolContext:
    """Execution context handed to a tool invocation."""

    user_id: str
    task_id: str
    step_number: int
    action: str
    timeout_seconds: float
    variables: Mapping[str, Any] = field(default_factory=dict)


class AgentTool(Protocol):
    """Protocol implemented by step tools."""

    name: str
    category: str

    def validate(self, params: Mapping[str, Any]) -> str | None:
        """Return an error message for invalid params, None when valid."""

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        """Run one action and return its result."""

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        """Estimated credits for one invocation."""
