"""Capability lookup that steps delegate their work to."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from taskpilot.errors import ToolExecutionError
from taskpilot.tools.base import AgentTool, ToolContext, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Named tool registry; actions resolve by the prefix before the dot."""

    def __init__(self, tools: list[AgentTool] | None = None) -> None:
        self._tools: dict[str, AgentTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def by_category(self, category: str) -> list[AgentTool]:
        return [tool for tool in self._tools.values() if tool.category == category]

    def invoke(
        self,
        action: str,
        params: Mapping[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Validate and run one action, raising ToolExecutionError on any failure."""

        tool_name = action.split(".", 1)[0]
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolExecutionError(f"Tool not found: {tool_name}", action=action, retryable=False)

        validation_error = tool.validate(params)
        if validation_error:
            raise ToolExecutionError(
                f"Invalid parameters: {validation_error}",
                action=action,
                retryable=False,
            )

        started = time.monotonic()
        try:
            result = tool.execute(params, context)
        except ToolExecutionError:
            raise
        except Exception as error:  # noqa: BLE001
            raise ToolExecutionError(f"{type(error).__name__}: {error}", action=action) from error

        if not result.success:
            raise ToolExecutionError(result.error or "Tool execution failed", action=action)
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "Tool %s finished for task %s step %d in %d ms",
            action,
            context.task_id,
            context.step_number,
            result.duration_ms,
        )
        return result
