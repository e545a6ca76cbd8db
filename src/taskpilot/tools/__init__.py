"""Step tools and the registry that resolves actions to them."""

from taskpilot.tools.base import TOOL_TIMEOUTS, AgentTool, ToolContext, ToolResult, tool_timeout
from taskpilot.tools.builtin import ControlTool, EchoTool
from taskpilot.tools.registry import ToolRegistry


def default_registry(simulated: tuple[str, ...] = ()) -> ToolRegistry:
    """Registry with the built-in tools.

    Each name in `simulated` is served by an echo tool, so plans that target
    integrations not installed here (`browser`, `email`, ...) can run dry.
    """

    registry = ToolRegistry([ControlTool(), EchoTool()])
    for name in simulated:
        if not registry.has(name):
            registry.register(EchoTool(name=name, category=name))
    return registry


__all__ = [
    "TOOL_TIMEOUTS",
    "AgentTool",
    "ControlTool",
    "EchoTool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "default_registry",
    "tool_timeout",
]
