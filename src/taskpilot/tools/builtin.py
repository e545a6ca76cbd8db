"""Built-in tools: control flow evaluation and a deterministic echo tool."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from taskpilot.tools.base import ToolContext, ToolResult

CONDITION_OPERATORS = ("equals", "not_equals", "contains", "greater_than", "less_than", "exists")
_MISSING = object()


class ControlTool:
    """Evaluate `control.conditional` against accumulated context."""

    name = "control"
    category = "utility"

    def validate(self, params: Mapping[str, Any]) -> str | None:
        if not params.get("variable"):
            return "variable is required"
        operator = params.get("operator") or "exists"
        if operator not in CONDITION_OPERATORS:
            return f"unsupported operator {operator!r}"
        return None

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        variable = str(params["variable"])
        operator = str(params.get("operator") or "exists")
        present, actual = _lookup(context.variables, variable)
        matched = evaluate_condition(
            operator,
            present=present,
            actual=actual,
            expected=params.get("value"),
        )
        return ToolResult(
            success=True,
            data={
                "variable": variable,
                "operator": operator,
                "matched": matched,
                "skipNext": bool(params.get("skipIfFalse")) and not matched,
            },
            credits=0,
        )

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        return 5


class EchoTool:
    """Return step params (without inherited context); usage comes from `credits`/`tokens`."""

    def __init__(
        self,
        *,
        credits: int = 1,
        model: str | None = None,
        name: str = "echo",
        category: str = "utility",
    ) -> None:
        self.name = name
        self.category = category
        self._credits = credits
        self._model = model

    def validate(self, params: Mapping[str, Any]) -> str | None:
        credits = params.get("credits")
        if credits is not None and (not isinstance(credits, int) or credits < 0):
            return "credits must be a non-negative integer"
        return None

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        payload = {
            key: value
            for key, value in params.items()
            if key not in {"credits", "tokens"} and context.variables.get(key, _MISSING) != value
        }
        return ToolResult(
            success=True,
            data={"action": context.action, "params": payload},
            credits=params.get("credits", self._credits),
            tokens=int(params.get("tokens", 0) or 0),
            model=self._model,
        )

    def estimate_cost(self, params: Mapping[str, Any]) -> int:
        return int(params.get("credits", self._credits))


def evaluate_condition(operator: str, *, present: bool, actual: Any, expected: Any) -> bool:
    if operator == "exists":
        return present and actual is not None
    if not present:
        return False
    if operator == "equals":
        return actual == expected or str(actual) == str(expected)
    if operator == "not_equals":
        return not (actual == expected or str(actual) == str(expected))
    if operator == "contains":
        if isinstance(actual, Mapping | list | tuple | set):
            return expected in actual
        return str(expected) in str(actual)
    if operator in {"greater_than", "less_than"}:
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    raise ValueError(f"Unsupported operator: {operator}")


def _lookup(variables: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    """Resolve dotted path (`step2.price`) inside nested mappings."""

    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current
