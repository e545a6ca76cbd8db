"""Convert visual workflow nodes into an executable plan."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from taskpilot.errors import ConversionError, ValidationError
from taskpilot.orchestrator.models import ErrorHandlingMode, ExecutionPlan, ExecutionStep

BASE_WORKFLOW_CREDITS = 50
AI_RECOVERY_SURCHARGE = 20

_SNAKE_TO_CAMEL = {
    "on_error": "onError",
    "max_retries": "maxRetries",
    "save_output": "saveOutput",
    "output_name": "outputName",
    "skip_if_false": "skipIfFalse",
}


@dataclass(slots=True, frozen=True)
class NodeSpec:
    """Tool binding and estimates for one node type."""

    tool: str
    action: str
    credits: int
    duration_ms: int
    params: Callable[[dict[str, Any]], dict[str, Any]]
    describe: Callable[[dict[str, Any]], str]


def _action(config: dict[str, Any]) -> dict[str, Any]:
    return config.get("action") or {}


def _condition(config: dict[str, Any]) -> dict[str, Any]:
    return config.get("condition") or {}


NODE_TYPES: dict[str, NodeSpec] = {
    "navigate": NodeSpec(
        tool="browser",
        action="browser.navigate",
        credits=10,
        duration_ms=5_000,
        params=lambda config: {"url": _action(config).get("url")},
        describe=lambda config: f"Navigate to {_action(config).get('url')}",
    ),
    "click": NodeSpec(
        tool="browser",
        action="browser.click",
        credits=5,
        duration_ms=2_000,
        params=lambda config: {"selector": _action(config).get("selector")},
        describe=lambda config: f"Click element: {_action(config).get('selector')}",
    ),
    "type": NodeSpec(
        tool="browser",
        action="browser.type",
        credits=5,
        duration_ms=2_000,
        params=lambda config: {
            "selector": _action(config).get("selector"),
            "text": _action(config).get("value", _action(config).get("text")),
        },
        describe=lambda config: f"Type text into {_action(config).get('selector')}",
    ),
    "extract": NodeSpec(
        tool="browser",
        action="browser.extract",
        credits=10,
        duration_ms=3_000,
        params=lambda config: {
            "selector": _action(config).get("selector"),
            "saveAs": config.get("outputName") or "extractedValue",
        },
        describe=lambda config: f"Extract data from {_action(config).get('selector')}",
    ),
    "wait": NodeSpec(
        tool="browser",
        action="browser.waitFor",
        credits=2,
        duration_ms=1_000,
        params=lambda config: {"duration": _action(config).get("duration")},
        describe=lambda config: f"Wait {_action(config).get('duration')}ms",
    ),
    "conditional": NodeSpec(
        tool="control",
        action="control.conditional",
        credits=5,
        duration_ms=500,
        params=lambda config: {
            "variable": _condition(config).get("variable"),
            "operator": _condition(config).get("operator"),
            "value": _condition(config).get("value"),
            "skipIfFalse": config.get("skipIfFalse"),
        },
        describe=lambda config: (
            f"Check if {_condition(config).get('variable')} "
            f"{_condition(config).get('operator')} {_condition(config).get('value')}"
        ),
    ),
}


def convert(
    nodes: Sequence[Mapping[str, Any]],
    name: str,
    description: str = "",
    task_id: str | None = None,
) -> ExecutionPlan:
    """Build an ExecutionPlan from workflow nodes ordered by vertical position.

    Pure and deterministic: the same nodes always yield the same plan.
    Step ids are ``{task_id}_step_{n}``, or ``step_{n}`` before a task exists.
    """

    if not nodes:
        raise ValidationError("Workflow must contain at least one step.")
    normalized = [_normalize_node(node, index) for index, node in enumerate(nodes)]
    ordered = sorted(normalized, key=lambda node: node["position"]["y"])
    prefix = f"{task_id}_step_" if task_id else "step_"

    steps: list[ExecutionStep] = []
    for index, node in enumerate(ordered):
        step_number = index + 1
        steps.append(
            _convert_node(
                node,
                step_id=f"{prefix}{step_number}",
                step_number=step_number,
                previous_id=f"{prefix}{index}" if index > 0 else None,
            ),
        )

    return ExecutionPlan(
        steps=tuple(steps),
        estimated_credits=BASE_WORKFLOW_CREDITS + sum(step.estimated_credits for step in steps),
        estimated_duration=sum(step.estimated_duration for step in steps),
        metadata={
            "workflowName": name,
            "workflowDescription": description,
            "visualLayout": [
                {"id": node["id"], "x": node["position"]["x"], "y": node["position"]["y"]}
                for node in normalized
            ],
        },
    )


def _convert_node(
    node: dict[str, Any],
    *,
    step_id: str,
    step_number: int,
    previous_id: str | None,
) -> ExecutionStep:
    node_type = node["type"]
    node_def = NODE_TYPES.get(node_type)
    if node_def is None:
        raise ConversionError(node_type)
    config = node["config"]
    mode = ErrorHandlingMode.parse(config.get("onError"))
    credits = node_def.credits
    if mode is ErrorHandlingMode.AI_RECOVERY:
        credits += AI_RECOVERY_SURCHARGE

    return ExecutionStep(
        id=step_id,
        step_number=step_number,
        action=node_def.action,
        tool=node_def.tool,
        params=node_def.params(config),
        dependencies=(previous_id,) if previous_id else (),
        retryable=mode.retryable,
        estimated_credits=credits,
        estimated_duration=node_def.duration_ms,
        description=node_def.describe(config),
        metadata={
            "nodeId": node["id"],
            "nodeType": node_type,
            "errorHandling": mode.value,
            "maxRetries": config.get("maxRetries"),
            "saveOutput": config.get("saveOutput"),
            "outputName": config.get("outputName"),
        },
    )


def _normalize_node(node: Mapping[str, Any], index: int) -> dict[str, Any]:
    node_type = node.get("type")
    if not node_type:
        raise ValidationError(f"Workflow node #{index + 1} has no type.")
    position = node.get("position") or {}
    try:
        x = float(position.get("x", 0))
        y = float(position.get("y", index))
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Workflow node #{index + 1} has an invalid position.") from error

    raw_config = node.get("config") or {}
    if not isinstance(raw_config, Mapping):
        raise ValidationError(f"Workflow node #{index + 1} config must be an object.")
    config = {_SNAKE_TO_CAMEL.get(key, key): value for key, value in raw_config.items()}
    max_retries = config.get("maxRetries")
    if max_retries is not None:
        try:
            config["maxRetries"] = int(max_retries)
        except (TypeError, ValueError) as error:
            raise ValidationError(
                f"Workflow node #{index + 1} maxRetries must be an integer.",
            ) from error
        if config["maxRetries"] < 0:
            raise ValidationError(f"Workflow node #{index + 1} maxRetries must be >= 0.")

    return {
        "id": str(node.get("id") or f"node_{index + 1}"),
        "type": str(node_type),
        "position": {"x": x, "y": y},
        "config": config,
    }
