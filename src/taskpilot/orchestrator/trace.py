"""Versioned execution state payload: accumulated context plus step trace.

The payload is persisted in ``tasks.state_json`` as::

    {"version": 1, "context": {...}, "trace": [{"kind": "step_completed", ...}, ...]}

Rows written before versioning carry ``{"context": ..., "trace": [...]}`` with
``status`` on each entry instead of ``kind``; they are upgraded on decode so
paused tasks created by older builds still resume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from taskpilot.storage.common import dump_json, load_json_object, utc_now

PAYLOAD_VERSION = 1


class TraceKind(str, Enum):
    """Trace entry discriminator."""

    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    STEP_RETRY = "step_retry"
    TASK_PAUSED = "task_paused"


OUTCOME_KINDS = frozenset({TraceKind.STEP_COMPLETED, TraceKind.STEP_SKIPPED})

_LEGACY_STATUS_TO_KIND = {
    "completed": TraceKind.STEP_COMPLETED,
    "skipped": TraceKind.STEP_SKIPPED,
    "failed": TraceKind.STEP_FAILED,
}


@dataclass(slots=True, frozen=True)
class TraceEntry:
    """One append-only trace record."""

    kind: TraceKind
    step_number: int
    timestamp: datetime = field(default_factory=utc_now)
    step_id: str | None = None
    action: str | None = None
    tool: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    error: str | None = None
    attempt: int = 1
    duration_ms: int = 0
    credits: int = 0
    tokens: int = 0

    @property
    def is_outcome(self) -> bool:
        return self.kind in OUTCOME_KINDS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "stepNumber": self.step_number,
            "timestamp": self.timestamp.isoformat(),
            "attempt": self.attempt,
            "duration": self.duration_ms,
            "credits": self.credits,
            "tokens": self.tokens,
        }
        for key, value in (
            ("stepId", self.step_id),
            ("action", self.action),
            ("tool", self.tool),
            ("input", self.input),
            ("output", self.output),
            ("error", self.error),
        ):
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TraceEntry:
        return cls(
            kind=TraceKind(raw["kind"]),
            step_number=int(raw["stepNumber"]),
            timestamp=_parse_timestamp(raw.get("timestamp")),
            step_id=raw.get("stepId"),
            action=raw.get("action"),
            tool=raw.get("tool"),
            input=raw.get("input"),
            output=raw.get("output"),
            error=raw.get("error"),
            attempt=int(raw.get("attempt", 1)),
            duration_ms=int(raw.get("duration", 0) or 0),
            credits=int(raw.get("credits", 0) or 0),
            tokens=int(raw.get("tokens", 0) or 0),
        )


@dataclass(slots=True)
class ExecutionState:
    """Decoded context and trace carried between steps and across pauses."""

    context: dict[str, Any] = field(default_factory=dict)
    trace: list[TraceEntry] = field(default_factory=list)

    @property
    def outcome_count(self) -> int:
        """Number of steps whose outcome is already recorded."""

        return sum(1 for entry in self.trace if entry.is_outcome)

    def append(self, entry: TraceEntry) -> None:
        self.trace.append(entry)

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": PAYLOAD_VERSION,
            "context": self.context,
            "trace": [entry.to_dict() for entry in self.trace],
        }


def encode_state(state: ExecutionState) -> str:
    return dump_json(state.to_payload())


def decode_state(raw: str | None) -> ExecutionState:
    """Decode persisted payload, upgrading unversioned rows."""

    payload = load_json_object(raw)
    if not payload:
        return ExecutionState()
    version = payload.get("version")
    if version is None:
        return _decode_legacy(payload)
    if version != PAYLOAD_VERSION:
        raise ValueError(f"Unsupported execution state version: {version!r}")
    context = payload.get("context") or {}
    if not isinstance(context, dict):
        raise TypeError("Execution state context must be a JSON object.")
    return ExecutionState(
        context=context,
        trace=[TraceEntry.from_dict(item) for item in payload.get("trace") or []],
    )


def _decode_legacy(payload: dict[str, Any]) -> ExecutionState:
    context = payload.get("context") or {}
    if not isinstance(context, dict):
        raise TypeError("Execution state context must be a JSON object.")
    trace: list[TraceEntry] = []
    for item in payload.get("trace") or []:
        status = str(item.get("status") or "").lower()
        kind = _LEGACY_STATUS_TO_KIND.get(status)
        if kind is None:
            kind = TraceKind.STEP_FAILED if item.get("error") else TraceKind.STEP_COMPLETED
        trace.append(TraceEntry.from_dict({**item, "kind": kind.value}))
    return ExecutionState(context=context, trace=trace)


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return utc_now()
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
