"""Audit event definitions and serialization for the merge completion lifecycle."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from merge_orchestrator.domain import ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_SENSITIVE_KEY_TERMS = ("secret", "password", "token", "api_key", "authorization")
_REDACTED_VALUE = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle events emitted by the orchestrator."""

    ORCHESTRATION_STARTED = "OrchestrationStarted"
    STATE_CHANGED = "StateChanged"
    READINESS_EVALUATED = "ReadinessEvaluated"

    MERGE_ATTEMPTED = "MergeAttempted"
    MERGE_SUCCEEDED = "MergeSucceeded"
    MERGE_FAILED = "MergeFailed"

    ACTION_STARTED = "ActionStarted"
    ACTION_COMPLETED = "ActionCompleted"
    ACTION_FAILED = "ActionFailed"

    COMPLETION_VERIFIED = "CompletionVerified"
    COMPLETION_FAILED = "CompletionFailed"
    ROLLBACK_PERFORMED = "RollbackPerformed"

    ORCHESTRATION_COMPLETED = "OrchestrationCompleted"
    ORCHESTRATION_FAILED = "OrchestrationFailed"
    NEXT_WORK_REQUESTED = "NextWorkRequested"


_EVENT_TYPE_VALUES = frozenset(member.value for member in EventType)
_REQUIRED_FIELDS = frozenset({"event_id", "event_type", "candidate_id", "timestamp", "payload"})
_OPTIONAL_FIELDS = frozenset({"work_item_id"})
_MAX_PAYLOAD_DEPTH = 16
_MAX_PAYLOAD_TEXT = 8192


@dataclass(slots=True)
class MergeEvent:
    """One audit record: what happened to which candidate, when, with a JSON payload.

    Construction normalizes and validates every field: string event types
    become ``EventType``, ISO-8601 strings (``Z`` suffix allowed) become UTC
    datetimes, and the payload must be plain JSON.
    """

    event_id: str
    event_type: EventType
    candidate_id: str
    timestamp: datetime
    payload: dict[str, JSONValue]
    work_item_id: str | None = None

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        self.event_type = _event_type(self.event_type)
        self.candidate_id = _text("candidate_id", self.candidate_id, limit=128)
        if self.work_item_id is not None:
            self.work_item_id = _text("work_item_id", self.work_item_id, limit=256)
        self.timestamp = _utc("timestamp", self.timestamp)
        payload = _json("payload", self.payload)
        if not isinstance(payload, dict):
            raise ValueError("MergeEvent.payload: expected object")
        self.payload = payload

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "candidate_id": self.candidate_id,
            "work_item_id": self.work_item_id,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "payload": json.loads(json.dumps(self.payload)),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> MergeEvent:
        if not isinstance(data, dict):
            raise ValueError(f"MergeEvent: expected object, got {type(data).__name__}")
        unexpected = sorted(set(data) - _REQUIRED_FIELDS - _OPTIONAL_FIELDS)
        if unexpected:
            raise ValueError(f"MergeEvent: unexpected fields: {unexpected}")
        missing = sorted(_REQUIRED_FIELDS - set(data))
        if missing:
            raise ValueError(f"MergeEvent: missing required fields: {missing}")
        return cls(
            event_id=_text("event_id", data["event_id"], limit=128),
            event_type=data["event_type"],  # type: ignore[arg-type]
            candidate_id=data["candidate_id"],  # type: ignore[arg-type]
            timestamp=data["timestamp"],  # type: ignore[arg-type]
            payload=data["payload"],  # type: ignore[arg-type]
            work_item_id=data.get("work_item_id"),  # type: ignore[arg-type]
        )

    @classmethod
    def from_json(cls, raw: str) -> MergeEvent:
        if not isinstance(raw, str):
            raise ValueError(f"MergeEvent: expected JSON string, got {type(raw).__name__}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"MergeEvent: invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("MergeEvent: JSON root must be an object")
        return cls.from_dict(data)


def redact_sensitive(event: MergeEvent) -> MergeEvent:
    """Copy of ``event`` whose payload has every value under a sensitive key masked."""

    payload = _mask(event.payload)
    if not isinstance(payload, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return MergeEvent(
        event_id=event.event_id,
        event_type=event.event_type,
        candidate_id=event.candidate_id,
        timestamp=event.timestamp,
        payload=payload,
        work_item_id=event.work_item_id,
    )


def _event_type(value: object) -> EventType:
    if isinstance(value, EventType):
        return value
    if isinstance(value, str) and value in _EVENT_TYPE_VALUES:
        return EventType(value)
    allowed = ", ".join(member.value for member in EventType)
    raise ValueError(f"MergeEvent.event_type: unsupported event type {value!r}; allowed: {allowed}")


def _text(name: str, value: object, *, limit: int) -> str:
    if not isinstance(value, str):
        raise ValueError(f"MergeEvent.{name}: expected string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"MergeEvent.{name}: must not be empty")
    if len(stripped) > limit:
        raise ValueError(f"MergeEvent.{name}: must be <= {limit} characters")
    return stripped


def _utc(name: str, value: object) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.removesuffix("Z") + "+00:00" if value.endswith("Z") else value)
        except ValueError as exc:
            raise ValueError(f"MergeEvent.{name}: invalid ISO-8601 datetime: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValueError(f"MergeEvent.{name}: expected datetime or ISO-8601 string, got {type(value).__name__}")
    if value.utcoffset() is None:
        raise ValueError(f"MergeEvent.{name}: datetime must be timezone-aware UTC")
    return value.astimezone(UTC)


def _json(path: str, value: object, depth: int = 0) -> JSONValue:
    where = f"MergeEvent.{path}"
    if depth > _MAX_PAYLOAD_DEPTH:
        raise ValueError(f"{where}: JSON nesting too deep")
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{where}: float value must be finite")
        return value
    if isinstance(value, str):
        if len(value) > _MAX_PAYLOAD_TEXT:
            raise ValueError(f"{where}: string too long")
        return value
    if isinstance(value, (list, tuple)):
        return [_json(f"{path}[{index}]", item, depth + 1) for index, item in enumerate(value)]
    if isinstance(value, dict):
        if not all(isinstance(key, str) for key in value):
            raise ValueError(f"{where}: object keys must be strings")
        return {key: _json(f"{path}.{key}", item, depth + 1) for key, item in value.items()}
    raise ValueError(f"{where}: value is not JSON-serializable ({type(value).__name__})")


def _mask(value: JSONValue) -> JSONValue:
    if isinstance(value, list):
        return [_mask(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _REDACTED_VALUE if any(term in key.lower() for term in _SENSITIVE_KEY_TERMS) else _mask(item)
            for key, item in value.items()
        }
    return value


__all__ = ["EventType", "MergeEvent", "redact_sensitive"]
