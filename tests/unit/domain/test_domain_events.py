"""Unit tests for audit events and redaction behavior."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from merge_orchestrator.domain import ids
from merge_orchestrator.domain.events import EventType, MergeEvent, redact_sensitive


def _fixed_bytes(size: int) -> bytes:
    return b"\x02" * size


def _event(**changes: object) -> MergeEvent:
    values: dict[str, object] = {
        "event_id": ids.generate_event_id(timestamp_ms=1_000, randbytes=_fixed_bytes),
        "event_type": EventType.MERGE_SUCCEEDED,
        "candidate_id": "pr-7",
        "timestamp": datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
        "payload": {"merge_commit_sha": "deadbeef", "stats": {"files_changed": 3}},
        "work_item_id": "88",
    }
    values.update(changes)
    return MergeEvent(**values)  # type: ignore[arg-type]


def test_event_types_cover_the_lifecycle() -> None:
    assert {member.value for member in EventType} == {
        "OrchestrationStarted",
        "StateChanged",
        "ReadinessEvaluated",
        "MergeAttempted",
        "MergeSucceeded",
        "MergeFailed",
        "ActionStarted",
        "ActionCompleted",
        "ActionFailed",
        "CompletionVerified",
        "CompletionFailed",
        "RollbackPerformed",
        "OrchestrationCompleted",
        "OrchestrationFailed",
        "NextWorkRequested",
    }


def test_json_roundtrip_preserves_event() -> None:
    event = _event()

    restored = MergeEvent.from_json(event.to_json())

    assert restored == event
    assert json.loads(event.to_json())["timestamp"] == "2026-03-02T09:00:00.000000Z"


def test_event_accepts_string_type_and_z_timestamp() -> None:
    event = _event(event_type="StateChanged", timestamp="2026-03-02T09:00:00Z")

    assert event.event_type is EventType.STATE_CHANGED
    assert event.timestamp == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("changes", "fragment"),
    [
        ({"event_id": "run-123"}, "expected prefix"),
        ({"event_type": "MergeExploded"}, "unsupported event type"),
        ({"candidate_id": "  "}, "must not be empty"),
        ({"timestamp": datetime(2026, 3, 2, 9, 0)}, "timezone-aware"),
        ({"payload": {"when": datetime(2026, 3, 2, tzinfo=UTC)}}, "not JSON-serializable"),
        ({"payload": {"ratio": float("nan")}}, "finite"),
        ({"payload": ["not", "an", "object"]}, "expected object"),
    ],
)
def test_invalid_events_are_rejected(changes: dict[str, object], fragment: str) -> None:
    with pytest.raises(ValueError, match=fragment):
        _event(**changes)


def test_from_dict_rejects_unknown_and_missing_fields() -> None:
    data = json.loads(_event().to_json())

    with pytest.raises(ValueError, match="unexpected fields: \\['extra'\\]"):
        MergeEvent.from_dict({**data, "extra": 1})

    del data["payload"]
    with pytest.raises(ValueError, match="missing required fields: \\['payload'\\]"):
        MergeEvent.from_dict(data)


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
def test_from_json_rejects_malformed_input(raw: str) -> None:
    with pytest.raises(ValueError, match="MergeEvent"):
        MergeEvent.from_json(raw)


def test_redaction_is_deep_and_non_destructive() -> None:
    event = _event(
        payload={
            "deployment": {"id": "dep-1", "auth_token": "abc"},
            "headers": [{"Authorization": "Bearer xyz", "accept": "json"}],
            "client_secret": {"nested": "value"},
        }
    )

    redacted = redact_sensitive(event)

    assert redacted.payload == {
        "deployment": {"id": "dep-1", "auth_token": "***REDACTED***"},
        "headers": [{"Authorization": "***REDACTED***", "accept": "json"}],
        "client_secret": "***REDACTED***",
    }
    assert event.payload["deployment"] == {"id": "dep-1", "auth_token": "abc"}
    assert redacted.event_id == event.event_id
