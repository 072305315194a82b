"""
merge-orchestrator — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction and correlation metadata.

What this test file should cover
- JSON line validity and redaction guarantees for structlog and stdlib records.
- Correlation field propagation through contextvars.
- Level filtering and console rendering.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import io
import json
import logging
from typing import TYPE_CHECKING

import pytest
import structlog

from merge_orchestrator.observability.logging import (
    LoggingConfig,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    redact_event_dict,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    package_logger = logging.getLogger("merge_orchestrator")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


def _records(stream: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_records_carry_correlation_and_redaction() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(stream=stream))
    log = structlog.get_logger("merge_orchestrator.completion.executor")

    with correlation_scope(candidate_id="pr-7", attempt_id=None):
        log.info(
            "merge_executed",
            merge_commit_sha="deadbeef",
            api_token="abc123",
            detail="retry with password=hunter2",
        )

    (record,) = _records(stream)
    assert record["event"] == "merge_executed"
    assert record["level"] == "info"
    assert record["logger"] == "merge_orchestrator.completion.executor"
    assert record["candidate_id"] == "pr-7"
    assert "attempt_id" not in record
    assert record["merge_commit_sha"] == "deadbeef"
    assert record["api_token"] == "***REDACTED***"
    assert record["detail"] == "retry with password=***REDACTED***"
    assert "timestamp" in record


def test_stdlib_records_share_the_pipeline() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(stream=stream))

    logging.getLogger("merge_orchestrator.legacy").warning("push failed token=ghs_abcdef")

    (record,) = _records(stream)
    assert record["event"] == "push failed token=***REDACTED***"
    assert record["level"] == "warning"


def test_level_filtering() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="WARNING", stream=stream))
    log = structlog.get_logger("merge_orchestrator.readiness")

    log.info("readiness_evaluated")
    log.warning("readiness_read_failed", requirement="ci_checks")

    assert [record["event"] for record in _records(stream)] == ["readiness_read_failed"]


def test_redaction_can_be_disabled() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(stream=stream, redact_secrets=False))

    structlog.get_logger("merge_orchestrator.cli").info("debug_dump", token="visible")

    assert _records(stream)[0]["token"] == "visible"


def test_console_format_renders_plain_text() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(log_format="console", stream=stream))

    structlog.get_logger("merge_orchestrator.pipeline").info("action_completed", action="notify")

    output = stream.getvalue()
    assert "action_completed" in output
    assert "action=notify" in output


def test_invalid_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported logging level"):
        configure_logging(LoggingConfig(level="LOUD"))


def test_logging_config_from_observability_section() -> None:
    config = LoggingConfig.from_config(
        {"log_level": "DEBUG", "log_format": "console", "redact_secrets": False}
    )

    assert config.level == "DEBUG"
    assert config.log_format == "console"
    assert config.redact_secrets is False
    assert LoggingConfig.from_config({}).log_format == "json"


def test_redact_event_dict_handles_nested_values() -> None:
    event_dict = {
        "event": "calling host with Bearer abc.def",
        "level": "info",
        "headers": {"Authorization": "Basic xyz", "accept": "json"},
        "receipts": ["ghp_" + "a" * 24, "ok"],
        "attempts": 2,
    }

    redacted = redact_event_dict(None, "info", event_dict)

    assert redacted["event"] == "calling host with Bearer ***REDACTED***"
    assert redacted["headers"] == {"Authorization": "***REDACTED***", "accept": "json"}
    assert redacted["receipts"] == ["***REDACTED***", "ok"]
    assert redacted["attempts"] == 2


def test_correlation_scope_is_restored_on_exit() -> None:
    with correlation_scope(candidate_id="pr-7", run_id="orc-1"):
        assert get_correlation_context() == {"candidate_id": "pr-7", "run_id": "orc-1"}
        with correlation_scope(attempt_id="att-2"):
            assert get_correlation_context()["attempt_id"] == "att-2"
        assert "attempt_id" not in get_correlation_context()

    assert get_correlation_context() == {}
