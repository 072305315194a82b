"""Public observability primitives: structured logging, metrics, and event streaming."""

from merge_orchestrator.observability.events import (
    DispatchError,
    EventBus,
    PersistenceCallback,
    Subscriber,
)
from merge_orchestrator.observability.logging import (
    LoggingConfig,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    redact_event_dict,
)
from merge_orchestrator.observability.metrics import MetricsRegistry

__all__ = [
    "DispatchError",
    "EventBus",
    "LoggingConfig",
    "MetricsRegistry",
    "PersistenceCallback",
    "Subscriber",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event_dict",
]
