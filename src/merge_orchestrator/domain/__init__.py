"""
merge-orchestrator — domain layer.

Purpose
- Value objects shared by every completion component: candidates, requirements,
  verdicts, merge outcomes, post-merge actions, completion outcomes, and the
  audit event envelope.

Rules
- No IO side effects; everything here is serializable via ``to_dict()``.
"""

from merge_orchestrator.domain.events import EventType, MergeEvent, redact_sensitive
from merge_orchestrator.domain.models import (
    BLOCKING_CODE_BY_KIND,
    REQUIREMENT_ORDER,
    RETRYABLE_ERROR_KINDS,
    ActionKind,
    ActionStatus,
    BlockingIssue,
    ChangeStats,
    CompletionError,
    CompletionOutcome,
    ErrorKind,
    MergeCandidate,
    MergeError,
    MergeOutcome,
    MergeStrategy,
    OrchestrationResult,
    OrchestratorState,
    PipelineResult,
    PostMergeAction,
    ReadinessVerdict,
    Requirement,
    RequirementKind,
    RequirementStatus,
)

__all__ = [
    "BLOCKING_CODE_BY_KIND",
    "REQUIREMENT_ORDER",
    "RETRYABLE_ERROR_KINDS",
    "ActionKind",
    "ActionStatus",
    "BlockingIssue",
    "ChangeStats",
    "CompletionError",
    "CompletionOutcome",
    "ErrorKind",
    "EventType",
    "MergeCandidate",
    "MergeError",
    "MergeEvent",
    "MergeOutcome",
    "MergeStrategy",
    "OrchestrationResult",
    "OrchestratorState",
    "PipelineResult",
    "PostMergeAction",
    "ReadinessVerdict",
    "Requirement",
    "RequirementKind",
    "RequirementStatus",
    "redact_sensitive",
]
