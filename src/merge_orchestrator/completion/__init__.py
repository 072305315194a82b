"""Merge completion flow: readiness, merge, post-merge actions, verification and orchestration."""

from merge_orchestrator.completion.checkpoint import CompletionCheckpoint
from merge_orchestrator.completion.executor import MergeExecutor, classify_merge_error
from merge_orchestrator.completion.orchestrator import (
    CandidateBusyError,
    MergeOrchestrator,
    OrchestrationRun,
    OrchestratorError,
    OrchestratorStateError,
)
from merge_orchestrator.completion.pipeline import ActionError, PostMergePipeline
from merge_orchestrator.completion.readiness import ReadinessEvaluator
from merge_orchestrator.completion.templates import MessageTemplates, TemplateRenderError

__all__ = [
    "ActionError",
    "CandidateBusyError",
    "CompletionCheckpoint",
    "MergeExecutor",
    "MergeOrchestrator",
    "MessageTemplates",
    "OrchestrationRun",
    "OrchestratorError",
    "OrchestratorStateError",
    "PostMergePipeline",
    "ReadinessEvaluator",
    "TemplateRenderError",
    "classify_merge_error",
]
