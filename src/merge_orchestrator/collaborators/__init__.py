"""External collaborator contracts consumed by the completion components."""

from merge_orchestrator.collaborators.base import (
    TRANSPORT_ERROR_PATTERNS,
    BackoffConfig,
    CancellableDeployments,
    CheckRun,
    CheckStatus,
    CIProvider,
    CollaboratorError,
    DeliveryConfirmation,
    DeploymentHandle,
    DeploymentProvider,
    DeploymentStatus,
    EventSink,
    GitHost,
    IssueState,
    MergeableState,
    MergeResponse,
    NextWorkTrigger,
    Notifier,
    PipelineStatus,
    PolicyProvider,
    PolicyState,
    PolicyStatus,
    ProtectionRules,
    Review,
    ReviewState,
    call_collaborator,
    compute_backoff_delay,
    is_transport_failure,
)

__all__ = [
    "TRANSPORT_ERROR_PATTERNS",
    "BackoffConfig",
    "CIProvider",
    "CancellableDeployments",
    "CheckRun",
    "CheckStatus",
    "CollaboratorError",
    "DeliveryConfirmation",
    "DeploymentHandle",
    "DeploymentProvider",
    "DeploymentStatus",
    "EventSink",
    "GitHost",
    "IssueState",
    "MergeResponse",
    "MergeableState",
    "NextWorkTrigger",
    "Notifier",
    "PipelineStatus",
    "PolicyProvider",
    "PolicyState",
    "PolicyStatus",
    "ProtectionRules",
    "Review",
    "ReviewState",
    "call_collaborator",
    "compute_backoff_delay",
    "is_transport_failure",
]
