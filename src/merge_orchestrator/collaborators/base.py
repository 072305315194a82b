"""
merge-orchestrator — collaborator boundary contracts.

File: src/merge_orchestrator/collaborators/base.py

Purpose
- Define the async protocols the completion components call (git host, CI,
  deployments, notifications, policy, next-work trigger, event sink) and the
  record types those calls return.

What should be included in this file
- Normalized ``CollaboratorError`` with deterministic machine-readable fields.
- ``call_collaborator`` wrapper: timeout enforcement and exception normalization.
- Bounded exponential backoff policy with optional symmetric jitter.
- Transport-failure text patterns used by error classification.

Functional requirements
- Cancellation always propagates; every other failure surfaces as ``CollaboratorError``.
- No network clients live here; concrete adapters are supplied by the embedding system.
"""

from __future__ import annotations

import random as random_module
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Final, Protocol, TypeVar, runtime_checkable

from merge_orchestrator.domain.models import ChangeStats, MergeStrategy
from merge_orchestrator.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from merge_orchestrator.domain.events import MergeEvent
    from merge_orchestrator.domain.models import CompletionOutcome, MergeCandidate

T = TypeVar("T")
RandomFn = Callable[[], float]

_MAX_DETAIL_CHARS: Final[int] = 2_000

# Defects in an adapter, never retried as transport failures.
PROGRAMMING_ERRORS: Final[tuple[type[Exception], ...]] = (
    TypeError,
    AttributeError,
    NameError,
    AssertionError,
)

TRANSPORT_ERROR_PATTERNS: Final[tuple[str, ...]] = (
    "connection timeout",
    "connection refused",
    "connection lost",
    "connection reset",
    "timeout expired",
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "ehostunreach",
    "enetunreach",
    "epipe",
    "eai_again",
)


class CollaboratorError(RuntimeError):
    """Normalized collaborator failure with deterministic machine-readable fields."""

    def __init__(
        self,
        *,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        if not isinstance(code, str) or not code.strip():
            raise ValueError("code must be a non-empty string")
        self.code = code.strip()
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [f"code={self.code}", f"retryable={str(self.retryable).lower()}"]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


# ---------------------------------------------------------------------------
# Records returned by collaborators
# ---------------------------------------------------------------------------


class ReviewState(StrEnum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    DISMISSED = "dismissed"


class CheckStatus(StrEnum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class IssueState(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class DeploymentStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PolicyState(StrEnum):
    COMPLIANT = "compliant"
    PENDING = "pending"
    VIOLATION = "violation"


@dataclass(frozen=True, slots=True)
class Review:
    reviewer: str
    state: ReviewState
    submitted_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CheckRun:
    name: str
    status: CheckStatus
    conclusion: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status is CheckStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class MergeableState:
    """Host view of whether the candidate can merge right now.

    ``mergeable`` is ``None`` while the host is still computing it.
    """

    mergeable: bool | None
    has_conflicts: bool = False
    merged: bool = False
    head_sha: str | None = None
    merge_commit_sha: str | None = None


@dataclass(frozen=True, slots=True)
class ProtectionRules:
    required_checks: tuple[str, ...] = ()
    required_approvals: int = 0
    allowed_strategies: frozenset[MergeStrategy] = frozenset(MergeStrategy)


@dataclass(frozen=True, slots=True)
class MergeResponse:
    merge_commit_sha: str
    stats: ChangeStats = field(default_factory=ChangeStats)
    merged_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PipelineStatus:
    """CI pipeline timing used only for wait estimation."""

    running: bool
    typical_duration_seconds: float | None = None
    elapsed_seconds: float | None = None

    def remaining_seconds(self) -> float | None:
        if self.typical_duration_seconds is None:
            return None
        elapsed = self.elapsed_seconds or 0.0
        return max(0.0, self.typical_duration_seconds - elapsed)


@dataclass(frozen=True, slots=True)
class PolicyStatus:
    state: PolicyState
    violations: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DeploymentHandle:
    deployment_id: str
    environment: str
    status: DeploymentStatus = DeploymentStatus.PENDING


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class GitHost(Protocol):
    async def get_reviews(self, candidate_id: str) -> Sequence[Review]: ...

    async def get_checks(self, candidate_id: str, head_sha: str) -> Sequence[CheckRun]: ...

    async def get_mergeable_state(self, candidate_id: str) -> MergeableState: ...

    async def get_branch_protection(self, branch: str) -> ProtectionRules: ...

    async def merge(
        self,
        candidate_id: str,
        *,
        strategy: MergeStrategy,
        commit_title: str,
        commit_message: str,
        expected_head_sha: str,
    ) -> MergeResponse: ...

    async def list_open_candidates(self, branch: str) -> Sequence[str]: ...

    async def delete_branch(self, branch: str) -> None: ...

    async def branch_exists(self, branch: str) -> bool: ...

    async def restore_branch(self, branch: str, sha: str) -> None: ...

    async def add_comment(self, work_item_id: str, body: str) -> None: ...

    async def close_issue(self, work_item_id: str) -> None: ...

    async def reopen_issue(self, work_item_id: str) -> None: ...

    async def get_issue_state(self, work_item_id: str) -> IssueState: ...


class CIProvider(Protocol):
    async def get_pipeline_status(self, candidate_id: str, head_sha: str) -> PipelineStatus: ...


class DeploymentProvider(Protocol):
    async def trigger_deployment(self, commit_sha: str, environment: str) -> DeploymentHandle: ...

    async def get_deployment_status(self, deployment_id: str) -> DeploymentStatus: ...


@runtime_checkable
class CancellableDeployments(Protocol):
    async def cancel_deployment(self, deployment_id: str) -> None: ...


class Notifier(Protocol):
    async def send(self, channel: str, message: str) -> str | None:
        """Deliver ``message``; return a receipt when the channel issues one."""
        ...


@runtime_checkable
class DeliveryConfirmation(Protocol):
    async def confirm_delivery(self, channel: str, receipt: str) -> bool: ...


class PolicyProvider(Protocol):
    async def get_policy_status(self, candidate: MergeCandidate) -> PolicyStatus: ...


class NextWorkTrigger(Protocol):
    async def request_next_work(self, outcome: CompletionOutcome) -> None: ...


class EventSink(Protocol):
    async def publish_async(self, event: MergeEvent) -> object: ...


# ---------------------------------------------------------------------------
# Call wrapper, backoff, transport classification
# ---------------------------------------------------------------------------


async def call_collaborator(
    operation: str,
    coroutine: Awaitable[T],
    timeout_seconds: float,
) -> T:
    """Await ``coroutine`` under a timeout and normalize its failures to ``CollaboratorError``.

    ``PROGRAMMING_ERRORS`` raised by the adapter propagate unchanged.
    """

    try:
        return await run_with_timeout(coroutine, timeout_seconds)
    except CollaboratorError:
        raise
    except TimeoutError as exc:
        raise CollaboratorError(
            code="timeout",
            detail=f"{operation} timed out after {timeout_seconds} seconds",
            retryable=True,
        ) from exc
    except PROGRAMMING_ERRORS:
        raise
    except Exception as exc:
        raise CollaboratorError(
            code="transport",
            detail=f"{operation} failed: {type(exc).__name__}: {exc}",
            retryable=True,
        ) from exc


def is_transport_failure(text: str | None) -> bool:
    """Return ``True`` when ``text`` names a network-level failure."""

    if not text:
        return False
    lowered = text.lower()
    return any(pattern in lowered for pattern in TRANSPORT_ERROR_PATTERNS)


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return bounded exponential backoff delay for retry attempt N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)

    if config.jitter_ratio == 0.0:
        return bounded_delay

    random_value = random_fn()
    if not (0.0 <= random_value <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_value * 2.0) - 1.0) * max_jitter
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


def _normalize_detail(detail: object) -> str:
    text = str(detail).strip() if detail is not None else ""
    if not text:
        text = "no detail provided"
    if len(text) > _MAX_DETAIL_CHARS:
        text = text[: _MAX_DETAIL_CHARS - 3] + "..."
    return text


__all__ = [
    "PROGRAMMING_ERRORS",
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
