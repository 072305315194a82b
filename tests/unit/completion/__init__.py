"""Shared in-memory collaborator fakes and builders for completion tests."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Final

from merge_orchestrator.collaborators.base import (
    CheckRun,
    CheckStatus,
    CollaboratorError,
    DeploymentHandle,
    DeploymentStatus,
    IssueState,
    MergeableState,
    MergeResponse,
    PipelineStatus,
    PolicyState,
    PolicyStatus,
    ProtectionRules,
    Review,
    ReviewState,
)
from merge_orchestrator.config.schema import default_config, merge_config
from merge_orchestrator.config.settings import OrchestratorSettings
from merge_orchestrator.domain.events import MergeEvent
from merge_orchestrator.domain.models import (
    ChangeStats,
    CompletionOutcome,
    MergeCandidate,
    MergeStrategy,
)

HEAD_SHA: Final[str] = "a1b2c3d4e5f6a7b8c9d0a1b2c3d4e5f6a7b8c9d0"
MOVED_SHA: Final[str] = "ffffeeeeddddccccbbbbaaaa9999888877776666"
MERGE_SHA: Final[str] = "0f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c"
SOURCE_BRANCH: Final[str] = "feature/login-throttle"
TARGET_BRANCH: Final[str] = "main"


def make_candidate(**overrides: Any) -> MergeCandidate:
    values: dict[str, Any] = {
        "candidate_id": "pr-101",
        "source_branch": SOURCE_BRANCH,
        "target_branch": TARGET_BRANCH,
        "title": "Throttle repeated login attempts",
        "head_sha": HEAD_SHA,
        "description": "Adds a sliding-window limiter in front of the login handler.",
        "work_item_id": "42",
    }
    values.update(overrides)
    return MergeCandidate(**values)


def make_settings(overlay: dict[str, object] | None = None) -> OrchestratorSettings:
    """Settings from defaults merged with ``overlay``; validated like a loaded config."""

    return OrchestratorSettings.from_config(merge_config(default_config(), overlay or {}))


def transport_error(detail: str = "connection reset by peer") -> CollaboratorError:
    return CollaboratorError(code="transport", detail=detail, retryable=True)


@dataclass(slots=True)
class FakeGitHost:
    """Git host double; every call is recorded and failures are queued per operation."""

    reviews: list[Review] = field(
        default_factory=lambda: [Review(reviewer="alice", state=ReviewState.APPROVED)]
    )
    checks: list[CheckRun] = field(
        default_factory=lambda: [
            CheckRun(name="build", status=CheckStatus.COMPLETED, conclusion="success")
        ]
    )
    mergeable: MergeableState = field(
        default_factory=lambda: MergeableState(mergeable=True, head_sha=HEAD_SHA)
    )
    protection: ProtectionRules = field(default_factory=ProtectionRules)
    merge_response: MergeResponse = field(
        default_factory=lambda: MergeResponse(
            merge_commit_sha=MERGE_SHA,
            stats=ChangeStats(files_changed=3, additions=40, deletions=7, commits=2),
        )
    )
    open_candidates: dict[str, list[str]] = field(default_factory=dict)
    branches: set[str] = field(default_factory=lambda: {SOURCE_BRANCH})
    issues: dict[str, IssueState] = field(default_factory=lambda: {"42": IssueState.OPEN})
    failures: dict[str, list[Exception]] = field(default_factory=dict)
    calls: list[tuple[str, tuple[object, ...]]] = field(default_factory=list)
    comments: list[tuple[str, str]] = field(default_factory=list)
    merge_requests: list[dict[str, object]] = field(default_factory=list)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _record(self, operation: str, *args: object) -> None:
        self.calls.append((operation, args))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    async def get_reviews(self, candidate_id: str) -> list[Review]:
        self._record("get_reviews", candidate_id)
        return list(self.reviews)

    async def get_checks(self, candidate_id: str, head_sha: str) -> list[CheckRun]:
        self._record("get_checks", candidate_id, head_sha)
        return list(self.checks)

    async def get_mergeable_state(self, candidate_id: str) -> MergeableState:
        self._record("get_mergeable_state", candidate_id)
        return self.mergeable

    async def get_branch_protection(self, branch: str) -> ProtectionRules:
        self._record("get_branch_protection", branch)
        return self.protection

    async def merge(
        self,
        candidate_id: str,
        *,
        strategy: MergeStrategy,
        commit_title: str,
        commit_message: str,
        expected_head_sha: str,
    ) -> MergeResponse:
        self._record("merge", candidate_id)
        self.merge_requests.append(
            {
                "strategy": strategy,
                "commit_title": commit_title,
                "commit_message": commit_message,
                "expected_head_sha": expected_head_sha,
            }
        )
        self.mergeable = replace(
            self.mergeable, merged=True, merge_commit_sha=self.merge_response.merge_commit_sha
        )
        return self.merge_response

    async def list_open_candidates(self, branch: str) -> list[str]:
        self._record("list_open_candidates", branch)
        return list(self.open_candidates.get(branch, []))

    async def delete_branch(self, branch: str) -> None:
        self._record("delete_branch", branch)
        if branch not in self.branches:
            raise CollaboratorError(code="not_found", detail=f"branch {branch} not found", retryable=False)
        self.branches.discard(branch)

    async def branch_exists(self, branch: str) -> bool:
        self._record("branch_exists", branch)
        return branch in self.branches

    async def restore_branch(self, branch: str, sha: str) -> None:
        self._record("restore_branch", branch, sha)
        self.branches.add(branch)

    async def add_comment(self, work_item_id: str, body: str) -> None:
        self._record("add_comment", work_item_id)
        self.comments.append((work_item_id, body))

    async def close_issue(self, work_item_id: str) -> None:
        self._record("close_issue", work_item_id)
        self.issues[work_item_id] = IssueState.CLOSED

    async def reopen_issue(self, work_item_id: str) -> None:
        self._record("reopen_issue", work_item_id)
        self.issues[work_item_id] = IssueState.OPEN

    async def get_issue_state(self, work_item_id: str) -> IssueState:
        self._record("get_issue_state", work_item_id)
        return self.issues.get(work_item_id, IssueState.OPEN)


@dataclass(slots=True)
class FakeCI:
    status: PipelineStatus = field(
        default_factory=lambda: PipelineStatus(
            running=True, typical_duration_seconds=600.0, elapsed_seconds=480.0
        )
    )
    error: Exception | None = None

    async def get_pipeline_status(self, candidate_id: str, head_sha: str) -> PipelineStatus:
        if self.error is not None:
            raise self.error
        return self.status


@dataclass(slots=True)
class FakePolicy:
    status: PolicyStatus = field(default_factory=lambda: PolicyStatus(state=PolicyState.COMPLIANT))
    error: Exception | None = None

    async def get_policy_status(self, candidate: MergeCandidate) -> PolicyStatus:
        if self.error is not None:
            raise self.error
        return self.status


@dataclass(slots=True)
class FakeDeployments:
    statuses: dict[str, DeploymentStatus] = field(default_factory=dict)
    triggered: list[tuple[str, str]] = field(default_factory=list)
    trigger_failures: list[Exception] = field(default_factory=list)
    initial_status: DeploymentStatus = DeploymentStatus.IN_PROGRESS

    async def trigger_deployment(self, commit_sha: str, environment: str) -> DeploymentHandle:
        if self.trigger_failures:
            raise self.trigger_failures.pop(0)
        self.triggered.append((commit_sha, environment))
        deployment_id = f"dep-{len(self.triggered)}"
        self.statuses[deployment_id] = self.initial_status
        return DeploymentHandle(
            deployment_id=deployment_id, environment=environment, status=self.initial_status
        )

    async def get_deployment_status(self, deployment_id: str) -> DeploymentStatus:
        return self.statuses[deployment_id]


@dataclass(slots=True)
class FakeCancellableDeployments(FakeDeployments):
    cancelled: list[str] = field(default_factory=list)

    async def cancel_deployment(self, deployment_id: str) -> None:
        self.cancelled.append(deployment_id)
        self.statuses[deployment_id] = DeploymentStatus.CANCELLED


@dataclass(slots=True)
class FakeNotifier:
    failing_channels: set[str] = field(default_factory=set)
    sent: list[tuple[str, str]] = field(default_factory=list)

    async def send(self, channel: str, message: str) -> str | None:
        if channel in self.failing_channels:
            raise CollaboratorError(code="transport", detail=f"{channel} unreachable", retryable=True)
        self.sent.append((channel, message))
        return f"rcpt-{channel}-{len(self.sent)}"


@dataclass(slots=True)
class FakeConfirmingNotifier(FakeNotifier):
    unconfirmed_channels: set[str] = field(default_factory=set)
    confirmations: list[tuple[str, str]] = field(default_factory=list)

    async def confirm_delivery(self, channel: str, receipt: str) -> bool:
        self.confirmations.append((channel, receipt))
        return channel not in self.unconfirmed_channels


@dataclass(slots=True)
class RecordingSink:
    events: list[MergeEvent] = field(default_factory=list)
    broken: bool = False

    async def publish_async(self, event: MergeEvent) -> None:
        if self.broken:
            raise RuntimeError("audit store offline")
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type.value for event in self.events]


@dataclass(slots=True)
class RecordingNextWork:
    outcomes: list[CompletionOutcome] = field(default_factory=list)
    error: Exception | None = None

    async def request_next_work(self, outcome: CompletionOutcome) -> None:
        if self.error is not None:
            raise self.error
        self.outcomes.append(outcome)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def _log(self, level: str, event: str, **kwargs: object) -> None:
        self.events.append((level, event, dict(kwargs)))

    def debug(self, event: str, **kwargs: object) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: object) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: object) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: object) -> None:
        self._log("error", event, **kwargs)

    def exception(self, event: str, **kwargs: object) -> None:
        self._log("exception", event, **kwargs)

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


__all__ = [
    "HEAD_SHA",
    "MERGE_SHA",
    "MOVED_SHA",
    "SOURCE_BRANCH",
    "TARGET_BRANCH",
    "FakeCI",
    "FakeCancellableDeployments",
    "FakeConfirmingNotifier",
    "FakeDeployments",
    "FakeGitHost",
    "FakeNotifier",
    "FakePolicy",
    "RecordingLogger",
    "RecordingNextWork",
    "RecordingSink",
    "make_candidate",
    "make_settings",
    "transport_error",
]
