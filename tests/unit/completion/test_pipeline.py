"""
merge-orchestrator — unit tests for the post-merge action pipeline

File: tests/unit/completion/test_pipeline.py

Purpose
- Validate ordering, retry budgets with clock-driven backoff, critical halts,
  non-critical continuation, and each built-in action's side effects.

What this test file should cover
- Disabled actions never run and stay pending.
- Later actions stay pending after a critical halt.
- Retries never repeat a sub-step that already succeeded.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

import pytest

from merge_orchestrator.collaborators.base import CollaboratorError
from merge_orchestrator.completion.pipeline import PostMergePipeline
from merge_orchestrator.completion.templates import MessageTemplates
from merge_orchestrator.config.settings import ActionSettings, PipelineSettings
from merge_orchestrator.domain.events import EventType
from merge_orchestrator.domain.models import (
    ActionKind,
    ActionStatus,
    ChangeStats,
    ErrorKind,
    MergeError,
    MergeOutcome,
    MergeStrategy,
)
from merge_orchestrator.utils.clock import VirtualClock
from merge_orchestrator.utils.fs import ScratchSpace

from . import (
    MERGE_SHA,
    SOURCE_BRANCH,
    FakeDeployments,
    FakeGitHost,
    FakeNotifier,
    RecordingLogger,
    make_candidate,
    make_settings,
    transport_error,
)


@dataclass(slots=True)
class EventLog:
    entries: list[tuple[EventType, dict[str, object]]] = field(default_factory=list)

    async def __call__(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        self.entries.append((event_type, dict(payload)))

    def of(self, event_type: EventType) -> list[dict[str, object]]:
        return [payload for kind, payload in self.entries if kind is event_type]


@dataclass(slots=True)
class FlakyNotifier:
    """Each channel fails ``failures[channel]`` times before delivering."""

    failures: dict[str, int] = field(default_factory=dict)
    sent: list[tuple[str, str]] = field(default_factory=list)

    async def send(self, channel: str, message: str) -> str | None:
        remaining = self.failures.get(channel, 0)
        if remaining > 0:
            self.failures[channel] = remaining - 1
            raise CollaboratorError(code="transport", detail=f"{channel} busy", retryable=True)
        self.sent.append((channel, message))
        return None


def _merged() -> MergeOutcome:
    return MergeOutcome(
        candidate_id="pr-101",
        success=True,
        strategy=MergeStrategy.SQUASH,
        merge_commit_sha=MERGE_SHA,
        stats=ChangeStats(files_changed=3, additions=40, deletions=7, commits=2),
    )


def _pipeline_settings(**changes: object) -> PipelineSettings:
    return replace(make_settings().pipeline, **changes)


def _with_action(settings: PipelineSettings, kind: ActionKind, **changes: object) -> PipelineSettings:
    actions = tuple(
        replace(item, **changes) if item.kind is kind else item for item in settings.actions
    )
    return replace(settings, actions=actions)


def _pipeline(
    git: FakeGitHost,
    settings: PipelineSettings | None = None,
    *,
    clock: VirtualClock | None = None,
    events: EventLog | None = None,
    **collaborators: object,
) -> PostMergePipeline:
    return PostMergePipeline(
        git,
        settings=settings or _pipeline_settings(),
        templates=MessageTemplates(actor="release-bot"),
        clock=clock or VirtualClock(),
        on_event=events,
        logger=RecordingLogger(),
        **collaborators,  # type: ignore[arg-type]
    )


async def test_default_pipeline_runs_enabled_actions_in_order() -> None:
    git = FakeGitHost()
    events = EventLog()

    result = await _pipeline(git, events=events).run(make_candidate(), _merged())

    assert result.halted is False
    assert result.failed_actions == ()
    assert [item.kind for item in result.actions] == [
        ActionKind.BRANCH_DELETE,
        ActionKind.ISSUE_CLOSE,
        ActionKind.DEPLOY_TRIGGER,
        ActionKind.NOTIFY,
        ActionKind.CLEANUP,
    ]
    deploy = result.action(ActionKind.DEPLOY_TRIGGER)
    assert deploy is not None
    assert deploy.status is ActionStatus.PENDING
    assert deploy.attempts == 0
    assert git.operations() == ["list_open_candidates", "delete_branch", "add_comment", "close_issue"]
    assert SOURCE_BRANCH not in git.branches
    assert [payload["action"] for payload in events.of(EventType.ACTION_COMPLETED)] == [
        "branch_delete",
        "issue_close",
        "notify",
        "cleanup",
    ]


async def test_actions_run_by_configured_order_not_declaration_order() -> None:
    settings = _pipeline_settings(
        actions=(
            ActionSettings(kind=ActionKind.ISSUE_CLOSE, order=5, critical=True),
            ActionSettings(kind=ActionKind.BRANCH_DELETE, order=1),
        )
    )
    git = FakeGitHost()

    result = await _pipeline(git, settings).run(make_candidate(), _merged())

    assert [item.kind for item in result.actions] == [ActionKind.BRANCH_DELETE, ActionKind.ISSUE_CLOSE]
    assert git.operations().index("delete_branch") < git.operations().index("close_issue")


async def test_retry_uses_backoff_and_does_not_repeat_comment() -> None:
    git = FakeGitHost()
    git.fail("close_issue", transport_error(), transport_error())
    clock = VirtualClock()

    result = await _pipeline(git, clock=clock).run(make_candidate(), _merged())

    issue = result.action(ActionKind.ISSUE_CLOSE)
    assert issue is not None
    assert issue.status is ActionStatus.COMPLETED
    assert issue.attempts == 3
    assert issue.details["comment_posted"] is True
    assert clock.sleeps == [1.0, 2.0]
    assert git.count("add_comment") == 1
    assert git.count("close_issue") == 3


async def test_jittered_backoff_uses_injected_random() -> None:
    settings = _pipeline_settings(backoff_jitter_ratio=0.5)
    git = FakeGitHost()
    git.fail("close_issue", transport_error())
    clock = VirtualClock()

    pipeline = PostMergePipeline(
        git,
        settings=settings,
        templates=MessageTemplates(actor="bot"),
        clock=clock,
        random_fn=lambda: 1.0,
    )
    await pipeline.run(make_candidate(), _merged())

    assert clock.sleeps == [1.5]


async def test_backoff_sleeps_stop_at_the_deadline() -> None:
    git = FakeGitHost()
    git.fail("close_issue", transport_error(), transport_error())
    clock = VirtualClock()

    result = await _pipeline(git, clock=clock).run(
        make_candidate(), _merged(), deadline=clock.monotonic() + 1.5
    )

    assert clock.sleeps == [1.0, 0.5]
    closed = result.action(ActionKind.ISSUE_CLOSE)
    assert closed is not None and closed.status is ActionStatus.COMPLETED
    assert closed.attempts == 3


async def test_critical_failure_halts_and_leaves_later_actions_pending() -> None:
    git = FakeGitHost()
    git.fail("close_issue", *(transport_error() for _ in range(3)))
    events = EventLog()
    clock = VirtualClock()

    result = await _pipeline(git, clock=clock, events=events).run(make_candidate(), _merged())

    assert result.halted is True
    assert result.halted_by is ActionKind.ISSUE_CLOSE
    assert result.failure_reason is not None
    assert result.failure_reason.startswith("critical action issue_close failed after 3 attempt(s)")
    statuses = {item.kind: item.status for item in result.actions}
    assert statuses[ActionKind.BRANCH_DELETE] is ActionStatus.COMPLETED
    assert statuses[ActionKind.ISSUE_CLOSE] is ActionStatus.FAILED
    assert statuses[ActionKind.NOTIFY] is ActionStatus.PENDING
    assert statuses[ActionKind.CLEANUP] is ActionStatus.PENDING
    assert clock.sleeps == [1.0, 2.0]
    failed = events.of(EventType.ACTION_FAILED)
    assert failed == [
        {
            "action": "issue_close",
            "attempts": 3,
            "critical": True,
            "error": str(transport_error()),
        }
    ]


async def test_non_critical_failure_is_recorded_and_pipeline_continues() -> None:
    git = FakeGitHost()
    denied = CollaboratorError(code="permission_denied", detail="token lacks delete", retryable=False)
    git.fail("delete_branch", denied, denied, denied)

    result = await _pipeline(git).run(make_candidate(), _merged())

    assert result.halted is False
    branch = result.action(ActionKind.BRANCH_DELETE)
    assert branch is not None
    assert branch.status is ActionStatus.FAILED
    assert branch.last_error is not None and "token lacks delete" in branch.last_error
    assert [item.kind for item in result.failed_actions] == [ActionKind.BRANCH_DELETE]
    assert git.count("close_issue") == 1


async def test_branch_referenced_by_other_candidates_is_retained() -> None:
    git = FakeGitHost(open_candidates={SOURCE_BRANCH: ["pr-101", "pr-202"]})

    result = await _pipeline(git).run(make_candidate(), _merged())

    branch = result.action(ActionKind.BRANCH_DELETE)
    assert branch is not None
    assert branch.status is ActionStatus.COMPLETED
    assert branch.details["retained"] is True
    assert branch.details["referenced_by"] == ["pr-202"]
    assert git.count("delete_branch") == 0
    assert SOURCE_BRANCH in git.branches


async def test_already_deleted_branch_counts_as_done() -> None:
    git = FakeGitHost(branches=set())

    result = await _pipeline(git).run(make_candidate(), _merged())

    branch = result.action(ActionKind.BRANCH_DELETE)
    assert branch is not None
    assert branch.status is ActionStatus.COMPLETED
    assert branch.details == {"branch": SOURCE_BRANCH, "deleted": False, "already_absent": True}


async def test_issue_close_is_skipped_without_work_item() -> None:
    git = FakeGitHost()

    result = await _pipeline(git).run(make_candidate(work_item_id=None), _merged())

    issue = result.action(ActionKind.ISSUE_CLOSE)
    assert issue is not None
    assert issue.status is ActionStatus.COMPLETED
    assert issue.details["skipped"] is True
    assert git.count("close_issue") == 0


async def test_closing_comment_is_rendered_from_outcome() -> None:
    git = FakeGitHost()

    await _pipeline(git).run(make_candidate(), _merged())

    work_item_id, body = git.comments[0]
    assert work_item_id == "42"
    assert MERGE_SHA in body
    assert "release-bot" in body


async def test_deploy_trigger_records_deployment() -> None:
    settings = _with_action(_pipeline_settings(deploy_environment="staging"), ActionKind.DEPLOY_TRIGGER, enabled=True)
    deployments = FakeDeployments()

    result = await _pipeline(FakeGitHost(), settings, deployments=deployments).run(
        make_candidate(), _merged()
    )

    deploy = result.action(ActionKind.DEPLOY_TRIGGER)
    assert deploy is not None
    assert deploy.status is ActionStatus.COMPLETED
    assert deploy.details == {
        "deployment_id": "dep-1",
        "environment": "staging",
        "status": "in_progress",
        "commit_sha": MERGE_SHA,
    }
    assert deployments.triggered == [(MERGE_SHA, "staging")]


async def test_deploy_without_provider_halts_critical_pipeline() -> None:
    settings = _with_action(_pipeline_settings(), ActionKind.DEPLOY_TRIGGER, enabled=True)

    result = await _pipeline(FakeGitHost(), settings).run(make_candidate(), _merged())

    assert result.halted is True
    assert result.halted_by is ActionKind.DEPLOY_TRIGGER
    assert result.failure_reason is not None
    assert "no deployment provider" in result.failure_reason


async def test_notify_partial_delivery_still_completes() -> None:
    settings = _pipeline_settings(notify_channels=("slack:#releases", "email:team"))
    notifier = FakeNotifier(failing_channels={"email:team"})

    result = await _pipeline(FakeGitHost(), settings, notifier=notifier).run(
        make_candidate(), _merged()
    )

    notify = result.action(ActionKind.NOTIFY)
    assert notify is not None
    assert notify.status is ActionStatus.COMPLETED
    assert notify.attempts == 1
    channels = notify.details["channels"]
    assert isinstance(channels, dict)
    assert channels["slack:#releases"] == {"delivered": True, "receipt": "rcpt-slack:#releases-1"}
    assert channels["email:team"]["delivered"] is False
    assert [channel for channel, _ in notifier.sent] == ["slack:#releases"]


async def test_notify_retries_when_every_channel_fails() -> None:
    settings = _pipeline_settings(notify_channels=("slack", "email"))
    notifier = FlakyNotifier(failures={"slack": 1, "email": 1})
    clock = VirtualClock()

    result = await _pipeline(FakeGitHost(), settings, clock=clock, notifier=notifier).run(
        make_candidate(), _merged()
    )

    notify = result.action(ActionKind.NOTIFY)
    assert notify is not None
    assert notify.status is ActionStatus.COMPLETED
    assert notify.attempts == 2
    assert [channel for channel, _ in notifier.sent] == ["slack", "email"]
    assert clock.sleeps == [1.0]


async def test_notify_without_notifier_fails_non_critically() -> None:
    settings = _pipeline_settings(notify_channels=("slack",))

    result = await _pipeline(FakeGitHost(), settings).run(make_candidate(), _merged())

    notify = result.action(ActionKind.NOTIFY)
    assert notify is not None
    assert notify.status is ActionStatus.FAILED
    assert notify.last_error is not None and "no notifier" in notify.last_error
    assert result.halted is False


async def test_cleanup_releases_scratch_space(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path / "scratch")
    allocated = scratch.allocate("pr-101")
    scratch.write("pr-101", "verdict.json", "{}")

    result = await _pipeline(FakeGitHost(), scratch=scratch).run(make_candidate(), _merged())

    cleanup = result.action(ActionKind.CLEANUP)
    assert cleanup is not None
    assert cleanup.details == {"released": True, "path": allocated.as_posix()}
    assert not allocated.exists()


async def test_pipeline_requires_successful_merge() -> None:
    failed = MergeOutcome(
        candidate_id="pr-101",
        success=False,
        strategy=MergeStrategy.SQUASH,
        errors=(MergeError(kind=ErrorKind.MERGE_CONFLICT, message="conflict", retryable=True),),
    )

    with pytest.raises(ValueError, match="successful merge"):
        await _pipeline(FakeGitHost()).run(make_candidate(), failed)
