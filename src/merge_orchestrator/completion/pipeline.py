"""
merge-orchestrator — post-merge action pipeline.

File: src/merge_orchestrator/completion/pipeline.py

Purpose
- Run the configured side effects of a successful merge (branch cleanup,
  work-item closure, deployment, notifications, scratch cleanup) strictly in
  order, with per-action retry budgets.

Functional requirements
- Attempts of one action are separated by exponential backoff on the injected clock.
- A non-critical action that exhausts its budget is recorded and the pipeline continues.
- A critical action that exhausts its budget halts the pipeline; later actions stay pending.
- Retries never repeat a sub-step that already succeeded (closing comment, delivered channels).
"""

from __future__ import annotations

import random as random_module
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from merge_orchestrator.collaborators.base import (
    BackoffConfig,
    CollaboratorError,
    call_collaborator,
    compute_backoff_delay,
)
from merge_orchestrator.config.settings import PipelineSettings, TimeoutSettings
from merge_orchestrator.domain.events import EventType
from merge_orchestrator.domain.models import (
    ActionKind,
    ActionStatus,
    PipelineResult,
    PostMergeAction,
)
from merge_orchestrator.utils.clock import SystemClock

if TYPE_CHECKING:
    from merge_orchestrator.collaborators.base import DeploymentProvider, GitHost, Notifier
    from merge_orchestrator.completion.templates import MessageTemplates
    from merge_orchestrator.domain.models import MergeCandidate, MergeOutcome
    from merge_orchestrator.utils.clock import Clock
    from merge_orchestrator.utils.fs import ScratchSpace

EventCallback = Callable[[EventType, Mapping[str, object]], Awaitable[None]]
_Handler = Callable[
    ["MergeCandidate", "MergeOutcome", PostMergeAction], Awaitable[dict[str, object]]
]


class ActionError(RuntimeError):
    """Raised by an action handler when its side effect did not happen."""


class PostMergePipeline:
    """Sequential executor for the configured post-merge actions."""

    def __init__(
        self,
        git_host: GitHost,
        *,
        settings: PipelineSettings,
        templates: MessageTemplates,
        timeouts: TimeoutSettings | None = None,
        clock: Clock | None = None,
        deployments: DeploymentProvider | None = None,
        notifier: Notifier | None = None,
        scratch: ScratchSpace | None = None,
        on_event: EventCallback | None = None,
        random_fn: Callable[[], float] = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self._git = git_host
        self._settings = settings
        self._templates = templates
        self._timeouts = timeouts if timeouts is not None else TimeoutSettings()
        self._clock = clock if clock is not None else SystemClock()
        self._deployments = deployments
        self._notifier = notifier
        self._scratch = scratch
        self._on_event = on_event
        self._random_fn = random_fn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._handlers: dict[ActionKind, _Handler] = {
            ActionKind.BRANCH_DELETE: self._branch_delete,
            ActionKind.ISSUE_CLOSE: self._issue_close,
            ActionKind.DEPLOY_TRIGGER: self._deploy_trigger,
            ActionKind.NOTIFY: self._notify,
            ActionKind.CLEANUP: self._cleanup,
        }

    def build_actions(self) -> list[PostMergeAction]:
        """Fresh action records from configuration, in execution order."""

        return [
            PostMergeAction(
                kind=item.kind,
                order=item.order,
                enabled=item.enabled,
                critical=item.critical,
                retry_budget=item.retry_budget,
            )
            for item in sorted(self._settings.actions, key=lambda configured: configured.order)
        ]

    async def run(
        self,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        *,
        deadline: float | None = None,
    ) -> PipelineResult:
        """Run every enabled action in order.

        ``deadline`` is a ``clock.monotonic()`` instant. Backoff sleeps never
        extend past it; remaining attempts still run, back to back.
        """

        if not outcome.success:
            raise ValueError("post-merge pipeline requires a successful merge outcome")

        actions = self.build_actions()
        for action in actions:
            if not action.enabled:
                continue
            completed = await self._run_action(action, candidate, outcome, deadline)
            if completed or not action.critical:
                continue

            reason = (
                f"critical action {action.kind.value} failed after {action.attempts} "
                f"attempt(s): {action.last_error}"
            )
            self._logger.error(
                "pipeline_halted",
                candidate_id=candidate.candidate_id,
                action=action.kind.value,
                reason=reason,
            )
            return PipelineResult(
                actions=tuple(actions),
                halted=True,
                halted_by=action.kind,
                failure_reason=reason,
            )

        failed = [item.kind.value for item in actions if item.status is ActionStatus.FAILED]
        self._logger.info(
            "pipeline_finished",
            candidate_id=candidate.candidate_id,
            failed_actions=failed,
        )
        return PipelineResult(actions=tuple(actions))

    async def _run_action(
        self,
        action: PostMergeAction,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        deadline: float | None,
    ) -> bool:
        handler = self._handlers[action.kind]
        backoff = BackoffConfig(
            max_retries=action.retry_budget - 1,
            initial_delay_seconds=self._settings.backoff_initial_seconds,
            multiplier=self._settings.backoff_multiplier,
            max_delay_seconds=self._settings.backoff_max_seconds,
            jitter_ratio=self._settings.backoff_jitter_ratio,
        )

        for attempt in range(1, action.retry_budget + 1):
            action.mark_started(self._clock.now())
            await self._emit(
                EventType.ACTION_STARTED,
                {"action": action.kind.value, "attempt": attempt},
            )
            try:
                details = await handler(candidate, outcome, action)
            except (CollaboratorError, ActionError, OSError) as exc:
                action.last_error = str(exc)
                self._logger.warning(
                    "action_attempt_failed",
                    candidate_id=candidate.candidate_id,
                    action=action.kind.value,
                    attempt=attempt,
                    budget=action.retry_budget,
                    error=str(exc),
                )
                if attempt < action.retry_budget:
                    delay = compute_backoff_delay(
                        retry_number=attempt, config=backoff, random_fn=self._random_fn
                    )
                    await self._clock.sleep(self._bounded(delay, deadline))
                continue

            action.mark_completed(self._clock.now(), details)
            self._logger.info(
                "action_completed",
                candidate_id=candidate.candidate_id,
                action=action.kind.value,
                attempts=action.attempts,
            )
            await self._emit(
                EventType.ACTION_COMPLETED,
                {"action": action.kind.value, "attempts": action.attempts, "details": action.details},
            )
            return True

        action.mark_failed(self._clock.now(), action.last_error or "retry budget exhausted")
        await self._emit(
            EventType.ACTION_FAILED,
            {
                "action": action.kind.value,
                "attempts": action.attempts,
                "critical": action.critical,
                "error": action.last_error,
            },
        )
        return False

    async def _branch_delete(
        self, candidate: MergeCandidate, outcome: MergeOutcome, action: PostMergeAction
    ) -> dict[str, object]:
        branch = candidate.source_branch
        open_candidates = await self._call(
            "list_open_candidates", self._git.list_open_candidates(branch)
        )
        others = sorted(item for item in open_candidates if item != candidate.candidate_id)
        if others:
            return {"branch": branch, "retained": True, "referenced_by": others}

        try:
            await self._call("delete_branch", self._git.delete_branch(branch))
        except CollaboratorError as exc:
            if exc.code != "not_found":
                raise
            return {"branch": branch, "deleted": False, "already_absent": True}
        return {"branch": branch, "deleted": True, "head_sha": candidate.head_sha}

    async def _issue_close(
        self, candidate: MergeCandidate, outcome: MergeOutcome, action: PostMergeAction
    ) -> dict[str, object]:
        work_item_id = candidate.work_item_id
        if work_item_id is None:
            return {"skipped": True, "reason": "no linked work item"}

        if not action.details.get("comment_posted"):
            body = self._templates.closing_comment(candidate, outcome)
            await self._call("add_comment", self._git.add_comment(work_item_id, body))
            action.details["comment_posted"] = True
        await self._call("close_issue", self._git.close_issue(work_item_id))
        return {"work_item_id": work_item_id, "closed": True}

    async def _deploy_trigger(
        self, candidate: MergeCandidate, outcome: MergeOutcome, action: PostMergeAction
    ) -> dict[str, object]:
        if self._deployments is None:
            raise ActionError("no deployment provider is configured")
        sha = outcome.merge_commit_sha or candidate.head_sha
        handle = await self._call(
            "trigger_deployment",
            self._deployments.trigger_deployment(sha, self._settings.deploy_environment),
        )
        return {
            "deployment_id": handle.deployment_id,
            "environment": handle.environment,
            "status": handle.status.value,
            "commit_sha": sha,
        }

    async def _notify(
        self, candidate: MergeCandidate, outcome: MergeOutcome, action: PostMergeAction
    ) -> dict[str, object]:
        channels = self._settings.notify_channels
        if not channels:
            return {"channels": {}, "skipped": True}
        if self._notifier is None:
            raise ActionError("notify channels are configured but no notifier is available")

        message = self._templates.notification(candidate, outcome)
        previous = action.details.get("channels")
        results: dict[str, dict[str, object]] = {}
        if isinstance(previous, dict):
            results.update({key: dict(value) for key, value in previous.items()})

        for channel in channels:
            if results.get(channel, {}).get("delivered"):
                continue
            try:
                receipt = await self._call("send", self._notifier.send(channel, message))
            except CollaboratorError as exc:
                results[channel] = {"delivered": False, "error": exc.detail}
                continue
            results[channel] = {"delivered": True, "receipt": receipt}

        action.details["channels"] = results
        if not any(item.get("delivered") for item in results.values()):
            raise ActionError(f"all {len(channels)} notification channel(s) failed")
        return {"channels": results}

    async def _cleanup(
        self, candidate: MergeCandidate, outcome: MergeOutcome, action: PostMergeAction
    ) -> dict[str, object]:
        if self._scratch is None:
            return {"released": False, "reason": "no scratch space configured"}
        released = self._scratch.release(candidate.candidate_id)
        return {"released": released, "path": self._scratch.path_for(candidate.candidate_id).as_posix()}

    def _bounded(self, delay: float, deadline: float | None) -> float:
        if deadline is None:
            return delay
        return max(0.0, min(delay, deadline - self._clock.monotonic()))

    async def _call(self, operation: str, coroutine: Awaitable[Any]) -> Any:
        return await call_collaborator(
            operation, coroutine, self._timeouts.collaborator_call_seconds
        )

    async def _emit(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        if self._on_event is not None:
            await self._on_event(event_type, payload)


__all__ = ["ActionError", "EventCallback", "PostMergePipeline"]
