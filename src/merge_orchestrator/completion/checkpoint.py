"""
merge-orchestrator — completion checkpoint.

File: src/merge_orchestrator/completion/checkpoint.py

Purpose
- Independently re-verify the side effects of the post-merge pipeline with
  fresh collaborator reads and produce the terminal ``CompletionOutcome``.

Functional requirements
- ``verify`` never raises; unexpected exceptions become critical errors.
- An aspect is verified only when its check is enabled and its action ran.
- An aspect failure is critical exactly when its action is critical.
- A halted pipeline always yields a critical ``action_failed`` error.
- With rollback enabled, compensations run in reverse pipeline order for
  completed actions. Compensation failures are collected, never raised, and
  the merge commit itself is never reverted.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from merge_orchestrator.collaborators.base import (
    CancellableDeployments,
    CollaboratorError,
    DeliveryConfirmation,
    DeploymentStatus,
    IssueState,
    call_collaborator,
)
from merge_orchestrator.completion.templates import TemplateRenderError
from merge_orchestrator.config.settings import CheckpointSettings, TimeoutSettings
from merge_orchestrator.domain.models import (
    ActionKind,
    ActionStatus,
    CompletionError,
    CompletionOutcome,
    ErrorKind,
    PostMergeAction,
)
from merge_orchestrator.utils.clock import SystemClock

if TYPE_CHECKING:
    from merge_orchestrator.collaborators.base import DeploymentProvider, GitHost, Notifier
    from merge_orchestrator.completion.templates import MessageTemplates
    from merge_orchestrator.domain.models import MergeCandidate, MergeOutcome, PipelineResult
    from merge_orchestrator.utils.clock import Clock

_FAILED_DEPLOYMENT_STATES = frozenset({DeploymentStatus.FAILED, DeploymentStatus.CANCELLED})


class _AspectFailure(Exception):
    """Internal signal: the aspect was read and found unsatisfied."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class CompletionCheckpoint:
    """Fresh-read verification of a finished post-merge pipeline."""

    def __init__(
        self,
        git_host: GitHost,
        *,
        settings: CheckpointSettings,
        templates: MessageTemplates,
        timeouts: TimeoutSettings | None = None,
        clock: Clock | None = None,
        deployments: DeploymentProvider | None = None,
        notifier: Notifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._git = git_host
        self._settings = settings
        self._templates = templates
        self._timeouts = timeouts if timeouts is not None else TimeoutSettings()
        self._clock = clock if clock is not None else SystemClock()
        self._deployments = deployments
        self._notifier = notifier
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def verify(
        self,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        pipeline_result: PipelineResult,
    ) -> CompletionOutcome:
        started = self._clock.monotonic()
        try:
            return await self._verify(candidate, outcome, pipeline_result, started)
        except Exception as exc:
            self._logger.exception(
                "completion_check_crashed",
                candidate_id=candidate.candidate_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            return CompletionOutcome(
                candidate_id=candidate.candidate_id,
                success=False,
                errors=(
                    CompletionError(
                        aspect="checkpoint",
                        kind=ErrorKind.VERIFICATION_FAILED,
                        message=f"completion check crashed: {type(exc).__name__}: {exc}",
                        critical=True,
                    ),
                ),
                timings={"total": self._clock.monotonic() - started},
            )

    async def _verify(
        self,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        pipeline_result: PipelineResult,
        started: float,
    ) -> CompletionOutcome:
        errors: list[CompletionError] = []
        timings: dict[str, float] = {}
        if pipeline_result.halted and pipeline_result.halted_by is not None:
            errors.append(
                CompletionError(
                    aspect=pipeline_result.halted_by.value,
                    kind=ErrorKind.ACTION_FAILED,
                    message=pipeline_result.failure_reason or "post-merge pipeline halted",
                    critical=True,
                )
            )

        checks: tuple[tuple[str, ActionKind, bool, Callable[..., Awaitable[None]]], ...] = (
            ("issue_closed", ActionKind.ISSUE_CLOSE, self._settings.verify_issue_closed, self._check_issue),
            ("branch_cleaned", ActionKind.BRANCH_DELETE, self._settings.verify_branch_cleaned, self._check_branch),
            ("deployment_triggered", ActionKind.DEPLOY_TRIGGER, self._settings.verify_deployment, self._check_deployment),
            ("notifications_sent", ActionKind.NOTIFY, self._settings.verify_notifications, self._check_notifications),
        )
        aspects: dict[str, bool] = {}
        for aspect, kind, enabled, check in checks:
            action = pipeline_result.action(kind)
            aspects[aspect] = False
            if not enabled or action is None or not action.enabled:
                continue
            if action.status is ActionStatus.PENDING:
                continue

            aspect_started = self._clock.monotonic()
            try:
                await check(candidate, action)
            except _AspectFailure as failure:
                errors.append(
                    CompletionError(
                        aspect=aspect,
                        kind=ErrorKind.VERIFICATION_FAILED,
                        message=failure.message,
                        critical=action.critical,
                        retryable=failure.retryable,
                    )
                )
            else:
                aspects[aspect] = True
            timings[aspect] = self._clock.monotonic() - aspect_started

        critical = [error for error in errors if error.critical]
        rollback_performed = False
        rollback_errors: tuple[str, ...] = ()
        if critical and self._settings.rollback_on_failure:
            rollback_started = self._clock.monotonic()
            rollback_errors = await self._rollback(
                candidate, outcome, pipeline_result, [error.message for error in critical]
            )
            rollback_performed = True
            timings["rollback"] = self._clock.monotonic() - rollback_started
        timings["total"] = self._clock.monotonic() - started

        completion = CompletionOutcome(
            candidate_id=candidate.candidate_id,
            success=not critical,
            issue_closed=aspects["issue_closed"],
            branch_cleaned=aspects["branch_cleaned"],
            deployment_triggered=aspects["deployment_triggered"],
            notifications_sent=aspects["notifications_sent"],
            errors=tuple(errors),
            rollback_performed=rollback_performed,
            rollback_errors=rollback_errors,
            timings=timings,
        )
        if completion.success:
            self._logger.info(
                "completion_verified",
                candidate_id=candidate.candidate_id,
                warnings=[error.message for error in errors],
            )
        else:
            self._logger.warning(
                "completion_failed",
                candidate_id=candidate.candidate_id,
                critical_errors=[error.message for error in critical],
                rollback_performed=rollback_performed,
                rollback_errors=list(rollback_errors),
            )
        return completion

    async def _check_issue(self, candidate: MergeCandidate, action: PostMergeAction) -> None:
        if candidate.work_item_id is None:
            return
        state = await self._read(
            "get_issue_state", self._git.get_issue_state(candidate.work_item_id)
        )
        if state is not IssueState.CLOSED:
            raise _AspectFailure(f"work item {candidate.work_item_id} is still {state}")

    async def _check_branch(self, candidate: MergeCandidate, action: PostMergeAction) -> None:
        branch = candidate.source_branch
        exists = await self._read("branch_exists", self._git.branch_exists(branch))
        if not exists:
            return
        open_candidates = await self._read(
            "list_open_candidates", self._git.list_open_candidates(branch)
        )
        if any(item != candidate.candidate_id for item in open_candidates):
            return
        raise _AspectFailure(f"branch {branch} still exists and no open candidate references it")

    async def _check_deployment(self, candidate: MergeCandidate, action: PostMergeAction) -> None:
        deployment_id = action.details.get("deployment_id")
        if not isinstance(deployment_id, str) or not deployment_id:
            raise _AspectFailure("no deployment was recorded by the pipeline")
        if self._deployments is None:
            raise _AspectFailure("no deployment provider is available to verify the deployment")

        status = await self._read(
            "get_deployment_status", self._deployments.get_deployment_status(deployment_id)
        )
        if self._settings.require_deployment_success:
            if status is not DeploymentStatus.SUCCESS:
                raise _AspectFailure(
                    f"deployment {deployment_id} is {status}, success is required",
                    retryable=status in (DeploymentStatus.PENDING, DeploymentStatus.IN_PROGRESS),
                )
        elif status in _FAILED_DEPLOYMENT_STATES:
            raise _AspectFailure(f"deployment {deployment_id} is {status}")

    async def _check_notifications(
        self, candidate: MergeCandidate, action: PostMergeAction
    ) -> None:
        if action.details.get("skipped"):
            return
        channels = action.details.get("channels")
        if not isinstance(channels, dict) or not channels:
            raise _AspectFailure("no notification results were recorded")

        delivered: list[str] = []
        for channel, result in sorted(channels.items()):
            if not isinstance(result, dict) or not result.get("delivered"):
                continue
            receipt = result.get("receipt")
            if isinstance(receipt, str) and isinstance(self._notifier, DeliveryConfirmation):
                try:
                    confirmed = await self._read(
                        "confirm_delivery", self._notifier.confirm_delivery(channel, receipt)
                    )
                except _AspectFailure:
                    continue
                if not confirmed:
                    continue
            delivered.append(channel)

        if not delivered:
            raise _AspectFailure(f"no delivery confirmed on {len(channels)} channel(s)")

    async def _rollback(
        self,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        pipeline_result: PipelineResult,
        reasons: list[str],
    ) -> tuple[str, ...]:
        rollback_errors: list[str] = []
        completed = [
            action
            for action in pipeline_result.actions
            if action.status is ActionStatus.COMPLETED
        ]
        for action in sorted(completed, key=lambda item: item.order, reverse=True):
            try:
                await self._compensate(action, candidate, outcome, reasons, rollback_errors)
            except (CollaboratorError, TemplateRenderError) as exc:
                rollback_errors.append(f"{action.kind.value}: {exc}")

        self._logger.warning(
            "rollback_performed",
            candidate_id=candidate.candidate_id,
            compensated=[action.kind.value for action in completed],
            rollback_errors=rollback_errors,
        )
        return tuple(rollback_errors)

    async def _compensate(
        self,
        action: PostMergeAction,
        candidate: MergeCandidate,
        outcome: MergeOutcome,
        reasons: list[str],
        rollback_errors: list[str],
    ) -> None:
        if action.kind is ActionKind.ISSUE_CLOSE:
            if candidate.work_item_id is None:
                return
            await self._call("reopen_issue", self._git.reopen_issue(candidate.work_item_id))
            body = self._templates.reopen_comment(candidate, reasons)
            await self._call("add_comment", self._git.add_comment(candidate.work_item_id, body))

        elif action.kind is ActionKind.BRANCH_DELETE:
            if not action.details.get("deleted"):
                return
            await self._call(
                "restore_branch",
                self._git.restore_branch(candidate.source_branch, candidate.head_sha),
            )

        elif action.kind is ActionKind.DEPLOY_TRIGGER:
            deployment_id = action.details.get("deployment_id")
            if not isinstance(deployment_id, str):
                return
            if not isinstance(self._deployments, CancellableDeployments):
                rollback_errors.append(
                    f"deploy_trigger: deployment {deployment_id} cannot be cancelled by this provider"
                )
                return
            await self._call(
                "cancel_deployment", self._deployments.cancel_deployment(deployment_id)
            )

        elif action.kind is ActionKind.NOTIFY:
            channels = action.details.get("channels")
            if self._notifier is None or not isinstance(channels, dict):
                return
            notice = self._templates.rollback_notice(candidate, outcome, reasons)
            for channel, result in sorted(channels.items()):
                if not isinstance(result, dict) or not result.get("delivered"):
                    continue
                try:
                    await self._call("send", self._notifier.send(channel, notice))
                except CollaboratorError as exc:
                    rollback_errors.append(f"notify: rollback notice to {channel} failed: {exc.detail}")

    async def _read(self, operation: str, coroutine: Awaitable[Any]) -> Any:
        try:
            return await self._call(operation, coroutine)
        except CollaboratorError as exc:
            raise _AspectFailure(
                f"could not verify ({operation}): {exc.detail}", retryable=exc.retryable
            ) from exc

    async def _call(self, operation: str, coroutine: Awaitable[Any]) -> Any:
        return await call_collaborator(
            operation, coroutine, self._timeouts.collaborator_call_seconds
        )


__all__ = ["CompletionCheckpoint"]
