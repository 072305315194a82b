"""
merge-orchestrator — orchestration state machine.

File: src/merge_orchestrator/completion/orchestrator.py

Purpose
- Drive one merge candidate from readiness evaluation through merge,
  post-merge actions and completion verification to a terminal result.

What should be included in this file
- ``MergeOrchestrator``: long-lived component holding collaborators, settings,
  the per-candidate lock and metrics.
- ``OrchestrationRun``: fresh single-use state machine built for each run.

Functional requirements
- At most one active run per candidate; a concurrent run is rejected with
  ``CandidateBusyError`` before any collaborator is touched.
- Pending requirements are polled on the injected clock, bounded by the wait
  limit (counted from the first wait) and by the total budget.
- Only the orchestrator decides between retry and terminal failure.
- Cancellation and the total budget are honored at every boundary up to the
  merge call. Once the merge landed, post-merge actions and verification run
  to completion; action backoff sleeps are still clipped to the total budget.
- The candidate scratch directory is released when the run ends, whatever
  the outcome.
- Event sink failures are logged and never alter the run.
"""

from __future__ import annotations

import random as random_module
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Final

import structlog

from merge_orchestrator.collaborators.base import (
    BackoffConfig,
    CollaboratorError,
    call_collaborator,
    compute_backoff_delay,
)
from merge_orchestrator.completion.checkpoint import CompletionCheckpoint
from merge_orchestrator.completion.executor import MergeExecutor
from merge_orchestrator.completion.pipeline import EventCallback, PostMergePipeline
from merge_orchestrator.completion.readiness import ReadinessEvaluator
from merge_orchestrator.completion.templates import MessageTemplates
from merge_orchestrator.config.settings import OrchestratorSettings
from merge_orchestrator.domain import ids
from merge_orchestrator.domain.events import EventType, MergeEvent
from merge_orchestrator.domain.models import (
    CompletionOutcome,
    ErrorKind,
    MergeOutcome,
    OrchestrationResult,
    OrchestratorState,
    ReadinessVerdict,
)
from merge_orchestrator.observability.logging import correlation_scope
from merge_orchestrator.observability.metrics import (
    ACTION_FAILURES_TOTAL,
    ACTIVE_ORCHESTRATIONS,
    MERGE_ATTEMPTS_TOTAL,
    ORCHESTRATION_SECONDS,
    ORCHESTRATIONS_TOTAL,
    READINESS_EVALUATIONS_TOTAL,
    MetricsRegistry,
)
from merge_orchestrator.utils.clock import SystemClock
from merge_orchestrator.utils.concurrency import CancellationToken, KeyedLock

if TYPE_CHECKING:
    from merge_orchestrator.collaborators.base import (
        CIProvider,
        DeploymentProvider,
        EventSink,
        GitHost,
        NextWorkTrigger,
        Notifier,
        PolicyProvider,
    )
    from merge_orchestrator.domain.models import MergeCandidate, PipelineResult
    from merge_orchestrator.utils.clock import Clock
    from merge_orchestrator.utils.fs import ScratchSpace

_SHORT_SHA: Final[int] = 12


class OrchestratorError(RuntimeError):
    """Base error for orchestrator misuse."""


class CandidateBusyError(OrchestratorError):
    """Raised when a candidate already has an active orchestration."""

    def __init__(self, candidate_id: str) -> None:
        self.candidate_id = candidate_id
        super().__init__(f"candidate {candidate_id!r} already has an active orchestration")


class OrchestratorStateError(OrchestratorError):
    """Raised when a single-use run is executed twice."""


class MergeOrchestrator:
    """Entry point that runs candidates to completion.

    Collaborators are injected once; every call to :meth:`run` builds a fresh
    :class:`OrchestrationRun` so no state leaks between candidates.
    """

    def __init__(
        self,
        git_host: GitHost,
        *,
        settings: OrchestratorSettings | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        ci_provider: CIProvider | None = None,
        policy_provider: PolicyProvider | None = None,
        deployments: DeploymentProvider | None = None,
        notifier: Notifier | None = None,
        next_work: NextWorkTrigger | None = None,
        scratch: ScratchSpace | None = None,
        metrics: MetricsRegistry | None = None,
        lock: KeyedLock | None = None,
        random_fn: Callable[[], float] = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self.settings = settings if settings is not None else OrchestratorSettings.defaults()
        self.clock = clock if clock is not None else SystemClock()
        self.git_host = git_host
        self.event_sink = event_sink
        self.deployments = deployments
        self.notifier = notifier
        self.next_work = next_work
        self.scratch = scratch
        self.metrics = metrics if metrics is not None else MetricsRegistry()
        self.lock = lock if lock is not None else KeyedLock()
        self.random_fn = random_fn
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

        self.templates = MessageTemplates(
            actor=self.settings.merge.actor,
            title_template=self.settings.merge.commit_title_template,
        )
        self.evaluator = ReadinessEvaluator(
            git_host,
            settings=self.settings.requirements,
            strategy=self.settings.merge.strategy,
            timeouts=self.settings.timeouts,
            clock=self.clock,
            policy_provider=policy_provider,
            ci_provider=ci_provider,
            logger=self.logger,
        )
        self.executor = MergeExecutor(
            git_host,
            templates=self.templates,
            timeouts=self.settings.timeouts,
            clock=self.clock,
            logger=self.logger,
        )
        self.checkpoint = CompletionCheckpoint(
            git_host,
            settings=self.settings.checkpoint,
            templates=self.templates,
            timeouts=self.settings.timeouts,
            clock=self.clock,
            deployments=deployments,
            notifier=notifier,
            logger=self.logger,
        )

    def create_run(
        self, candidate: MergeCandidate, cancel_token: CancellationToken | None = None
    ) -> OrchestrationRun:
        return OrchestrationRun(self, candidate, cancel_token or CancellationToken())

    async def run(
        self, candidate: MergeCandidate, cancel_token: CancellationToken | None = None
    ) -> OrchestrationResult:
        return await self.create_run(candidate, cancel_token).execute()

    def build_pipeline(self, on_event: EventCallback) -> PostMergePipeline:
        return PostMergePipeline(
            self.git_host,
            settings=self.settings.pipeline,
            templates=self.templates,
            timeouts=self.settings.timeouts,
            clock=self.clock,
            deployments=self.deployments,
            notifier=self.notifier,
            scratch=self.scratch,
            on_event=on_event,
            random_fn=self.random_fn,
            logger=self.logger,
        )


class OrchestrationRun:
    """Single-use state machine for one candidate."""

    def __init__(
        self,
        orchestrator: MergeOrchestrator,
        candidate: MergeCandidate,
        cancel_token: CancellationToken,
    ) -> None:
        self._orc = orchestrator
        self._candidate = candidate
        self._token = cancel_token
        self._clock = orchestrator.clock
        self._settings = orchestrator.settings
        self._logger = orchestrator.logger
        self.run_id = ids.generate_run_id()

        self._executed = False
        self._state = OrchestratorState.EVALUATING
        self._transitions: list[OrchestratorState] = [OrchestratorState.EVALUATING]
        self._attempts = 0
        self._started_at = 0.0
        self._first_wait_at: float | None = None
        self._timings: dict[str, float] = {}

        self._verdict: ReadinessVerdict | None = None
        self._merge_outcome: MergeOutcome | None = None
        self._pipeline_result: PipelineResult | None = None
        self._completion: CompletionOutcome | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def transitions(self) -> tuple[OrchestratorState, ...]:
        return tuple(self._transitions)

    async def execute(self) -> OrchestrationResult:
        if self._executed:
            raise OrchestratorStateError(
                f"run {self.run_id} for {self._candidate.candidate_id!r} was already executed; "
                "create a new run"
            )
        self._executed = True

        key = self._candidate.candidate_id
        if not self._orc.lock.try_acquire(key):
            raise CandidateBusyError(key)
        self._orc.metrics.add_gauge(ACTIVE_ORCHESTRATIONS, 1)
        try:
            with correlation_scope(candidate_id=key, run_id=self.run_id):
                return await self._drive()
        finally:
            self._release_scratch()
            self._orc.metrics.add_gauge(ACTIVE_ORCHESTRATIONS, -1)
            self._orc.lock.release(key)

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    async def _drive(self) -> OrchestrationResult:
        self._started_at = self._clock.monotonic()
        if self._orc.scratch is not None:
            self._orc.scratch.allocate(self._candidate.candidate_id)
        self._logger.info(
            "orchestration_started",
            head_sha=self._candidate.head_sha,
            target_branch=self._candidate.target_branch,
        )
        await self._emit(
            EventType.ORCHESTRATION_STARTED,
            {
                "run_id": self.run_id,
                "source_branch": self._candidate.source_branch,
                "target_branch": self._candidate.target_branch,
                "head_sha": self._candidate.head_sha,
                "strategy": self._settings.merge.strategy.value,
            },
        )

        max_attempts = self._settings.merge.max_attempts
        backoff = BackoffConfig(
            max_retries=max(0, max_attempts - 1),
            initial_delay_seconds=self._settings.merge.retry_backoff_initial_seconds,
            multiplier=self._settings.merge.retry_backoff_multiplier,
            max_delay_seconds=self._settings.merge.retry_backoff_max_seconds,
        )
        while True:
            self._attempts += 1
            attempt_id = ids.generate_attempt_id()
            with correlation_scope(attempt_id=attempt_id):
                result = await self._attempt(attempt_id)
            if isinstance(result, OrchestrationResult):
                return result

            error = result.primary_error
            kind = error.kind if error is not None else ErrorKind.TRANSPORT_ERROR
            message = error.message if error is not None else "merge failed"
            if not result.retryable:
                return await self._fail(kind, f"merge failed ({kind}): {message}")
            if self._attempts >= max_attempts:
                return await self._fail(
                    kind,
                    f"merge failed after {self._attempts} attempt(s) ({kind}): {message}",
                )

            delay = compute_backoff_delay(
                retry_number=self._attempts, config=backoff, random_fn=self._orc.random_fn
            )
            self._logger.info(
                "merge_retry_scheduled",
                attempt=self._attempts,
                delay_seconds=delay,
                kind=kind.value,
            )
            stopped = await self._sleep(delay, phase="merge retry backoff")
            if stopped is not None:
                return stopped
            await self._transition(OrchestratorState.EVALUATING)

    async def _attempt(self, attempt_id: str) -> OrchestrationResult | MergeOutcome:
        stopped = await self._await_readiness()
        if stopped is not None:
            return stopped

        stopped = await self._boundary_stop()
        if stopped is not None:
            return stopped

        outcome = await self._merge(attempt_id)
        if not outcome.success:
            return outcome
        return await self._complete(outcome)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _await_readiness(self) -> OrchestrationResult | None:
        timeouts = self._settings.timeouts
        while True:
            stopped = await self._boundary_stop()
            if stopped is not None:
                return stopped

            started = self._clock.monotonic()
            verdict = await self._orc.evaluator.evaluate(self._candidate)
            self._add_timing("readiness", self._clock.monotonic() - started)
            self._verdict = verdict
            self._orc.metrics.inc(READINESS_EVALUATIONS_TOTAL)
            await self._emit(
                EventType.READINESS_EVALUATED,
                {
                    "can_merge": verdict.can_merge,
                    "blocking_codes": list(verdict.blocking_codes),
                    "warnings": list(verdict.warnings),
                    "estimated_ready_at": (
                        verdict.estimated_ready_at.isoformat()
                        if verdict.estimated_ready_at is not None
                        else None
                    ),
                },
            )

            if verdict.can_merge:
                await self._transition(OrchestratorState.MERGING)
                return None
            if verdict.has_hard_block:
                return await self._fail(
                    ErrorKind.REQUIREMENTS_NOT_MET,
                    f"merge blocked: {_describe_blockers(verdict, hard_only=True)}",
                )

            if self._state is not OrchestratorState.WAITING_FOR_READINESS:
                await self._transition(OrchestratorState.WAITING_FOR_READINESS)
            now = self._clock.monotonic()
            if self._first_wait_at is None:
                self._first_wait_at = now
            remaining_wait = timeouts.max_wait_seconds - (now - self._first_wait_at)
            if remaining_wait <= 0:
                return await self._fail(
                    ErrorKind.TIMEOUT,
                    f"readiness wait exceeded {timeouts.max_wait_seconds:g}s; "
                    f"still waiting on {_describe_blockers(verdict, hard_only=False)}",
                )

            interval = min(self._poll_interval(verdict), remaining_wait)
            self._logger.info(
                "readiness_wait",
                interval_seconds=interval,
                pending=[item.kind.value for item in verdict.pending_requirements],
            )
            started = self._clock.monotonic()
            stopped = await self._sleep(interval, phase="waiting for readiness")
            self._add_timing("waiting", self._clock.monotonic() - started)
            if stopped is not None:
                return stopped
            await self._transition(OrchestratorState.EVALUATING)

    async def _merge(self, attempt_id: str) -> MergeOutcome:
        strategy = self._settings.merge.strategy
        await self._emit(
            EventType.MERGE_ATTEMPTED,
            {"attempt": self._attempts, "attempt_id": attempt_id, "strategy": strategy.value},
        )
        started = self._clock.monotonic()
        outcome = await self._orc.executor.execute(
            self._candidate, strategy, attempt_id=attempt_id
        )
        self._add_timing("merge", self._clock.monotonic() - started)
        self._merge_outcome = outcome

        self._orc.metrics.inc(
            MERGE_ATTEMPTS_TOTAL, labels={"result": "success" if outcome.success else "failure"}
        )
        if outcome.success:
            await self._emit(
                EventType.MERGE_SUCCEEDED,
                {
                    "attempt_id": attempt_id,
                    "merge_commit_sha": outcome.merge_commit_sha,
                    "already_merged": outcome.already_merged,
                    "strategy": strategy.value,
                },
            )
        else:
            error = outcome.primary_error
            await self._emit(
                EventType.MERGE_FAILED,
                {
                    "attempt_id": attempt_id,
                    "kind": error.kind.value if error is not None else None,
                    "message": error.message if error is not None else None,
                    "retryable": outcome.retryable,
                },
            )
        return outcome

    async def _complete(self, outcome: MergeOutcome) -> OrchestrationResult:
        await self._transition(OrchestratorState.RUNNING_POST_ACTIONS)
        pipeline = self._orc.build_pipeline(self._emit)
        started = self._clock.monotonic()
        pipeline_result = await pipeline.run(
            self._candidate,
            outcome,
            deadline=self._started_at + self._settings.timeouts.total_budget_seconds,
        )
        self._add_timing("post_actions", self._clock.monotonic() - started)
        self._pipeline_result = pipeline_result
        for action in pipeline_result.failed_actions:
            self._orc.metrics.inc(ACTION_FAILURES_TOTAL, labels={"kind": action.kind.value})

        await self._transition(OrchestratorState.CHECKING_COMPLETION)
        started = self._clock.monotonic()
        completion = await self._orc.checkpoint.verify(self._candidate, outcome, pipeline_result)
        self._add_timing("checking_completion", self._clock.monotonic() - started)
        completion = replace(completion, timings=self._merged_timings(completion))
        self._completion = completion

        if completion.rollback_performed:
            await self._emit(
                EventType.ROLLBACK_PERFORMED,
                {"rollback_errors": list(completion.rollback_errors)},
            )

        if not completion.success:
            await self._emit(EventType.COMPLETION_FAILED, completion.to_dict())
            if pipeline_result.halted:
                return await self._fail(
                    ErrorKind.ACTION_FAILED,
                    pipeline_result.failure_reason or "post-merge pipeline halted",
                )
            reasons = "; ".join(
                f"{error.aspect}: {error.message}" for error in completion.critical_errors
            )
            return await self._fail(
                ErrorKind.VERIFICATION_FAILED, f"completion verification failed: {reasons}"
            )

        await self._emit(EventType.COMPLETION_VERIFIED, completion.to_dict())
        triggered = await self._request_next_work(completion)
        self._completion = replace(completion, next_work_triggered=triggered)

        sha = (outcome.merge_commit_sha or "")[:_SHORT_SHA]
        how = "was already merged" if outcome.already_merged else f"merged as {sha}"
        summary = (
            f"{self._candidate.candidate_id} {how} into {self._candidate.target_branch} "
            f"({outcome.strategy.value}); completion verified"
        )
        failed = [action.kind.value for action in pipeline_result.failed_actions]
        if failed:
            summary += f" with non-critical failures: {', '.join(failed)}"
        return await self._finish(OrchestratorState.DONE_SUCCESS, summary, None)

    async def _request_next_work(self, completion: CompletionOutcome) -> bool:
        await self._emit(EventType.NEXT_WORK_REQUESTED, {"success": completion.success})
        trigger = self._orc.next_work
        if trigger is None:
            return False
        try:
            await call_collaborator(
                "request_next_work",
                trigger.request_next_work(completion),
                self._settings.timeouts.collaborator_call_seconds,
            )
        except CollaboratorError as exc:
            self._logger.warning("next_work_trigger_failed", code=exc.code, detail=exc.detail)
            return False
        return True

    # ------------------------------------------------------------------
    # Boundaries, sleeping and termination
    # ------------------------------------------------------------------

    async def _boundary_stop(self) -> OrchestrationResult | None:
        if self._token.is_cancelled:
            return await self._fail(ErrorKind.CANCELLED, f"cancelled while {self._state}")
        if self._remaining_budget() <= 0:
            return await self._fail(
                ErrorKind.TIMEOUT,
                f"total budget of {self._settings.timeouts.total_budget_seconds:g}s "
                f"exhausted while {self._state}",
            )
        return None

    async def _sleep(self, seconds: float, *, phase: str) -> OrchestrationResult | None:
        remaining = self._remaining_budget()
        if remaining <= 0:
            return await self._boundary_stop()
        completed = await self._clock.sleep(min(seconds, remaining), self._token)
        if not completed:
            return await self._fail(ErrorKind.CANCELLED, f"cancelled during {phase}")
        return None

    def _release_scratch(self) -> None:
        scratch = self._orc.scratch
        if scratch is None:
            return
        try:
            released = scratch.release(self._candidate.candidate_id)
        except (OSError, ValueError) as exc:
            self._logger.warning(
                "scratch_release_failed",
                candidate_id=self._candidate.candidate_id,
                run_id=self.run_id,
                error=str(exc),
            )
            return
        if released:
            self._logger.debug(
                "scratch_released", candidate_id=self._candidate.candidate_id, run_id=self.run_id
            )

    def _remaining_budget(self) -> float:
        elapsed = self._clock.monotonic() - self._started_at
        return self._settings.timeouts.total_budget_seconds - elapsed

    def _poll_interval(self, verdict: ReadinessVerdict) -> float:
        timeouts = self._settings.timeouts
        if verdict.estimated_ready_at is None:
            return timeouts.poll_interval_seconds
        until_ready = (verdict.estimated_ready_at - self._clock.now()).total_seconds()
        return min(max(until_ready, timeouts.min_poll_interval_seconds), timeouts.poll_interval_seconds)

    async def _transition(self, new_state: OrchestratorState) -> None:
        if self._state.is_terminal:
            raise OrchestratorStateError(f"cannot leave terminal state {self._state}")
        previous = self._state
        self._state = new_state
        self._transitions.append(new_state)
        self._logger.debug("state_changed", previous=previous.value, state=new_state.value)
        await self._emit(
            EventType.STATE_CHANGED,
            {"from": previous.value, "to": new_state.value, "attempt": self._attempts},
        )

    async def _fail(self, kind: ErrorKind, summary: str) -> OrchestrationResult:
        return await self._finish(OrchestratorState.DONE_FAILURE, summary, kind)

    async def _finish(
        self, state: OrchestratorState, summary: str, failure_kind: ErrorKind | None
    ) -> OrchestrationResult:
        await self._transition(state)
        elapsed = self._clock.monotonic() - self._started_at
        outcome_label = "success" if failure_kind is None else "failure"
        self._orc.metrics.inc(ORCHESTRATIONS_TOTAL, labels={"outcome": outcome_label})
        self._orc.metrics.observe(ORCHESTRATION_SECONDS, elapsed)

        result = OrchestrationResult(
            candidate_id=self._candidate.candidate_id,
            state=state,
            summary=summary,
            attempts=self._attempts,
            failure_kind=failure_kind,
            verdict=self._verdict,
            merge_outcome=self._merge_outcome,
            pipeline_result=self._pipeline_result,
            completion=self._completion,
            transitions=tuple(self._transitions),
        )
        payload = {
            "run_id": self.run_id,
            "summary": summary,
            "attempts": self._attempts,
            "elapsed_seconds": elapsed,
        }
        if failure_kind is None:
            self._logger.info("orchestration_completed", summary=summary, attempts=self._attempts)
            await self._emit(EventType.ORCHESTRATION_COMPLETED, payload)
        else:
            self._logger.warning(
                "orchestration_failed",
                kind=failure_kind.value,
                summary=summary,
                attempts=self._attempts,
            )
            await self._emit(
                EventType.ORCHESTRATION_FAILED, {**payload, "failure_kind": failure_kind.value}
            )
        return result

    def _add_timing(self, phase: str, seconds: float) -> None:
        self._timings[phase] = self._timings.get(phase, 0.0) + seconds

    def _merged_timings(self, completion: CompletionOutcome) -> dict[str, float]:
        timings = dict(self._timings)
        for aspect, seconds in completion.timings.items():
            timings[f"checkpoint.{aspect}"] = seconds
        return timings

    async def _emit(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        sink = self._orc.event_sink
        if sink is None:
            return
        event = MergeEvent(
            event_id=ids.generate_event_id(),
            event_type=event_type,
            candidate_id=self._candidate.candidate_id,
            timestamp=self._clock.now(),
            payload=dict(payload),
            work_item_id=self._candidate.work_item_id,
        )
        try:
            await sink.publish_async(event)
        except Exception as exc:
            self._logger.warning(
                "event_sink_failed",
                event_type=event_type.value,
                error=f"{type(exc).__name__}: {exc}",
            )


def _describe_blockers(verdict: ReadinessVerdict, *, hard_only: bool) -> str:
    issues = [
        issue
        for issue in verdict.blocking_issues
        if not hard_only or not issue.auto_resolvable
    ]
    if issues:
        return "; ".join(
            f"{issue.requirement.value} ({issue.code}): {issue.message}" for issue in issues
        )
    unknown = [item for item in verdict.requirements if item.mandatory and not item.is_satisfied]
    if unknown:
        return "; ".join(
            f"{item.kind.value} ({item.status.value}): {item.error or item.description}"
            for item in unknown
        )
    return "no requirement details available"


__all__ = [
    "CandidateBusyError",
    "MergeOrchestrator",
    "OrchestrationRun",
    "OrchestratorError",
    "OrchestratorStateError",
]
