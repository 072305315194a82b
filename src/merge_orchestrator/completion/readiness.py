"""
merge-orchestrator — readiness evaluator.

File: src/merge_orchestrator/completion/readiness.py

Purpose
- Decide whether a merge candidate can merge right now, and if not, why and
  for roughly how long.

Functional requirements
- All collaborator reads for one evaluation run concurrently.
- A failed read degrades only the requirements that depend on it to ``unknown``;
  a verdict is always produced.
- Purely observational: the candidate and the host are never mutated.
- Deterministic: identical inputs at an identical clock give equal verdicts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from merge_orchestrator.collaborators.base import (
    CheckRun,
    CollaboratorError,
    MergeableState,
    PipelineStatus,
    PolicyState,
    PolicyStatus,
    ProtectionRules,
    Review,
    ReviewState,
    call_collaborator,
)
from merge_orchestrator.config.settings import RequirementSettings, TimeoutSettings
from merge_orchestrator.constants import FAILING_CHECK_CONCLUSIONS
from merge_orchestrator.domain.models import (
    BLOCKING_CODE_BY_KIND,
    REQUIREMENT_ORDER,
    BlockingIssue,
    MergeStrategy,
    ReadinessVerdict,
    Requirement,
    RequirementKind,
    RequirementStatus,
)
from merge_orchestrator.utils.clock import SystemClock

if TYPE_CHECKING:
    from merge_orchestrator.collaborators.base import CIProvider, GitHost, PolicyProvider
    from merge_orchestrator.domain.models import MergeCandidate
    from merge_orchestrator.utils.clock import Clock

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Which collaborator reads each requirement depends on.
_READS_BY_KIND: dict[RequirementKind, tuple[str, ...]] = {
    RequirementKind.APPROVALS: ("reviews",),
    RequirementKind.CI_CHECKS: ("checks",),
    RequirementKind.NO_CONFLICTS: ("mergeable",),
    RequirementKind.BRANCH_PROTECTION: ("protection", "checks", "reviews"),
    RequirementKind.POLICY_COMPLIANCE: ("policy",),
}


@dataclass(frozen=True, slots=True)
class _Read(Generic[T]):
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class _Status:
    status: RequirementStatus
    description: str
    wait_estimate_seconds: float | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _Reads:
    reviews: _Read[Sequence[Review]]
    checks: _Read[Sequence[CheckRun]]
    mergeable: _Read[MergeableState]
    protection: _Read[ProtectionRules]
    policy: _Read[PolicyStatus]
    ci: _Read[PipelineStatus]


class ReadinessEvaluator:
    """Evaluate the five merge requirements for a candidate."""

    def __init__(
        self,
        git_host: GitHost,
        *,
        settings: RequirementSettings | None = None,
        strategy: MergeStrategy = MergeStrategy.SQUASH,
        timeouts: TimeoutSettings | None = None,
        clock: Clock | None = None,
        policy_provider: PolicyProvider | None = None,
        ci_provider: CIProvider | None = None,
        logger: Any | None = None,
    ) -> None:
        self._git = git_host
        self._settings = settings if settings is not None else RequirementSettings()
        self._strategy = MergeStrategy(strategy)
        self._timeouts = timeouts if timeouts is not None else TimeoutSettings()
        self._clock = clock if clock is not None else SystemClock()
        self._policy = policy_provider
        self._ci = ci_provider
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def evaluate(self, candidate: MergeCandidate) -> ReadinessVerdict:
        now = self._clock.now()
        enabled = tuple(kind for kind in REQUIREMENT_ORDER if self._settings.is_enabled(kind))
        reads = await self._gather_reads(candidate, enabled)
        ci_estimate = self._ci_estimate(reads.ci)

        requirements: list[Requirement] = []
        for kind in enabled:
            outcome = self._evaluate_kind(kind, candidate, reads, ci_estimate)
            requirements.append(
                Requirement(
                    kind=kind,
                    status=outcome.status,
                    description=outcome.description,
                    evaluated_at=now,
                    mandatory=self._settings.is_mandatory(kind),
                    error=outcome.error,
                    wait_estimate_seconds=outcome.wait_estimate_seconds,
                )
            )

        blocking_issues, warnings = _classify(requirements)
        can_merge = all(item.is_satisfied for item in requirements if item.mandatory)
        verdict = ReadinessVerdict(
            candidate_id=candidate.candidate_id,
            can_merge=can_merge,
            requirements=tuple(requirements),
            evaluated_at=now,
            blocking_issues=tuple(blocking_issues),
            warnings=tuple(warnings),
            estimated_ready_at=_estimate_ready_at(requirements, now),
        )
        self._logger.info(
            "readiness_evaluated",
            candidate_id=candidate.candidate_id,
            can_merge=verdict.can_merge,
            blocking=list(verdict.blocking_codes),
            warnings=len(verdict.warnings),
        )
        return verdict

    async def _gather_reads(
        self, candidate: MergeCandidate, enabled: Sequence[RequirementKind]
    ) -> _Reads:
        needed = {read for kind in enabled for read in _READS_BY_KIND[kind]}
        if RequirementKind.CI_CHECKS in enabled or RequirementKind.BRANCH_PROTECTION in enabled:
            needed.add("ci")

        git = self._git
        skipped: _Read[Any] = _Read()

        def maybe(name: str, factory: Any) -> Awaitable[_Read[Any]]:
            if name not in needed:
                return _resolved(skipped)
            return self._read(name, factory())

        reviews, checks, mergeable, protection, policy, ci = await asyncio.gather(
            maybe("reviews", lambda: git.get_reviews(candidate.candidate_id)),
            maybe("checks", lambda: git.get_checks(candidate.candidate_id, candidate.head_sha)),
            maybe("mergeable", lambda: git.get_mergeable_state(candidate.candidate_id)),
            maybe("protection", lambda: git.get_branch_protection(candidate.target_branch)),
            (
                self._read("policy", self._policy.get_policy_status(candidate))
                if self._policy is not None and "policy" in needed
                else _resolved(skipped)
            ),
            (
                self._read(
                    "ci", self._ci.get_pipeline_status(candidate.candidate_id, candidate.head_sha)
                )
                if self._ci is not None and "ci" in needed
                else _resolved(skipped)
            ),
        )
        return _Reads(
            reviews=reviews,
            checks=checks,
            mergeable=mergeable,
            protection=protection,
            policy=policy,
            ci=ci,
        )

    async def _read(self, name: str, coroutine: Awaitable[T]) -> _Read[T]:
        try:
            value = await call_collaborator(
                name, coroutine, self._timeouts.collaborator_call_seconds
            )
        except CollaboratorError as exc:
            self._logger.warning("readiness_read_failed", read=name, code=exc.code, detail=exc.detail)
            return _Read(error=f"{name} read failed: {exc.code}: {exc.detail}")
        return _Read(value=value)

    def _ci_estimate(self, ci: _Read[PipelineStatus]) -> float:
        if ci.ok and ci.value is not None:
            remaining = ci.value.remaining_seconds()
            if remaining is not None:
                return remaining
        return self._settings.ci_default_wait_seconds

    def _evaluate_kind(
        self,
        kind: RequirementKind,
        candidate: MergeCandidate,
        reads: _Reads,
        ci_estimate: float,
    ) -> _Status:
        if kind is RequirementKind.APPROVALS:
            return self._approvals(reads.reviews)
        if kind is RequirementKind.CI_CHECKS:
            return self._ci_checks(reads.checks, ci_estimate)
        if kind is RequirementKind.NO_CONFLICTS:
            return self._no_conflicts(reads.mergeable)
        if kind is RequirementKind.BRANCH_PROTECTION:
            return self._branch_protection(reads, ci_estimate)
        return self._policy_compliance(candidate, reads.policy)

    def _approvals(self, reviews: _Read[Sequence[Review]]) -> _Status:
        if not reviews.ok or reviews.value is None:
            return _unknown("approval state could not be read", reviews.error)

        latest = _latest_reviews(reviews.value)
        blockers = sorted(
            reviewer
            for reviewer, state in latest.items()
            if state is ReviewState.CHANGES_REQUESTED
        )
        if blockers:
            return _Status(
                RequirementStatus.FAILED,
                f"changes requested by {', '.join(blockers)}",
            )
        approvals = _approval_count(latest)
        required = self._settings.min_approvals
        if approvals >= required:
            return _Status(RequirementStatus.SATISFIED, f"{approvals}/{required} approvals")
        return _Status(RequirementStatus.PENDING, f"{approvals}/{required} approvals")

    def _ci_checks(self, checks: _Read[Sequence[CheckRun]], ci_estimate: float) -> _Status:
        if not checks.ok or checks.value is None:
            return _unknown("check runs could not be read", checks.error)

        runs = tuple(checks.value)
        if not runs:
            if self._settings.allow_merge_without_checks:
                return _Status(RequirementStatus.SATISFIED, "no checks reported; allowed by config")
            return _Status(
                RequirementStatus.PENDING,
                "no checks reported yet",
                wait_estimate_seconds=ci_estimate,
            )

        failing = sorted(run.name for run in runs if _is_failing(run))
        if failing:
            return _Status(RequirementStatus.FAILED, f"failing checks: {', '.join(failing)}")
        running = sorted(run.name for run in runs if not run.is_completed)
        if running:
            return _Status(
                RequirementStatus.PENDING,
                f"checks still running: {', '.join(running)}",
                wait_estimate_seconds=ci_estimate,
            )
        return _Status(RequirementStatus.SATISFIED, f"{len(runs)} check(s) passed")

    def _no_conflicts(self, mergeable: _Read[MergeableState]) -> _Status:
        if not mergeable.ok or mergeable.value is None:
            return _unknown("mergeable state could not be read", mergeable.error)

        state = mergeable.value
        if state.merged:
            return _Status(RequirementStatus.SATISFIED, "already merged")
        if state.has_conflicts:
            return _Status(RequirementStatus.FAILED, "merge conflicts with the target branch")
        if state.mergeable is False:
            return _Status(RequirementStatus.FAILED, "host reports the candidate is not mergeable")
        if state.mergeable is None:
            return _Status(
                RequirementStatus.PENDING,
                "host is still computing mergeability",
                wait_estimate_seconds=self._settings.mergeability_wait_seconds,
            )
        return _Status(RequirementStatus.SATISFIED, "no conflicts")

    def _branch_protection(self, reads: _Reads, ci_estimate: float) -> _Status:
        protection = reads.protection
        if not protection.ok or protection.value is None:
            return _unknown("branch protection could not be read", protection.error)

        rules = protection.value
        if self._strategy not in rules.allowed_strategies:
            return _Status(
                RequirementStatus.FAILED,
                f"strategy {self._strategy.value!r} is not allowed on the target branch",
            )

        pending: list[str] = []
        estimate: float | None = None
        approvals_pending = False

        if rules.required_checks:
            checks = reads.checks
            if not checks.ok or checks.value is None:
                return _unknown("required checks could not be read", checks.error)
            by_name = {run.name: run for run in checks.value}
            failing = sorted(
                name for name in rules.required_checks if name in by_name and _is_failing(by_name[name])
            )
            if failing:
                return _Status(
                    RequirementStatus.FAILED,
                    f"required checks failed: {', '.join(failing)}",
                )
            waiting = sorted(
                name
                for name in rules.required_checks
                if name not in by_name or not by_name[name].is_completed
            )
            if waiting:
                pending.append(f"required checks not finished: {', '.join(waiting)}")
                estimate = ci_estimate

        if rules.required_approvals > 0:
            reviews = reads.reviews
            if not reviews.ok or reviews.value is None:
                return _unknown("reviews could not be read", reviews.error)
            approvals = _approval_count(_latest_reviews(reviews.value))
            if approvals < rules.required_approvals:
                pending.append(
                    f"protection requires {rules.required_approvals} approvals, have {approvals}"
                )
                approvals_pending = True

        if pending:
            return _Status(
                RequirementStatus.PENDING,
                "; ".join(pending),
                wait_estimate_seconds=None if approvals_pending else estimate,
            )
        return _Status(RequirementStatus.SATISFIED, "branch protection rules satisfied")

    def _policy_compliance(
        self, candidate: MergeCandidate, policy: _Read[PolicyStatus]
    ) -> _Status:
        if self._settings.require_linked_work_item and candidate.work_item_id is None:
            return _Status(RequirementStatus.FAILED, "no linked work item")
        blocked = sorted(set(candidate.labels) & set(self._settings.blocked_labels))
        if blocked:
            return _Status(RequirementStatus.FAILED, f"blocked by label(s): {', '.join(blocked)}")

        if self._policy is None:
            return _Status(RequirementStatus.SATISFIED, "local policy rules satisfied")
        if not policy.ok or policy.value is None:
            return _unknown("policy status could not be read", policy.error)

        status = policy.value
        if status.state is PolicyState.VIOLATION:
            detail = ", ".join(status.violations) if status.violations else "policy violation"
            return _Status(RequirementStatus.FAILED, detail)
        if status.state is PolicyState.PENDING:
            return _Status(RequirementStatus.PENDING, "policy evaluation in progress")
        return _Status(RequirementStatus.SATISFIED, "policy compliant")


def _classify(requirements: Sequence[Requirement]) -> tuple[list[BlockingIssue], list[str]]:
    blocking: list[BlockingIssue] = []
    warnings: list[str] = []
    for item in requirements:
        if item.status is RequirementStatus.FAILED:
            if item.mandatory:
                blocking.append(
                    BlockingIssue(
                        code=BLOCKING_CODE_BY_KIND[item.kind],
                        requirement=item.kind,
                        message=item.description,
                        actionable=True,
                        auto_resolvable=False,
                    )
                )
            else:
                warnings.append(f"optional requirement {item.kind.value} failed: {item.description}")
        elif item.status is RequirementStatus.PENDING and item.mandatory:
            blocking.append(
                BlockingIssue(
                    code=BLOCKING_CODE_BY_KIND[item.kind],
                    requirement=item.kind,
                    message=item.description,
                    actionable=False,
                    auto_resolvable=True,
                )
            )
        elif item.status is RequirementStatus.UNKNOWN and item.mandatory:
            reason = item.error or item.description
            warnings.append(f"{item.kind.value} could not be evaluated: {reason}")
    return blocking, warnings


def _estimate_ready_at(requirements: Sequence[Requirement], now: datetime) -> datetime | None:
    outstanding = [item for item in requirements if item.mandatory and not item.is_satisfied]
    if not outstanding:
        return None
    if any(item.status is not RequirementStatus.PENDING for item in outstanding):
        return None
    estimates = [item.wait_estimate_seconds for item in outstanding]
    if any(estimate is None for estimate in estimates):
        return None
    return now + timedelta(seconds=max(estimate for estimate in estimates if estimate is not None))


def _latest_reviews(reviews: Sequence[Review]) -> dict[str, ReviewState]:
    latest: dict[str, ReviewState] = {}
    ordered = sorted(reviews, key=lambda review: review.submitted_at or _EPOCH)
    for review in ordered:
        # A plain comment does not replace an earlier approval or change request.
        if review.state is ReviewState.COMMENTED:
            continue
        latest[review.reviewer] = review.state
    return latest


def _approval_count(latest: dict[str, ReviewState]) -> int:
    return sum(1 for state in latest.values() if state is ReviewState.APPROVED)


def _is_failing(run: CheckRun) -> bool:
    return run.is_completed and (run.conclusion or "").lower() in FAILING_CHECK_CONCLUSIONS


def _unknown(description: str, error: str | None) -> _Status:
    return _Status(RequirementStatus.UNKNOWN, description, error=error or description)


async def _resolved(value: _Read[Any]) -> _Read[Any]:
    return value


__all__ = ["ReadinessEvaluator"]
