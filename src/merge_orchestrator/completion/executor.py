"""
merge-orchestrator — merge executor.

File: src/merge_orchestrator/completion/executor.py

Purpose
- Perform exactly one merge operation for a ready candidate and report the
  result as an immutable ``MergeOutcome``.

Functional requirements
- A guard read runs before the merge call. A candidate the host already
  merged is reported as success without a second merge.
- A stale head SHA, conflicts, or an undecided mergeable flag abort before
  the merge call.
- Failures are classified by machine code, then HTTP status, then message
  text, then transport patterns; anything else is a transport error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import structlog

from merge_orchestrator.collaborators.base import (
    CollaboratorError,
    call_collaborator,
    is_transport_failure,
)
from merge_orchestrator.config.settings import TimeoutSettings
from merge_orchestrator.domain.models import (
    RETRYABLE_ERROR_KINDS,
    ErrorKind,
    MergeError,
    MergeOutcome,
    MergeStrategy,
)
from merge_orchestrator.utils.clock import SystemClock

if TYPE_CHECKING:
    from merge_orchestrator.collaborators.base import GitHost
    from merge_orchestrator.completion.templates import MessageTemplates
    from merge_orchestrator.domain.models import MergeCandidate
    from merge_orchestrator.utils.clock import Clock

_KIND_BY_CODE: Final[dict[str, ErrorKind]] = {
    "permission_denied": ErrorKind.PERMISSION_DENIED,
    "forbidden": ErrorKind.PERMISSION_DENIED,
    "unauthorized": ErrorKind.PERMISSION_DENIED,
    "merge_conflict": ErrorKind.MERGE_CONFLICT,
    "conflict": ErrorKind.MERGE_CONFLICT,
    "branch_protected": ErrorKind.BRANCH_PROTECTED,
    "protected_branch": ErrorKind.BRANCH_PROTECTED,
    "ci_pending": ErrorKind.CI_PENDING,
    "checks_pending": ErrorKind.CI_PENDING,
    "policy_violation": ErrorKind.POLICY_VIOLATION,
    "timeout": ErrorKind.TRANSPORT_ERROR,
    "transport": ErrorKind.TRANSPORT_ERROR,
    "rate_limited": ErrorKind.TRANSPORT_ERROR,
}

_KIND_BY_HTTP_STATUS: Final[dict[int, ErrorKind]] = {
    401: ErrorKind.PERMISSION_DENIED,
    403: ErrorKind.PERMISSION_DENIED,
    405: ErrorKind.BRANCH_PROTECTED,
    409: ErrorKind.MERGE_CONFLICT,
    429: ErrorKind.TRANSPORT_ERROR,
}

# Evaluated in order; the first matching phrase wins.
_KIND_BY_TEXT: Final[tuple[tuple[str, ErrorKind], ...]] = (
    ("conflict", ErrorKind.MERGE_CONFLICT),
    ("protected branch", ErrorKind.BRANCH_PROTECTED),
    ("branch protection", ErrorKind.BRANCH_PROTECTED),
    ("permission", ErrorKind.PERMISSION_DENIED),
    ("forbidden", ErrorKind.PERMISSION_DENIED),
    ("not authorized", ErrorKind.PERMISSION_DENIED),
    ("status check", ErrorKind.CI_PENDING),
    ("checks are pending", ErrorKind.CI_PENDING),
    ("checks are still running", ErrorKind.CI_PENDING),
    ("policy", ErrorKind.POLICY_VIOLATION),
)


def classify_merge_error(error: CollaboratorError) -> MergeError:
    """Map a collaborator failure from the merge call onto an ``ErrorKind``."""

    kind = _KIND_BY_CODE.get(error.code.lower())
    if kind is None and error.http_status is not None:
        kind = _KIND_BY_HTTP_STATUS.get(error.http_status)
        if kind is None and error.http_status >= 500:
            kind = ErrorKind.TRANSPORT_ERROR
    if kind is None:
        lowered = error.detail.lower()
        for phrase, candidate_kind in _KIND_BY_TEXT:
            if phrase in lowered:
                kind = candidate_kind
                break
    if kind is None and is_transport_failure(error.detail):
        kind = ErrorKind.TRANSPORT_ERROR
    if kind is None:
        kind = ErrorKind.TRANSPORT_ERROR

    return MergeError(
        kind=kind,
        message=f"merge failed: {error.detail}",
        retryable=kind in RETRYABLE_ERROR_KINDS,
        code=error.code,
    )


class MergeExecutor:
    """Run the guarded merge call for one attempt."""

    def __init__(
        self,
        git_host: GitHost,
        *,
        templates: MessageTemplates,
        timeouts: TimeoutSettings | None = None,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._git = git_host
        self._templates = templates
        self._timeouts = timeouts if timeouts is not None else TimeoutSettings()
        self._clock = clock if clock is not None else SystemClock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(
        self,
        candidate: MergeCandidate,
        strategy: MergeStrategy,
        *,
        attempt_id: str | None = None,
    ) -> MergeOutcome:
        strategy = MergeStrategy(strategy)
        try:
            state = await call_collaborator(
                "get_mergeable_state",
                self._git.get_mergeable_state(candidate.candidate_id),
                self._timeouts.collaborator_call_seconds,
            )
        except CollaboratorError as exc:
            return self._failure(
                candidate,
                strategy,
                attempt_id,
                MergeError(
                    kind=ErrorKind.TRANSPORT_ERROR,
                    message=f"merge guard read failed: {exc.detail}",
                    retryable=True,
                    code=exc.code,
                ),
            )

        if state.merged:
            sha = state.merge_commit_sha or candidate.head_sha
            self._logger.info(
                "merge_already_applied", candidate_id=candidate.candidate_id, sha=sha
            )
            return MergeOutcome(
                candidate_id=candidate.candidate_id,
                success=True,
                strategy=strategy,
                merge_commit_sha=sha,
                already_merged=True,
                merged_at=self._clock.now(),
                attempt_id=attempt_id,
            )

        guard_failure = _guard_failure(candidate, state.has_conflicts, state.mergeable, state.head_sha)
        if guard_failure is not None:
            return self._failure(candidate, strategy, attempt_id, guard_failure)

        title = self._templates.commit_title(candidate, strategy)
        message = self._templates.commit_message(candidate, strategy)
        self._logger.info(
            "merge_started",
            candidate_id=candidate.candidate_id,
            strategy=strategy.value,
            head_sha=candidate.head_sha,
        )
        try:
            response = await call_collaborator(
                "merge",
                self._git.merge(
                    candidate.candidate_id,
                    strategy=strategy,
                    commit_title=title,
                    commit_message=message,
                    expected_head_sha=candidate.head_sha,
                ),
                self._timeouts.merge_call_seconds,
            )
        except CollaboratorError as exc:
            return self._failure(candidate, strategy, attempt_id, classify_merge_error(exc))

        outcome = MergeOutcome(
            candidate_id=candidate.candidate_id,
            success=True,
            strategy=strategy,
            merge_commit_sha=response.merge_commit_sha,
            stats=response.stats,
            merged_at=response.merged_at if response.merged_at is not None else self._clock.now(),
            attempt_id=attempt_id,
        )
        self._logger.info(
            "merge_executed",
            candidate_id=candidate.candidate_id,
            sha=outcome.merge_commit_sha,
            strategy=strategy.value,
        )
        return outcome

    def _failure(
        self,
        candidate: MergeCandidate,
        strategy: MergeStrategy,
        attempt_id: str | None,
        error: MergeError,
    ) -> MergeOutcome:
        self._logger.warning(
            "merge_failed",
            candidate_id=candidate.candidate_id,
            kind=error.kind.value,
            retryable=error.retryable,
            code=error.code,
            reason=error.message,
        )
        return MergeOutcome(
            candidate_id=candidate.candidate_id,
            success=False,
            strategy=strategy,
            errors=(error,),
            attempt_id=attempt_id,
        )


def _guard_failure(
    candidate: MergeCandidate,
    has_conflicts: bool,
    mergeable: bool | None,
    head_sha: str | None,
) -> MergeError | None:
    if has_conflicts:
        reason = "merge conflicts detected by the pre-merge guard"
    elif mergeable is not True:
        reason = "host does not report the candidate as mergeable"
    elif head_sha is not None and head_sha.lower() != candidate.head_sha:
        reason = f"head moved from {candidate.head_sha[:12]} to {head_sha[:12]}"
    else:
        return None
    return MergeError(
        kind=ErrorKind.REQUIREMENTS_NOT_MET,
        message=reason,
        retryable=True,
        code="guard",
    )


__all__ = ["MergeExecutor", "classify_merge_error"]
