"""Dataclass domain models for merge completion, with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar, cast

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512

_COMMIT_SHA_RE = re.compile(r"^[0-9a-f]{7,64}$")


class MergeStrategy(StrEnum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


class RequirementKind(StrEnum):
    APPROVALS = "approvals"
    CI_CHECKS = "ci_checks"
    NO_CONFLICTS = "no_conflicts"
    BRANCH_PROTECTION = "branch_protection"
    POLICY_COMPLIANCE = "policy_compliance"


class RequirementStatus(StrEnum):
    SATISFIED = "satisfied"
    PENDING = "pending"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ErrorKind(StrEnum):
    """Classified failure kinds shared by every completion component."""

    REQUIREMENTS_NOT_MET = "requirements_not_met"
    MERGE_CONFLICT = "merge_conflict"
    PERMISSION_DENIED = "permission_denied"
    BRANCH_PROTECTED = "branch_protected"
    POLICY_VIOLATION = "policy_violation"
    CI_PENDING = "ci_pending"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    VERIFICATION_FAILED = "verification_failed"
    ACTION_FAILED = "action_failed"
    CANCELLED = "cancelled"


class ActionKind(StrEnum):
    BRANCH_DELETE = "branch_delete"
    ISSUE_CLOSE = "issue_close"
    DEPLOY_TRIGGER = "deploy_trigger"
    NOTIFY = "notify"
    CLEANUP = "cleanup"


class ActionStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OrchestratorState(StrEnum):
    EVALUATING = "evaluating"
    WAITING_FOR_READINESS = "waiting_for_readiness"
    MERGING = "merging"
    RUNNING_POST_ACTIONS = "running_post_actions"
    CHECKING_COMPLETION = "checking_completion"
    DONE_SUCCESS = "done_success"
    DONE_FAILURE = "done_failure"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestratorState.DONE_SUCCESS, OrchestratorState.DONE_FAILURE)


# Evaluation order is fixed and reported in this order on every verdict.
REQUIREMENT_ORDER: Final[tuple[RequirementKind, ...]] = (
    RequirementKind.APPROVALS,
    RequirementKind.CI_CHECKS,
    RequirementKind.NO_CONFLICTS,
    RequirementKind.BRANCH_PROTECTION,
    RequirementKind.POLICY_COMPLIANCE,
)

BLOCKING_CODE_BY_KIND: Final[Mapping[RequirementKind, str]] = {
    RequirementKind.APPROVALS: "approval_required",
    RequirementKind.CI_CHECKS: "ci_failed",
    RequirementKind.NO_CONFLICTS: "merge_conflict",
    RequirementKind.BRANCH_PROTECTION: "branch_protection_violation",
    RequirementKind.POLICY_COMPLIANCE: "policy_violation",
}

RETRYABLE_ERROR_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {
        ErrorKind.REQUIREMENTS_NOT_MET,
        ErrorKind.MERGE_CONFLICT,
        ErrorKind.CI_PENDING,
        ErrorKind.TRANSPORT_ERROR,
    }
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    __slots__ = ()

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())


@dataclass(frozen=True, slots=True)
class MergeCandidate(CanonicalModel):
    """The change request being integrated; read-only outside the orchestrator."""

    candidate_id: str
    source_branch: str
    target_branch: str
    title: str
    head_sha: str
    description: str = ""
    work_item_id: str | None = None
    labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "candidate_id", _as_str(self.candidate_id, "MergeCandidate.candidate_id", max_len=128)
        )
        object.__setattr__(
            self, "source_branch", _as_branch(self.source_branch, "MergeCandidate.source_branch")
        )
        object.__setattr__(
            self, "target_branch", _as_branch(self.target_branch, "MergeCandidate.target_branch")
        )
        if self.source_branch == self.target_branch:
            _fail("MergeCandidate.source_branch", "must differ from target_branch")
        object.__setattr__(self, "title", _as_str(self.title, "MergeCandidate.title", max_len=256))
        object.__setattr__(self, "head_sha", _as_commit_sha(self.head_sha, "MergeCandidate.head_sha"))
        if not isinstance(self.description, str):
            _fail("MergeCandidate.description", "must be a string")
        object.__setattr__(
            self,
            "work_item_id",
            _as_optional_str(self.work_item_id, "MergeCandidate.work_item_id", max_len=128),
        )
        object.__setattr__(
            self,
            "labels",
            _as_str_tuple(self.labels, "MergeCandidate.labels", allow_empty=True, unique=False),
        )


@dataclass(frozen=True, slots=True)
class Requirement(CanonicalModel):
    """One evaluated merge precondition."""

    kind: RequirementKind
    status: RequirementStatus
    description: str
    evaluated_at: datetime
    mandatory: bool = True
    error: str | None = None
    wait_estimate_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(RequirementKind, self.kind, "Requirement.kind"))
        object.__setattr__(
            self, "status", _as_enum(RequirementStatus, self.status, "Requirement.status")
        )
        object.__setattr__(
            self, "description", _as_str(self.description, "Requirement.description")
        )
        object.__setattr__(
            self, "evaluated_at", _as_datetime(self.evaluated_at, "Requirement.evaluated_at")
        )
        object.__setattr__(self, "mandatory", _as_bool(self.mandatory, "Requirement.mandatory"))
        object.__setattr__(self, "error", _as_optional_str(self.error, "Requirement.error"))
        if self.wait_estimate_seconds is not None:
            object.__setattr__(
                self,
                "wait_estimate_seconds",
                _as_float(self.wait_estimate_seconds, "Requirement.wait_estimate_seconds", minimum=0.0),
            )

    @property
    def is_satisfied(self) -> bool:
        return self.status is RequirementStatus.SATISFIED


@dataclass(frozen=True, slots=True)
class BlockingIssue(CanonicalModel):
    code: str
    requirement: RequirementKind
    message: str
    actionable: bool = True
    auto_resolvable: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", _as_str(self.code, "BlockingIssue.code", max_len=64))
        object.__setattr__(
            self,
            "requirement",
            _as_enum(RequirementKind, self.requirement, "BlockingIssue.requirement"),
        )
        object.__setattr__(self, "message", _as_str(self.message, "BlockingIssue.message"))


@dataclass(frozen=True, slots=True)
class ReadinessVerdict(CanonicalModel):
    """Aggregate of one evaluation pass; never persisted beyond the attempt."""

    candidate_id: str
    can_merge: bool
    requirements: tuple[Requirement, ...]
    evaluated_at: datetime
    blocking_issues: tuple[BlockingIssue, ...] = ()
    warnings: tuple[str, ...] = ()
    estimated_ready_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "evaluated_at", _as_datetime(self.evaluated_at, "ReadinessVerdict.evaluated_at")
        )
        object.__setattr__(self, "requirements", tuple(self.requirements))
        object.__setattr__(self, "blocking_issues", tuple(self.blocking_issues))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        if self.estimated_ready_at is not None:
            object.__setattr__(
                self,
                "estimated_ready_at",
                _as_datetime(self.estimated_ready_at, "ReadinessVerdict.estimated_ready_at"),
            )
        if self.can_merge and self.blocking_issues:
            _fail("ReadinessVerdict.can_merge", "cannot be true while blocking issues exist")

    @property
    def has_hard_block(self) -> bool:
        """True when at least one blocker cannot resolve itself by waiting."""

        return any(not issue.auto_resolvable for issue in self.blocking_issues)

    @property
    def pending_requirements(self) -> tuple[Requirement, ...]:
        return tuple(
            item
            for item in self.requirements
            if item.mandatory and item.status is RequirementStatus.PENDING
        )

    @property
    def blocking_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.blocking_issues)

    def requirement(self, kind: RequirementKind) -> Requirement | None:
        for item in self.requirements:
            if item.kind is kind:
                return item
        return None


@dataclass(frozen=True, slots=True)
class MergeError(CanonicalModel):
    kind: ErrorKind
    message: str
    retryable: bool
    code: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(ErrorKind, self.kind, "MergeError.kind"))
        object.__setattr__(self, "message", _as_str(self.message, "MergeError.message"))
        object.__setattr__(self, "code", _as_optional_str(self.code, "MergeError.code", max_len=128))


@dataclass(frozen=True, slots=True)
class ChangeStats(CanonicalModel):
    files_changed: int = 0
    additions: int = 0
    deletions: int = 0
    commits: int = 0

    def __post_init__(self) -> None:
        for name in ("files_changed", "additions", "deletions", "commits"):
            object.__setattr__(
                self, name, _as_int(getattr(self, name), f"ChangeStats.{name}", minimum=0)
            )


@dataclass(frozen=True, slots=True)
class MergeOutcome(CanonicalModel):
    """Result of one Merge Executor invocation; immutable once created."""

    candidate_id: str
    success: bool
    strategy: MergeStrategy
    merge_commit_sha: str | None = None
    stats: ChangeStats = field(default_factory=ChangeStats)
    errors: tuple[MergeError, ...] = ()
    already_merged: bool = False
    merged_at: datetime | None = None
    attempt_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "strategy", _as_enum(MergeStrategy, self.strategy, "MergeOutcome.strategy")
        )
        object.__setattr__(self, "errors", tuple(self.errors))
        if self.success:
            if self.merge_commit_sha is None:
                _fail("MergeOutcome.merge_commit_sha", "is required for a successful merge")
            object.__setattr__(
                self,
                "merge_commit_sha",
                _as_commit_sha(self.merge_commit_sha, "MergeOutcome.merge_commit_sha"),
            )
            if self.errors:
                _fail("MergeOutcome.errors", "must be empty for a successful merge")
        elif not self.errors:
            _fail("MergeOutcome.errors", "a failed merge must carry at least one error")
        if self.merged_at is not None:
            object.__setattr__(
                self, "merged_at", _as_datetime(self.merged_at, "MergeOutcome.merged_at")
            )

    @property
    def primary_error(self) -> MergeError | None:
        return self.errors[0] if self.errors else None

    @property
    def retryable(self) -> bool:
        return not self.success and all(error.retryable for error in self.errors)


@dataclass(slots=True)
class PostMergeAction(CanonicalModel):
    """One configured pipeline step; mutated in place while the pipeline runs."""

    kind: ActionKind
    order: int
    enabled: bool = True
    critical: bool = False
    retry_budget: int = 1
    status: ActionStatus = ActionStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    details: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.kind = _as_enum(ActionKind, self.kind, "PostMergeAction.kind")
        self.order = _as_int(self.order, "PostMergeAction.order", minimum=0)
        self.enabled = _as_bool(self.enabled, "PostMergeAction.enabled")
        self.critical = _as_bool(self.critical, "PostMergeAction.critical")
        self.retry_budget = _as_int(self.retry_budget, "PostMergeAction.retry_budget", minimum=1)
        self.status = _as_enum(ActionStatus, self.status, "PostMergeAction.status")
        self.details = _as_json_object(self.details, "PostMergeAction.details")

    def mark_started(self, now: datetime) -> None:
        if self.started_at is None:
            self.started_at = now
        self.attempts += 1

    def mark_completed(self, now: datetime, details: Mapping[str, object] | None = None) -> None:
        self.status = ActionStatus.COMPLETED
        self.finished_at = now
        self.last_error = None
        if details:
            self.details.update(_as_json_object(dict(details), "PostMergeAction.details"))

    def mark_failed(self, now: datetime, error: str) -> None:
        self.status = ActionStatus.FAILED
        self.finished_at = now
        self.last_error = error


@dataclass(frozen=True, slots=True)
class PipelineResult(CanonicalModel):
    actions: tuple[PostMergeAction, ...]
    halted: bool = False
    halted_by: ActionKind | None = None
    failure_reason: str | None = None

    @property
    def failed_actions(self) -> tuple[PostMergeAction, ...]:
        return tuple(item for item in self.actions if item.status is ActionStatus.FAILED)

    def action(self, kind: ActionKind) -> PostMergeAction | None:
        for item in self.actions:
            if item.kind is kind:
                return item
        return None


@dataclass(frozen=True, slots=True)
class CompletionError(CanonicalModel):
    aspect: str
    kind: ErrorKind
    message: str
    critical: bool = False
    retryable: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "aspect", _as_str(self.aspect, "CompletionError.aspect", max_len=64))
        object.__setattr__(self, "kind", _as_enum(ErrorKind, self.kind, "CompletionError.kind"))
        object.__setattr__(self, "message", _as_str(self.message, "CompletionError.message"))


@dataclass(frozen=True, slots=True)
class CompletionOutcome(CanonicalModel):
    """Terminal verdict for the candidate after independent re-verification."""

    candidate_id: str
    success: bool
    issue_closed: bool = False
    branch_cleaned: bool = False
    deployment_triggered: bool = False
    notifications_sent: bool = False
    errors: tuple[CompletionError, ...] = ()
    rollback_performed: bool = False
    rollback_errors: tuple[str, ...] = ()
    timings: dict[str, float] = field(default_factory=dict)
    next_work_triggered: bool = False

    @property
    def critical_errors(self) -> tuple[CompletionError, ...]:
        return tuple(error for error in self.errors if error.critical)


@dataclass(frozen=True, slots=True)
class OrchestrationResult(CanonicalModel):
    """What a caller gets back from one orchestrator run."""

    candidate_id: str
    state: OrchestratorState
    summary: str
    attempts: int = 0
    failure_kind: ErrorKind | None = None
    verdict: ReadinessVerdict | None = None
    merge_outcome: MergeOutcome | None = None
    pipeline_result: PipelineResult | None = None
    completion: CompletionOutcome | None = None
    transitions: tuple[OrchestratorState, ...] = ()

    def __post_init__(self) -> None:
        state = _as_enum(OrchestratorState, self.state, "OrchestrationResult.state")
        if not state.is_terminal:
            _fail("OrchestrationResult.state", "must be a terminal state")
        object.__setattr__(self, "state", state)
        object.__setattr__(self, "summary", _as_str(self.summary, "OrchestrationResult.summary"))

    @property
    def success(self) -> bool:
        return self.state is OrchestratorState.DONE_SUCCESS


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_branch(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=255)
    if any(char.isspace() for char in parsed) or ".." in parsed:
        _fail(path, f"invalid branch name {parsed!r}")
    return parsed


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    if not allow_empty and not value:
        _fail(path, "must not be empty")
    if len(value) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")

    parsed = tuple(
        _as_str(item, f"{path}[{index}]", max_len=max_len) for index, item in enumerate(value)
    )
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _as_commit_sha(value: object, path: str) -> str:
    parsed = _as_str(value, path, min_len=7, max_len=64).lower()
    if not _COMMIT_SHA_RE.fullmatch(parsed):
        _fail(path, "must be a hex commit SHA (7..64 chars)")
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        if len(value) > _MAX_TEXT:
            _fail(path, f"string exceeds max length {_MAX_TEXT}")
        return value
    if isinstance(value, Enum):
        return _as_json_value(value.value, path, depth=depth)
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "BLOCKING_CODE_BY_KIND",
    "REQUIREMENT_ORDER",
    "RETRYABLE_ERROR_KINDS",
    "ActionKind",
    "ActionStatus",
    "BlockingIssue",
    "CanonicalModel",
    "ChangeStats",
    "CompletionError",
    "CompletionOutcome",
    "ErrorKind",
    "JSONScalar",
    "JSONValue",
    "MergeCandidate",
    "MergeError",
    "MergeOutcome",
    "MergeStrategy",
    "OrchestrationResult",
    "OrchestratorState",
    "PipelineResult",
    "PostMergeAction",
    "ReadinessVerdict",
    "Requirement",
    "RequirementKind",
    "RequirementStatus",
]
