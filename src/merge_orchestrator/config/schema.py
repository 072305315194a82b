"""
merge-orchestrator — configuration schema and validation.

File: src/merge_orchestrator/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys and embedded secret values.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from merge_orchestrator.constants import CONFIG_SCHEMA_VERSION, DEFAULT_ACTOR, SCRATCH_DIR

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")

MERGE_STRATEGIES: Final[tuple[str, ...]] = ("merge", "squash", "rebase")
REQUIREMENT_KINDS: Final[tuple[str, ...]] = (
    "approvals",
    "ci_checks",
    "no_conflicts",
    "branch_protection",
    "policy_compliance",
)
ACTION_KINDS: Final[tuple[str, ...]] = (
    "branch_delete",
    "issue_close",
    "deploy_trigger",
    "notify",
    "cleanup",
)

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("paths", "scratch_root"),)

_SECTION_NAMES: Final[tuple[str, ...]] = (
    "meta",
    "merge",
    "requirements",
    "pipeline",
    "checkpoint",
    "timeouts",
    "paths",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class MergeConfig(TypedDict):
    strategy: Literal["merge", "squash", "rebase"]
    actor: str
    commit_title_template: str
    max_attempts: int
    retry_backoff_initial_seconds: float
    retry_backoff_multiplier: float
    retry_backoff_max_seconds: float


class RequirementsConfig(TypedDict):
    min_approvals: int
    allow_merge_without_checks: bool
    ci_default_wait_seconds: float
    mergeability_wait_seconds: float
    require_linked_work_item: bool
    blocked_labels: list[str]
    optional_kinds: list[str]
    disabled_kinds: list[str]


class ActionConfig(TypedDict):
    kind: str
    enabled: bool
    order: int
    critical: bool
    retry_budget: int


class PipelineConfig(TypedDict):
    actions: list[ActionConfig]
    notify_channels: list[str]
    deploy_environment: str
    backoff_initial_seconds: float
    backoff_multiplier: float
    backoff_max_seconds: float
    backoff_jitter_ratio: float


class CheckpointConfig(TypedDict):
    verify_issue_closed: bool
    verify_branch_cleaned: bool
    verify_deployment: bool
    verify_notifications: bool
    require_deployment_success: bool
    rollback_on_failure: bool


class TimeoutsConfig(TypedDict):
    collaborator_call_seconds: float
    merge_call_seconds: float
    poll_interval_seconds: float
    min_poll_interval_seconds: float
    max_wait_seconds: float
    total_budget_seconds: float


class PathsConfig(TypedDict):
    scratch_root: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "console"]
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    merge: dict[str, object]
    requirements: dict[str, object]
    pipeline: dict[str, object]
    checkpoint: dict[str, object]
    timeouts: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    merge: MergeConfig
    requirements: RequirementsConfig
    pipeline: PipelineConfig
    checkpoint: CheckpointConfig
    timeouts: TimeoutsConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "merge": {
        "strategy": "squash",
        "actor": DEFAULT_ACTOR,
        "commit_title_template": "{{ title }} (#{{ candidate_id }})",
        "max_attempts": 3,
        "retry_backoff_initial_seconds": 5.0,
        "retry_backoff_multiplier": 2.0,
        "retry_backoff_max_seconds": 60.0,
    },
    "requirements": {
        "min_approvals": 1,
        "allow_merge_without_checks": False,
        "ci_default_wait_seconds": 300.0,
        "mergeability_wait_seconds": 30.0,
        "require_linked_work_item": False,
        "blocked_labels": ["do-not-merge"],
        "optional_kinds": [],
        "disabled_kinds": [],
    },
    "pipeline": {
        "actions": [
            {
                "kind": "branch_delete",
                "enabled": True,
                "order": 10,
                "critical": False,
                "retry_budget": 3,
            },
            {
                "kind": "issue_close",
                "enabled": True,
                "order": 20,
                "critical": True,
                "retry_budget": 3,
            },
            {
                "kind": "deploy_trigger",
                "enabled": False,
                "order": 30,
                "critical": True,
                "retry_budget": 3,
            },
            {"kind": "notify", "enabled": True, "order": 40, "critical": False, "retry_budget": 2},
            {"kind": "cleanup", "enabled": True, "order": 50, "critical": False, "retry_budget": 1},
        ],
        "notify_channels": [],
        "deploy_environment": "production",
        "backoff_initial_seconds": 1.0,
        "backoff_multiplier": 2.0,
        "backoff_max_seconds": 30.0,
        "backoff_jitter_ratio": 0.0,
    },
    "checkpoint": {
        "verify_issue_closed": True,
        "verify_branch_cleaned": True,
        "verify_deployment": True,
        "verify_notifications": True,
        "require_deployment_success": False,
        "rollback_on_failure": False,
    },
    "timeouts": {
        "collaborator_call_seconds": 30.0,
        "merge_call_seconds": 60.0,
        "poll_interval_seconds": 30.0,
        "min_poll_interval_seconds": 5.0,
        "max_wait_seconds": 1800.0,
        "total_budget_seconds": 3600.0,
    },
    "paths": {
        "scratch_root": str(SCRATCH_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "requirements": {"min_approvals": 2},
            "checkpoint": {"rollback_on_failure": True, "require_deployment_success": True},
        },
        "permissive": {
            "requirements": {"allow_merge_without_checks": True, "blocked_labels": []},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade merge-orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the merge-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``. Lists are replaced, not merged."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None:
        return materialized

    selected = profile.strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )

    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged, active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())

    return ConfigValidationResult(config=normalized, issues=issues.items())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and CLI output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {*_SECTION_NAMES, "profiles"}, "", issues)
    _require_keys(payload, set(_SECTION_NAMES), "", issues)

    out: dict[str, Any] = {}
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector, bool], dict[str, Any]]] = {
        "meta": _validate_meta,
        "merge": _validate_merge,
        "requirements": _validate_requirements,
        "pipeline": _validate_pipeline,
        "checkpoint": _validate_checkpoint,
        "timeouts": _validate_timeouts,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues, False)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues, validators)

    _validate_cross_fields(out, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_merge(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "strategy",
        "actor",
        "commit_title_template",
        "max_attempts",
        "retry_backoff_initial_seconds",
        "retry_backoff_multiplier",
        "retry_backoff_max_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "strategy", payload, path, issues, lambda v, p: _as_enum(v, p, issues, allowed_values=MERGE_STRATEGIES))
    _put(out, "actor", payload, path, issues, lambda v, p: _as_str(v, p, issues))
    _put(out, "commit_title_template", payload, path, issues, lambda v, p: _as_str(v, p, issues))
    _put(out, "max_attempts", payload, path, issues, lambda v, p: _as_int(v, p, issues, minimum=1))
    _put(
        out,
        "retry_backoff_initial_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    _put(
        out,
        "retry_backoff_multiplier",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=1.0),
    )
    _put(
        out,
        "retry_backoff_max_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    return out


def _validate_requirements(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "min_approvals",
        "allow_merge_without_checks",
        "ci_default_wait_seconds",
        "mergeability_wait_seconds",
        "require_linked_work_item",
        "blocked_labels",
        "optional_kinds",
        "disabled_kinds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "min_approvals", payload, path, issues, lambda v, p: _as_int(v, p, issues, minimum=0))
    _put(out, "allow_merge_without_checks", payload, path, issues, lambda v, p: _as_bool(v, p, issues))
    _put(
        out,
        "ci_default_wait_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    _put(
        out,
        "mergeability_wait_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    _put(out, "require_linked_work_item", payload, path, issues, lambda v, p: _as_bool(v, p, issues))
    _put(out, "blocked_labels", payload, path, issues, lambda v, p: _as_str_list(v, p, issues))
    _put(
        out,
        "optional_kinds",
        payload,
        path,
        issues,
        lambda v, p: _as_str_list(v, p, issues, allowed_values=REQUIREMENT_KINDS),
    )
    _put(
        out,
        "disabled_kinds",
        payload,
        path,
        issues,
        lambda v, p: _as_str_list(v, p, issues, allowed_values=REQUIREMENT_KINDS),
    )
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "actions",
        "notify_channels",
        "deploy_environment",
        "backoff_initial_seconds",
        "backoff_multiplier",
        "backoff_max_seconds",
        "backoff_jitter_ratio",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "actions", payload, path, issues, lambda v, p: _as_action_list(v, p, issues))
    _put(out, "notify_channels", payload, path, issues, lambda v, p: _as_str_list(v, p, issues))
    _put(out, "deploy_environment", payload, path, issues, lambda v, p: _as_str(v, p, issues))
    _put(
        out,
        "backoff_initial_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    _put(
        out,
        "backoff_multiplier",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=1.0),
    )
    _put(
        out,
        "backoff_max_seconds",
        payload,
        path,
        issues,
        lambda v, p: _as_float(v, p, issues, minimum=0.0),
    )
    _put(
        out,
        "backoff_jitter_ratio",
        payload,
        path,
        issues,
        lambda v, p: _as_ratio(v, p, issues),
    )
    return out


def _validate_checkpoint(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "verify_issue_closed",
        "verify_branch_cleaned",
        "verify_deployment",
        "verify_notifications",
        "require_deployment_success",
        "rollback_on_failure",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        _put(out, key, payload, path, issues, lambda v, p: _as_bool(v, p, issues))
    return out


def _validate_timeouts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "collaborator_call_seconds",
        "merge_call_seconds",
        "poll_interval_seconds",
        "min_poll_interval_seconds",
        "max_wait_seconds",
        "total_budget_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        _put(out, key, payload, path, issues, lambda v, p: _as_positive_float(v, p, issues))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"scratch_root"}, path, issues)
    if not partial:
        _require_keys(payload, {"scratch_root"}, path, issues)

    out: dict[str, Any] = {}
    _put(out, "scratch_root", payload, path, issues, lambda v, p: _as_path_text(v, p, issues))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(
        out,
        "log_level",
        payload,
        path,
        issues,
        lambda v, p: _as_enum(v, p, issues, allowed_values=("DEBUG", "INFO", "WARNING", "ERROR")),
    )
    _put(
        out,
        "log_format",
        payload,
        path,
        issues,
        lambda v, p: _as_enum(v, p, issues, allowed_values=("json", "console")),
    )
    _put(out, "redact_secrets", payload, path, issues, lambda v, p: _as_bool(v, p, issues))
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    validators: Mapping[str, Callable[[dict[str, object], str, _IssueCollector, bool], dict[str, Any]]],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        profile_path = _join(path, name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(profile_path, "profile names must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[name], profile_path, issues)
        if overlay is None:
            continue
        overlay_sections = set(_SECTION_NAMES) - {"meta"}
        _reject_unknown_keys(overlay, overlay_sections, profile_path, issues)
        validated: dict[str, Any] = {}
        for section in sorted(overlay_sections):
            raw = overlay.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is None:
                continue
            validated[section] = validators[section](section_obj, section_path, issues, True)
        out[name] = validated
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    timeouts = config.get("timeouts")
    if isinstance(timeouts, Mapping):
        minimum = timeouts.get("min_poll_interval_seconds")
        maximum = timeouts.get("poll_interval_seconds")
        if isinstance(minimum, float) and isinstance(maximum, float) and minimum > maximum:
            issues.add(
                "timeouts.min_poll_interval_seconds",
                "must be <= timeouts.poll_interval_seconds",
            )

    for section, initial_key, max_key in (
        ("merge", "retry_backoff_initial_seconds", "retry_backoff_max_seconds"),
        ("pipeline", "backoff_initial_seconds", "backoff_max_seconds"),
    ):
        values = config.get(section)
        if not isinstance(values, Mapping):
            continue
        initial = values.get(initial_key)
        ceiling = values.get(max_key)
        if isinstance(initial, float) and isinstance(ceiling, float) and initial > ceiling:
            issues.add(f"{section}.{initial_key}", f"must be <= {section}.{max_key}")

    requirements = config.get("requirements")
    if isinstance(requirements, Mapping):
        optional = set(requirements.get("optional_kinds", ()))
        disabled = set(requirements.get("disabled_kinds", ()))
        if len(disabled) == len(REQUIREMENT_KINDS):
            issues.add("requirements.disabled_kinds", "at least one requirement must stay enabled")
        overlap = sorted(optional & disabled)
        if overlap:
            issues.add(
                "requirements.optional_kinds",
                f"kinds cannot be both optional and disabled: {', '.join(overlap)}",
            )


def _put(
    out: dict[str, Any],
    key: str,
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    parser: Callable[[object, str], object | None],
) -> None:
    if key not in payload:
        return
    parsed = parser(payload[key], _join(path, key))
    if parsed is not None:
        out[key] = parsed


def _as_action_list(value: object, path: str, issues: _IssueCollector) -> list[dict[str, Any]] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of tables, got {type(value).__name__}")
        return None

    allowed = {"kind", "enabled", "order", "critical", "retry_budget"}
    parsed: list[dict[str, Any]] = []
    seen_kinds: set[str] = set()
    seen_orders: set[int] = set()
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        entry = _as_object(item, item_path, issues)
        if entry is None:
            continue
        _reject_unknown_keys(entry, allowed, item_path, issues)
        _require_keys(entry, {"kind", "order"}, item_path, issues)

        action: dict[str, Any] = {"enabled": True, "critical": False, "retry_budget": 1}
        _put(action, "kind", entry, item_path, issues, lambda v, p: _as_enum(v, p, issues, allowed_values=ACTION_KINDS))
        _put(action, "enabled", entry, item_path, issues, lambda v, p: _as_bool(v, p, issues))
        _put(action, "order", entry, item_path, issues, lambda v, p: _as_int(v, p, issues, minimum=0))
        _put(action, "critical", entry, item_path, issues, lambda v, p: _as_bool(v, p, issues))
        _put(action, "retry_budget", entry, item_path, issues, lambda v, p: _as_int(v, p, issues, minimum=1))

        kind = action.get("kind")
        if isinstance(kind, str):
            if kind in seen_kinds:
                issues.add(_join(item_path, "kind"), f"duplicate action kind {kind!r}")
            seen_kinds.add(kind)
        order = action.get("order")
        if isinstance(order, int):
            if order in seen_orders:
                issues.add(_join(item_path, "order"), f"duplicate action order {order}")
            seen_orders.add(order)
        parsed.append(action)
    return parsed


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...] | None = None,
) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of strings, got {type(value).__name__}")
        return None
    parsed: list[str] = []
    for index, item in enumerate(value):
        text = (
            _as_enum(item, f"{path}[{index}]", issues, allowed_values=allowed_values)
            if allowed_values is not None
            else _as_str(item, f"{path}[{index}]", issues)
        )
        if text is None:
            return None
        if text not in parsed:
            parsed.append(text)
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues)
    if parsed is None:
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_ratio(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues, minimum=0.0)
    if parsed is None:
        return None
    if parsed > 1.0:
        issues.add(path, "must be <= 1.0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; credentials belong to collaborator clients",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    if parent_key is not None and _looks_sensitive_key(parent_key):
        return "<redacted>"
    return value


__all__ = [
    "ACTION_KINDS",
    "BUILTIN_PROFILE_NAMES",
    "MERGE_STRATEGIES",
    "REQUIREMENT_KINDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "OrchestratorConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
