"""Typed, frozen views over a validated config mapping.

Components take these dataclasses instead of raw dicts so every tunable is
explicit at construction time.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from merge_orchestrator.config.schema import assert_valid_config, default_config
from merge_orchestrator.domain.models import ActionKind, MergeStrategy, RequirementKind


@dataclass(frozen=True, slots=True)
class MergeSettings:
    strategy: MergeStrategy = MergeStrategy.SQUASH
    actor: str = "merge-orchestrator"
    commit_title_template: str = "{{ title }} (#{{ candidate_id }})"
    max_attempts: int = 3
    retry_backoff_initial_seconds: float = 5.0
    retry_backoff_multiplier: float = 2.0
    retry_backoff_max_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class RequirementSettings:
    min_approvals: int = 1
    allow_merge_without_checks: bool = False
    ci_default_wait_seconds: float = 300.0
    mergeability_wait_seconds: float = 30.0
    require_linked_work_item: bool = False
    blocked_labels: tuple[str, ...] = ("do-not-merge",)
    optional_kinds: frozenset[RequirementKind] = frozenset()
    disabled_kinds: frozenset[RequirementKind] = frozenset()

    def is_enabled(self, kind: RequirementKind) -> bool:
        return kind not in self.disabled_kinds

    def is_mandatory(self, kind: RequirementKind) -> bool:
        return kind not in self.optional_kinds


@dataclass(frozen=True, slots=True)
class ActionSettings:
    kind: ActionKind
    order: int
    enabled: bool = True
    critical: bool = False
    retry_budget: int = 1


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    actions: tuple[ActionSettings, ...] = ()
    notify_channels: tuple[str, ...] = ()
    deploy_environment: str = "production"
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    backoff_jitter_ratio: float = 0.0

    def action(self, kind: ActionKind) -> ActionSettings | None:
        for item in self.actions:
            if item.kind is kind:
                return item
        return None

    def is_enabled(self, kind: ActionKind) -> bool:
        configured = self.action(kind)
        return configured is not None and configured.enabled


@dataclass(frozen=True, slots=True)
class CheckpointSettings:
    verify_issue_closed: bool = True
    verify_branch_cleaned: bool = True
    verify_deployment: bool = True
    verify_notifications: bool = True
    require_deployment_success: bool = False
    rollback_on_failure: bool = False


@dataclass(frozen=True, slots=True)
class TimeoutSettings:
    collaborator_call_seconds: float = 30.0
    merge_call_seconds: float = 60.0
    poll_interval_seconds: float = 30.0
    min_poll_interval_seconds: float = 5.0
    max_wait_seconds: float = 1800.0
    total_budget_seconds: float = 3600.0


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    merge: MergeSettings = field(default_factory=MergeSettings)
    requirements: RequirementSettings = field(default_factory=RequirementSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    scratch_root: Path = Path(".merge-orchestrator/scratch")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> OrchestratorSettings:
        """Build settings from a config mapping; the mapping is validated first."""

        validated = assert_valid_config(config)
        merge = _section(validated, "merge")
        requirements = _section(validated, "requirements")
        pipeline = _section(validated, "pipeline")
        checkpoint = _section(validated, "checkpoint")
        timeouts = _section(validated, "timeouts")
        paths = _section(validated, "paths")

        actions = tuple(
            sorted(
                (
                    ActionSettings(
                        kind=ActionKind(item["kind"]),
                        order=item["order"],
                        enabled=item["enabled"],
                        critical=item["critical"],
                        retry_budget=item["retry_budget"],
                    )
                    for item in pipeline["actions"]
                ),
                key=lambda item: item.order,
            )
        )

        return cls(
            merge=MergeSettings(
                strategy=MergeStrategy(merge["strategy"]),
                actor=merge["actor"],
                commit_title_template=merge["commit_title_template"],
                max_attempts=merge["max_attempts"],
                retry_backoff_initial_seconds=merge["retry_backoff_initial_seconds"],
                retry_backoff_multiplier=merge["retry_backoff_multiplier"],
                retry_backoff_max_seconds=merge["retry_backoff_max_seconds"],
            ),
            requirements=RequirementSettings(
                min_approvals=requirements["min_approvals"],
                allow_merge_without_checks=requirements["allow_merge_without_checks"],
                ci_default_wait_seconds=requirements["ci_default_wait_seconds"],
                mergeability_wait_seconds=requirements["mergeability_wait_seconds"],
                require_linked_work_item=requirements["require_linked_work_item"],
                blocked_labels=tuple(requirements["blocked_labels"]),
                optional_kinds=frozenset(
                    RequirementKind(item) for item in requirements["optional_kinds"]
                ),
                disabled_kinds=frozenset(
                    RequirementKind(item) for item in requirements["disabled_kinds"]
                ),
            ),
            pipeline=PipelineSettings(
                actions=actions,
                notify_channels=tuple(pipeline["notify_channels"]),
                deploy_environment=pipeline["deploy_environment"],
                backoff_initial_seconds=pipeline["backoff_initial_seconds"],
                backoff_multiplier=pipeline["backoff_multiplier"],
                backoff_max_seconds=pipeline["backoff_max_seconds"],
                backoff_jitter_ratio=pipeline["backoff_jitter_ratio"],
            ),
            checkpoint=CheckpointSettings(**checkpoint),
            timeouts=TimeoutSettings(**timeouts),
            scratch_root=Path(paths["scratch_root"]),
        )

    @classmethod
    def defaults(cls) -> OrchestratorSettings:
        return cls.from_config(default_config())


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config[name]
    if not isinstance(value, Mapping):
        raise TypeError(f"config section {name!r} must be a mapping")
    return value


__all__ = [
    "ActionSettings",
    "CheckpointSettings",
    "MergeSettings",
    "OrchestratorSettings",
    "PipelineSettings",
    "RequirementSettings",
    "TimeoutSettings",
]
