"""Typed settings built from validated config mappings."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from merge_orchestrator.config import (
    ConfigValidationError,
    OrchestratorSettings,
    apply_profile_overlay,
    default_config,
    merge_config,
)
from merge_orchestrator.domain.models import ActionKind, MergeStrategy, RequirementKind


def test_defaults_match_builtin_config() -> None:
    settings = OrchestratorSettings.defaults()

    assert settings.merge.strategy is MergeStrategy.SQUASH
    assert settings.merge.max_attempts == 3
    assert settings.requirements.blocked_labels == ("do-not-merge",)
    assert settings.timeouts.poll_interval_seconds == 30.0
    assert settings.scratch_root == Path(".merge-orchestrator/scratch")
    assert [item.kind for item in settings.pipeline.actions] == [
        ActionKind.BRANCH_DELETE,
        ActionKind.ISSUE_CLOSE,
        ActionKind.DEPLOY_TRIGGER,
        ActionKind.NOTIFY,
        ActionKind.CLEANUP,
    ]


def test_deploy_trigger_is_configured_but_disabled_by_default() -> None:
    pipeline = OrchestratorSettings.defaults().pipeline

    deploy = pipeline.action(ActionKind.DEPLOY_TRIGGER)
    assert deploy is not None
    assert deploy.critical is True
    assert pipeline.is_enabled(ActionKind.DEPLOY_TRIGGER) is False
    assert pipeline.is_enabled(ActionKind.ISSUE_CLOSE) is True


def test_actions_are_sorted_by_order() -> None:
    config = merge_config(
        default_config(),
        {
            "pipeline": {
                "actions": [
                    {"kind": "cleanup", "order": 1},
                    {"kind": "notify", "order": 30, "retry_budget": 4},
                    {"kind": "branch_delete", "order": 5, "enabled": False},
                ]
            }
        },
    )

    pipeline = OrchestratorSettings.from_config(config).pipeline

    assert [item.kind for item in pipeline.actions] == [
        ActionKind.CLEANUP,
        ActionKind.BRANCH_DELETE,
        ActionKind.NOTIFY,
    ]
    assert pipeline.action(ActionKind.NOTIFY).retry_budget == 4
    assert pipeline.action(ActionKind.ISSUE_CLOSE) is None
    assert pipeline.is_enabled(ActionKind.ISSUE_CLOSE) is False
    assert pipeline.is_enabled(ActionKind.BRANCH_DELETE) is False


def test_requirement_kinds_become_enums() -> None:
    config = merge_config(
        default_config(),
        {"requirements": {"optional_kinds": ["policy_compliance"], "disabled_kinds": ["approvals"]}},
    )

    requirements = OrchestratorSettings.from_config(config).requirements

    assert requirements.optional_kinds == frozenset({RequirementKind.POLICY_COMPLIANCE})
    assert requirements.is_mandatory(RequirementKind.POLICY_COMPLIANCE) is False
    assert requirements.is_mandatory(RequirementKind.CI_CHECKS) is True
    assert requirements.is_enabled(RequirementKind.APPROVALS) is False


def test_profile_values_flow_into_settings() -> None:
    settings = OrchestratorSettings.from_config(apply_profile_overlay(default_config(), "strict"))

    assert settings.requirements.min_approvals == 2
    assert settings.checkpoint.rollback_on_failure is True
    assert settings.checkpoint.require_deployment_success is True


def test_invalid_config_is_rejected() -> None:
    config = merge_config(default_config(), {"merge": {"strategy": "octopus"}})

    with pytest.raises(ConfigValidationError):
        OrchestratorSettings.from_config(config)


def test_settings_are_frozen() -> None:
    settings = OrchestratorSettings.defaults()

    with pytest.raises(FrozenInstanceError):
        settings.merge.max_attempts = 10  # type: ignore[misc]
