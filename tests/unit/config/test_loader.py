"""
merge-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from merge_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    env_var_name,
    load_config,
)


def _write_config(path: Path, text: str) -> Path:
    path.write_text(text.strip() + "\n", encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)


def test_defaults_apply_when_no_file_is_present(tmp_path: Path) -> None:
    config = load_config(environ={})

    assert config["merge"]["strategy"] == "squash"
    assert config["timeouts"]["total_budget_seconds"] == 3600.0
    assert config["paths"]["scratch_root"] == (tmp_path.resolve() / ".merge-orchestrator/scratch").as_posix()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "merge-orchestrator.toml",
        """
[merge]
strategy = "rebase"
max_attempts = 4

[timeouts]
poll_interval_seconds = 20.0
""",
    )
    environ = {
        "MERGE_ORCH_MERGE_MAX_ATTEMPTS": "6",
        "MERGE_ORCH_TIMEOUTS_POLL_INTERVAL_SECONDS": "15",
    }

    config = load_config(path, environ=environ, cli_overrides={"timeouts.poll_interval_seconds": 10.0})

    assert config["merge"]["strategy"] == "rebase"
    assert config["merge"]["max_attempts"] == 6
    assert config["timeouts"]["poll_interval_seconds"] == 10.0
    assert config["merge"]["actor"] == "merge-orchestrator"


def test_env_values_are_coerced_by_default_type() -> None:
    environ = {
        "MERGE_ORCH_MERGE_STRATEGY": " merge ",
        "MERGE_ORCH_TIMEOUTS_MAX_WAIT_SECONDS": "90",
        "MERGE_ORCH_CHECKPOINT_ROLLBACK_ON_FAILURE": "yes",
        "MERGE_ORCH_PIPELINE_NOTIFY_CHANNELS": "slack:#releases, email:team@example.com,",
        "MERGE_ORCH_REQUIREMENTS_OPTIONAL_KINDS": "policy_compliance",
    }

    config = load_config(environ=environ)

    assert config["merge"]["strategy"] == "merge"
    assert config["timeouts"]["max_wait_seconds"] == 90.0
    assert config["checkpoint"]["rollback_on_failure"] is True
    assert config["pipeline"]["notify_channels"] == ["slack:#releases", "email:team@example.com"]
    assert config["requirements"]["optional_kinds"] == ["policy_compliance"]


@pytest.mark.parametrize(
    ("name", "value", "fragment"),
    [
        ("MERGE_ORCH_MERGE_MAX_ATTEMPTS", "three", "must be an integer"),
        ("MERGE_ORCH_TIMEOUTS_MAX_WAIT_SECONDS", "soon", "must be a number"),
        ("MERGE_ORCH_CHECKPOINT_VERIFY_DEPLOYMENT", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(name: str, value: str, fragment: str) -> None:
    with pytest.raises(ConfigLoadError, match=fragment) as excinfo:
        load_config(environ={name: value})

    assert name in str(excinfo.value)


def test_env_value_failing_validation_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="merge.strategy"):
        load_config(environ={"MERGE_ORCH_MERGE_STRATEGY": "octopus"})


def test_unrelated_env_vars_are_ignored() -> None:
    config = load_config(environ={"MERGE_ORCH_UNKNOWN_KEY": "1", "PATH": "/usr/bin"})

    assert config["merge"]["max_attempts"] == 3


def test_profile_selection_sources() -> None:
    by_argument = load_config(profile="strict", environ={})
    by_cli = load_config(cli_overrides={"profile": "strict"}, environ={})
    by_env = load_config(environ={"MERGE_ORCH_PROFILE": "permissive"})

    assert by_argument["requirements"]["min_approvals"] == 2
    assert by_cli["requirements"]["min_approvals"] == 2
    assert by_env["requirements"]["allow_merge_without_checks"] is True


def test_env_overrides_apply_on_top_of_profile() -> None:
    config = load_config(
        profile="strict",
        environ={"MERGE_ORCH_REQUIREMENTS_MIN_APPROVALS": "3"},
    )

    assert config["requirements"]["min_approvals"] == 3
    assert config["checkpoint"]["rollback_on_failure"] is True


def test_file_defined_profile(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "orchestrator.toml",
        """
[profiles.nightly.merge]
strategy = "merge"
max_attempts = 5
""",
    )

    config = load_config(path, profile="nightly", environ={})

    assert config["merge"]["strategy"] == "merge"
    assert config["merge"]["max_attempts"] == 5


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="not defined"):
        load_config(profile="nightly", environ={})


def test_non_string_cli_profile_is_rejected() -> None:
    with pytest.raises(ConfigLoadError, match="profile"):
        load_config(cli_overrides={"profile": 3}, environ={})


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "broken.toml", "[merge\nstrategy = squash")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(path, environ={})


def test_file_with_secret_is_rejected(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "merge-orchestrator.toml",
        """
[merge]
github_token = "ghp_example"
""",
    )

    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(path, environ={})


def test_action_tables_replace_the_default_pipeline(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "merge-orchestrator.toml",
        """
[[pipeline.actions]]
kind = "notify"
order = 1

[[pipeline.actions]]
kind = "issue_close"
order = 2
critical = true
""",
    )

    config = load_config(path, environ={})

    assert [item["kind"] for item in config["pipeline"]["actions"]] == ["notify", "issue_close"]
    assert config["pipeline"]["actions"][1]["critical"] is True


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    path = _write_config(
        config_dir / "merge-orchestrator.toml",
        """
[paths]
scratch_root = "../work/./scratch"
""",
    )

    config = load_config(path, environ={})

    assert config["paths"]["scratch_root"] == (tmp_path.resolve() / "work" / "scratch").as_posix()


def test_absolute_paths_are_kept(tmp_path: Path) -> None:
    target = (tmp_path / "abs-scratch").resolve()

    config = load_config(cli_overrides={"paths.scratch_root": str(target)}, environ={})

    assert config["paths"]["scratch_root"] == target.as_posix()


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "merge-orchestrator.toml",
        """
[requirements]
blocked_labels = ["wip", "hold"]
""",
    )
    environ = {"MERGE_ORCH_MERGE_ACTOR": "release-bot"}

    first = dump_effective_config(load_config(path, environ=environ))
    second = dump_effective_config(load_config(path, environ=environ))

    assert first == second


def test_dump_effective_config_is_redacted_and_sorted() -> None:
    dumped = dump_effective_config({"merge": {"strategy": "squash", "password": "hunter2"}, "a": 1})

    assert json.loads(dumped) == {"a": 1, "merge": {"password": "<redacted>", "strategy": "squash"}}
    assert dumped.index('"a"') < dumped.index('"merge"')
    assert "hunter2" not in dumped


def test_env_var_names_follow_the_config_path() -> None:
    assert env_var_name(("merge", "max_attempts")) == "MERGE_ORCH_MERGE_MAX_ATTEMPTS"
    assert env_var_name(("timeouts", "poll_interval_seconds")) == "MERGE_ORCH_TIMEOUTS_POLL_INTERVAL_SECONDS"
