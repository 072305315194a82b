"""Configuration for the merge orchestrator.

``load_config`` assembles defaults, ``merge-orchestrator.toml``, a profile,
``MERGE_ORCH_*`` variables and ``--set`` overrides into one validated mapping.
``OrchestratorSettings.from_config`` turns that mapping into the frozen view
every component reads.
"""

from merge_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV_VAR,
    ConfigLoadError,
    dump_effective_config,
    env_var_name,
    load_config,
    normalize_paths,
)
from merge_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    OrchestratorConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from merge_orchestrator.config.settings import (
    ActionSettings,
    CheckpointSettings,
    MergeSettings,
    OrchestratorSettings,
    PipelineSettings,
    RequirementSettings,
    TimeoutSettings,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ActionSettings",
    "CheckpointSettings",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "MergeSettings",
    "OrchestratorConfig",
    "OrchestratorSettings",
    "PATH_FIELDS",
    "PipelineSettings",
    "ProfileOverlay",
    "RequirementSettings",
    "TimeoutSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_var_name",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
