"""Stable constants shared across the orchestrator packages."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
EVENT_SCHEMA_VERSION: Final[int] = 1

# Default config file looked up in the working directory.
DEFAULT_CONFIG_FILENAME: Final[str] = "merge-orchestrator.toml"

# Orchestration-local scratch space (relative to the config file unless overridden).
SCRATCH_DIR: Final[PurePosixPath] = PurePosixPath(".merge-orchestrator/scratch")

# Identity used in commit trailers and comments when config does not override it.
DEFAULT_ACTOR: Final[str] = "merge-orchestrator"

# Check conclusions that count as a definitive CI failure.
FAILING_CHECK_CONCLUSIONS: Final[frozenset[str]] = frozenset(
    {"failure", "timed_out", "cancelled", "action_required", "startup_failure"}
)
PASSING_CHECK_CONCLUSIONS: Final[frozenset[str]] = frozenset({"success", "neutral", "skipped"})

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ACTOR",
    "DEFAULT_CONFIG_FILENAME",
    "EVENT_SCHEMA_VERSION",
    "FAILING_CHECK_CONCLUSIONS",
    "PASSING_CHECK_CONCLUSIONS",
    "SCRATCH_DIR",
]
