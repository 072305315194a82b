"""
merge-orchestrator — package root.

File: src/merge_orchestrator/__init__.py

Purpose
- Drives a reviewed change request through final integration: readiness
  evaluation, merge, post-merge side effects, completion verification, and
  the hand-off to next-work selection.

Import boundary rules
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
