"""Utility layer: concurrency primitives, clocks, and filesystem helpers."""

from merge_orchestrator.utils.clock import Clock, SystemClock, VirtualClock
from merge_orchestrator.utils.concurrency import (
    CancellationToken,
    KeyedLock,
    KeyLockedError,
    run_with_timeout,
)
from merge_orchestrator.utils.fs import ScratchSpace, atomic_write, safe_delete

__all__ = [
    "CancellationToken",
    "Clock",
    "KeyLockedError",
    "KeyedLock",
    "ScratchSpace",
    "SystemClock",
    "VirtualClock",
    "atomic_write",
    "run_with_timeout",
    "safe_delete",
]
