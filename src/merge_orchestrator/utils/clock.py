"""Injectable time sources with cancellable sleeps.

``SystemClock`` is used in production. ``VirtualClock`` advances only when
something sleeps on it, which makes wait loops deterministic under test.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from merge_orchestrator.utils.concurrency import CancellationToken


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float, cancel_token: CancellationToken | None = None) -> bool:
        """Sleep ``seconds``; return ``False`` if woken early by cancellation."""
        ...


class SystemClock:
    """Wall clock plus event-loop sleeps that wake on cancellation."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, cancel_token: CancellationToken | None = None) -> bool:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        if cancel_token is None:
            await asyncio.sleep(seconds)
            return True
        if cancel_token.is_cancelled:
            return False

        waiter = asyncio.create_task(cancel_token.wait())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=seconds)
        finally:
            if not waiter.done():
                waiter.cancel()
                with suppress(asyncio.CancelledError):
                    await waiter
        return waiter not in done


class VirtualClock:
    """Deterministic clock: ``sleep`` advances time instantly and records the request."""

    def __init__(self, start: datetime | None = None) -> None:
        initial = start if start is not None else datetime(2026, 1, 1, tzinfo=UTC)
        if initial.tzinfo is None or initial.utcoffset() is None:
            raise ValueError("start must be timezone-aware")
        self._start = initial.astimezone(UTC)
        self._elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._elapsed += seconds

    async def sleep(self, seconds: float, cancel_token: CancellationToken | None = None) -> bool:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        if cancel_token is not None and cancel_token.is_cancelled:
            return False
        self.sleeps.append(seconds)
        self._elapsed += seconds
        # Yield so concurrently scheduled tasks (cancellers, other runs) get a turn.
        await asyncio.sleep(0)
        return not (cancel_token is not None and cancel_token.is_cancelled)


__all__ = ["Clock", "SystemClock", "VirtualClock"]
