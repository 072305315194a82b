"""
Cancellation, per-candidate exclusion and bounded awaiting for orchestration runs.

``CancellationToken`` is the caller's handle for stopping a run. ``KeyedLock``
keeps one active run per candidate. ``run_with_timeout`` bounds every
collaborator call.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """Set-once cancellation flag that can also be awaited."""

    __slots__ = ("_fired",)

    def __init__(self) -> None:
        self._fired = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._fired.is_set()

    def cancel(self) -> None:
        self._fired.set()

    async def wait(self) -> None:
        await self._fired.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")


class KeyLockedError(RuntimeError):
    """Raised by ``KeyedLock.hold`` when the key is already held."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"lock already held for key {key!r}")


class KeyedLock:
    """Non-blocking in-memory mutual exclusion keyed by string identifiers.

    Acquisition never waits: a second holder for the same key is rejected
    immediately. Released keys are dropped so the map does not grow.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._held

    @property
    def held_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._held))

    def try_acquire(self, key: str) -> bool:
        if not isinstance(key, str) or not key.strip():
            raise ValueError("lock key must be a non-empty string")
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        if key not in self._held:
            raise RuntimeError(f"release called for unheld key {key!r}")
        self._held.discard(key)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        if not self.try_acquire(key):
            raise KeyLockedError(key)
        try:
            yield
        finally:
            self.release(key)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` when the limit passes and ``asyncio.CancelledError``
    when ``cancel_token`` fires first. Either way the inner work is cancelled
    and awaited before returning, and an awaitable that never started is closed.
    """

    if timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(awaitable)
        raise asyncio.CancelledError("operation cancelled")

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    stop: asyncio.Future[None] | None = None
    racers: set[asyncio.Future[Any]] = {work}
    if cancel_token is not None:
        stop = asyncio.ensure_future(cancel_token.wait())
        racers.add(stop)

    try:
        done, _ = await asyncio.wait(racers, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
        if work in done:
            return work.result()
        if stop is not None and stop in done:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        for racer in racers:
            if not racer.done():
                racer.cancel()
                with suppress(asyncio.CancelledError):
                    await racer


def _discard(awaitable: Awaitable[object]) -> None:
    # A coroutine object that is never awaited warns at garbage collection.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "KeyLockedError",
    "KeyedLock",
    "run_with_timeout",
]
