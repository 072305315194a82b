"""
merge-orchestrator — in-process event bus.

File: src/merge_orchestrator/observability/events.py

Purpose
- Fan ``MergeEvent`` records out to subscribers and keep a bounded replay
  buffer. ``EventBus`` satisfies the ``EventSink`` collaborator protocol, so an
  orchestrator can publish to it directly.

Functional requirements
- Subscribers are called in subscription order. A type-filtered subscriber
  only sees its event type; a ``None`` filter sees everything.
- A failing subscriber never reaches the publisher. Its failure is returned
  as a ``DispatchError`` and kept for ``dispatch_errors()``.
- Critical events (merge success, completion failure, rollback, terminal run
  outcomes) go to the optional persistence callback before any subscriber.
- ``publish`` works from sync code: async subscribers are scheduled on the
  running loop (collect them with ``drain_async``) or run to completion when
  no loop is running.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

from merge_orchestrator.domain.events import EventType, MergeEvent
from merge_orchestrator.domain.ids import generate_event_id

Subscriber = Callable[[MergeEvent], object]
PersistenceCallback = Callable[[MergeEvent], object]

DEFAULT_CRITICAL_EVENT_TYPES: Final[frozenset[EventType]] = frozenset(
    {
        EventType.MERGE_SUCCEEDED,
        EventType.COMPLETION_FAILED,
        EventType.ROLLBACK_PERFORMED,
        EventType.ORCHESTRATION_COMPLETED,
        EventType.ORCHESTRATION_FAILED,
    }
)
_ERROR_HISTORY: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """One subscriber or persistence failure for one event."""

    stage: str
    event_id: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(cls, stage: str, event: MergeEvent, target: str, exc: Exception) -> DispatchError:
        return cls(stage, event.event_id, target, type(exc).__name__, str(exc))


@dataclass(frozen=True, slots=True)
class _Route:
    stage: str
    target: str
    callback: Callable[[MergeEvent], object]


@dataclass(frozen=True, slots=True)
class _Subscription:
    event_type: str | None
    callback: Subscriber

    def wants(self, event: MergeEvent) -> bool:
        return self.event_type is None or self.event_type == event.event_type.value


class EventBus:
    def __init__(
        self,
        *,
        buffer_size: int = 512,
        persist_event: PersistenceCallback | None = None,
        critical_event_types: Sequence[str | EventType] | None = None,
    ) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        if persist_event is not None and not callable(persist_event):
            raise ValueError("persistence callback must be callable")

        critical = DEFAULT_CRITICAL_EVENT_TYPES if critical_event_types is None else critical_event_types
        self._critical = frozenset(_type_name(item) for item in critical)
        self._persist = persist_event
        self._lock = threading.RLock()
        self._history: deque[MergeEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_ERROR_HISTORY)
        self._subscriptions: dict[int, _Subscription] = {}
        self._tokens = iter(range(1, 1 << 62))
        self._in_flight: set[asyncio.Task[Any]] = set()

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback``; returns a token for ``unsubscribe``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        subscription = _Subscription(None if event_type is None else _type_name(event_type), callback)
        with self._lock:
            token = next(self._tokens)
            self._subscriptions[token] = subscription
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    # -- publishing ---------------------------------------------------------

    def publish(self, event: MergeEvent) -> tuple[DispatchError, ...]:
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        errors: list[DispatchError] = []
        for route in self._routes(event):
            try:
                result = route.callback(event)
                if inspect.isawaitable(result):
                    if loop is None:
                        asyncio.run(_awaited(result))
                    else:
                        self._track(loop.create_task(_awaited(result)), route, event)
            except Exception as exc:  # noqa: BLE001 - isolate subscriber failures
                errors.append(DispatchError.capture(route.stage, event, route.target, exc))
        return self._keep(errors)

    async def publish_async(self, event: MergeEvent) -> tuple[DispatchError, ...]:
        errors: list[DispatchError] = []
        for route in self._routes(event):
            try:
                result = route.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - isolate subscriber failures
                errors.append(DispatchError.capture(route.stage, event, route.target, exc))
        return self._keep(errors)

    async def emit_async(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        candidate_id: str,
        work_item_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> tuple[MergeEvent, tuple[DispatchError, ...]]:
        """Build a ``MergeEvent`` with a fresh id and publish it."""

        event = MergeEvent(
            event_id=generate_event_id(),
            event_type=event_type,
            candidate_id=candidate_id,
            timestamp=timestamp or datetime.now(tz=UTC),
            payload=dict(payload),
            work_item_id=work_item_id,
        )
        return event, await self.publish_async(event)

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Wait for async subscribers scheduled by ``publish``; returns all recorded errors."""

        with self._lock:
            in_flight, self._in_flight = self._in_flight, set()
        await asyncio.gather(*in_flight, return_exceptions=True)
        return self.dispatch_errors()

    # -- inspection ---------------------------------------------------------

    def replay(
        self,
        *,
        candidate_id: str | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[MergeEvent, ...]:
        """Buffered events in publish order, optionally filtered; ``limit`` keeps the newest."""

        wanted_type = None if event_type is None else _type_name(event_type)
        with self._lock:
            history = list(self._history)
        matched = [
            event
            for event in history
            if candidate_id in (None, event.candidate_id)
            and wanted_type in (None, event.event_type.value)
        ]
        if limit is None:
            return tuple(matched)
        return tuple(matched[-limit:]) if limit > 0 else ()

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    # -- internals ----------------------------------------------------------

    def _routes(self, event: MergeEvent) -> Iterator[_Route]:
        if not isinstance(event, MergeEvent):
            raise ValueError(f"event must be MergeEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            subscriptions = list(self._subscriptions.values())
        if self._persist is not None and event.event_type.value in self._critical:
            yield _Route("persistence", _name_of(self._persist), self._persist)
        for subscription in subscriptions:
            if subscription.wants(event):
                yield _Route("subscriber", _name_of(subscription.callback), subscription.callback)

    def _track(self, task: asyncio.Task[Any], route: _Route, event: MergeEvent) -> None:
        def finished(done: asyncio.Task[Any]) -> None:
            with self._lock:
                self._in_flight.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if isinstance(exc, Exception):
                self._keep([DispatchError.capture(route.stage, event, route.target, exc)])

        with self._lock:
            self._in_flight.add(task)
        task.add_done_callback(finished)

    def _keep(self, errors: list[DispatchError]) -> tuple[DispatchError, ...]:
        if errors:
            with self._lock:
                self._errors.extend(errors)
        return tuple(errors)


async def _awaited(awaitable: Any) -> None:
    await awaitable


def _type_name(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    if not isinstance(value, str) or not value.strip():
        raise ValueError("event type must be a non-empty string or EventType")
    return value.strip()


def _name_of(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    return name if isinstance(name, str) and name else type(callback).__name__


__all__ = [
    "DEFAULT_CRITICAL_EVENT_TYPES",
    "DispatchError",
    "EventBus",
    "PersistenceCallback",
    "Subscriber",
]
