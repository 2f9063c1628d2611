"""
fieldtrip Trip Events
=====================

Observers (console output, loggers, tests) follow a trip through events
instead of polling the session.

Handlers are coroutines, run in priority order on one background task.
A failing handler is logged and counted; the others still run.

Usage:
    bus = EventBus()

    @bus.on(TripEventType.SAMPLE_ACCEPTED)
    async def show(event: TripEvent):
        print(f"{event.data['actual_distance_km']:.2f} km so far")

    await bus.start()
    await bus.emit(TripEventType.TRIP_STARTED, data=session.to_dict())
    ...
    await bus.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, TypeAlias

logger = logging.getLogger(__name__)

AsyncHandler: TypeAlias = Callable[["TripEvent"], Coroutine[Any, Any, None]]


class TripEventType(Enum):
    """Everything a tracker reports."""

    # Lifecycle
    TRIP_STARTED = auto()
    TRIP_PAUSED = auto()
    TRIP_RESUMED = auto()
    TRIP_FINISHED = auto()

    # Position fixes
    SAMPLE_ACCEPTED = auto()
    SAMPLE_DISCARDED = auto()
    ARRIVED = auto()

    # Display refresh
    TICK = auto()

    # Storage
    PERSISTENCE_FAILED = auto()


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class TripEvent:
    type: TripEventType
    data: Any = None
    timestamp: float = field(default_factory=time.time)
    source: str = "tracker"
    correlation_id: str = field(default_factory=_short_id)


@dataclass
class Subscription:
    handler: AsyncHandler
    priority: int = 100  # lower runs first
    once: bool = False


class EventBus:
    """
    Queue-backed pub/sub for one trip run.

    Events emitted before ``start()`` wait in the queue and are delivered
    once the loop runs. ``stop()`` lets the queue drain first.
    """

    def __init__(self, max_history: int = 500) -> None:
        self._subscriptions: dict[TripEventType, list[Subscription]] = {}
        self._queue: asyncio.Queue[TripEvent] = asyncio.Queue()
        self._history: deque[TripEvent] = deque(maxlen=max_history)
        self._worker: asyncio.Task | None = None
        self._published = 0
        self._handled = 0
        self._failures = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def subscribe(
        self,
        event_type: TripEventType,
        handler: AsyncHandler,
        priority: int = 100,
        once: bool = False,
    ) -> None:
        """
        Register ``handler`` for ``event_type``.

        Handlers with equal priority run in registration order. A ``once``
        handler is dropped after its first delivery.
        """
        subs = self._subscriptions.setdefault(event_type, [])
        subs.append(Subscription(handler, priority, once))
        subs.sort(key=lambda s: s.priority)
        logger.debug(
            "%s handler %s registered (priority %d)",
            event_type.name,
            getattr(handler, "__name__", handler),
            priority,
        )

    def unsubscribe(self, event_type: TripEventType, handler: AsyncHandler) -> bool:
        subs = self._subscriptions.get(event_type, [])
        for sub in subs:
            if sub.handler == handler:
                subs.remove(sub)
                return True
        return False

    def on(
        self, event_type: TripEventType, priority: int = 100, once: bool = False
    ) -> Callable[[AsyncHandler], AsyncHandler]:
        """Decorator form of ``subscribe``."""

        def register(handler: AsyncHandler) -> AsyncHandler:
            self.subscribe(event_type, handler, priority=priority, once=once)
            return handler

        return register

    async def emit(
        self,
        event_type: TripEventType,
        data: Any = None,
        source: str = "tracker",
    ) -> TripEvent:
        event = TripEvent(type=event_type, data=data, source=source)
        await self._queue.put(event)
        self._published += 1
        return event

    async def start(self) -> None:
        if self.is_running:
            return
        self._worker = asyncio.create_task(self._run())
        logger.debug("Trip event bus running")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (up to ``timeout``), then stop the worker."""
        worker, self._worker = self._worker, None
        if worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%d trip events undelivered at shutdown", self._queue.qsize())

        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        logger.debug("Trip event bus stopped")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: TripEvent) -> None:
        self._history.append(event)

        for sub in list(self._subscriptions.get(event.type, ())):
            try:
                await sub.handler(event)
                self._handled += 1
            except Exception as e:
                self._failures += 1
                logger.error(
                    "%s handler %s failed: %s",
                    event.type.name,
                    getattr(sub.handler, "__name__", sub.handler),
                    e,
                )
            if sub.once:
                self.unsubscribe(event.type, sub.handler)

    def get_history(
        self,
        event_type: TripEventType | None = None,
        limit: int = 100,
    ) -> list[TripEvent]:
        """Most recent delivered events, oldest first."""
        events = [e for e in self._history if event_type is None or e.type is event_type]
        return events[-limit:]

    def get_stats(self) -> dict:
        return {
            "events_published": self._published,
            "events_processed": self._handled,
            "handler_errors": self._failures,
            "queue_size": self._queue.qsize(),
            "handler_count": sum(len(s) for s in self._subscriptions.values()),
            "history_size": len(self._history),
        }

    def clear_history(self) -> None:
        self._history.clear()
