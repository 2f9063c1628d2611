"""
fieldtrip Trip Tracker
======================

Runs one TripSession against its collaborators on a single asyncio loop.

Position samples are pushed by the source into a queue; one consumer task
drains it. Every session mutation (sample append, timer refresh and each
transition) happens under one asyncio lock, so a finish request that
arrives while start is still in flight waits for start to complete.

Usage:
    tracker = await TripTracker.plan(
        "Vesterbrogade 1", "Roskilde St.",
        estimator=MockEstimator(), source=MockPositionSource(),
        store=store, bus=bus,
    )
    await tracker.start()
    ...
    result = await tracker.finish()
    if not result.persisted:
        print(f"Not saved: {result.error}")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..domain.errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
)
from ..domain.models import FinishedSessionRecord, PositionSample, TripState
from ..infrastructure.gps.position_source import PositionSource
from ..infrastructure.routing.estimator import EstimationSource, estimate_route
from ..infrastructure.storage.session_store import SessionStore
from .events import EventBus, TripEventType
from .session import TripSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TripResult:
    """Outcome of finishing a trip."""

    record: FinishedSessionRecord
    persisted: bool
    error: Optional[PersistenceError] = None


class TripTracker:
    """
    Owner of one live trip.

    Wires a TripSession to a position source subscription, a periodic
    display tick, the trip store and (optionally) an event bus.
    """

    def __init__(
        self,
        session: TripSession,
        source: PositionSource,
        store: SessionStore | None = None,
        bus: EventBus | None = None,
        tick_interval: float = 1.0,
    ) -> None:
        self.session = session
        self.tick_interval = tick_interval
        self._source = source
        self._store = store
        self._bus = bus

        self._lock = asyncio.Lock()
        self._channel: asyncio.Queue[Optional[PositionSample]] = asyncio.Queue()
        self._channel_closed = False
        self._consumer: asyncio.Task[None] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._subscription: int | None = None
        self._result: TripResult | None = None

        # Display value refreshed by the tick; the session stays authoritative.
        self.elapsed_minutes = 0

    @classmethod
    async def plan(
        cls,
        from_address: str,
        to_address: str,
        *,
        estimator: EstimationSource,
        source: PositionSource,
        store: SessionStore | None = None,
        bus: EventBus | None = None,
        tick_interval: float = 1.0,
        geofence_radius_m: float = 50.0,
        locate_destination: bool = False,
        **session_kwargs: Any,
    ) -> TripTracker:
        """
        Estimate the route and build an idle tracker for it.

        Raises:
            EstimationError: If no valid estimate could be obtained
        """
        estimate = await estimate_route(estimator, from_address, to_address)

        destination = None
        if locate_destination:
            try:
                destination = await estimator.geocode(to_address)
            except Exception as e:
                # Arrival detection is optional; tracking works without it.
                logger.warning("Could not locate %r, arrival detection off: %s", to_address, e)

        session = TripSession(
            from_address,
            to_address,
            estimate,
            destination=destination,
            geofence_radius_m=geofence_radius_m,
            **session_kwargs,
        )
        return cls(session, source, store=store, bus=bus, tick_interval=tick_interval)

    # ==================== Properties ====================

    @property
    def state(self) -> TripState:
        return self.session.state

    @property
    def result(self) -> TripResult | None:
        return self._result

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def ticker_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """
        Ask for position access and begin tracking.

        Raises:
            PermissionDeniedError: Access refused; the session stays IDLE
            InvalidTransitionError: The trip was already started
        """
        async with self._lock:
            if self.session.state is not TripState.IDLE:
                raise InvalidTransitionError("start", self.session.state)

            if not await self._source.request_access():
                logger.warning("Position access denied for trip %s", self.session.session_id)
                raise PermissionDeniedError("position access was not granted")

            self.session.start()
            self._consumer = asyncio.create_task(self._consume())
            await self._start_feeds()
            snapshot = self.session.to_dict()

        await self._emit(TripEventType.TRIP_STARTED, snapshot)

    async def pause(self) -> None:
        """Pause tracking; the source is unsubscribed and the tick stopped."""
        async with self._lock:
            arrived_now = self._apply_pending()
            self.session.pause()
            await self._stop_feeds()
            snapshot = self.session.to_dict()

        if arrived_now:
            await self._emit(TripEventType.ARRIVED, snapshot)
        await self._emit(TripEventType.TRIP_PAUSED, snapshot)

    async def resume(self) -> None:
        """Resume tracking after a pause."""
        async with self._lock:
            self.session.resume()
            await self._start_feeds()
            self.elapsed_minutes = self.session.elapsed_minutes
            snapshot = self.session.to_dict()

        await self._emit(TripEventType.TRIP_RESUMED, snapshot)

    async def toggle_pause(self) -> TripState:
        """Pause when tracking, resume when paused. Returns the new state."""
        if self.session.state is TripState.PAUSED:
            await self.resume()
        else:
            await self.pause()
        return self.session.state

    async def finish(self) -> TripResult:
        """
        Finish the trip and hand the record to the store.

        A failed save does not raise; it is reported on the result and the
        trip stays FINISHED.

        Raises:
            InvalidTransitionError: The trip is not TRACKING or PAUSED
        """
        async with self._lock:
            arrived_now = self._apply_pending()
            record = self.session.finish()
            try:
                await self._stop_feeds()
            except Exception as e:
                logger.error("Error stopping feeds for trip %s: %s", self.session.session_id, e)
            finally:
                self._close_channel()

        if self._consumer is not None:
            await self._consumer
            self._consumer = None

        if arrived_now:
            await self._emit(TripEventType.ARRIVED, self.session.to_dict())
        persisted, error = await self._persist(record)
        self._result = TripResult(record=record, persisted=persisted, error=error)
        await self._emit(TripEventType.TRIP_FINISHED, record)
        return self._result

    # ==================== Samples ====================

    async def drain(self) -> None:
        """Wait until every sample delivered so far has been applied."""
        await self._channel.join()

    def _on_sample(self, sample: PositionSample) -> None:
        """Source callback; only enqueues."""
        if self._channel_closed:
            logger.debug("Late sample after finish dropped")
            return
        self._channel.put_nowait(sample)

    async def _consume(self) -> None:
        while True:
            sample = await self._channel.get()
            try:
                if sample is None:
                    return
                await self.offer(sample)
            finally:
                self._channel.task_done()

    async def offer(self, sample: PositionSample) -> bool:
        """
        Apply one sample to the session.

        Returns:
            True if the sample was appended, False if discarded
        """
        async with self._lock:
            was_arrived = self.session.arrived
            accepted = self.session.add_sample(sample)
            if accepted:
                self.elapsed_minutes = self.session.elapsed_minutes
            snapshot = self.session.to_dict()
            arrived_now = self.session.arrived and not was_arrived

        if accepted:
            await self._emit(TripEventType.SAMPLE_ACCEPTED, snapshot)
        else:
            await self._emit(TripEventType.SAMPLE_DISCARDED, snapshot)
        if arrived_now:
            await self._emit(TripEventType.ARRIVED, snapshot)
        return accepted

    def _apply_pending(self) -> bool:
        """
        Apply samples still queued from the tracking phase.

        Called under the lock right before pause/finish, so fixes delivered
        while TRACKING are not lost to the transition.

        Returns:
            True if one of them reached the destination geofence
        """
        was_arrived = self.session.arrived
        closed = False
        while True:
            try:
                sample = self._channel.get_nowait()
            except asyncio.QueueEmpty:
                break
            if sample is None:
                closed = True
            else:
                self.session.add_sample(sample)
            self._channel.task_done()

        if closed:
            self._channel.put_nowait(None)
        self.elapsed_minutes = self.session.elapsed_minutes
        return self.session.arrived and not was_arrived

    # ==================== Internals ====================

    async def _start_feeds(self) -> None:
        self._subscription = await self._source.subscribe(self._on_sample)
        self._ticker = asyncio.create_task(self._tick_loop())

    async def _stop_feeds(self) -> None:
        handle, self._subscription = self._subscription, None
        ticker, self._ticker = self._ticker, None
        try:
            if handle is not None:
                await self._source.unsubscribe(handle)
        finally:
            if ticker is not None:
                ticker.cancel()
                try:
                    await ticker
                except asyncio.CancelledError:
                    pass

    def _close_channel(self) -> None:
        self._channel_closed = True
        self._channel.put_nowait(None)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            async with self._lock:
                if self.session.state is not TripState.TRACKING:
                    continue
                self.elapsed_minutes = self.session.elapsed_minutes
                snapshot = self.session.to_dict()
            await self._emit(TripEventType.TICK, snapshot)

    async def _persist(
        self, record: FinishedSessionRecord
    ) -> tuple[bool, Optional[PersistenceError]]:
        if self._store is None:
            return False, None

        try:
            saved = await self._store.append(record)
            error = None if saved else PersistenceError(f"trip {record.id} could not be saved")
        except Exception as e:
            saved = False
            error = PersistenceError(f"trip {record.id} could not be saved: {e}")

        if error is not None:
            logger.warning("%s; the record is still available in memory", error)
            await self._emit(TripEventType.PERSISTENCE_FAILED, {"id": record.id, "error": str(error)})
        return saved, error

    async def _emit(self, event_type: TripEventType, data: Any) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, data=data)


