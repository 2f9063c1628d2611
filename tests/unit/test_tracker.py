"""
Trip Tracker Unit Tests
=======================

Lifecycle against a hand-driven position source, sample delivery through
the channel, persistence outcomes and event emission.
"""

import asyncio
import random

import pytest
import pytest_asyncio

from fieldtrip.core.events import EventBus, TripEventType
from fieldtrip.core.session import TripSession
from fieldtrip.core.tracker import TripTracker
from fieldtrip.domain.errors import (
    EstimationError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
)
from fieldtrip.domain.models import TripState
from fieldtrip.infrastructure.routing.estimator import MockEstimator
from fieldtrip.infrastructure.storage.session_store import MemorySessionStore

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def bus():
    bus = EventBus()
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def make_tracker(estimate, clock, wall_clock, manual_source, store, bus):
    def _make(source=None, tick_interval=60.0, trip_store=None, **session_kwargs):
        session = TripSession(
            "Vesterbrogade 1, København",
            "Roskilde Station",
            estimate,
            clock=clock,
            wall_clock=wall_clock,
            **session_kwargs,
        )
        return TripTracker(
            session,
            source or manual_source,
            store=trip_store or store,
            bus=bus,
            tick_interval=tick_interval,
        )

    return _make


def _types(bus: EventBus) -> list[TripEventType]:
    return [e.type for e in bus.get_history(limit=1000)]


class TestStart:
    async def test_start_subscribes_and_ticks(self, make_tracker, manual_source, bus):
        tracker = make_tracker()
        await tracker.start()

        assert tracker.state is TripState.TRACKING
        assert tracker.is_subscribed and manual_source.subscribed
        assert tracker.ticker_running

        await tracker.finish()
        await bus.stop()
        assert _types(bus)[0] is TripEventType.TRIP_STARTED

    async def test_permission_denied_stays_idle(self, make_tracker, manual_source_cls):
        source = manual_source_cls(granted=False)
        tracker = make_tracker(source=source)

        with pytest.raises(PermissionDeniedError):
            await tracker.start()

        assert tracker.state is TripState.IDLE
        assert tracker.session.started_at is None
        assert source.subscribe_calls == 0
        assert not tracker.ticker_running

    async def test_start_twice_rejected(self, make_tracker, manual_source):
        tracker = make_tracker()
        await tracker.start()
        with pytest.raises(InvalidTransitionError):
            await tracker.start()
        assert manual_source.subscribe_calls == 1
        await tracker.finish()

    async def test_finish_waits_for_inflight_start(self, make_tracker, manual_source_cls):
        source = manual_source_cls(access_delay=0.05)
        tracker = make_tracker(source=source)

        start_task = asyncio.create_task(tracker.start())
        await asyncio.sleep(0)
        finish_task = asyncio.create_task(tracker.finish())

        await start_task
        result = await finish_task

        assert tracker.state is TripState.FINISHED
        assert result.record.sample_count == 0
        assert source.subscribe_calls == 1
        assert source.unsubscribe_calls == 1
        assert not source.subscribed


class TestSamples:
    async def test_samples_accumulate(self, make_tracker, manual_source, route_samples):
        tracker = make_tracker()
        await tracker.start()
        for s in route_samples:
            manual_source.push(s)
        await tracker.drain()

        assert tracker.session.sample_count == 3
        assert tracker.session.actual_distance_km > 0

        result = await tracker.finish()
        assert result.record.samples == tuple(route_samples)

    async def test_queued_samples_applied_before_finish(
        self, make_tracker, manual_source, route_samples
    ):
        tracker = make_tracker()
        await tracker.start()
        for s in route_samples:
            manual_source.push(s)

        result = await tracker.finish()
        assert result.record.sample_count == 3
        assert result.record.samples == tuple(route_samples)
        assert tracker.session.discarded_count == 0
        await tracker.drain()

    async def test_queued_samples_applied_before_pause(
        self, make_tracker, manual_source, route_samples
    ):
        tracker = make_tracker()
        await tracker.start()
        for s in route_samples:
            manual_source.push(s)

        await tracker.pause()
        assert tracker.session.sample_count == 3
        assert tracker.session.discarded_count == 0

        await tracker.drain()
        assert tracker.session.sample_count == 3
        await tracker.finish()

    async def test_queued_arrival_reported_on_pause(self, make_tracker, manual_source, sample, bus):
        tracker = make_tracker(destination=(55.6850, 12.6000), geofence_radius_m=50)
        await tracker.start()
        manual_source.push(sample(55.68501, 12.60001))
        await tracker.pause()
        await tracker.finish()
        await bus.stop()

        assert tracker.session.arrived
        assert _types(bus).count(TripEventType.ARRIVED) == 1

    async def test_queued_arrival_reported_on_finish(self, make_tracker, manual_source, sample, bus):
        tracker = make_tracker(destination=(55.6850, 12.6000), geofence_radius_m=50)
        await tracker.start()
        manual_source.push(sample(55.68501, 12.60001))
        await tracker.finish()
        await bus.stop()

        types = _types(bus)
        assert tracker.session.arrived
        assert types.count(TripEventType.ARRIVED) == 1
        assert types.index(TripEventType.ARRIVED) < types.index(TripEventType.TRIP_FINISHED)

    async def test_pause_unsubscribes_and_discards(
        self, make_tracker, manual_source, route_samples, sample
    ):
        tracker = make_tracker()
        await tracker.start()
        manual_source.push(route_samples[0])
        await tracker.drain()

        await tracker.pause()
        assert not manual_source.subscribed
        assert not tracker.is_subscribed
        assert not tracker.ticker_running

        distance = tracker.session.actual_distance_km
        manual_source.push_late(sample(56.0, 13.0))
        await tracker.drain()
        assert tracker.session.actual_distance_km == distance
        assert tracker.session.sample_count == 1

        await tracker.resume()
        assert manual_source.subscribed
        assert manual_source.subscribe_calls == 2
        manual_source.push(route_samples[1])
        await tracker.drain()
        assert tracker.session.sample_count == 2
        await tracker.finish()

    async def test_late_samples_after_finish_ignored(
        self, make_tracker, manual_source, route_samples, sample
    ):
        tracker = make_tracker()
        await tracker.start()
        manual_source.push(route_samples[0])
        await tracker.drain()
        result = await tracker.finish()

        manual_source.push_late(sample(57.0, 14.0))
        assert tracker.session.sample_count == 1
        assert result.record.sample_count == 1

    async def test_offer_emits_events(self, make_tracker, route_samples, bus):
        tracker = make_tracker()
        assert await tracker.offer(route_samples[0]) is False
        await tracker.start()
        assert await tracker.offer(route_samples[0]) is True
        await tracker.finish()
        await bus.stop()

        types = _types(bus)
        assert TripEventType.SAMPLE_DISCARDED in types
        assert TripEventType.SAMPLE_ACCEPTED in types

    async def test_arrival_emitted_once(self, make_tracker, manual_source, sample, bus):
        tracker = make_tracker(destination=(55.6850, 12.6000), geofence_radius_m=50)
        await tracker.start()
        manual_source.push(sample(55.6761, 12.5683))
        manual_source.push(sample(55.68501, 12.60001))
        manual_source.push(sample(55.68502, 12.60002))
        await tracker.drain()
        await tracker.finish()
        await bus.stop()

        assert tracker.session.arrived
        assert _types(bus).count(TripEventType.ARRIVED) == 1


class TestPauseResume:
    async def test_toggle(self, make_tracker):
        tracker = make_tracker()
        await tracker.start()
        assert await tracker.toggle_pause() is TripState.PAUSED
        assert await tracker.toggle_pause() is TripState.TRACKING
        await tracker.finish()

    async def test_pause_when_idle_rejected(self, make_tracker, manual_source):
        tracker = make_tracker()
        with pytest.raises(InvalidTransitionError):
            await tracker.pause()
        assert manual_source.unsubscribe_calls == 0

    async def test_time_bookkeeping(self, make_tracker, clock):
        tracker = make_tracker()
        await tracker.start()
        clock.advance(minutes=5)
        await tracker.pause()
        clock.advance(minutes=3)
        await tracker.resume()
        clock.advance(minutes=12)
        result = await tracker.finish()

        assert result.record.pause_duration_min == 3
        assert result.record.actual_time_min == 17

    async def test_finish_while_paused(self, make_tracker, manual_source, clock):
        tracker = make_tracker()
        await tracker.start()
        clock.advance(minutes=2)
        await tracker.pause()
        clock.advance(minutes=4)
        result = await tracker.finish()

        assert tracker.state is TripState.FINISHED
        assert result.record.pause_duration_min == 4
        assert result.record.actual_time_min == 2
        assert manual_source.unsubscribe_calls == 1


class TestTick:
    async def test_tick_refreshes_elapsed(self, make_tracker, clock, bus):
        tracker = make_tracker(tick_interval=0.01)
        ticked = asyncio.Event()

        @bus.on(TripEventType.TICK)
        async def on_tick(event):
            if event.data["elapsed_minutes"] == 3:
                ticked.set()

        await tracker.start()
        clock.advance(minutes=3)
        await asyncio.wait_for(ticked.wait(), timeout=2.0)
        assert tracker.elapsed_minutes == 3
        await tracker.finish()
        assert not tracker.ticker_running


class TestPersistence:
    async def test_record_saved(self, make_tracker, store, route_samples, manual_source):
        tracker = make_tracker()
        await tracker.start()
        manual_source.push(route_samples[0])
        await tracker.drain()
        result = await tracker.finish()

        assert result.persisted is True
        assert result.error is None
        assert tracker.result is result
        stored = await store.list_all()
        assert [r.id for r in stored] == [tracker.session.session_id]
        assert stored[0] == result.record

    async def test_failed_save_reported_not_raised(self, make_tracker, failing_store, bus):
        tracker = make_tracker(trip_store=failing_store)
        await tracker.start()
        result = await tracker.finish()
        await bus.stop()

        assert failing_store.attempts == 1
        assert result.persisted is False
        assert isinstance(result.error, PersistenceError)
        assert tracker.state is TripState.FINISHED
        assert result.record.id == tracker.session.session_id
        assert TripEventType.PERSISTENCE_FAILED in _types(bus)
        assert _types(bus)[-1] is TripEventType.TRIP_FINISHED

    async def test_source_failure_on_finish_still_saves(
        self, make_tracker, manual_source_cls, store, route_samples
    ):
        class FlakySource(manual_source_cls):
            async def unsubscribe(self, handle):
                await super().unsubscribe(handle)
                raise AttributeError("'list' object has no attribute 'get'")

        source = FlakySource()
        tracker = make_tracker(source=source)
        await tracker.start()
        source.push(route_samples[0])
        result = await tracker.finish()

        assert tracker.state is TripState.FINISHED
        assert tracker.result is result
        assert result.persisted is True
        assert result.record.sample_count == 1
        assert not tracker.ticker_running
        assert [r.id for r in await store.list_all()] == [tracker.session.session_id]

    async def test_store_exception_reported(self, estimate, manual_source):
        class BrokenStore(MemorySessionStore):
            async def append(self, record):
                raise RuntimeError("disk full")

        tracker = TripTracker(
            TripSession("a", "b", estimate), manual_source, store=BrokenStore(), tick_interval=60
        )
        await tracker.start()
        result = await tracker.finish()

        assert result.persisted is False
        assert "disk full" in str(result.error)

    async def test_without_store(self, estimate, manual_source):
        tracker = TripTracker(TripSession("a", "b", estimate), manual_source, tick_interval=60)
        await tracker.start()
        result = await tracker.finish()
        assert result.persisted is False
        assert result.error is None

    async def test_finish_twice_rejected(self, make_tracker, store):
        tracker = make_tracker()
        await tracker.start()
        await tracker.finish()
        with pytest.raises(InvalidTransitionError):
            await tracker.finish()
        assert len(await store.list_all()) == 1


class TestPlan:
    async def test_plan_builds_idle_tracker(self, manual_source):
        estimator = MockEstimator(delay=0, rng=random.Random(3))
        tracker = await TripTracker.plan(
            "Vesterbrogade 1",
            "Roskilde Station",
            estimator=estimator,
            source=manual_source,
            locate_destination=True,
            geofence_radius_m=75,
        )
        assert tracker.state is TripState.IDLE
        assert 50 <= tracker.session.estimate.distance_km <= 150
        assert tracker.session.destination is not None
        assert tracker.session.geofence_radius_m == 75
        assert manual_source.subscribe_calls == 0

    async def test_plan_estimation_failure(self, manual_source):
        class Failing:
            async def estimate(self, from_address, to_address):
                raise TimeoutError("no network")

            async def geocode(self, address):
                raise AssertionError("not reached")

        with pytest.raises(EstimationError):
            await TripTracker.plan("a", "b", estimator=Failing(), source=manual_source)

    async def test_plan_geocode_failure_disables_arrival(self, manual_source):
        class NoGeocode(MockEstimator):
            async def geocode(self, address):
                raise EstimationError("ZERO_RESULTS")

        tracker = await TripTracker.plan(
            "a",
            "b",
            estimator=NoGeocode(delay=0),
            source=manual_source,
            locate_destination=True,
        )
        assert tracker.session.destination is None
