"""Shared fixtures for fieldtrip tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from fieldtrip.domain.models import FinishedSessionRecord, PositionSample, RouteEstimate
from fieldtrip.infrastructure.storage.session_store import MemorySessionStore

COPENHAGEN_ROUTE = [
    (55.6761, 12.5683),
    (55.6800, 12.5800),
    (55.6850, 12.6000),
]


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0.0, *, minutes: float = 0.0) -> None:
        self.now += seconds + minutes * 60


class FakeWallClock:
    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._origin = datetime(2026, 5, 1, 8, 0, tzinfo=UTC)
        self._base = clock.now

    def __call__(self) -> datetime:
        return self._origin + timedelta(seconds=self._clock.now - self._base)


class ManualPositionSource:
    """Position source driven by the test."""

    def __init__(self, granted: bool = True, access_delay: float = 0.0) -> None:
        self.granted = granted
        self.access_delay = access_delay
        self.callbacks: dict[int, object] = {}
        self.last_callback = None
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self._next = 0

    async def request_access(self) -> bool:
        if self.access_delay:
            await asyncio.sleep(self.access_delay)
        return self.granted

    async def subscribe(self, on_sample) -> int:
        self._next += 1
        self.subscribe_calls += 1
        self.callbacks[self._next] = on_sample
        self.last_callback = on_sample
        return self._next

    async def unsubscribe(self, handle: int) -> None:
        self.unsubscribe_calls += 1
        self.callbacks.pop(handle, None)

    @property
    def subscribed(self) -> bool:
        return bool(self.callbacks)

    def push(self, sample: PositionSample) -> None:
        """Deliver to live subscribers."""
        for cb in list(self.callbacks.values()):
            cb(sample)

    def push_late(self, sample: PositionSample) -> None:
        """Deliver through the last callback even if unsubscribed."""
        self.last_callback(sample)


class FailingSessionStore(MemorySessionStore):
    """Store whose appends are refused, like a full or locked database."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def append(self, record: FinishedSessionRecord) -> bool:
        self.attempts += 1
        return False


def make_sample(lat: float, lon: float, seconds: float = 0.0) -> PositionSample:
    return PositionSample(
        latitude=lat,
        longitude=lon,
        timestamp=datetime(2026, 5, 1, 8, 0, tzinfo=UTC) + timedelta(seconds=seconds),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock(clock: FakeClock) -> FakeWallClock:
    return FakeWallClock(clock)


@pytest.fixture
def estimate() -> RouteEstimate:
    return RouteEstimate(distance_km=2.0, duration_min=30)


@pytest.fixture
def route_samples() -> list[PositionSample]:
    return [make_sample(lat, lon, i * 10) for i, (lat, lon) in enumerate(COPENHAGEN_ROUTE)]


@pytest.fixture
def sample():
    """Factory: sample(lat, lon, seconds=0.0) -> PositionSample."""
    return make_sample


@pytest.fixture
def manual_source() -> ManualPositionSource:
    return ManualPositionSource()


@pytest.fixture
def manual_source_cls() -> type[ManualPositionSource]:
    return ManualPositionSource


@pytest.fixture
def failing_store() -> FailingSessionStore:
    return FailingSessionStore()
