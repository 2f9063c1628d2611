"""
fieldtrip Trip Session
======================

State machine for one tracking session:

    IDLE -> TRACKING <-> PAUSED
               |            |
               +--> FINISHED <+

Durations use a monotonic clock; the wall clock is read only for the
recorded start/end instants.

Usage:
    session = TripSession("Vesterbrogade 1", "Roskilde St.", estimate)
    session.start()
    session.add_sample(sample)
    session.pause()
    session.resume()
    record = session.finish()
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Callable

from ..domain.errors import InvalidTransitionError
from ..domain.models import FinishedSessionRecord, PositionSample, RouteEstimate, TripState
from ..infrastructure.gps.distance import RouteAccumulator, is_within_geofence
from .formatting import progress_percent
from .records import build_finished_record

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
WallClock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TripSession:
    """
    One trip from start to finish.

    All state changes go through start/pause/resume/finish/add_sample.
    The session does no I/O and never awaits; the caller serializes access.
    """

    def __init__(
        self,
        from_address: str,
        to_address: str,
        estimate: RouteEstimate,
        *,
        session_id: str | None = None,
        destination: tuple[float, float] | None = None,
        geofence_radius_m: float = 50.0,
        clock: Clock = time.monotonic,
        wall_clock: WallClock = _utc_now,
    ) -> None:
        from_address = (from_address or "").strip()
        to_address = (to_address or "").strip()
        if not from_address or not to_address:
            raise ValueError("from and to addresses must be non-empty")

        self.session_id = session_id or uuid.uuid4().hex
        self.from_address = from_address
        self.to_address = to_address
        self._estimate = estimate
        self.destination = destination
        self.geofence_radius_m = geofence_radius_m
        self.arrived = False

        self._clock = clock
        self._wall_clock = wall_clock
        self._state = TripState.IDLE
        self._route = RouteAccumulator()
        self._started_at: datetime | None = None
        self._start_clock: float | None = None
        self._paused_seconds = 0.0
        self._pause_started: float | None = None
        self._record: FinishedSessionRecord | None = None
        self._discarded = 0

    # ==================== Read-only view ====================

    @property
    def state(self) -> TripState:
        return self._state

    @property
    def estimate(self) -> RouteEstimate:
        return self._estimate

    @property
    def started_at(self) -> datetime | None:
        """Wall-clock instant of the first transition to TRACKING."""
        return self._started_at

    @property
    def paused_seconds(self) -> float:
        """Cumulative paused time of completed pauses."""
        return self._paused_seconds

    @property
    def is_paused(self) -> bool:
        return self._state is TripState.PAUSED

    @property
    def is_active(self) -> bool:
        return self._state in (TripState.TRACKING, TripState.PAUSED)

    @property
    def samples(self) -> tuple[PositionSample, ...]:
        return self._route.samples

    @property
    def sample_count(self) -> int:
        return len(self._route)

    @property
    def discarded_count(self) -> int:
        """Samples rejected because the session was not tracking."""
        return self._discarded

    @property
    def actual_distance_km(self) -> float:
        return self._route.total_km

    @property
    def record(self) -> FinishedSessionRecord | None:
        """Finished record, available once the session is FINISHED."""
        return self._record

    @property
    def elapsed_seconds(self) -> float:
        """
        Active seconds since start, excluding paused time.

        While paused the value is frozen at the pause instant.
        """
        if self._start_clock is None:
            return 0.0
        now = self._pause_started if self._pause_started is not None else self._clock()
        return max(0.0, now - self._start_clock - self._paused_seconds)

    @property
    def elapsed_minutes(self) -> int:
        return int(self.elapsed_seconds // 60)

    @property
    def progress_percent(self) -> float:
        return progress_percent(self.actual_distance_km, self._estimate.distance_km)

    # ==================== Transitions ====================

    def start(self) -> None:
        """IDLE -> TRACKING. Captures the start instant once."""
        if self._state is not TripState.IDLE:
            raise InvalidTransitionError("start", self._state)
        self._start_clock = self._clock()
        self._started_at = self._wall_clock()
        self._state = TripState.TRACKING
        logger.info(
            "Trip %s started: %s -> %s", self.session_id, self.from_address, self.to_address
        )

    def pause(self) -> None:
        """TRACKING -> PAUSED."""
        if self._state is not TripState.TRACKING:
            raise InvalidTransitionError("pause", self._state)
        self._pause_started = self._clock()
        self._state = TripState.PAUSED
        logger.info("Trip %s paused", self.session_id)

    def resume(self) -> None:
        """PAUSED -> TRACKING. Folds the finished pause into the paused total."""
        if self._state is not TripState.PAUSED:
            raise InvalidTransitionError("resume", self._state)
        self._close_pause()
        self._state = TripState.TRACKING
        logger.info(
            "Trip %s resumed (paused %.0fs total)", self.session_id, self._paused_seconds
        )

    def finish(self) -> FinishedSessionRecord:
        """
        TRACKING|PAUSED -> FINISHED.

        An open pause is closed first. The record is built exactly once.
        """
        if self._state not in (TripState.TRACKING, TripState.PAUSED):
            raise InvalidTransitionError("finish", self._state)
        if self._state is TripState.PAUSED:
            self._close_pause()

        self._record = build_finished_record(self, end_time=self._wall_clock())
        self._state = TripState.FINISHED
        logger.info(
            "Trip %s finished: %.3f km in %d min (%d min paused, %d samples)",
            self.session_id,
            self._record.actual_distance_km,
            self._record.actual_time_min,
            self._record.pause_duration_min,
            self._record.sample_count,
        )
        return self._record

    def add_sample(self, sample: PositionSample) -> bool:
        """
        Offer a sample to the session.

        Returns:
            True if appended, False if discarded (not TRACKING)
        """
        if self._state is not TripState.TRACKING:
            self._discarded += 1
            logger.debug("Trip %s discarded sample while %s", self.session_id, self._state.name)
            return False

        self._route.append(sample)
        if self.destination is not None and not self.arrived:
            self.arrived = is_within_geofence(
                sample.latitude,
                sample.longitude,
                self.destination[0],
                self.destination[1],
                self.geofence_radius_m,
            )
            if self.arrived:
                logger.info("Trip %s reached destination geofence", self.session_id)
        return True

    def _close_pause(self) -> None:
        if self._pause_started is not None:
            self._paused_seconds += max(0.0, self._clock() - self._pause_started)
            self._pause_started = None

    def to_dict(self) -> dict:
        """Export live session state as dictionary."""
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "estimated_distance_km": self._estimate.distance_km,
            "estimated_duration_min": self._estimate.duration_min,
            "actual_distance_km": self.actual_distance_km,
            "elapsed_minutes": self.elapsed_minutes,
            "paused_seconds": self._paused_seconds,
            "sample_count": self.sample_count,
            "progress_percent": self.progress_percent,
            "arrived": self.arrived,
        }
