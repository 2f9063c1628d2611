"""fieldtrip Domain Models - Pydantic models for core entities."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TripState(str, Enum):
    """Lifecycle state of a tracking session."""

    IDLE = "idle"
    TRACKING = "tracking"
    PAUSED = "paused"
    FINISHED = "finished"


class PositionSample(BaseModel):
    """One reported position fix."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: float | None = None  # metres above sea level
    accuracy: float | None = None  # horizontal accuracy, metres
    speed: float | None = None  # m/s
    heading: float | None = None  # degrees from true north
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def distance_to(self, other: PositionSample) -> float:
        """Great-circle distance to another sample in meters."""
        from ..infrastructure.gps.distance import calculate_distance

        return calculate_distance(
            self.latitude, self.longitude, other.latitude, other.longitude
        )


class RouteEstimate(BaseModel):
    """A-priori distance/duration estimate for a from/to pair."""

    model_config = ConfigDict(frozen=True)

    distance_km: float = Field(..., ge=0)
    duration_min: float = Field(..., ge=0)
    distance_text: str | None = None
    duration_text: str | None = None

    @field_validator("distance_km", "duration_min")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("estimate values must be finite")
        return value


class FinishedSessionRecord(BaseModel):
    """Immutable summary of a completed trip."""

    model_config = ConfigDict(frozen=True)

    id: str
    from_address: str
    to_address: str
    estimated_distance_km: float
    estimated_duration_min: float
    actual_distance_km: float
    actual_time_min: int
    pause_duration_min: int
    samples: tuple[PositionSample, ...] = ()
    start_time: datetime
    end_time: datetime

    @property
    def total_time_min(self) -> int:
        """Active plus paused minutes."""
        return self.actual_time_min + self.pause_duration_min

    @property
    def distance_delta_km(self) -> float:
        """Actual minus estimated distance (positive = longer than estimated)."""
        return self.actual_distance_km - self.estimated_distance_km

    @property
    def sample_count(self) -> int:
        return len(self.samples)
