"""GPS infrastructure - route distance and position sources."""

from .distance import (
    RouteAccumulator,
    calculate_distance,
    calculate_total_distance,
    is_within_geofence,
)
from .position_source import (
    GpsdPositionSource,
    GpsdSettings,
    MockPositionSource,
    PositionSource,
    ReplayPositionSource,
    SampleThrottle,
    load_samples,
)

__all__ = [
    "GpsdPositionSource",
    "GpsdSettings",
    "MockPositionSource",
    "PositionSource",
    "ReplayPositionSource",
    "RouteAccumulator",
    "SampleThrottle",
    "calculate_distance",
    "calculate_total_distance",
    "is_within_geofence",
    "load_samples",
]
