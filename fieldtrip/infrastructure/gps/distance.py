"""
GPS Route Distance
==================

Great-circle distance between fixes and running route totals.
Uses Haversine formula for accurate distance calculation.

Usage:
    route = RouteAccumulator()

    for sample in samples:
        route.append(sample)
        print(f"Total: {route.total_km:.2f}km over {len(route)} points")
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Sequence

if TYPE_CHECKING:
    from ...domain.models import PositionSample

EARTH_RADIUS_M = 6371000.0


def calculate_distance(
    lat1: float, lon1: float, lat2: float, lon2: float
) -> float:
    """
    Calculate distance between two points using Haversine formula.

    Inputs are not range-checked; NaN propagates to the result.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def calculate_total_distance(samples: Sequence[PositionSample]) -> float:
    """
    Sum of consecutive great-circle distances over a route.

    Args:
        samples: Ordered position samples

    Returns:
        Distance in kilometers (0 for fewer than two samples)
    """
    if len(samples) < 2:
        return 0.0

    total_meters = 0.0
    for i in range(1, len(samples)):
        total_meters += calculate_distance(
            samples[i - 1].latitude,
            samples[i - 1].longitude,
            samples[i].latitude,
            samples[i].longitude,
        )

    return total_meters / 1000.0


def is_within_geofence(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle geofence."""
    return calculate_distance(lat, lon, center_lat, center_lon) <= radius_m


@dataclass
class RouteAccumulator:
    """
    Append-only route with a cached running total.

    Each append adds only the last-pair distance; ``recompute()`` sums the
    whole route again and agrees with ``total_km`` within float tolerance.
    """

    _samples: list[PositionSample] = field(default_factory=list)
    _total_meters: float = 0.0

    def append(self, sample: PositionSample) -> float:
        """
        Append a sample to the route.

        Returns:
            Distance added in meters (0 for the first sample)
        """
        added = 0.0
        if self._samples:
            last = self._samples[-1]
            added = calculate_distance(
                last.latitude, last.longitude, sample.latitude, sample.longitude
            )
            self._total_meters += added
        self._samples.append(sample)
        return added

    @property
    def total_km(self) -> float:
        """Running total in kilometers."""
        return self._total_meters / 1000.0

    @property
    def samples(self) -> tuple[PositionSample, ...]:
        """Accepted samples in arrival order."""
        return tuple(self._samples)

    @property
    def last(self) -> PositionSample | None:
        return self._samples[-1] if self._samples else None

    def recompute(self) -> float:
        """Full recomputation of the route total in kilometers."""
        return calculate_total_distance(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[PositionSample]:
        return iter(self._samples)
