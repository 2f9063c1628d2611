"""Human-readable distance, duration and progress values."""

from __future__ import annotations

import math


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_distance(km: float) -> str:
    """
    Format a distance for display.

    Below one kilometer the value is shown in whole meters.

    >>> format_distance(0.5)
    '500 m'
    >>> format_distance(12.34)
    '12.3 km'
    """
    if km < 1:
        return f"{_round_half_up(km * 1000)} m"
    return f"{km:.1f} km"


def format_duration(minutes: float) -> str:
    """
    Format minutes as ``"45 min"`` or ``"2t 5min"``.

    >>> format_duration(125)
    '2t 5min'
    """
    if minutes < 60:
        return f"{_round_half_up(minutes)} min"
    hours = math.floor(minutes / 60)
    mins = _round_half_up(minutes % 60)
    return f"{hours}t {mins}min"


def progress_percent(actual_km: float, estimated_km: float | None) -> float:
    """Share of the estimated distance covered, clamped to [0, 100]."""
    if not estimated_km or estimated_km <= 0:
        return 0.0
    percent = actual_km / estimated_km * 100
    if math.isnan(percent):
        return 0.0
    return max(0.0, min(100.0, percent))


def describe_distance_delta(actual_km: float, estimated_km: float) -> str:
    """Describe how far the actual distance ended up from the estimate."""
    if actual_km > estimated_km:
        return f"+{format_distance(actual_km - estimated_km)} over estimate"
    return f"{format_distance(estimated_km - actual_km)} under estimate"
