"""fieldtrip Domain Layer - Core business models and errors."""

from .errors import (
    EstimationError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
    TripError,
)
from .models import FinishedSessionRecord, PositionSample, RouteEstimate, TripState

__all__ = [
    "EstimationError",
    "FinishedSessionRecord",
    "InvalidTransitionError",
    "PermissionDeniedError",
    "PersistenceError",
    "PositionSample",
    "RouteEstimate",
    "TripError",
    "TripState",
]
