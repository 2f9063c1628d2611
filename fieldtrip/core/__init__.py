"""fieldtrip Core - trip session state machine, tracker, events and formatting."""

from .events import EventBus, TripEvent, TripEventType
from .formatting import (
    describe_distance_delta,
    format_distance,
    format_duration,
    progress_percent,
)
from .records import build_finished_record
from .session import TripSession
from .tracker import TripResult, TripTracker

__all__ = [
    "EventBus",
    "TripEvent",
    "TripEventType",
    "TripResult",
    "TripSession",
    "TripTracker",
    "build_finished_record",
    "describe_distance_delta",
    "format_distance",
    "format_duration",
    "progress_percent",
]
