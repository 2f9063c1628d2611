"""Finished trip record builder."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from ..domain.models import FinishedSessionRecord

if TYPE_CHECKING:
    from .session import TripSession


def build_finished_record(session: TripSession, end_time: datetime) -> FinishedSessionRecord:
    """
    Snapshot a session at the moment of finishing.

    Side-effect free; persisting the record is the caller's job.

    Args:
        session: Session in TRACKING or PAUSED state, open pause already closed
        end_time: Wall-clock end instant

    Returns:
        Immutable FinishedSessionRecord
    """
    if session.started_at is None:
        raise ValueError("cannot build a record for a trip that never started")

    return FinishedSessionRecord(
        id=session.session_id,
        from_address=session.from_address,
        to_address=session.to_address,
        estimated_distance_km=session.estimate.distance_km,
        estimated_duration_min=session.estimate.duration_min,
        actual_distance_km=session.actual_distance_km,
        actual_time_min=session.elapsed_minutes,
        pause_duration_min=int(session.paused_seconds // 60),
        samples=session.samples,
        start_time=session.started_at,
        end_time=end_time,
    )
