"""Trip error taxonomy."""

from __future__ import annotations


class TripError(Exception):
    """Base class for all trip tracking errors."""


class PermissionDeniedError(TripError):
    """Position source refused access; the session stays idle."""


class EstimationError(TripError):
    """Estimation source failed or returned an unusable estimate."""


class PersistenceError(TripError):
    """Session store could not save a finished record."""


class InvalidTransitionError(TripError):
    """Lifecycle request is not allowed from the current state."""

    def __init__(self, action: str, state: object) -> None:
        self.action = action
        self.state = state
        name = getattr(state, "name", state)
        super().__init__(f"cannot {action} a trip in state {name}")
