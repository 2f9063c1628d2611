"""Routing infrastructure - a-priori route estimates."""

from .estimator import (
    DistanceMatrixEstimator,
    EstimationSource,
    MapsSettings,
    MockEstimator,
    estimate_route,
    parse_distance_matrix,
    parse_geocode,
)

__all__ = [
    "DistanceMatrixEstimator",
    "EstimationSource",
    "MapsSettings",
    "MockEstimator",
    "estimate_route",
    "parse_distance_matrix",
    "parse_geocode",
]
