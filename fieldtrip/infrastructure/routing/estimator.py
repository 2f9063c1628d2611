"""
Route Estimation Sources.
~~~~~~~~~~~~~~~~~~~~~~~~~

A-priori distance/duration estimates for a from/to address pair.
The mock estimator is the default; the Distance Matrix estimator talks to
the Google Maps web services over aiohttp.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from ...domain.errors import EstimationError
from ...domain.models import RouteEstimate

logger = logging.getLogger(__name__)


class EstimationSource(Protocol):
    """Supplies route estimates and address coordinates."""

    async def estimate(self, from_address: str, to_address: str) -> RouteEstimate: ...

    async def geocode(self, address: str) -> tuple[float, float]: ...


class MockEstimator:
    """
    Estimator for testing without an API key.

    Produces 50-150 km at roughly 0.8 min/km, rounded to whole numbers,
    after a short simulated network delay.
    """

    def __init__(
        self,
        delay: float = 1.0,
        rng: random.Random | None = None,
        base_lat: float = 55.6761,
        base_lon: float = 12.5683,
    ) -> None:
        self.delay = delay
        self._rng = rng or random.Random()
        self._base_lat = base_lat
        self._base_lon = base_lon

    async def estimate(self, from_address: str, to_address: str) -> RouteEstimate:
        if self.delay:
            await asyncio.sleep(self.delay)

        distance = 50 + self._rng.random() * 100
        duration = distance * 0.8 + self._rng.random() * 10
        distance_km = round(distance)
        duration_min = round(duration)

        logger.debug("Mock estimate %s -> %s: %d km", from_address, to_address, distance_km)
        return RouteEstimate(
            distance_km=distance_km,
            duration_min=duration_min,
            distance_text=f"{distance_km} km",
            duration_text=f"{duration_min} min",
        )

    async def geocode(self, address: str) -> tuple[float, float]:
        return (
            self._base_lat + self._rng.random() * 0.5,
            self._base_lon + self._rng.random() * 0.5,
        )


@dataclass
class MapsSettings:
    """Google Maps web service settings."""

    api_key: str = ""
    distance_matrix_url: str = "https://maps.googleapis.com/maps/api/distancematrix/json"
    geocoding_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    timeout: float = 15.0


class DistanceMatrixEstimator:
    """
    Estimates via the Google Distance Matrix API.

    Example:
        >>> estimator = DistanceMatrixEstimator(MapsSettings(api_key="..."))
        >>> estimate = await estimator.estimate("Copenhagen", "Roskilde")
    """

    def __init__(self, settings: MapsSettings) -> None:
        if not settings.api_key:
            raise ValueError("Distance Matrix estimator needs an API key")
        self.settings = settings

    async def _get_json(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        params = {**params, "key": self.settings.api_key}
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise EstimationError(f"maps request failed: {resp.status} - {text}")
                    return await resp.json()
        except asyncio.TimeoutError as e:
            raise EstimationError("maps request timed out") from e
        except aiohttp.ClientError as e:
            raise EstimationError(f"maps request error: {e}") from e

    async def estimate(self, from_address: str, to_address: str) -> RouteEstimate:
        data = await self._get_json(
            self.settings.distance_matrix_url,
            {"origins": from_address, "destinations": to_address},
        )
        return parse_distance_matrix(data)

    async def geocode(self, address: str) -> tuple[float, float]:
        data = await self._get_json(self.settings.geocoding_url, {"address": address})
        return parse_geocode(data)


def parse_distance_matrix(data: dict[str, Any]) -> RouteEstimate:
    """
    Convert a Distance Matrix response into a RouteEstimate.

    Raises:
        EstimationError: If the response carries no usable route
    """
    try:
        if data.get("status") != "OK":
            raise EstimationError(f"could not calculate route: {data.get('status')}")
        element = data["rows"][0]["elements"][0]
        if element.get("status") != "OK":
            raise EstimationError(f"could not calculate route: {element.get('status')}")

        return RouteEstimate(
            distance_km=element["distance"]["value"] / 1000,
            duration_min=element["duration"]["value"] / 60,
            distance_text=element["distance"].get("text"),
            duration_text=element["duration"].get("text"),
        )
    except (KeyError, IndexError, TypeError, ValidationError) as e:
        raise EstimationError(f"malformed distance matrix response: {e}") from e


def parse_geocode(data: dict[str, Any]) -> tuple[float, float]:
    """Extract the first result's coordinates from a Geocoding response."""
    try:
        if data.get("status") != "OK":
            raise EstimationError(f"could not geocode address: {data.get('status')}")
        location = data["results"][0]["geometry"]["location"]
        return float(location["lat"]), float(location["lng"])
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise EstimationError(f"malformed geocoding response: {e}") from e


async def estimate_route(
    source: EstimationSource, from_address: str, to_address: str
) -> RouteEstimate:
    """
    Ask ``source`` for an estimate and validate it.

    Any collaborator failure or unusable estimate surfaces as EstimationError.
    """
    if not from_address.strip() or not to_address.strip():
        raise EstimationError("from and to addresses are required")

    try:
        estimate = await source.estimate(from_address, to_address)
    except EstimationError:
        raise
    except Exception as e:
        logger.error("Estimation failed for %s -> %s: %s", from_address, to_address, e)
        raise EstimationError(str(e)) from e

    if not isinstance(estimate, RouteEstimate):
        try:
            estimate = RouteEstimate.model_validate(estimate)
        except ValidationError as e:
            raise EstimationError(f"invalid estimate: {e}") from e

    logger.info(
        "Estimated %s -> %s: %.1f km, %.0f min",
        from_address,
        to_address,
        estimate.distance_km,
        estimate.duration_min,
    )
    return estimate
