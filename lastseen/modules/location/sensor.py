"""Geolocation sensor boundary: a one-shot "where am I right now" call."""

from __future__ import annotations

from typing import Protocol

from modules.location.records import Coordinates


class SensorError(Exception):
    """The device could not produce a position fix."""


class PermissionDeniedError(SensorError):
    """The user refused location access."""


class PositionUnavailableError(SensorError):
    """Location is unsupported or no fix could be obtained."""


class GeolocationSensor(Protocol):
    async def get_current_position(self) -> Coordinates: ...


class FixedPositionSensor:
    """Sensor for fixes captured on the device and submitted with the request."""

    def __init__(self, lat: float | None, lng: float | None):
        self._lat = lat
        self._lng = lng

    async def get_current_position(self) -> Coordinates:
        if self._lat is None or self._lng is None:
            raise PositionUnavailableError("No position fix was provided.")
        try:
            coords = Coordinates(lat=float(self._lat), lng=float(self._lng))
        except (TypeError, ValueError) as e:
            raise PositionUnavailableError(f"Malformed position fix: {e}") from e
        if not coords.is_valid():
            raise PositionUnavailableError(
                f"Position out of range: {coords.lat}, {coords.lng}"
            )
        return coords
