"""Vague-mode obfuscation: bounded random offsets applied before persistence."""

from __future__ import annotations

import math
import random

from modules.location.records import Coordinates, VisibilityMode

EARTH_RADIUS_M = 6_371_000
DEFAULT_RADIUS_M = 500.0


def needs_obfuscation(mode: VisibilityMode, vague: bool = False) -> bool:
    return vague or mode is VisibilityMode.VAGUE


def offset_point(origin: Coordinates, distance_m: float, bearing_rad: float) -> Coordinates:
    """Great-circle destination from ``origin`` after ``distance_m`` on ``bearing_rad``."""
    delta = distance_m / EARTH_RADIUS_M
    phi1 = math.radians(origin.lat)
    lam1 = math.radians(origin.lng)

    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta)
        + math.cos(phi1) * math.sin(delta) * math.cos(bearing_rad)
    )
    lam2 = lam1 + math.atan2(
        math.sin(bearing_rad) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    lng = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return Coordinates(lat=math.degrees(phi2), lng=lng)


class Obfuscator:
    """Maps true coordinates to the coordinates that get stored and shown.

    Vague offsets are drawn uniformly over a disc of ``radius_m`` on every
    call, so repeated logs from one spot scatter instead of pinning it.
    """

    def __init__(self, radius_m: float = DEFAULT_RADIUS_M, rng: random.Random | None = None):
        if radius_m <= 0:
            raise ValueError("radius_m must be positive")
        self.radius_m = radius_m
        self._rng = rng or random.SystemRandom()

    def apply(
        self,
        coords: Coordinates,
        mode: VisibilityMode,
        vague: bool = False,
    ) -> Coordinates:
        if not needs_obfuscation(mode, vague):
            return coords

        # sqrt keeps the density uniform per unit area instead of piling up at the centre
        distance = self.radius_m * math.sqrt(self._rng.random())
        bearing = self._rng.uniform(0.0, 2.0 * math.pi)
        return offset_point(coords, distance, bearing)
