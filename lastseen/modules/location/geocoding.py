"""Geocoding: turn coordinates into a short human-readable place label."""

from __future__ import annotations

import asyncio
import math

import httpx
import structlog

logger = structlog.get_logger()

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
USER_AGENT = "LastSeen/1.0"

# Address keys tried in order for the "where exactly" half of the label
_LOCAL_KEYS = (
    "neighbourhood",
    "suburb",
    "quarter",
    "city_district",
    "hamlet",
    "village",
)
# ...and for the "which town" half
_AREA_KEYS = ("city", "town", "village", "municipality", "county", "state")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in meters between two lat/lng points."""
    R = 6_371_000  # Earth radius in meters
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def short_label(data: dict) -> str:
    """Build a label like "Kelburn, Wellington" from a Nominatim reverse response."""
    address = data.get("address") or {}
    local = next((address[k] for k in _LOCAL_KEYS if address.get(k)), None)
    area = next(
        (address[k] for k in _AREA_KEYS if address.get(k) and address[k] != local),
        None,
    )
    parts = [p for p in (local, area) if p]
    if parts:
        return ", ".join(parts)

    display_name = data.get("display_name") or ""
    pieces = [p.strip() for p in display_name.split(",") if p.strip()]
    return ", ".join(pieces[:2])


class ReverseGeocoder:
    """Best-effort reverse geocoder backed by OpenStreetMap Nominatim.

    ``resolve`` never raises: a missing place label is always acceptable,
    so every failure collapses to an empty string.
    """

    def __init__(
        self,
        url: str = NOMINATIM_REVERSE_URL,
        user_agent: str = USER_AGENT,
        timeout: float = 8.0,
    ):
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout

    async def reverse_geocode(self, lat: float, lng: float) -> dict:
        """Fetch the raw reverse-geocoding payload. Raises on any failure."""
        params = {"lat": lat, "lon": lng, "format": "json", "zoom": 16}
        headers = {"User-Agent": self.user_agent}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self.url, params=params, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict) or "error" in data:
            raise ValueError(f"Unexpected reverse geocode payload: {data!r}")
        return data

    async def resolve(self, lat: float, lng: float) -> str:
        """Return a short place label for the coordinates, or "" on failure."""
        try:
            data = await asyncio.wait_for(
                self.reverse_geocode(lat, lng), timeout=self.timeout
            )
            return short_label(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "reverse_geocode_failed",
                lat=round(lat, 3),
                lng=round(lng, 3),
                error=str(e) or type(e).__name__,
            )
            return ""
