"""Public share-link response schema."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class SharedLocation(BaseModel):
    lat: float
    lng: float
    note: str | None = None
    place_label: str | None = None
    vague: bool = False
    updated_at: datetime
    last_seen: str


class PublicShareResponse(BaseModel):
    """What an anonymous holder of a share link gets back.

    ``status`` is one of ``sharing``, ``not_sharing`` or ``unavailable``.
    """

    status: str
    name: str | None = None
    location: SharedLocation | None = None
