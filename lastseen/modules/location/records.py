"""Domain types shared by the sync engine, policy evaluator and marker manager.

These are plain frozen dataclasses so every consumer downstream of the
store works on immutable snapshots; only the sync engine produces new ones.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType


class VisibilityMode(str, Enum):
    """Audience scope of a record (``vague`` also implies obfuscation)."""

    PUBLIC = "public"
    UNLISTED = "unlisted"
    CONNECTIONS_ONLY = "connectionsOnly"
    VAGUE = "vague"

    @classmethod
    def parse(cls, value: str | VisibilityMode) -> VisibilityMode:
        """Accept enum members, their values, or snake_case spellings."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip()
        aliases = {"connections_only": "connectionsOnly", "connections": "connectionsOnly"}
        normalized = aliases.get(normalized.lower(), normalized)
        for member in cls:
            if member.value.lower() == normalized.lower():
                return member
        raise ValueError(f"Unknown visibility mode: {value!r}")


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def is_valid(self) -> bool:
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0


@dataclass(frozen=True)
class UserProfile:
    """Read-only view of a user as the store hands it out."""

    id: str
    email: str = ""
    display_name: str | None = None
    avatar_ref: str | None = None
    connections: frozenset[str] = field(default_factory=frozenset)
    public_share_token: str | None = None

    @property
    def label(self) -> str:
        """Name shown on markers: display name, else email local part."""
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        if self.email and "@" in self.email:
            return self.email.split("@", 1)[0]
        return "Unknown User"


@dataclass(frozen=True)
class LocationRecord:
    """One broadcast spot. ``coordinates`` are the display coordinates."""

    id: str
    owner_id: str
    coordinates: Coordinates
    created_at: datetime
    updated_at: datetime
    note: str | None = None
    place_label: str | None = None
    expires_at: datetime | None = None
    visibility_mode: VisibilityMode = VisibilityMode.PUBLIC
    vague: bool = False
    owner: UserProfile | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def with_owner(self, owner: UserProfile | None) -> LocationRecord:
        return replace(self, owner=owner)


@dataclass(frozen=True)
class RecordFields:
    """Owner-editable fields written on every log."""

    coordinates: Coordinates
    note: str | None
    place_label: str | None
    expires_at: datetime | None
    visibility_mode: VisibilityMode
    vague: bool


@dataclass(frozen=True)
class SynchronizedView:
    """Latest visible, non-expired record per owner."""

    latest_by_owner: Mapping[str, LocationRecord] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def of(cls, records: Mapping[str, LocationRecord]) -> SynchronizedView:
        return cls(latest_by_owner=MappingProxyType(dict(records)))

    def __len__(self) -> int:
        return len(self.latest_by_owner)

    def get(self, owner_id: str) -> LocationRecord | None:
        return self.latest_by_owner.get(owner_id)

    def records(self) -> list[LocationRecord]:
        """Records ordered newest first."""
        return sorted(
            self.latest_by_owner.values(), key=lambda r: r.updated_at, reverse=True
        )


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes coming back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
