"""Shared test fixtures for the Last Seen test suite.

Provides mock database sessions, an in-memory record store, a fake map
surface and factory helpers so module tests can run without Postgres.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.location.records import (
    Coordinates,
    LocationRecord,
    RecordFields,
    UserProfile,
    VisibilityMode,
)
from modules.location.store import RecordNotFoundError, StoreUnavailableError
from shared.models.location_record import LocationRecordRow
from shared.models.user import User

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the common patterns used in store code:
        session.execute(stmt) -> result
        session.add(obj)
        session.delete(obj)
        session.commit()
        session.refresh(obj)
    """
    session = AsyncMock()
    # Default: execute returns a result with no rows
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=default_result)
    session.add = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# In-memory record store
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory stand-in for ``LocationStore`` with failure injection."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.users: dict[str, UserProfile] = {}
        self.records: dict[str, LocationRecord] = {}
        self.unavailable = False
        self.list_calls: list[dict] = []
        self.deleted: list[str] = []
        self.delete_attempts: list[str] = []

    def _check(self):
        if self.unavailable:
            raise StoreUnavailableError("connection refused")

    # --- seeding helpers ---

    def add_user(
        self,
        name: str,
        email: str | None = None,
        connections: tuple[str, ...] = (),
        token: str | None = None,
    ) -> UserProfile:
        user = UserProfile(
            id=str(uuid.uuid4()),
            email=email or f"{name.lower()}@example.com",
            display_name=name,
            connections=frozenset(connections),
            public_share_token=token,
        )
        self.users[user.id] = user
        return user

    def connect(self, viewer_id: str, owner_id: str) -> None:
        viewer = self.users[viewer_id]
        self.users[viewer_id] = replace(viewer, connections=viewer.connections | {owner_id})

    def put(
        self,
        owner: UserProfile,
        updated_at: datetime,
        lat: float = -41.28,
        lng: float = 174.77,
        mode: VisibilityMode = VisibilityMode.PUBLIC,
        vague: bool = False,
        expires_at: datetime | None = None,
        note: str | None = None,
        record_id: str | None = None,
    ) -> LocationRecord:
        record = LocationRecord(
            id=record_id or str(uuid.uuid4()),
            owner_id=owner.id,
            coordinates=Coordinates(lat, lng),
            created_at=updated_at,
            updated_at=updated_at,
            note=note,
            expires_at=expires_at,
            visibility_mode=mode,
            vague=vague or mode is VisibilityMode.VAGUE,
        )
        self.records[record.id] = record
        return record

    # --- RecordStore ---

    async def list_records(self, owner_id=None, limit=None):
        self._check()
        self.list_calls.append({"owner_id": owner_id, "limit": limit})
        rows = [
            r for r in self.records.values() if owner_id is None or r.owner_id == owner_id
        ]
        rows.sort(key=lambda r: (r.updated_at, r.id), reverse=True)
        if limit:
            rows = rows[:limit]
        return [r.with_owner(self.users.get(r.owner_id)) for r in rows]

    async def create_record(self, owner_id, fields: RecordFields):
        self._check()
        if owner_id not in self.users:
            raise RecordNotFoundError(owner_id)
        now = self.clock()
        record = LocationRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            coordinates=fields.coordinates,
            created_at=now,
            updated_at=now,
            note=fields.note,
            place_label=fields.place_label,
            expires_at=fields.expires_at,
            visibility_mode=fields.visibility_mode,
            vague=fields.vague,
        )
        self.records[record.id] = record
        return record.with_owner(self.users[owner_id])

    async def update_record(self, record_id, owner_id, fields: RecordFields):
        self._check()
        current = self.records.get(record_id)
        if current is None or current.owner_id != owner_id:
            raise RecordNotFoundError(record_id)
        record = replace(
            current,
            coordinates=fields.coordinates,
            note=fields.note,
            place_label=fields.place_label,
            expires_at=fields.expires_at,
            visibility_mode=fields.visibility_mode,
            vague=fields.vague,
            updated_at=self.clock(),
        )
        self.records[record_id] = record
        return record.with_owner(self.users[owner_id])

    async def delete_record(self, record_id, owner_id):
        self.delete_attempts.append(record_id)
        self._check()
        current = self.records.get(record_id)
        if current is None or current.owner_id != owner_id:
            raise RecordNotFoundError(record_id)
        del self.records[record_id]
        self.deleted.append(record_id)

    # --- users ---

    async def get_user(self, user_id):
        self._check()
        return self.users.get(user_id)

    async def get_users(self, user_ids):
        self._check()
        return [self.users[i] for i in user_ids if i in self.users]

    async def find_user_by_email(self, email):
        self._check()
        email = email.strip().lower()
        return next((u for u in self.users.values() if u.email == email), None)

    async def find_user_by_share_token(self, token):
        self._check()
        if not token:
            return None
        return next(
            (u for u in self.users.values() if u.public_share_token == token), None
        )

    async def set_share_token(self, user_id, token):
        self._check()
        if user_id not in self.users:
            raise RecordNotFoundError(user_id)
        self.users[user_id] = replace(self.users[user_id], public_share_token=token)
        return self.users[user_id]

    async def add_connection(self, user_id, connection_id):
        self._check()
        if user_id not in self.users or connection_id not in self.users:
            raise RecordNotFoundError(user_id)
        self.connect(user_id, connection_id)

    async def remove_connection(self, user_id, connection_id):
        self._check()
        user = self.users.get(user_id)
        if user is None or connection_id not in user.connections:
            return False
        self.users[user_id] = replace(
            user, connections=user.connections - {connection_id}
        )
        return True


@pytest.fixture
def store(clock):
    return FakeStore(clock)


# ---------------------------------------------------------------------------
# Map surface
# ---------------------------------------------------------------------------


class FakeMapSurface:
    """Records every call the marker manager makes, in order."""

    def __init__(self, clustered: set[str] | None = None):
        self.clustered = clustered or set()
        self.calls: list[tuple] = []
        self.patches: list = []

    def apply(self, patches):
        self.patches.extend(patches)
        self.calls.append(("apply", len(patches)))

    def fit_bounds(self, bounds, padding, max_zoom):
        self.calls.append(("fit_bounds", bounds, padding, max_zoom))

    def is_clustered(self, owner_id):
        return owner_id in self.clustered

    async def expand_cluster(self, owner_id):
        self.calls.append(("expand_cluster", owner_id))

    async def fly_to(self, position, zoom):
        self.calls.append(("fly_to", position, zoom))

    def open_popup(self, owner_id):
        self.calls.append(("open_popup", owner_id))


@pytest.fixture
def surface():
    return FakeMapSurface()


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user():
    """Factory for creating User rows."""

    def _make(
        user_id: uuid.UUID | None = None,
        email: str = "alice@example.com",
        display_name: str | None = "Alice",
        connections: list[User] | None = None,
        public_share_token: str | None = None,
    ) -> User:
        user = User(
            id=user_id or uuid.uuid4(),
            email=email,
            display_name=display_name,
            public_share_token=public_share_token,
            created_at=T0,
        )
        user.connections = connections or []
        return user

    return _make


@pytest.fixture
def make_record_row(make_user):
    """Factory for creating LocationRecordRow rows."""

    def _make(
        owner: User | None = None,
        latitude: float = -41.28,
        longitude: float = 174.77,
        visibility_mode: str = "public",
        vague: bool = False,
        updated_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> LocationRecordRow:
        owner = owner or make_user()
        row = LocationRecordRow(
            id=uuid.uuid4(),
            owner_id=owner.id,
            latitude=latitude,
            longitude=longitude,
            note=None,
            place_label=None,
            visibility_mode=visibility_mode,
            vague=vague,
            expires_at=expires_at,
            created_at=updated_at or T0,
            updated_at=updated_at or T0,
        )
        row.owner = owner
        return row

    return _make


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Each result should be a MagicMock with the appropriate return values
    (e.g. scalar_one_or_none, scalars().all()).
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        # Fallback: return empty result
        fallback = MagicMock()
        fallback.scalar_one_or_none.return_value = None
        fallback.scalars.return_value.all.return_value = []
        return fallback

    return _side_effect


def scalar_result(value):
    """Execute result whose ``scalar_one_or_none`` returns ``value``."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def rows_result(rows):
    """Execute result whose ``scalars().all()`` returns ``rows``."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    return result
