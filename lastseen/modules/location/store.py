"""Record store client: typed CRUD and filtered lists over the durable store.

The sync engine treats this as an unordered, eventually consistent remote
collection keyed by record id. Everything returned is an immutable domain
snapshot; ORM rows never leave this module.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from modules.location.records import (
    Coordinates,
    LocationRecord,
    RecordFields,
    UserProfile,
    VisibilityMode,
    as_utc,
    utcnow,
)
from shared.models.location_record import LocationRecordRow
from shared.models.user import User, user_connections

logger = structlog.get_logger()


class StoreError(Exception):
    """Base class for record store failures."""


class RecordNotFoundError(StoreError):
    """The record or user does not exist (or is not writable by the caller)."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or rejected the query."""


class ConflictError(StoreError):
    """The write violates a uniqueness or reference constraint."""


class RecordStore(Protocol):
    async def list_records(
        self, owner_id: str | None = None, limit: int | None = None
    ) -> list[LocationRecord]: ...

    async def create_record(self, owner_id: str, fields: RecordFields) -> LocationRecord: ...

    async def update_record(
        self, record_id: str, owner_id: str, fields: RecordFields
    ) -> LocationRecord: ...

    async def delete_record(self, record_id: str, owner_id: str) -> None: ...

    async def get_user(self, user_id: str) -> UserProfile | None: ...

    async def find_user_by_share_token(self, token: str) -> UserProfile | None: ...


def _parse_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


def to_profile(user: User) -> UserProfile:
    return UserProfile(
        id=str(user.id),
        email=user.email or "",
        display_name=user.display_name,
        avatar_ref=user.avatar_ref,
        connections=frozenset(str(c.id) for c in (user.connections or [])),
        public_share_token=user.public_share_token,
    )


def to_record(row: LocationRecordRow) -> LocationRecord:
    try:
        mode = VisibilityMode.parse(row.visibility_mode or "public")
    except ValueError:
        # Unknown modes are treated as the most restrictive audience
        mode = VisibilityMode.UNLISTED
    return LocationRecord(
        id=str(row.id),
        owner_id=str(row.owner_id),
        coordinates=Coordinates(lat=row.latitude, lng=row.longitude),
        note=row.note,
        place_label=row.place_label,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        expires_at=as_utc(row.expires_at),
        visibility_mode=mode,
        vague=bool(row.vague) or mode is VisibilityMode.VAGUE,
        owner=to_profile(row.owner) if row.owner is not None else None,
    )


def _apply_fields(row: LocationRecordRow, fields: RecordFields, now: datetime) -> None:
    row.latitude = fields.coordinates.lat
    row.longitude = fields.coordinates.lng
    row.note = fields.note
    row.place_label = fields.place_label
    row.expires_at = fields.expires_at
    row.visibility_mode = fields.visibility_mode.value
    row.vague = fields.vague or fields.visibility_mode is VisibilityMode.VAGUE
    row.updated_at = now


class LocationStore:
    """SQLAlchemy-backed record store."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.session_factory() as session:
                yield session
        except IntegrityError as e:
            raise ConflictError(str(e.orig)) from e
        except (SQLAlchemyError, OSError) as e:
            logger.warning("store_unavailable", error=str(e))
            raise StoreUnavailableError(str(e)) from e

    # --- Location records ---

    async def list_records(
        self, owner_id: str | None = None, limit: int | None = None
    ) -> list[LocationRecord]:
        """List records newest first, owners expanded."""
        query = select(LocationRecordRow).order_by(
            LocationRecordRow.updated_at.desc(), LocationRecordRow.id.desc()
        )
        if owner_id is not None:
            oid = _parse_uuid(owner_id)
            if oid is None:
                return []
            query = query.where(LocationRecordRow.owner_id == oid)
        if limit:
            query = query.limit(limit)

        async with self._session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
            return [to_record(r) for r in rows]

    async def create_record(self, owner_id: str, fields: RecordFields) -> LocationRecord:
        oid = _parse_uuid(owner_id)
        if oid is None:
            raise RecordNotFoundError(f"Unknown owner: {owner_id}")

        now = self.clock()
        async with self._session() as session:
            owner = (
                await session.execute(select(User).where(User.id == oid))
            ).scalar_one_or_none()
            if owner is None:
                raise RecordNotFoundError(f"Unknown owner: {owner_id}")

            row = LocationRecordRow(id=uuid.uuid4(), owner_id=oid, created_at=now)
            _apply_fields(row, fields, now)
            row.owner = owner
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return to_record(row)

    async def update_record(
        self, record_id: str, owner_id: str, fields: RecordFields
    ) -> LocationRecord:
        """Update a record in place. Only the owner may write it."""
        rid, oid = _parse_uuid(record_id), _parse_uuid(owner_id)
        if rid is None or oid is None:
            raise RecordNotFoundError(f"Record not found: {record_id}")

        async with self._session() as session:
            result = await session.execute(
                select(LocationRecordRow).where(
                    LocationRecordRow.id == rid,
                    LocationRecordRow.owner_id == oid,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")

            _apply_fields(row, fields, self.clock())
            await session.commit()
            await session.refresh(row)
            return to_record(row)

    async def delete_record(self, record_id: str, owner_id: str) -> None:
        """Delete a record owned by ``owner_id``. Missing records raise."""
        rid, oid = _parse_uuid(record_id), _parse_uuid(owner_id)
        if rid is None or oid is None:
            raise RecordNotFoundError(f"Record not found: {record_id}")

        async with self._session() as session:
            result = await session.execute(
                select(LocationRecordRow).where(
                    LocationRecordRow.id == rid,
                    LocationRecordRow.owner_id == oid,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            await session.delete(row)
            await session.commit()

    # --- Users ---

    async def get_user(self, user_id: str) -> UserProfile | None:
        uid = _parse_uuid(user_id)
        if uid is None:
            return None
        async with self._session() as session:
            result = await session.execute(select(User).where(User.id == uid))
            user = result.scalar_one_or_none()
            return to_profile(user) if user else None

    async def get_users(self, user_ids: list[str]) -> list[UserProfile]:
        ids = [u for u in (_parse_uuid(i) for i in user_ids) if u is not None]
        if not ids:
            return []
        async with self._session() as session:
            result = await session.execute(select(User).where(User.id.in_(ids)))
            return [to_profile(u) for u in result.scalars().all()]

    async def find_user_by_email(self, email: str) -> UserProfile | None:
        email = email.strip().lower()
        if not email:
            return None
        async with self._session() as session:
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            return to_profile(user) if user else None

    async def find_user_by_share_token(self, token: str) -> UserProfile | None:
        if not token:
            return None
        async with self._session() as session:
            result = await session.execute(
                select(User).where(User.public_share_token == token)
            )
            user = result.scalar_one_or_none()
            return to_profile(user) if user else None

    async def create_user(
        self, email: str, display_name: str | None = None
    ) -> UserProfile:
        async with self._session() as session:
            user = User(
                id=uuid.uuid4(),
                email=email.strip().lower(),
                display_name=display_name,
                created_at=self.clock(),
            )
            user.connections = []
            session.add(user)
            await session.commit()
            return to_profile(user)

    async def set_share_token(self, user_id: str, token: str | None) -> UserProfile:
        """Set or clear the user's public share token."""
        uid = _parse_uuid(user_id)
        if uid is None:
            raise RecordNotFoundError(f"User not found: {user_id}")
        async with self._session() as session:
            result = await session.execute(select(User).where(User.id == uid))
            user = result.scalar_one_or_none()
            if user is None:
                raise RecordNotFoundError(f"User not found: {user_id}")
            user.public_share_token = token
            await session.commit()
            return to_profile(user)

    async def add_connection(self, user_id: str, connection_id: str) -> None:
        uid, cid = _parse_uuid(user_id), _parse_uuid(connection_id)
        if uid is None or cid is None:
            raise RecordNotFoundError("User not found")
        async with self._session() as session:
            result = await session.execute(select(User).where(User.id == uid))
            user = result.scalar_one_or_none()
            target = (
                await session.execute(select(User).where(User.id == cid))
            ).scalar_one_or_none()
            if user is None or target is None:
                raise RecordNotFoundError("User not found")
            if all(c.id != cid for c in user.connections):
                user.connections.append(target)
                await session.commit()

    async def remove_connection(self, user_id: str, connection_id: str) -> bool:
        uid, cid = _parse_uuid(user_id), _parse_uuid(connection_id)
        if uid is None or cid is None:
            return False
        async with self._session() as session:
            result = await session.execute(
                delete(user_connections).where(
                    user_connections.c.user_id == uid,
                    user_connections.c.connection_id == cid,
                )
            )
            await session.commit()
            return bool(result.rowcount)
