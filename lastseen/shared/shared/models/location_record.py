"""Location record model: one broadcast spot per owner (logically)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.models.base import Base
from shared.models.user import User


class LocationRecordRow(Base):
    __tablename__ = "location_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # No unique constraint: two devices may briefly hold a record each.
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )

    # Display coordinates; already obfuscated when vague is set
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    note: Mapped[str | None] = mapped_column(String, default=None)
    place_label: Mapped[str | None] = mapped_column(String, default=None)
    visibility_mode: Mapped[str] = mapped_column(String, default="public")
    vague: Mapped[bool] = mapped_column(Boolean, default=False)

    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    owner: Mapped[User] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_location_records_owner_updated", "owner_id", "updated_at"),
    )
