"""User model and the one-directional connection grants between users."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.models.base import Base

# A row (user_id, connection_id) means user_id can see connection_id's spot.
user_connections = Table(
    "user_connections",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column(
        "connection_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    ),
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String, default=None)
    avatar_ref: Mapped[str | None] = mapped_column(String, default=None)
    public_share_token: Mapped[str | None] = mapped_column(
        String, unique=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    connections: Mapped[list[User]] = relationship(
        secondary=user_connections,
        primaryjoin=lambda: User.id == user_connections.c.user_id,
        secondaryjoin=lambda: User.id == user_connections.c.connection_id,
        lazy="selectin",
    )
