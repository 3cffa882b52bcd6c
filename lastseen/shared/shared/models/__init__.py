"""SQLAlchemy models."""

from shared.models.base import Base
from shared.models.location_record import LocationRecordRow
from shared.models.user import User, user_connections

__all__ = [
    "Base",
    "LocationRecordRow",
    "User",
    "user_connections",
]
