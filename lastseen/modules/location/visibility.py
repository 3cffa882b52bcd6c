"""Visibility policy: who may see a record, and who may see whose it is.

Two deployment shapes are supported:

* ``community``: any signed-in viewer sees every record that is not
  unlisted (connections-only records still require a connection).
* ``connections``: a viewer sees an owner's record only when the viewer
  lists that owner as a connection. Grants are one-directional.

The public share path is separate: a share token is itself the
authorization, so audience scoping is ignored there entirely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog

from modules.location.records import LocationRecord, UserProfile, VisibilityMode, utcnow

logger = structlog.get_logger()


class PolicyMode(str, Enum):
    COMMUNITY = "community"
    CONNECTIONS = "connections"


def audience_of(record: LocationRecord) -> VisibilityMode:
    """Audience scope of a record; vague on its own means a public audience."""
    if record.visibility_mode is VisibilityMode.VAGUE:
        return VisibilityMode.PUBLIC
    return record.visibility_mode


def _is_owner(viewer: UserProfile | None, record: LocationRecord) -> bool:
    return viewer is not None and viewer.id == record.owner_id


class VisibilityPolicy:
    """Pure visibility decisions for the circle view."""

    def __init__(self, mode: PolicyMode | str = PolicyMode.COMMUNITY):
        self.mode = PolicyMode(mode)

    def is_visible(
        self,
        viewer: UserProfile | None,
        record: LocationRecord,
        owner: UserProfile | None = None,
    ) -> bool:
        if viewer is None:
            return False
        if _is_owner(viewer, record):
            return True

        audience = audience_of(record)
        if audience is VisibilityMode.UNLISTED:
            return False

        connected = record.owner_id in viewer.connections
        if self.mode is PolicyMode.CONNECTIONS:
            return connected
        if audience is VisibilityMode.CONNECTIONS_ONLY:
            return connected
        return True

    def reveal_identity(
        self,
        viewer: UserProfile | None,
        record: LocationRecord,
        owner: UserProfile | None = None,
    ) -> bool:
        """Whether the viewer may learn who posted a visible record.

        Vague records shown to strangers in community mode stay anonymous;
        a blurred dot with a name attached would undo the blur.
        """
        if _is_owner(viewer, record):
            return True
        if not self.is_visible(viewer, record, owner):
            return False
        if self.mode is PolicyMode.CONNECTIONS:
            return True
        return not record.vague or record.owner_id in viewer.connections

    def filter_visible(
        self,
        viewer: UserProfile | None,
        records: dict[str, LocationRecord],
        owners: dict[str, UserProfile] | None = None,
    ) -> dict[str, LocationRecord]:
        owners = owners or {}
        return {
            owner_id: record
            for owner_id, record in records.items()
            if self.is_visible(viewer, record, owners.get(owner_id, record.owner))
        }


class ShareStatus(str, Enum):
    SHARING = "sharing"
    NOT_SHARING = "not_sharing"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PublicShare:
    status: ShareStatus
    owner: UserProfile | None = None
    record: LocationRecord | None = None


async def resolve_public_share(store, token: str, now: datetime | None = None) -> PublicShare:
    """Resolve a public share token to the owner's latest live record.

    Unknown, cleared and malformed tokens all resolve to ``UNAVAILABLE`` so
    callers cannot probe which tokens once existed. Store lookups are made
    fresh on every call; nothing is cached here.
    """
    now = now or utcnow()
    token = (token or "").strip()
    if not token:
        return PublicShare(status=ShareStatus.UNAVAILABLE)

    owner = await store.find_user_by_share_token(token)
    if owner is None or owner.public_share_token != token:
        logger.info("public_share_unresolved")
        return PublicShare(status=ShareStatus.UNAVAILABLE)

    records = await store.list_records(owner_id=owner.id)
    latest = max(records, key=lambda r: (r.updated_at, r.id), default=None)
    if latest is None or latest.is_expired(now):
        return PublicShare(status=ShareStatus.NOT_SHARING, owner=owner)

    return PublicShare(
        status=ShareStatus.SHARING,
        owner=owner,
        record=latest.with_owner(owner),
    )
