"""Connections and public share tokens: the grants the policy evaluator reads."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

import structlog

from modules.location.records import UserProfile
from modules.location.store import LocationStore, RecordNotFoundError

logger = structlog.get_logger()

SHARE_TOKEN_BYTES = 24


class ConnectionRequestError(Exception):
    """The connection request cannot be fulfilled (self, duplicate, unknown)."""

    def __init__(self, message: str, not_registered: bool = False):
        super().__init__(message)
        self.not_registered = not_registered


@dataclass(frozen=True)
class ShareLink:
    token: str
    url: str


def new_share_token() -> str:
    return secrets.token_urlsafe(SHARE_TOKEN_BYTES)


class ConnectionManager:
    def __init__(self, store: LocationStore, public_share_base_url: str):
        self.store = store
        self.public_share_base_url = public_share_base_url.rstrip("/")

    async def _require_user(self, user_id: str) -> UserProfile:
        user = await self.store.get_user(user_id)
        if user is None:
            raise RecordNotFoundError(f"User not found: {user_id}")
        return user

    async def list_connections(self, user_id: str) -> list[UserProfile]:
        user = await self._require_user(user_id)
        if not user.connections:
            return []
        users = await self.store.get_users(sorted(user.connections))
        return sorted(users, key=lambda u: u.label.lower())

    async def add_by_email(self, user_id: str, email: str) -> UserProfile:
        """Grant ``user_id`` visibility of the user registered under ``email``."""
        email = email.strip().lower()
        if not email:
            raise ConnectionRequestError("An email address is required.")

        user = await self._require_user(user_id)
        if email == user.email.lower():
            raise ConnectionRequestError("You cannot connect with yourself.")

        target = await self.store.find_user_by_email(email)
        if target is None:
            raise ConnectionRequestError(
                f'"{email}" is not registered yet.', not_registered=True
            )
        if target.id in user.connections:
            raise ConnectionRequestError("This user is already in your connections.")

        await self.store.add_connection(user.id, target.id)
        logger.info("connection_added", user_id=user.id, connection_id=target.id)
        return target

    async def remove(self, user_id: str, connection_id: str) -> bool:
        removed = await self.store.remove_connection(user_id, connection_id)
        if removed:
            logger.info("connection_removed", user_id=user_id, connection_id=connection_id)
        return removed

    def share_url(self, token: str) -> str:
        return f"{self.public_share_base_url}/{token}"

    async def enable_public_share(self, user_id: str) -> ShareLink:
        """Mint a fresh token; any previous link stops resolving."""
        token = new_share_token()
        await self.store.set_share_token(user_id, token)
        logger.info("public_share_enabled", user_id=user_id)
        return ShareLink(token=token, url=self.share_url(token))

    async def disable_public_share(self, user_id: str) -> None:
        await self.store.set_share_token(user_id, None)
        logger.info("public_share_disabled", user_id=user_id)
