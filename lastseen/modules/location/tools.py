"""Location module tool implementations."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from modules.location.connections import ConnectionManager, ConnectionRequestError
from modules.location.geocoding import ReverseGeocoder
from modules.location.markers import humanize_age
from modules.location.obfuscation import Obfuscator
from modules.location.records import LocationRecord, UserProfile, utcnow
from modules.location.sensor import FixedPositionSensor, PermissionDeniedError, SensorError
from modules.location.store import LocationStore, RecordNotFoundError, StoreError
from modules.location.sync import LocationWriteError, SyncEngine, ViewerSession
from modules.location.visibility import ShareStatus, VisibilityPolicy, resolve_public_share
from shared.config import Settings

logger = structlog.get_logger()


def _record_dict(record: LocationRecord, revealed: bool, now: datetime) -> dict:
    if not revealed:
        name = "Someone"
    else:
        name = record.owner.label if record.owner else "Unknown User"
    return {
        "record_id": record.id,
        "owner_id": record.owner_id if revealed else None,
        "name": name,
        "lat": record.coordinates.lat,
        "lng": record.coordinates.lng,
        "note": record.note,
        "place_label": record.place_label,
        "visibility_mode": record.visibility_mode.value,
        "vague": record.vague,
        "updated_at": record.updated_at.isoformat(),
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "last_seen": humanize_age(record.updated_at, now),
    }


def _user_dict(user: UserProfile) -> dict:
    return {"id": user.id, "name": user.label, "email": user.email}


class LocationTools:
    """Tool implementations for the location module.

    Keeps one sync engine per viewer so own-record state, pending cleanup and
    write supersession survive across calls.
    """

    def __init__(
        self,
        store: LocationStore,
        settings: Settings,
        geocoder: ReverseGeocoder | None = None,
        obfuscator: Obfuscator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.policy = VisibilityPolicy(settings.visibility_policy)
        self.geocoder = geocoder
        self.obfuscator = obfuscator or Obfuscator(settings.vague_radius_m)
        self.clock = clock
        self.connections = ConnectionManager(store, settings.public_share_base_url)
        self._engines: dict[str, SyncEngine] = {}

    def engine_for(self, user_id: str) -> SyncEngine:
        engine = self._engines.get(user_id)
        if engine is None or engine.closed:
            engine = SyncEngine(
                self.store,
                ViewerSession(user_id=user_id),
                self.policy,
                obfuscator=self.obfuscator,
                geocoder=self.geocoder,
                clock=self.clock,
                page_size=self.settings.poll_page_size or None,
                stale_after=timedelta(hours=self.settings.stale_after_hours),
                note_max_length=self.settings.note_max_length,
                geocode_timeout=self.settings.geocoder_timeout_seconds,
            )
            self._engines[user_id] = engine
        return engine

    async def close(self) -> None:
        engines, self._engines = list(self._engines.values()), {}
        for engine in engines:
            await engine.close()

    def _circle_result(self, engine: SyncEngine) -> dict:
        state = engine.state
        now = self.clock()
        viewer = state.viewer
        locations = [
            _record_dict(r, self.policy.reveal_identity(viewer, r, r.owner), now)
            for r in state.view.records()
        ]
        return {
            "success": state.error is None,
            "error": state.error,
            "locations": locations,
            "count": len(locations),
            "own_location": (
                _record_dict(state.own_record, True, now) if state.own_record else None
            ),
            "stale": state.is_stale,
            "synced_at": state.last_synced_at.isoformat() if state.last_synced_at else None,
        }

    async def get_circle(self, user_id: str | None = None) -> dict:
        """Refresh and return everything visible to the user."""
        if not user_id:
            return {"error": "user_id is required"}
        engine = self.engine_for(user_id)
        await engine.refresh()
        return self._circle_result(engine)

    async def log_location(
        self,
        lat: float | None = None,
        lng: float | None = None,
        note: str | None = None,
        expiry_minutes: int | None = None,
        visibility_mode: str = "public",
        vague: bool = False,
        user_id: str | None = None,
    ) -> dict:
        """Log the user's current spot from a device-captured fix."""
        if not user_id:
            return {"error": "user_id is required"}

        engine = self.engine_for(user_id)
        state = await engine.refresh()
        if state.viewer is None:
            return {"success": False, "error": state.error or "Unknown user"}

        try:
            record = await engine.log_current_location(
                FixedPositionSensor(lat, lng),
                note=note,
                expiry_minutes=expiry_minutes,
                visibility_mode=visibility_mode,
                vague=bool(vague),
            )
        except PermissionDeniedError:
            return {
                "success": False,
                "error": "Location access denied. Please enable location services.",
            }
        except SensorError as e:
            return {"success": False, "error": f"Could not get your position: {e}"}
        except ValueError as e:
            return {"success": False, "error": str(e)}
        except LocationWriteError as e:
            return {"success": False, "error": str(e)}

        if record is None:
            return {"success": False, "error": "Session closed before the location was saved."}

        result = self._circle_result(engine)
        result["logged"] = _record_dict(record.with_owner(state.viewer), True, self.clock())
        return result

    async def stop_sharing(self, user_id: str | None = None) -> dict:
        """Remove the user's spot from everyone's view."""
        if not user_id:
            return {"error": "user_id is required"}

        engine = self.engine_for(user_id)
        await engine.refresh()
        try:
            removed = await engine.stop_sharing()
        except LocationWriteError as e:
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "removed": removed,
            "message": "You are no longer sharing a location." if removed else "Nothing to remove.",
        }

    async def list_connections(self, user_id: str | None = None) -> dict:
        if not user_id:
            return {"error": "user_id is required"}
        try:
            users = await self.connections.list_connections(user_id)
        except RecordNotFoundError:
            return {"success": False, "error": "User not found"}
        return {
            "success": True,
            "connections": [_user_dict(u) for u in users],
            "count": len(users),
        }

    async def add_connection(self, email: str, user_id: str | None = None) -> dict:
        """Start seeing the user registered under ``email``."""
        if not user_id:
            return {"error": "user_id is required"}
        try:
            target = await self.connections.add_by_email(user_id, email)
        except ConnectionRequestError as e:
            return {
                "success": False,
                "error": str(e),
                "invite": e.not_registered,
            }
        except RecordNotFoundError:
            return {"success": False, "error": "User not found"}
        except StoreError as e:
            logger.warning("add_connection_failed", user_id=user_id, error=str(e))
            return {"success": False, "error": "Could not add connection. Please try again."}
        return {"success": True, "connection": _user_dict(target)}

    async def remove_connection(
        self, connection_id: str, user_id: str | None = None
    ) -> dict:
        if not user_id:
            return {"error": "user_id is required"}
        try:
            removed = await self.connections.remove(user_id, connection_id)
        except StoreError as e:
            logger.warning("remove_connection_failed", user_id=user_id, error=str(e))
            return {"success": False, "error": "Could not remove connection. Please try again."}
        if not removed:
            return {"success": False, "error": "Connection not found"}
        return {"success": True, "connection_id": connection_id}

    async def enable_public_share(self, user_id: str | None = None) -> dict:
        """Create (or rotate) the user's public share link."""
        if not user_id:
            return {"error": "user_id is required"}
        try:
            link = await self.connections.enable_public_share(user_id)
        except RecordNotFoundError:
            return {"success": False, "error": "User not found"}
        return {
            "success": True,
            "url": link.url,
            "token": link.token,
            "note": "Anyone with this link can see your latest spot until you disable it.",
        }

    async def disable_public_share(self, user_id: str | None = None) -> dict:
        if not user_id:
            return {"error": "user_id is required"}
        try:
            await self.connections.disable_public_share(user_id)
        except RecordNotFoundError:
            return {"success": False, "error": "User not found"}
        return {"success": True, "message": "Public link disabled."}

    async def public_share(self, token: str) -> dict:
        """Anonymous lookup behind a public share link."""
        try:
            share = await resolve_public_share(self.store, token, self.clock())
        except StoreError as e:
            logger.warning("public_share_lookup_failed", error=str(e))
            return {"status": ShareStatus.UNAVAILABLE.value}

        result: dict = {"status": share.status.value}
        if share.owner is not None:
            result["name"] = share.owner.label
        if share.record is not None:
            result["location"] = _record_dict(share.record, True, self.clock())
        return result
