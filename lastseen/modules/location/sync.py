"""Synchronization engine: turns polled store records into the circle view.

One poll runs fetch → merge → expiry filter → cleanup dispatch → render, in
that order. The engine is the only writer of ``SyncState``; everything
downstream (marker manager, tool facade, CLI) reads snapshots.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

import structlog

from modules.location.geocoding import ReverseGeocoder
from modules.location.obfuscation import Obfuscator, needs_obfuscation
from modules.location.records import (
    LocationRecord,
    RecordFields,
    SynchronizedView,
    UserProfile,
    VisibilityMode,
    utcnow,
)
from modules.location.sensor import GeolocationSensor
from modules.location.store import RecordNotFoundError, RecordStore, StoreError
from modules.location.visibility import VisibilityPolicy

logger = structlog.get_logger()

STALE_AFTER = timedelta(hours=24)
NOTE_MAX_LENGTH = 140


class LocationWriteError(Exception):
    """A user-triggered write (log or stop sharing) did not reach the store."""


@dataclass(frozen=True)
class ViewerSession:
    """Identity of the signed-in viewer, passed in rather than read globally."""

    user_id: str


@dataclass(frozen=True)
class SyncState:
    view: SynchronizedView = field(default_factory=SynchronizedView)
    own_record: LocationRecord | None = None
    is_stale: bool = True
    error: str | None = None
    last_synced_at: datetime | None = None
    viewer: UserProfile | None = None


def merge_latest_by_owner(records: Iterable[LocationRecord]) -> dict[str, LocationRecord]:
    """Keep the most recently updated record per owner.

    Ties on ``updated_at`` fall back to id order; only one device per owner
    should be writing at a time, so any deterministic pick is fine.
    """
    latest: dict[str, LocationRecord] = {}
    for record in records:
        current = latest.get(record.owner_id)
        if current is None or (record.updated_at, record.id) > (current.updated_at, current.id):
            latest[record.owner_id] = record
    return latest


def drop_expired(latest: dict[str, LocationRecord], now: datetime) -> dict[str, LocationRecord]:
    return {owner: r for owner, r in latest.items() if not r.is_expired(now)}


def is_stale(
    record: LocationRecord | None,
    now: datetime,
    threshold: timedelta = STALE_AFTER,
) -> bool:
    """An own record is stale once it is ``threshold`` old; no record counts as stale."""
    if record is None:
        return True
    return now - record.updated_at >= threshold


def clean_note(note: str | None, max_length: int = NOTE_MAX_LENGTH) -> str | None:
    if note is None:
        return None
    note = note.strip()
    return note[:max_length] or None


class SyncEngine:
    """Per-viewer synchronization engine."""

    def __init__(
        self,
        store: RecordStore,
        session: ViewerSession,
        policy: VisibilityPolicy,
        *,
        obfuscator: Obfuscator | None = None,
        geocoder: ReverseGeocoder | None = None,
        clock: Callable[[], datetime] = utcnow,
        page_size: int | None = None,
        stale_after: timedelta = STALE_AFTER,
        note_max_length: int = NOTE_MAX_LENGTH,
        geocode_timeout: float = 10.0,
    ):
        self.store = store
        self.session = session
        self.policy = policy
        self.obfuscator = obfuscator or Obfuscator()
        self.geocoder = geocoder
        self.clock = clock
        self.page_size = page_size or None
        self.stale_after = stale_after
        self.note_max_length = note_max_length
        self.geocode_timeout = geocode_timeout

        self._state = SyncState()
        self._lock = asyncio.Lock()
        self._generation = 0
        self._closed = False
        self._own_record_ids: set[str] = set()
        self._pending_deletes: set[str] = set()
        self._cleanup_tasks: set[asyncio.Task] = set()
        self._listeners: list[Callable[[SyncState], None]] = []

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Callable[[SyncState], None]) -> None:
        self._listeners.append(listener)

    def dismiss_error(self) -> None:
        if self._state.error is not None:
            self._set_state(replace(self._state, error=None))

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("sync_listener_error", viewer_id=self.session.user_id)

    # --- Polling ---

    async def _fetch(self) -> list[LocationRecord]:
        viewer_id = self.session.user_id
        records = await self.store.list_records(limit=self.page_size)

        page_full = self.page_size is not None and len(records) >= self.page_size
        if page_full and not any(r.owner_id == viewer_id for r in records):
            seen = {r.id for r in records}
            own = await self.store.list_records(owner_id=viewer_id)
            records = records + [r for r in own if r.id not in seen]
        return records

    async def refresh(self) -> SyncState:
        """Run one poll. Store failures keep the last good view and set ``error``."""
        async with self._lock:
            if self._closed:
                return self._state

            generation = self._generation
            viewer_id = self.session.user_id
            try:
                viewer = await self.store.get_user(viewer_id)
                records = await self._fetch()
            except StoreError as e:
                logger.warning("sync_refresh_failed", viewer_id=viewer_id, error=str(e))
                if not self._closed:
                    self._set_state(
                        replace(self._state, error="Unable to sync locations. Check your connection.")
                    )
                return self._state

            if self._closed:
                logger.debug("sync_result_discarded", viewer_id=viewer_id, reason="closed")
                return self._state
            if generation != self._generation:
                logger.debug("sync_result_discarded", viewer_id=viewer_id, reason="superseded")
                return self._state

            viewer = viewer or self._state.viewer
            if viewer is None:
                logger.warning("sync_unknown_viewer", viewer_id=viewer_id)
                self._set_state(replace(self._state, error="Your account could not be found."))
                return self._state

            now = self.clock()
            latest = merge_latest_by_owner(records)
            live = drop_expired(latest, now)
            visible = self.policy.filter_visible(viewer, live)

            own_fetched = [r for r in records if r.owner_id == viewer_id]
            self._own_record_ids = {r.id for r in own_fetched if not r.is_expired(now)}
            self._schedule_cleanup(r for r in own_fetched if r.is_expired(now))

            own = visible.get(viewer_id)
            self._set_state(
                SyncState(
                    view=SynchronizedView.of(visible),
                    own_record=own,
                    is_stale=is_stale(own, now, self.stale_after),
                    error=None,
                    last_synced_at=now,
                    viewer=viewer,
                )
            )
            logger.debug(
                "sync_refreshed",
                viewer_id=viewer_id,
                fetched=len(records),
                visible=len(visible),
            )
            return self._state

    # --- Opportunistic cleanup of the viewer's own expired records ---

    def _schedule_cleanup(self, expired: Iterable[LocationRecord]) -> None:
        for record in expired:
            if record.id in self._pending_deletes:
                continue
            self._pending_deletes.add(record.id)
            task = asyncio.create_task(self._delete_expired(record))
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)

    async def _delete_expired(self, record: LocationRecord) -> None:
        try:
            await self.store.delete_record(record.id, record.owner_id)
            logger.info("expired_record_deleted", record_id=record.id)
        except RecordNotFoundError:
            logger.debug("expired_record_already_gone", record_id=record.id)
        except Exception as e:
            # Never surfaced; the next poll finds the record again and retries.
            logger.warning("expired_record_cleanup_failed", record_id=record.id, error=str(e))
        finally:
            self._pending_deletes.discard(record.id)

    async def wait_for_cleanup(self) -> None:
        """Wait for in-flight cleanup deletions (used by tests and shutdown)."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    # --- Local writes ---

    async def _place_label(self, lat: float, lng: float) -> str:
        if self.geocoder is None:
            return ""
        try:
            return await asyncio.wait_for(
                self.geocoder.resolve(lat, lng), timeout=self.geocode_timeout
            )
        except asyncio.TimeoutError:
            logger.info("place_label_timeout")
            return ""
        except Exception as e:
            logger.warning("place_label_failed", error=str(e))
            return ""

    def _apply_local_write(self, record: LocationRecord | None) -> None:
        viewer = self._state.viewer
        viewer_id = self.session.user_id
        latest = dict(self._state.view.latest_by_owner)
        if record is None:
            latest.pop(viewer_id, None)
            self._own_record_ids = set()
        else:
            record = record.with_owner(record.owner or viewer)
            latest[viewer_id] = record
            self._own_record_ids.add(record.id)
        self._set_state(
            replace(
                self._state,
                view=SynchronizedView.of(latest),
                own_record=record,
                is_stale=is_stale(record, self.clock(), self.stale_after),
                error=None,
            )
        )

    async def log_current_location(
        self,
        sensor: GeolocationSensor,
        note: str | None = None,
        expiry_minutes: int | None = None,
        visibility_mode: VisibilityMode | str = VisibilityMode.PUBLIC,
        vague: bool = False,
    ) -> LocationRecord | None:
        """Capture a fix, obfuscate, label and write the viewer's spot.

        Raises ``SensorError`` when no fix is available and
        ``LocationWriteError`` when the store rejects the write; in both cases
        nothing is written and local state is untouched. Returns ``None`` if
        the engine was closed while the capture was in flight.
        """
        if expiry_minutes is not None and expiry_minutes < 0:
            raise ValueError("expiry_minutes must be zero (never) or positive")
        mode = VisibilityMode.parse(visibility_mode)
        viewer_id = self.session.user_id

        true_coords = await sensor.get_current_position()
        if self._closed:
            logger.info("location_fix_discarded", viewer_id=viewer_id)
            return None

        display = self.obfuscator.apply(true_coords, mode, vague)
        label = await self._place_label(display.lat, display.lng)
        if self._closed:
            logger.info("location_fix_discarded", viewer_id=viewer_id)
            return None

        now = self.clock()
        fields = RecordFields(
            coordinates=display,
            note=clean_note(note, self.note_max_length),
            place_label=label or None,
            expires_at=now + timedelta(minutes=expiry_minutes) if expiry_minutes else None,
            visibility_mode=mode,
            vague=needs_obfuscation(mode, vague),
        )

        current = self._state.own_record
        try:
            if current is not None:
                try:
                    record = await self.store.update_record(current.id, viewer_id, fields)
                except RecordNotFoundError:
                    # Deleted elsewhere since the last poll; start a fresh one
                    record = await self.store.create_record(viewer_id, fields)
            else:
                record = await self.store.create_record(viewer_id, fields)
        except StoreError as e:
            logger.warning("location_write_failed", viewer_id=viewer_id, error=str(e))
            raise LocationWriteError("Failed to save your location. Please try again.") from e

        logger.info(
            "location_logged",
            viewer_id=viewer_id,
            record_id=record.id,
            mode=mode.value,
            vague=fields.vague,
            expires=fields.expires_at is not None,
        )
        if self._closed:
            return record

        self._generation += 1
        self._apply_local_write(record)
        await self.refresh()
        return record

    async def stop_sharing(self) -> bool:
        """Delete every physical record the viewer owns. Returns False if none."""
        viewer_id = self.session.user_id
        ids = set(self._own_record_ids)
        if self._state.own_record is not None:
            ids.add(self._state.own_record.id)
        if not ids:
            return False

        try:
            for record_id in sorted(ids):
                try:
                    await self.store.delete_record(record_id, viewer_id)
                except RecordNotFoundError:
                    pass
        except StoreError as e:
            logger.warning("stop_sharing_failed", viewer_id=viewer_id, error=str(e))
            raise LocationWriteError("Failed to remove your location.") from e

        logger.info("sharing_stopped", viewer_id=viewer_id, deleted=len(ids))
        if self._closed:
            return True

        self._generation += 1
        self._apply_local_write(None)
        await self.refresh()
        return True

    # --- Lifecycle ---

    async def close(self) -> None:
        """Tear down: discard late results and cancel pending cleanup."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        tasks = list(self._cleanup_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
