"""Marker lifecycle: reconcile the synchronized view against a live map.

The map widget sits behind ``MapSurface``; everything here is expressed as
patch operations over marker specs keyed by owner id, so it can be tested
without a real map.
"""

from __future__ import annotations

import html
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from modules.location.records import Coordinates, LocationRecord, SynchronizedView, utcnow
from modules.location.sync import STALE_AFTER

logger = structlog.get_logger()

FIT_PADDING_PX = 100
FIT_MAX_ZOOM = 15
FOCUS_ZOOM = 16


class PatchKind(str, Enum):
    CLEAR = "clear"
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"


class Strategy(str, Enum):
    REBUILD = "rebuild"
    DIFF = "diff"


@dataclass(frozen=True)
class MarkerSpec:
    owner_id: str
    position: Coordinates
    label: str
    initial: str
    popup_html: str
    avatar_ref: str | None = None
    is_self: bool = False
    is_stale: bool = False


@dataclass(frozen=True)
class MarkerPatch:
    kind: PatchKind
    owner_id: str | None = None
    marker: MarkerSpec | None = None


@dataclass(frozen=True)
class Bounds:
    south: float
    west: float
    north: float
    east: float

    @classmethod
    def around(cls, points: list[Coordinates]) -> Bounds | None:
        if not points:
            return None
        lats = [p.lat for p in points]
        lngs = [p.lng for p in points]
        return cls(south=min(lats), west=min(lngs), north=max(lats), east=max(lngs))


class MapSurface(Protocol):
    """The slice of a map widget the manager drives."""

    def apply(self, patches: list[MarkerPatch]) -> None: ...

    def fit_bounds(self, bounds: Bounds, padding: int, max_zoom: int) -> None: ...

    def is_clustered(self, owner_id: str) -> bool: ...

    async def expand_cluster(self, owner_id: str) -> None: ...

    async def fly_to(self, position: Coordinates, zoom: int) -> None: ...

    def open_popup(self, owner_id: str) -> None: ...


def humanize_age(then: datetime, now: datetime) -> str:
    """Relative age such as "5 minutes ago"."""
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "just now"
    if seconds >= 86400:
        count, unit = seconds // 86400, "day"
    elif seconds >= 3600:
        count, unit = seconds // 3600, "hour"
    else:
        count, unit = seconds // 60, "minute"
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def build_popup(
    record: LocationRecord,
    name: str,
    is_self: bool,
    now: datetime,
) -> str:
    """Popup body; every user-authored string is HTML-escaped."""
    title = "Your last seen" if is_self else f"{html.escape(name)}'s last seen"
    parts = [
        f'<p class="title">{title}</p>',
        f'<p class="age">{humanize_age(record.updated_at, now)}</p>',
        f'<p class="stamp">{record.updated_at.strftime("%Y-%m-%d %H:%M UTC")}</p>',
    ]
    if record.place_label:
        parts.append(f'<p class="place">{html.escape(record.place_label)}</p>')
    if record.note:
        parts.append(f'<p class="note">"{html.escape(record.note)}"</p>')
    if record.vague:
        parts.append('<p class="vague">Approximate location</p>')
    return "".join(parts)


def plan_markers(
    view: SynchronizedView,
    viewer_id: str | None,
    reveal_identity: Callable[[LocationRecord], bool] | None = None,
    now: datetime | None = None,
    stale_after=STALE_AFTER,
) -> dict[str, MarkerSpec]:
    """Desired marker set for a view, keyed by owner id."""
    now = now or utcnow()
    specs: dict[str, MarkerSpec] = {}
    for owner_id, record in view.latest_by_owner.items():
        is_self = owner_id == viewer_id
        revealed = is_self or reveal_identity is None or reveal_identity(record)
        if revealed:
            name = record.owner.label if record.owner else "Unknown User"
            avatar = record.owner.avatar_ref if record.owner else None
        else:
            name, avatar = "Someone", None
        label = "You" if is_self else name
        specs[owner_id] = MarkerSpec(
            owner_id=owner_id,
            position=record.coordinates,
            label=label,
            initial=(name[:1] or "?").upper(),
            popup_html=build_popup(record, name, is_self, now),
            avatar_ref=avatar,
            is_self=is_self,
            is_stale=is_self and now - record.updated_at >= stale_after,
        )
    return specs


def plan_patch(
    previous: Mapping[str, MarkerSpec],
    desired: Mapping[str, MarkerSpec],
    strategy: Strategy = Strategy.DIFF,
) -> list[MarkerPatch]:
    """Patch operations turning ``previous`` into ``desired``.

    Both strategies converge on the same rendered set; ``DIFF`` only touches
    markers that actually changed.
    """
    if strategy is Strategy.REBUILD:
        patches = [MarkerPatch(kind=PatchKind.CLEAR)]
        patches += [
            MarkerPatch(kind=PatchKind.ADD, owner_id=oid, marker=spec)
            for oid, spec in desired.items()
        ]
        return patches

    patches = [
        MarkerPatch(kind=PatchKind.REMOVE, owner_id=oid)
        for oid in previous
        if oid not in desired
    ]
    for oid, spec in desired.items():
        old = previous.get(oid)
        if old is None:
            patches.append(MarkerPatch(kind=PatchKind.ADD, owner_id=oid, marker=spec))
        elif old != spec:
            patches.append(MarkerPatch(kind=PatchKind.UPDATE, owner_id=oid, marker=spec))
    return patches


def apply_patch(
    rendered: Mapping[str, MarkerSpec], patches: list[MarkerPatch]
) -> dict[str, MarkerSpec]:
    """Rendered set after applying ``patches``; mirrors what a surface does."""
    result = dict(rendered)
    for patch in patches:
        if patch.kind is PatchKind.CLEAR:
            result.clear()
        elif patch.kind is PatchKind.REMOVE:
            result.pop(patch.owner_id, None)
        else:
            result[patch.owner_id] = patch.marker
    return result


class MarkerLifecycleManager:
    """Keeps one map surface in step with successive synchronized views."""

    def __init__(
        self,
        surface: MapSurface,
        viewer_id: str | None,
        reveal_identity: Callable[[LocationRecord], bool] | None = None,
        strategy: Strategy = Strategy.DIFF,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.surface = surface
        self.viewer_id = viewer_id
        self.reveal_identity = reveal_identity
        self.strategy = Strategy(strategy)
        self.clock = clock
        self._rendered: dict[str, MarkerSpec] = {}
        self._fitted = False

    @property
    def rendered(self) -> Mapping[str, MarkerSpec]:
        return dict(self._rendered)

    def reconcile(self, view: SynchronizedView) -> list[MarkerPatch]:
        desired = plan_markers(view, self.viewer_id, self.reveal_identity, self.clock())
        patches = plan_patch(self._rendered, desired, self.strategy)
        if patches:
            self.surface.apply(patches)
        self._rendered = apply_patch(self._rendered, patches)

        # Only the first non-empty view moves the viewport
        if not self._fitted and desired:
            bounds = Bounds.around([m.position for m in desired.values()])
            self.surface.fit_bounds(bounds, FIT_PADDING_PX, FIT_MAX_ZOOM)
            self._fitted = True
        return patches

    async def focus_owner(self, owner_id: str, zoom: int = FOCUS_ZOOM) -> bool:
        """Bring an owner's marker into view and open its popup."""
        marker = self._rendered.get(owner_id)
        if marker is None:
            logger.debug("focus_owner_missing", owner_id=owner_id)
            return False

        if self.surface.is_clustered(owner_id):
            await self.surface.expand_cluster(owner_id)
        else:
            await self.surface.fly_to(marker.position, zoom)
        self.surface.open_popup(owner_id)
        return True
