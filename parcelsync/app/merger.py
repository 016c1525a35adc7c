"""Merging of realtime parcel events into REST-fetched state.

Two mergers live here. ``ParcelEventMerger`` backs the list views (agent
dashboard, customer shipments, admin table) and keeps one entity per parcel.
``ParcelDetailMerger`` backs the tracking page and additionally keeps the
status history and a bounded window of tracking points.
"""

import bisect
import itertools
import logging
from collections import OrderedDict, deque
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional

from ..const import DEFAULT_TRACKING_HISTORY_LIMIT, LOCAL_ID_PREFIX
from ..exceptions import RefetchRequired
from .models import (
    EntrySource,
    Parcel,
    ParcelStatus,
    ParcelStatusEvent,
    ParcelTrackingDetail,
    StatusHistoryEntry,
    TrackingPoint,
    is_valid_coordinate,
)

_LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MergeResult(str, Enum):
    """Outcome of applying one event."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


def apply_status_update(
    parcel: Parcel,
    event: ParcelStatusEvent,
    now: Callable[[], datetime] = utcnow,
) -> Parcel:
    """Return ``parcel`` with ``event`` applied.

    The result keeps the entity invariants: ``delivered_at`` only while
    DELIVERED and ``failure_reason`` only while FAILED.
    """
    status = event.status
    updated_at = event.updated_at or parcel.updated_at

    if status is ParcelStatus.DELIVERED:
        delivered_at = event.delivered_at or parcel.delivered_at
        if delivered_at is None:
            delivered_at = now()
            _LOGGER.warning(
                "Parcel %s delivered without deliveredAt, using local time %s",
                parcel.tracking_code,
                delivered_at.isoformat(),
            )
    else:
        delivered_at = None

    if status is ParcelStatus.FAILED:
        failure_reason = event.failure_reason or event.note or parcel.failure_reason
    else:
        failure_reason = None

    return replace(
        parcel,
        status=status,
        updated_at=updated_at,
        delivered_at=delivered_at,
        failure_reason=failure_reason,
    )


def _is_stale(parcel: Parcel, event: ParcelStatusEvent) -> bool:
    if event.updated_at is None or parcel.updated_at is None:
        return False
    try:
        return event.updated_at < parcel.updated_at
    except TypeError:
        # naive vs aware timestamps cannot be ordered
        return False


class ParcelEventMerger:
    """Keep a parcel list consistent with ``parcel:status`` pushes."""

    def __init__(
        self,
        parcels: Optional[Iterable[Parcel]] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize with an optional base list from a REST fetch."""
        self._now = now
        self._parcels: "OrderedDict[str, Parcel]" = OrderedDict()
        self._by_tracking_code: Dict[str, str] = {}
        self.reset(parcels or [])

    def reset(self, parcels: Iterable[Parcel]) -> None:
        """Replace the held collection with a freshly fetched one."""
        self._parcels = OrderedDict((parcel.id, parcel) for parcel in parcels)
        self._by_tracking_code = {
            parcel.tracking_code: parcel.id for parcel in self._parcels.values()
        }

    @property
    def parcels(self) -> List[Parcel]:
        """Held parcels in fetch order."""
        return list(self._parcels.values())

    def __len__(self) -> int:
        return len(self._parcels)

    def __contains__(self, parcel_id: object) -> bool:
        return parcel_id in self._parcels

    def get(self, parcel_id: str) -> Optional[Parcel]:
        return self._parcels.get(parcel_id)

    def find(
        self, parcel_id: Optional[str], tracking_code: Optional[str] = None
    ) -> Optional[Parcel]:
        """Look a parcel up by id, falling back to its tracking code."""
        if parcel_id and parcel_id in self._parcels:
            return self._parcels[parcel_id]
        if tracking_code:
            held_id = self._by_tracking_code.get(tracking_code)
            if held_id is not None:
                return self._parcels.get(held_id)
        return None

    def apply(self, event: ParcelStatusEvent) -> MergeResult:
        """Apply one status event.

        Returns:
            UPDATED if the held entity changed, UNCHANGED if the event was
            already applied, STALE if it is older than the held state

        Raises:
            RefetchRequired: If no held parcel matches the event
        """
        parcel = self.find(event.parcel_id, event.tracking_code)
        if parcel is None:
            raise RefetchRequired(event.parcel_id, event.tracking_code)

        if _is_stale(parcel, event):
            _LOGGER.debug(
                "Ignoring stale %s event for %s", event.status, parcel.tracking_code
            )
            return MergeResult.STALE

        updated = apply_status_update(parcel, event, self._now)
        if updated == parcel:
            return MergeResult.UNCHANGED

        self._parcels[parcel.id] = updated
        _LOGGER.debug(
            "Parcel %s moved %s -> %s", parcel.tracking_code, parcel.status, updated.status
        )
        return MergeResult.UPDATED

    def upsert(self, parcel: Parcel) -> MergeResult:
        """Store an authoritative parcel, e.g. the body of a REST response."""
        existing = self._parcels.get(parcel.id)
        if existing == parcel:
            return MergeResult.UNCHANGED
        if existing is not None and existing.tracking_code != parcel.tracking_code:
            self._by_tracking_code.pop(existing.tracking_code, None)
        self._parcels[parcel.id] = parcel
        self._by_tracking_code[parcel.tracking_code] = parcel.id
        return MergeResult.UPDATED

    def remove(self, parcel_id: str) -> bool:
        """Drop a parcel, e.g. after an admin delete."""
        parcel = self._parcels.pop(parcel_id, None)
        if parcel is None:
            return False
        self._by_tracking_code.pop(parcel.tracking_code, None)
        return True


class ParcelDetailMerger:
    """Keep a single parcel, its history and its recent points consistent."""

    def __init__(
        self,
        detail: Optional[ParcelTrackingDetail] = None,
        point_limit: int = DEFAULT_TRACKING_HISTORY_LIMIT,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._now = now
        self._sequence = itertools.count(1)
        self._point_limit = point_limit
        self.parcel: Optional[Parcel] = None
        self._history: List[StatusHistoryEntry] = []
        self._points: Deque[TrackingPoint] = deque(maxlen=point_limit)
        if detail is not None:
            self.reset(detail)

    @property
    def history(self) -> List[StatusHistoryEntry]:
        """History in ascending time order."""
        return sorted(self._history, key=lambda e: (e.created_at, e.sequence))

    @property
    def points(self) -> List[TrackingPoint]:
        """Retained points, oldest first."""
        return sorted(self._points, key=lambda p: p.created_at)

    @property
    def latest_point(self) -> Optional[TrackingPoint]:
        points = self.points
        return points[-1] if points else None

    def reset(self, detail: ParcelTrackingDetail) -> None:
        """Replace everything with an authoritative fetch.

        Local entries are dropped rather than merged: their synthesized ids
        never match a server id, so the fetched history already stands in
        for them.
        """
        self.parcel = detail.parcel
        self._history = []
        self.merge_history(detail.history)
        points = [p for p in detail.points if is_valid_coordinate(p.lat, p.lng)]
        if detail.latest_point is not None and is_valid_coordinate(
            detail.latest_point.lat, detail.latest_point.lng
        ):
            if not any(
                p.id is not None and p.id == detail.latest_point.id for p in points
            ):
                points.append(detail.latest_point)
        points.sort(key=lambda p: p.created_at)
        self._points = deque(points[-self._point_limit :], maxlen=self._point_limit)

    def merge_history(self, entries: Iterable[StatusHistoryEntry]) -> int:
        """Merge server entries, collapsing duplicate ids.

        Returns:
            Number of entries added
        """
        known = {e.id for e in self._history if not e.is_local}
        added = 0
        for entry in entries:
            if entry.is_local:
                self._append(entry)
                added += 1
                continue
            if entry.id in known:
                continue
            known.add(entry.id)
            self._history.append(replace(entry, sequence=next(self._sequence)))
            added += 1
        return added

    def _append(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        entry = replace(entry, sequence=next(self._sequence))
        self._history.append(entry)
        return entry

    def _local_entry(self, status: ParcelStatus, note: Optional[str]) -> StatusHistoryEntry:
        created_at = self._now()
        sequence = next(self._sequence)
        return StatusHistoryEntry(
            id=f"{LOCAL_ID_PREFIX}{int(created_at.timestamp() * 1000)}-{sequence}",
            status=status,
            note=note,
            created_at=created_at,
            source=EntrySource.LOCAL,
            sequence=sequence,
        )

    def _records_latest(self, status: ParcelStatus, note: Optional[str]) -> bool:
        history = self.history
        if not history:
            return False
        latest = history[-1]
        # no status has an edge to itself, so a repeat is the same transition
        return latest.status is status and (latest.note or None) == (note or None)

    def add_optimistic_entry(
        self, status: ParcelStatus, note: Optional[str] = None
    ) -> Optional[StatusHistoryEntry]:
        """Record a transition submitted from this client before its echo."""
        if self._records_latest(status, note):
            return None
        entry = self._local_entry(status, note)
        self._history.append(entry)
        return entry

    def matches(self, event: ParcelStatusEvent) -> bool:
        if self.parcel is None:
            return False
        if event.parcel_id and event.parcel_id == self.parcel.id:
            return True
        return bool(event.tracking_code) and event.tracking_code == self.parcel.tracking_code

    def apply_status_event(self, event: ParcelStatusEvent) -> MergeResult:
        """Apply a ``parcel:status`` push to the parcel and its history.

        Raises:
            RefetchRequired: If the event is for another parcel
        """
        if not self.matches(event):
            raise RefetchRequired(event.parcel_id, event.tracking_code)

        parcel = self.parcel
        if _is_stale(parcel, event):
            return MergeResult.STALE

        updated = apply_status_update(parcel, event, self._now)
        added = self.add_optimistic_entry(event.status, event.note)
        if updated == parcel and added is None:
            return MergeResult.UNCHANGED
        self.parcel = updated
        return MergeResult.UPDATED

    def apply_tracking_point(self, point: TrackingPoint) -> bool:
        """Add a live point to the ring buffer.

        Returns:
            True if the point was kept
        """
        if self.parcel is None:
            return False
        if point.parcel_id and point.parcel_id != self.parcel.id:
            _LOGGER.debug("Ignoring point for parcel %s", point.parcel_id)
            return False
        if not is_valid_coordinate(point.lat, point.lng):
            return False
        if point.id is not None and any(p.id == point.id for p in self._points):
            return False
        if len(self._points) == self._point_limit:
            if point.created_at < self._points[0].created_at:
                _LOGGER.debug("Dropping point older than the tracking window")
                return False
            self._points.popleft()
        index = bisect.bisect_right(
            self._points, point.created_at, key=lambda p: p.created_at
        )
        self._points.insert(index, point)
        return True

    def to_detail(self) -> Optional[ParcelTrackingDetail]:
        if self.parcel is None:
            return None
        return ParcelTrackingDetail(
            parcel=self.parcel,
            history=self.history,
            latest_point=self.latest_point,
            points=self.points,
        )
