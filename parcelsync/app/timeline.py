"""Timeline and route builders for the tracking view."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..const import COORDINATE_EPSILON
from .models import (
    Parcel,
    ParcelStatus,
    StatusHistoryEntry,
    TrackingPoint,
    is_valid_coordinate,
)
from .state_machine import STATUS_LABELS, progress_index


@dataclass(frozen=True)
class TimelineEvent:
    """One row of the delivery timeline."""

    status: ParcelStatus
    label: str
    description: str
    timestamp: datetime
    completed: bool
    note: Optional[str] = None
    entry_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "label": self.label,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "completed": self.completed,
            "note": self.note,
            "entry_id": self.entry_id,
        }


@dataclass(frozen=True)
class RoutePoint:
    """One vertex of the rendered route."""

    lat: float
    lng: float
    timestamp: Optional[datetime] = None
    kind: str = "tracking"  # pickup, tracking or delivery

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "kind": self.kind,
        }


def build_timeline(
    history: Iterable[StatusHistoryEntry], current_status: Optional[ParcelStatus]
) -> List[TimelineEvent]:
    """Build the chronological timeline shown on the tracking page.

    Entries are sorted by creation time, ties keep insertion order. An entry
    is completed when it sits at or before the current status on the forward
    path; FAILED and CANCELLED entries are never completed.
    """
    current_index = progress_index(current_status)
    chronological = sorted(history, key=lambda e: (e.created_at, e.sequence))

    events = []
    for entry in chronological:
        entry_index = progress_index(entry.status)
        label = STATUS_LABELS.get(entry.status, str(entry.status))
        events.append(
            TimelineEvent(
                status=entry.status,
                label=label,
                description=entry.note or f"Parcel marked as {label}.",
                timestamp=entry.created_at,
                completed=False if entry_index == -1 else entry_index <= current_index,
                note=entry.note,
                entry_id=entry.id,
            )
        )
    return events


def _same_position(a: RoutePoint, b: RoutePoint) -> bool:
    return math.isclose(a.lat, b.lat, abs_tol=COORDINATE_EPSILON) and math.isclose(
        a.lng, b.lng, abs_tol=COORDINATE_EPSILON
    )


def build_route(parcel: Optional[Parcel], points: Iterable[TrackingPoint]) -> List[RoutePoint]:
    """Build the route polyline from address endpoints and live points.

    Points without finite coordinates are dropped, the rest are ordered by
    time. The pickup and delivery coordinates are added at the ends unless
    they coincide with the route endpoint already there.
    """
    route = [
        RoutePoint(lat=float(p.lat), lng=float(p.lng), timestamp=p.created_at)
        for p in sorted(
            (p for p in points if is_valid_coordinate(p.lat, p.lng)),
            key=lambda p: p.created_at,
        )
    ]

    pickup = parcel.pickup_address if parcel else None
    if pickup is not None and pickup.has_coordinates:
        start = RoutePoint(lat=float(pickup.lat), lng=float(pickup.lng), kind="pickup")
        if not route or not _same_position(start, route[0]):
            route.insert(0, start)

    delivery = parcel.delivery_address if parcel else None
    if delivery is not None and delivery.has_coordinates:
        end = RoutePoint(lat=float(delivery.lat), lng=float(delivery.lng), kind="delivery")
        if not route or not _same_position(end, route[-1]):
            route.append(end)

    return route
