"""Data models for parcel synchronization - platform-agnostic."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ParcelStatus(str, Enum):
    """Lifecycle states of a parcel."""

    BOOKED = "BOOKED"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    def __str__(self) -> str:
        return self.value


class UserRole(str, Enum):
    """The three fixed roles of the courier system."""

    ADMIN = "ADMIN"
    AGENT = "AGENT"
    CUSTOMER = "CUSTOMER"


class EntrySource(str, Enum):
    """Where a status history entry came from."""

    SERVER = "server"
    LOCAL = "local"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Address:
    """Snapshot of a pickup or delivery address."""

    id: Optional[str] = None
    label: Optional[str] = None
    full_address: Optional[str] = None
    city: Optional[str] = None
    area: Optional[str] = None
    postal_code: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        """Return True if both coordinates are finite numbers."""
        return is_valid_coordinate(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "label": self.label,
            "full_address": self.full_address,
            "city": self.city,
            "area": self.area,
            "postal_code": self.postal_code,
            "lat": self.lat,
            "lng": self.lng,
        }


@dataclass(frozen=True)
class AgentRef:
    """Weak reference to a user (agent or customer) with display fields."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
        }


@dataclass(frozen=True)
class Parcel:
    """A single shipment as held by a view.

    Instances are immutable; the merger replaces them instead of mutating,
    so a consumer holding an older snapshot never sees a half-applied event.
    """

    id: str
    tracking_code: str
    status: ParcelStatus
    assigned_agent: Optional[AgentRef] = None
    customer: Optional[AgentRef] = None
    pickup_address: Optional[Address] = None
    delivery_address: Optional[Address] = None
    weight: Optional[float] = None
    payment_type: Optional[str] = None
    cod_amount: Optional[float] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    scheduled_pickup_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tracking_code": self.tracking_code,
            "status": self.status.value,
            "assigned_agent": self.assigned_agent.to_dict() if self.assigned_agent else None,
            "customer": self.customer.to_dict() if self.customer else None,
            "pickup_address": self.pickup_address.to_dict() if self.pickup_address else None,
            "delivery_address": (
                self.delivery_address.to_dict() if self.delivery_address else None
            ),
            "weight": self.weight,
            "payment_type": self.payment_type,
            "cod_amount": self.cod_amount,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "delivered_at": _iso(self.delivered_at),
            "scheduled_pickup_at": _iso(self.scheduled_pickup_at),
        }


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One status change of a parcel."""

    id: str
    status: ParcelStatus
    created_at: datetime
    note: Optional[str] = None
    changed_by: Optional[str] = None
    source: EntrySource = EntrySource.SERVER
    sequence: int = 0

    @property
    def is_local(self) -> bool:
        return self.source is EntrySource.LOCAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "status": self.status.value,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
            "changed_by": self.changed_by,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class TrackingPoint:
    """One GPS fix reported for a parcel."""

    lat: float
    lng: float
    created_at: datetime
    parcel_id: Optional[str] = None
    id: Optional[str] = None
    agent_id: Optional[str] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "parcel_id": self.parcel_id,
            "agent_id": self.agent_id,
            "lat": self.lat,
            "lng": self.lng,
            "speed": self.speed,
            "heading": self.heading,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class NotificationItem:
    """A push or inbox notification."""

    id: str
    type: str
    title: str
    created_at: datetime
    body: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None

    @property
    def tracking_code(self) -> Optional[str]:
        """Tracking code referenced by the payload, if any."""
        value = self.data.get("trackingCode") if self.data else None
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": dict(self.data),
            "is_read": self.is_read,
            "read_at": _iso(self.read_at),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ParcelStatusEvent:
    """A ``parcel:status`` push."""

    parcel_id: str
    status: ParcelStatus
    tracking_code: Optional[str] = None
    note: Optional[str] = None
    updated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


@dataclass
class PaginationMeta:
    """Pagination block returned alongside REST lists."""

    page: Optional[int] = None
    limit: Optional[int] = None
    total: Optional[int] = None
    total_pages: Optional[int] = None
    unread_count: Optional[int] = None


@dataclass
class ParcelTrackingDetail:
    """Everything the tracking page shows for one parcel."""

    parcel: Parcel
    history: List[StatusHistoryEntry] = field(default_factory=list)
    latest_point: Optional[TrackingPoint] = None
    points: List[TrackingPoint] = field(default_factory=list)


@dataclass(frozen=True)
class SessionUser:
    """The authenticated user owning a session."""

    id: str
    role: UserRole
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class PositionFix:
    """A position sample from a device."""

    lat: float
    lng: float
    timestamp: datetime
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    """Return True if lat and lng are both finite real numbers."""
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return True
