"""Courier response adapter - Converts courier API payloads to models."""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import voluptuous as vol

from ..app.models import (
    Address,
    AgentRef,
    EntrySource,
    NotificationItem,
    PaginationMeta,
    Parcel,
    ParcelStatus,
    ParcelStatusEvent,
    ParcelTrackingDetail,
    PositionFix,
    SessionUser,
    StatusHistoryEntry,
    TrackingPoint,
    UserRole,
    is_valid_coordinate,
)
from ..app.state_machine import coerce_status
from ..exceptions import InvalidPayload

if TYPE_CHECKING:
    from .client import CourierClient

_LOGGER = logging.getLogger(__name__)

_STATUS_VALUES = [status.value for status in ParcelStatus]
_OPTIONAL_STR = vol.Any(None, str)

STATUS_EVENT_SCHEMA = vol.Schema(
    {
        vol.Required("parcelId"): vol.All(vol.Coerce(str), vol.Length(min=1)),
        vol.Required("status"): vol.All(vol.Coerce(str), vol.Upper, vol.In(_STATUS_VALUES)),
        vol.Optional("trackingCode"): _OPTIONAL_STR,
        vol.Optional("note"): _OPTIONAL_STR,
        vol.Optional("updatedAt"): _OPTIONAL_STR,
        vol.Optional("deliveredAt"): _OPTIONAL_STR,
        vol.Optional("failureReason"): _OPTIONAL_STR,
    },
    extra=vol.ALLOW_EXTRA,
)

NOTIFICATION_SCHEMA = vol.Schema(
    {
        vol.Optional("_id"): vol.Coerce(str),
        vol.Optional("id"): vol.Coerce(str),
        vol.Optional("type", default="GENERAL"): vol.Coerce(str),
        vol.Optional("title", default=""): vol.Any(None, vol.Coerce(str)),
        vol.Optional("body"): _OPTIONAL_STR,
        vol.Optional("data"): vol.Any(None, dict),
        vol.Optional("isRead", default=False): vol.Boolean(),
        vol.Optional("readAt"): _OPTIONAL_STR,
        vol.Optional("createdAt"): _OPTIONAL_STR,
    },
    extra=vol.ALLOW_EXTRA,
)


def _entity_id(data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the id of a payload; the API sends ``_id`` but some sources ``id``."""
    if not isinstance(data, dict):
        return None
    value = data.get("_id") or data.get("id")
    return str(value) if value is not None else None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CourierAdapter:
    """Adapter for converting courier API payloads to parcelsync models."""

    @staticmethod
    def _parse_datetime(date_str: Optional[str]) -> Optional[datetime]:
        """Parse an ISO timestamp into an aware UTC datetime."""
        if not date_str:
            return None
        if isinstance(date_str, datetime):
            parsed = date_str
        else:
            try:
                # The API uses ISO format with a trailing Z
                parsed = datetime.fromisoformat(str(date_str).replace("Z", "+00:00"))
            except (ValueError, AttributeError):
                parsed = None
                for fmt in ["%Y-%m-%dT%H:%M:%S.%f", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"]:
                    try:
                        parsed = datetime.strptime(str(date_str), fmt)
                        break
                    except ValueError:
                        continue
                if parsed is None:
                    _LOGGER.warning("Failed to parse datetime: %s", date_str)
                    return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _parse_status(value: Any) -> ParcelStatus:
        try:
            return coerce_status(value)
        except ValueError as err:
            raise InvalidPayload(f"Unknown parcel status: {value}") from err

    @staticmethod
    def to_address(data: Optional[Dict[str, Any]]) -> Optional[Address]:
        """Convert an address snapshot; ids alone are not enough to show one."""
        if not isinstance(data, dict):
            return None
        return Address(
            id=_entity_id(data),
            label=data.get("label"),
            full_address=data.get("fullAddress"),
            city=data.get("city"),
            area=data.get("area"),
            postal_code=data.get("postalCode"),
            lat=_to_float(data.get("lat")),
            lng=_to_float(data.get("lng")),
        )

    @staticmethod
    def to_user_ref(data: Optional[Dict[str, Any]]) -> Optional[AgentRef]:
        """Convert a populated user reference."""
        user_id = _entity_id(data)
        if user_id is None:
            return None
        role = data.get("role")
        try:
            role = UserRole(role) if role else None
        except ValueError:
            role = None
        return AgentRef(id=user_id, name=data.get("name"), email=data.get("email"), role=role)

    @staticmethod
    def to_parcel(data: Dict[str, Any]) -> Parcel:
        """Convert a parcel summary.

        Raises:
            InvalidPayload: If the id, tracking code or status is missing
        """
        if not isinstance(data, dict):
            raise InvalidPayload("Parcel payload is not an object")
        parcel_id = _entity_id(data)
        tracking_code = data.get("trackingCode")
        if not parcel_id or not tracking_code:
            raise InvalidPayload("Missing id or tracking code in parcel payload")

        status = CourierAdapter._parse_status(data.get("status"))
        parse = CourierAdapter._parse_datetime

        # Populated references arrive as objects, unpopulated ones as plain ids
        agent = data.get("assignedAgentId")
        if isinstance(agent, str):
            agent = {"_id": agent}
        customer = data.get("customerId")
        if isinstance(customer, str):
            customer = {"_id": customer}

        return Parcel(
            id=parcel_id,
            tracking_code=str(tracking_code),
            status=status,
            assigned_agent=CourierAdapter.to_user_ref(agent),
            customer=CourierAdapter.to_user_ref(customer),
            pickup_address=CourierAdapter.to_address(data.get("pickupAddressId")),
            delivery_address=CourierAdapter.to_address(data.get("deliveryAddressId")),
            weight=_to_float(data.get("weight")),
            payment_type=data.get("paymentType"),
            cod_amount=_to_float(data.get("codAmount")),
            failure_reason=data.get("failureReason") if status is ParcelStatus.FAILED else None,
            created_at=parse(data.get("createdAt")),
            updated_at=parse(data.get("updatedAt")),
            delivered_at=parse(data.get("deliveredAt")) if status is ParcelStatus.DELIVERED else None,
            scheduled_pickup_at=parse(data.get("scheduledPickupAt")),
        )

    @staticmethod
    def to_parcels(items: Optional[List[Dict[str, Any]]]) -> List[Parcel]:
        """Convert a parcel list, skipping entries that cannot be used."""
        parcels = []
        for item in items or []:
            try:
                parcels.append(CourierAdapter.to_parcel(item))
            except InvalidPayload as err:
                _LOGGER.warning("Skipping parcel in list: %s", err)
        return parcels

    @staticmethod
    def to_history_entry(data: Dict[str, Any]) -> Optional[StatusHistoryEntry]:
        """Convert a server-issued history entry."""
        entry_id = _entity_id(data)
        created_at = CourierAdapter._parse_datetime(data.get("createdAt"))
        if not entry_id or created_at is None:
            return None
        try:
            status = CourierAdapter._parse_status(data.get("status"))
        except InvalidPayload as err:
            _LOGGER.warning("Skipping history entry %s: %s", entry_id, err)
            return None
        return StatusHistoryEntry(
            id=entry_id,
            status=status,
            note=data.get("note") or None,
            created_at=created_at,
            changed_by=data.get("changedByUserId"),
            source=EntrySource.SERVER,
        )

    @staticmethod
    def to_tracking_point(
        data: Optional[Dict[str, Any]], received_at: Optional[datetime] = None
    ) -> Optional[TrackingPoint]:
        """Convert a tracking point; points without usable coordinates are dropped."""
        if not isinstance(data, dict):
            return None
        lat = _to_float(data.get("lat"))
        lng = _to_float(data.get("lng"))
        if not is_valid_coordinate(lat, lng):
            _LOGGER.debug("Discarding tracking point without coordinates: %s", data)
            return None
        created_at = CourierAdapter._parse_datetime(data.get("createdAt")) or received_at
        if created_at is None:
            created_at = datetime.now(timezone.utc)
        parcel_id = data.get("parcelId")
        agent_id = data.get("agentId")
        return TrackingPoint(
            id=_entity_id(data),
            parcel_id=str(parcel_id) if parcel_id else None,
            agent_id=str(agent_id) if agent_id else None,
            lat=lat,
            lng=lng,
            speed=_to_float(data.get("speed")),
            heading=_to_float(data.get("heading")),
            created_at=created_at,
        )

    @staticmethod
    def to_tracking_detail(data: Dict[str, Any]) -> ParcelTrackingDetail:
        """Convert the tracking-by-code response."""
        if not isinstance(data, dict) or "parcel" not in data:
            raise InvalidPayload("Tracking payload has no parcel")
        parcel = CourierAdapter.to_parcel(data["parcel"])
        history = [
            entry
            for entry in (CourierAdapter.to_history_entry(e) for e in data.get("history") or [])
            if entry is not None
        ]
        tracking = data.get("tracking") or {}
        points = [
            point
            for point in (
                CourierAdapter.to_tracking_point(p) for p in tracking.get("history") or []
            )
            if point is not None
        ]
        return ParcelTrackingDetail(
            parcel=parcel,
            history=history,
            latest_point=CourierAdapter.to_tracking_point(tracking.get("latest")),
            points=points,
        )

    @staticmethod
    def to_status_event(payload: Dict[str, Any]) -> ParcelStatusEvent:
        """Validate and convert a ``parcel:status`` push.

        Raises:
            InvalidPayload: If the payload does not match STATUS_EVENT_SCHEMA
        """
        try:
            data = STATUS_EVENT_SCHEMA(payload)
        except vol.Invalid as err:
            raise InvalidPayload(f"Invalid parcel:status payload: {err}") from err
        parse = CourierAdapter._parse_datetime
        return ParcelStatusEvent(
            parcel_id=data["parcelId"],
            tracking_code=data.get("trackingCode") or None,
            status=ParcelStatus(data["status"]),
            note=data.get("note") or None,
            updated_at=parse(data.get("updatedAt")),
            delivered_at=parse(data.get("deliveredAt")),
            failure_reason=data.get("failureReason") or None,
        )

    @staticmethod
    def to_notification(payload: Dict[str, Any]) -> NotificationItem:
        """Validate and convert a notification item.

        Raises:
            InvalidPayload: If the payload has no id
        """
        try:
            data = NOTIFICATION_SCHEMA(payload)
        except vol.Invalid as err:
            raise InvalidPayload(f"Invalid notification payload: {err}") from err
        notification_id = _entity_id(data)
        if not notification_id:
            raise InvalidPayload("Missing notification id")
        parse = CourierAdapter._parse_datetime
        return NotificationItem(
            id=notification_id,
            type=data["type"],
            title=data.get("title") or "",
            body=data.get("body"),
            data=dict(data.get("data") or {}),
            is_read=data["isRead"],
            read_at=parse(data.get("readAt")),
            created_at=parse(data.get("createdAt")) or datetime.now(timezone.utc),
        )

    @staticmethod
    def unwrap_notification_push(
        payload: Any,
    ) -> Tuple[Optional[NotificationItem], Optional[int]]:
        """Split a ``notification:user`` push into its item and unread count.

        The server sends either ``{"notification": {...}, "unreadCount": n}``
        or the bare item.
        """
        if not isinstance(payload, dict):
            return None, None
        unread = payload.get("unreadCount")
        unread_count = unread if isinstance(unread, int) and not isinstance(unread, bool) else None
        raw = payload.get("notification") if "notification" in payload else payload
        try:
            return CourierAdapter.to_notification(raw), unread_count
        except InvalidPayload as err:
            _LOGGER.warning("Dropping notification push: %s", err)
            return None, unread_count

    @staticmethod
    def to_pagination_meta(meta: Optional[Dict[str, Any]]) -> PaginationMeta:
        """Convert the meta block of a list response."""
        meta = meta or {}
        return PaginationMeta(
            page=meta.get("page"),
            limit=meta.get("limit"),
            total=meta.get("total"),
            total_pages=meta.get("totalPages"),
            unread_count=meta.get("unreadCount"),
        )

    @staticmethod
    def to_session_user(data: Dict[str, Any]) -> SessionUser:
        """Convert the ``/auth/me`` user."""
        user_id = _entity_id(data)
        if not user_id:
            raise InvalidPayload("Missing user id")
        try:
            role = UserRole(data.get("role"))
        except ValueError as err:
            raise InvalidPayload(f"Unknown role: {data.get('role')}") from err
        return SessionUser(id=user_id, role=role, name=data.get("name"), email=data.get("email"))

    @staticmethod
    def tracking_payload(fix: PositionFix, parcel_id: Optional[str] = None) -> Dict[str, Any]:
        """Build the ``POST /agent/tracking`` body for a fix."""
        payload: Dict[str, Any] = {"lat": fix.lat, "lng": fix.lng}
        if fix.speed is not None:
            payload["speed"] = fix.speed
        if fix.heading is not None:
            payload["heading"] = fix.heading
        if parcel_id:
            payload["parcelId"] = parcel_id
        return payload


class CourierBackend:
    """Backend implementation that the App Layer uses."""

    def __init__(self, client: "CourierClient", adapter: CourierAdapter):
        """Initialize backend with client and adapter.

        Args:
            client: CourierClient instance
            adapter: CourierAdapter instance
        """
        self._client = client
        self._adapter = adapter

    async def get_current_user(self) -> SessionUser:
        """Resolve the user the access token belongs to."""
        envelope = await self._client.get_current_user()
        return self._adapter.to_session_user(envelope.get("data") or {})

    async def list_parcels(
        self, scope: str, params: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Parcel], PaginationMeta]:
        """Fetch one page of parcels for a dashboard scope."""
        envelope = await self._client.fetch_parcels(scope, params)
        return (
            self._adapter.to_parcels(envelope.get("data")),
            self._adapter.to_pagination_meta(envelope.get("meta")),
        )

    async def get_tracking(self, tracking_code: str) -> ParcelTrackingDetail:
        """Fetch the tracking detail of a parcel."""
        envelope = await self._client.fetch_parcel_tracking(tracking_code)
        return self._adapter.to_tracking_detail(envelope.get("data") or {})

    async def update_status(
        self, parcel_id: str, status: ParcelStatus, note: Optional[str] = None
    ) -> Optional[Parcel]:
        """Post a status change and return the updated parcel when sent back."""
        envelope = await self._client.update_parcel_status(parcel_id, status.value, note)
        data = envelope.get("data")
        if not isinstance(data, dict):
            return None
        try:
            return self._adapter.to_parcel(data)
        except InvalidPayload as err:
            _LOGGER.warning("Status update response for %s not usable: %s", parcel_id, err)
            return None

    async def send_location(self, fix: PositionFix, parcel_id: Optional[str] = None) -> None:
        """Transmit one position fix."""
        await self._client.send_tracking_point(self._adapter.tracking_payload(fix, parcel_id))

    async def list_notifications(
        self, page: int = 1, limit: int = 50
    ) -> Tuple[List[NotificationItem], PaginationMeta]:
        """Fetch one page of notifications."""
        envelope = await self._client.fetch_notifications({"page": page, "limit": limit})
        items = []
        for raw in envelope.get("data") or []:
            try:
                items.append(self._adapter.to_notification(raw))
            except InvalidPayload as err:
                _LOGGER.warning("Skipping notification: %s", err)
        return items, self._adapter.to_pagination_meta(envelope.get("meta"))

    async def mark_notification(
        self, notification_id: str
    ) -> Tuple[Optional[NotificationItem], PaginationMeta]:
        """Mark one notification as read."""
        envelope = await self._client.mark_notification(notification_id)
        data = envelope.get("data")
        item = None
        if isinstance(data, dict):
            try:
                item = self._adapter.to_notification(data)
            except InvalidPayload as err:
                _LOGGER.warning("Mark response not usable: %s", err)
        return item, self._adapter.to_pagination_meta(envelope.get("meta"))

    async def mark_all_notifications(self) -> PaginationMeta:
        """Mark every notification as read."""
        envelope = await self._client.mark_all_notifications()
        return self._adapter.to_pagination_meta(envelope.get("meta"))

    async def assign_agent(self, parcel_id: str, agent_id: str) -> Parcel:
        """Reassign a parcel to another agent."""
        envelope = await self._client.assign_agent(parcel_id, agent_id)
        return self._adapter.to_parcel(envelope.get("data") or {})

    async def delete_parcel(self, parcel_id: str) -> None:
        """Delete a parcel."""
        await self._client.delete_parcel(parcel_id)
