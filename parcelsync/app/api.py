"""Platform-agnostic API interface for parcel synchronization."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    NotificationItem,
    PaginationMeta,
    Parcel,
    ParcelStatus,
    ParcelTrackingDetail,
    PositionFix,
    SessionUser,
)
from .state_machine import validate_transition

_LOGGER = logging.getLogger(__name__)


class ParcelTrackingAPI:
    """Platform-agnostic API over a courier backend."""

    def __init__(self, backend):
        """Initialize with a backend implementation."""
        self._backend = backend

    async def get_current_user(self) -> SessionUser:
        """Resolve the signed-in user."""
        return await self._backend.get_current_user()

    async def list_parcels(
        self,
        scope: str,
        status: Optional[ParcelStatus] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> Tuple[List[Parcel], PaginationMeta]:
        """Get one page of parcels for a dashboard.

        Args:
            scope: ``customer``, ``agent`` or ``admin``
            status: Only parcels in this status
            page: 1-based page number
            limit: Page size
            **filters: Extra list filters (agentId, dateFrom, ...)

        Returns:
            Tuple of parcels and pagination meta
        """
        params: Dict[str, Any] = dict(filters)
        if status is not None:
            params["status"] = ParcelStatus(status).value
        if page is not None:
            params["page"] = page
        if limit is not None:
            params["limit"] = limit
        return await self._backend.list_parcels(scope, params)

    async def get_tracking(self, tracking_code: str) -> ParcelTrackingDetail:
        """Get the parcel, its status history and its tracking points."""
        return await self._backend.get_tracking(tracking_code)

    async def submit_status(
        self, parcel: Parcel, target: ParcelStatus, note: Optional[str] = None
    ) -> Optional[Parcel]:
        """Move a parcel to a new status.

        The transition is checked against the state machine before anything
        is sent.

        Args:
            parcel: The parcel as currently held by the view
            target: Status to move to
            note: Free text; required for FAILED

        Returns:
            The updated parcel from the server, or None if it sent none back

        Raises:
            IllegalTransition: If ``target`` is not reachable
            MissingRequiredField: If a required note is missing
            CourierApiError: If the server rejected the update
        """
        target = validate_transition(parcel.status, target, note)
        note = note.strip() if note else None
        _LOGGER.info(
            "Submitting %s -> %s for parcel %s", parcel.status, target, parcel.tracking_code
        )
        return await self._backend.update_status(parcel.id, target, note)

    async def report_location(self, fix: PositionFix, parcel_id: Optional[str] = None) -> None:
        """Send an agent position fix."""
        await self._backend.send_location(fix, parcel_id)

    async def list_notifications(
        self, page: int = 1, limit: int = 50
    ) -> Tuple[List[NotificationItem], PaginationMeta]:
        """Get one page of notifications."""
        return await self._backend.list_notifications(page=page, limit=limit)

    async def mark_notification(
        self, notification_id: str
    ) -> Tuple[Optional[NotificationItem], PaginationMeta]:
        """Mark one notification as read."""
        return await self._backend.mark_notification(notification_id)

    async def mark_all_notifications(self) -> PaginationMeta:
        """Mark all notifications as read."""
        return await self._backend.mark_all_notifications()

    async def assign_agent(self, parcel_id: str, agent_id: str) -> Parcel:
        """Reassign a parcel (admin)."""
        return await self._backend.assign_agent(parcel_id, agent_id)

    async def delete_parcel(self, parcel_id: str) -> None:
        """Delete a parcel (admin)."""
        await self._backend.delete_parcel(parcel_id)
