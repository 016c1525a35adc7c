"""Notification stream shared by all views of a session."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from ..const import (
    DEFAULT_NOTIFICATION_LIMIT,
    DEFAULT_NOTIFICATION_PAGE_SIZE,
    EVENT_NOTIFICATION_USER,
)
from ..courier.realtime import rooms_for
from ..exceptions import CourierApiError, TransportUnavailable
from .models import NotificationItem, SessionUser

if TYPE_CHECKING:
    from ..courier.realtime import ConnectionHandle, RealtimeConnectionManager
    from .api import ParcelTrackingAPI

_LOGGER = logging.getLogger(__name__)


class NotificationStream:
    """Capped, newest-first notification list with an unread counter.

    The counter follows the server: REST pages and pushes that carry
    ``unreadCount`` overwrite it, pushes without one leave it alone.
    """

    def __init__(
        self,
        api: "ParcelTrackingAPI",
        adapter: Any,
        limit: int = DEFAULT_NOTIFICATION_LIMIT,
        page_size: int = DEFAULT_NOTIFICATION_PAGE_SIZE,
    ) -> None:
        self._api = api
        self._adapter = adapter
        self._limit = limit
        self._page_size = page_size
        self._items: List[NotificationItem] = []
        self._unread_count = 0
        self._handle: Optional["ConnectionHandle"] = None
        self._listeners: list[Callable[[], None]] = []
        self.loading = False
        self.ready = False
        self.last_error: Optional[str] = None

    @property
    def notifications(self) -> List[NotificationItem]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return self._unread_count

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a change listener; returns a function removing it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _update_listeners(self) -> None:
        for listener in list(self._listeners):
            listener()

    async def async_refresh(self) -> bool:
        """Reload the first page from the server.

        Returns:
            True if the list was replaced
        """
        self.loading = True
        try:
            items, meta = await self._api.list_notifications(page=1, limit=self._page_size)
        except CourierApiError as err:
            _LOGGER.error("Failed to load notifications: %s", err)
            self.last_error = str(err)
            return False
        finally:
            self.loading = False
            self.ready = True

        self._items = items[: self._limit]
        if meta.unread_count is not None:
            self._unread_count = meta.unread_count
        else:
            self._unread_count = sum(1 for item in self._items if not item.is_read)
        self.last_error = None
        self._update_listeners()
        return True

    def apply_push(self, payload: Any) -> Optional[NotificationItem]:
        """Merge a ``notification:user`` push.

        Returns:
            The upserted item, or None if the payload carried none
        """
        item, unread_count = self._adapter.unwrap_notification_push(payload)
        if item is None:
            return None

        existing = next((n for n in self._items if n.id == item.id), None)
        if existing is not None and existing.is_read and not item.is_read:
            # read state only moves forward
            item = replace(item, is_read=True, read_at=existing.read_at)

        others = [n for n in self._items if n.id != item.id]
        self._items = [item, *others][: self._limit]
        if unread_count is not None:
            self._unread_count = unread_count
        self._update_listeners()
        return item

    async def async_mark_one(self, notification_id: str) -> Optional[NotificationItem]:
        """Mark one notification as read, locally first.

        Raises:
            CourierApiError: If the server call fails; the local change stays
        """
        now = datetime.now(timezone.utc)
        for index, item in enumerate(self._items):
            if item.id == notification_id and not item.is_read:
                self._items[index] = replace(item, is_read=True, read_at=item.read_at or now)
                self._unread_count = max(0, self._unread_count - 1)
                self._update_listeners()
                break

        try:
            confirmed, meta = await self._api.mark_notification(notification_id)
        except CourierApiError as err:
            _LOGGER.error("Failed to mark notification %s: %s", notification_id, err)
            self.last_error = str(err)
            raise

        if confirmed is not None:
            if not confirmed.is_read:
                confirmed = replace(confirmed, is_read=True, read_at=confirmed.read_at or now)
            self._items = [confirmed if n.id == confirmed.id else n for n in self._items]
        if meta.unread_count is not None:
            self._unread_count = meta.unread_count
        self._update_listeners()
        return confirmed

    async def async_mark_all(self) -> None:
        """Mark every notification as read, locally first.

        Raises:
            CourierApiError: If the server call fails; the local change stays
        """
        now = datetime.now(timezone.utc)
        self._items = [
            item if item.is_read else replace(item, is_read=True, read_at=item.read_at or now)
            for item in self._items
        ]
        self._unread_count = 0
        self._update_listeners()

        try:
            meta = await self._api.mark_all_notifications()
        except CourierApiError as err:
            _LOGGER.error("Failed to mark all notifications: %s", err)
            self.last_error = str(err)
            raise

        if meta.unread_count is not None:
            self._unread_count = meta.unread_count
            self._update_listeners()

    async def async_start(
        self, manager: "RealtimeConnectionManager", user: SessionUser
    ) -> bool:
        """Load the first page and subscribe to pushes for ``user``.

        Returns:
            True if realtime pushes are active, False when only REST works
        """
        await self.async_refresh()
        if self._handle is not None:
            return True
        try:
            handle = await manager.async_connect(rooms_for(user))
        except TransportUnavailable as err:
            _LOGGER.warning("Notification pushes unavailable, refresh manually: %s", err)
            return False
        handle.subscribe(EVENT_NOTIFICATION_USER, self.apply_push)
        self._handle = handle
        return True

    async def async_stop(self) -> None:
        """Stop receiving pushes."""
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.async_disconnect()
