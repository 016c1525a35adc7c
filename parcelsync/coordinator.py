"""View coordinators for parcelsync.

A coordinator owns what one view shows: it fetches the base state over
REST, subscribes to the shared realtime connection and merges pushed events
into that state. Views read ``parcels`` / ``parcel`` / ``timeline`` and
register listeners to be told about changes.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .app.api import ParcelTrackingAPI
from .app.merger import (
    MergeResult,
    ParcelDetailMerger,
    ParcelEventMerger,
    apply_status_update,
)
from .app.models import (
    PaginationMeta,
    Parcel,
    ParcelStatus,
    ParcelStatusEvent,
    SessionUser,
    StatusHistoryEntry,
    TrackingPoint,
)
from .app.state_machine import coerce_status
from .app.timeline import RoutePoint, TimelineEvent, build_route, build_timeline
from .const import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TRACKING_HISTORY_LIMIT,
    EVENT_PARCEL_STATUS,
    EVENT_PARCEL_TRACKING,
    PARCEL_LIST_ENDPOINTS,
)
from .courier.adapter import CourierAdapter
from .courier.realtime import ConnectionHandle, RealtimeConnectionManager, rooms_for
from .exceptions import (
    CourierApiError,
    InvalidPayload,
    RefetchRequired,
    TransportUnavailable,
)

_LOGGER = logging.getLogger(__name__)


class ParcelSyncCoordinator:
    """Base class for coordinators backing one view."""

    def __init__(
        self,
        api: ParcelTrackingAPI,
        manager: Optional[RealtimeConnectionManager],
        user: Optional[SessionUser],
        name: str,
        adapter: Any = CourierAdapter,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize coordinator."""
        self.api = api
        self.manager = manager
        self.user = user
        self.name = name
        self._adapter = adapter
        self._poll_interval = poll_interval
        self._listeners: List[Callable[[], None]] = []
        self._handle: Optional[ConnectionHandle] = None
        self._started = False
        self._closed = False
        self._generation = 0
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_pending = False
        self._poll_task: Optional[asyncio.Task] = None
        self._transport_unavailable = False
        self._subscribe_lock = asyncio.Lock()
        self._last_error: Optional[str] = None
        self._last_message: Optional[str] = None
        self.last_update_success = False
        self.refresh_count = 0

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_message(self) -> Optional[str]:
        return self._last_message

    @property
    def realtime(self) -> bool:
        """True while realtime pushes are merged into this view."""
        return self._handle is not None and self._handle.active

    @property
    def closed(self) -> bool:
        return self._closed

    def async_add_listener(self, update_callback: Callable[[], None]) -> Callable[[], None]:
        """Listen for data updates; returns a function removing the listener."""
        self._listeners.append(update_callback)

        def remove_listener() -> None:
            if update_callback in self._listeners:
                self._listeners.remove(update_callback)

        return remove_listener

    def async_update_listeners(self) -> None:
        """Tell every listener the data changed."""
        if self._closed:
            return
        for update_callback in list(self._listeners):
            try:
                update_callback()
            except Exception:  # pylint: disable=broad-except
                _LOGGER.exception("Error in %s listener", self.name)

    def dismiss_error(self) -> None:
        """Clear the transient error shown by the view."""
        self._last_error = None
        self.async_update_listeners()

    async def _async_fetch(self) -> Any:
        raise NotImplementedError

    def _apply_fetch(self, data: Any) -> None:
        raise NotImplementedError

    def _rooms(self) -> list:
        return rooms_for(self.user)

    def _can_subscribe(self) -> bool:
        return True

    def _register_handlers(self, handle: ConnectionHandle) -> None:
        raise NotImplementedError

    async def async_start(self) -> None:
        """Fetch the base state and start merging realtime events."""
        if self._started:
            return
        self._started = True
        self._closed = False
        await self.async_refresh()
        await self._async_ensure_subscribed()

    async def async_refresh(self) -> bool:
        """Fetch the base state again.

        Results of a fetch that finishes after ``async_stop`` or after the
        query changed are discarded.

        Returns:
            True if new data was applied
        """
        generation = self._generation
        self.refresh_count += 1
        try:
            data = await self._async_fetch()
        except (CourierApiError, InvalidPayload) as err:
            if self._closed or generation != self._generation:
                return False
            self.last_update_success = False
            self._last_error = f"Error updating {self.name}: {err}"
            _LOGGER.error(self._last_error)
            self.async_update_listeners()
            return False

        if self._closed or generation != self._generation:
            _LOGGER.debug("Discarding stale %s fetch", self.name)
            return False

        self._apply_fetch(data)
        self.last_update_success = True
        self._last_error = None
        self.async_update_listeners()
        if self._started:
            await self._async_ensure_subscribed()
        return True

    def async_request_refresh(self) -> None:
        """Schedule a refresh; requests made while one runs fold into one rerun."""
        if self._closed:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_pending = True
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._async_run_refresh())

    async def _async_run_refresh(self) -> None:
        while True:
            self._refresh_pending = False
            await self.async_refresh()
            if self._closed or not self._refresh_pending:
                break

    async def async_wait_refreshed(self) -> None:
        """Wait for a scheduled refresh to finish."""
        task = self._refresh_task
        if task is not None:
            await asyncio.shield(task)

    async def _async_ensure_subscribed(self) -> None:
        async with self._subscribe_lock:
            await self._async_subscribe()

    async def _async_subscribe(self) -> None:
        if (
            self._handle is not None
            or self._closed
            or self.manager is None
            or self._transport_unavailable
            or not self._can_subscribe()
        ):
            return
        try:
            handle = await self.manager.async_connect(self._rooms())
        except TransportUnavailable as err:
            self._transport_unavailable = True
            _LOGGER.warning(
                "Realtime unavailable for %s, polling every %d seconds: %s",
                self.name,
                self._poll_interval,
                err,
            )
            self._start_polling()
            return

        if self._closed:
            await handle.async_disconnect()
            return
        self._handle = handle
        self._register_handlers(handle)
        _LOGGER.debug("%s subscribed to realtime updates", self.name)

    def _start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._async_poll())

    async def _async_poll(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            if self._closed:
                break
            await self.async_refresh()

    async def async_stop(self) -> None:
        """Stop the view: drop its subscription and ignore pending fetches."""
        self._closed = True
        self._started = False
        self._generation += 1
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.async_disconnect()

    def _parse_status_event(self, payload: Any) -> Optional[ParcelStatusEvent]:
        try:
            return self._adapter.to_status_event(payload)
        except InvalidPayload as err:
            _LOGGER.warning("Dropping realtime event in %s: %s", self.name, err)
            return None


class ParcelListCoordinator(ParcelSyncCoordinator):
    """Parcel list of a customer, agent or admin dashboard."""

    def __init__(
        self,
        api: ParcelTrackingAPI,
        manager: Optional[RealtimeConnectionManager],
        user: Optional[SessionUser],
        scope: str,
        status: Optional[ParcelStatus] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        if scope not in PARCEL_LIST_ENDPOINTS:
            raise ValueError(f"Unknown parcel list scope: {scope}")
        super().__init__(api, manager, user, name=f"{scope} parcels", **kwargs)
        self.scope = scope
        self.status = status
        self.page = page
        self.limit = limit
        self.filters = dict(filters or {})
        self.merger = ParcelEventMerger()
        self.meta = PaginationMeta()

    @property
    def parcels(self) -> List[Parcel]:
        return self.merger.parcels

    def get_parcel(self, parcel_id: str) -> Optional[Parcel]:
        return self.merger.get(parcel_id)

    async def _async_fetch(self) -> Any:
        return await self.api.list_parcels(
            self.scope, status=self.status, page=self.page, limit=self.limit, **self.filters
        )

    def _apply_fetch(self, data: Any) -> None:
        parcels, meta = data
        self.merger.reset(parcels)
        self.meta = meta
        self._last_message = f"Loaded {len(parcels)} parcels"

    def _register_handlers(self, handle: ConnectionHandle) -> None:
        handle.subscribe(EVENT_PARCEL_STATUS, self._handle_status_payload)

    def _handle_status_payload(self, payload: Any) -> None:
        if self._closed:
            return
        event = self._parse_status_event(payload)
        if event is None:
            return
        try:
            result = self.merger.apply(event)
        except RefetchRequired as err:
            # Probably a parcel new to this view, e.g. just assigned
            _LOGGER.info("%s: %s, refetching", self.name, err)
            self.async_request_refresh()
            return
        if result is MergeResult.UPDATED:
            self.async_update_listeners()

    async def async_set_query(
        self,
        status: Optional[ParcelStatus] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> bool:
        """Change filters and reload; fetches for the old query are dropped."""
        self.status = status
        self.page = page
        self.limit = limit
        self.filters = dict(filters)
        self._generation += 1
        return await self.async_refresh()

    async def async_submit_status(
        self, parcel_id: str, target: ParcelStatus, note: Optional[str] = None
    ) -> Parcel:
        """Move a held parcel to ``target`` (agent action).

        Raises:
            RefetchRequired: If the parcel is not held by this view
            IllegalTransition: If ``target`` is not reachable
            MissingRequiredField: If a required note is missing
            CourierApiError: If the server rejected the update
        """
        parcel = self.merger.get(parcel_id)
        if parcel is None:
            raise RefetchRequired(parcel_id)
        try:
            updated = await self.api.submit_status(parcel, target, note)
        except CourierApiError as err:
            self._last_error = f"Failed to update {parcel.tracking_code}: {err}"
            self.async_update_listeners()
            raise

        target = coerce_status(target)
        note = note.strip() if note else None
        self._last_message = f"{parcel.tracking_code} moved to {target.value}"
        if self.merger.get(parcel_id) is None:
            _LOGGER.debug("%s left %s during the update", parcel.tracking_code, self.name)
            self.async_update_listeners()
            return updated or apply_status_update(
                parcel, ParcelStatusEvent(parcel.id, target, note=note)
            )
        if updated is not None:
            self.merger.upsert(updated)
        else:
            self.merger.apply(ParcelStatusEvent(parcel_id=parcel.id, status=target, note=note))
        self.async_update_listeners()
        return self.merger.get(parcel_id)

    async def async_assign_agent(self, parcel_id: str, agent_id: str) -> Parcel:
        """Reassign a parcel to another agent (admin action)."""
        try:
            parcel = await self.api.assign_agent(parcel_id, agent_id)
        except CourierApiError as err:
            self._last_error = f"Failed to assign agent: {err}"
            self.async_update_listeners()
            raise
        self.merger.upsert(parcel)
        self.async_update_listeners()
        return parcel

    async def async_delete_parcel(self, parcel_id: str) -> bool:
        """Delete a parcel and drop it from the list (admin action)."""
        try:
            await self.api.delete_parcel(parcel_id)
        except CourierApiError as err:
            self._last_error = f"Failed to delete parcel: {err}"
            self.async_update_listeners()
            raise
        removed = self.merger.remove(parcel_id)
        self.async_update_listeners()
        return removed


class ParcelTrackingCoordinator(ParcelSyncCoordinator):
    """Tracking page of one parcel: status, history, timeline and route."""

    def __init__(
        self,
        api: ParcelTrackingAPI,
        manager: Optional[RealtimeConnectionManager],
        user: Optional[SessionUser],
        tracking_code: str,
        point_limit: int = DEFAULT_TRACKING_HISTORY_LIMIT,
        **kwargs: Any,
    ) -> None:
        super().__init__(api, manager, user, name=f"tracking {tracking_code}", **kwargs)
        self.tracking_code = tracking_code
        self.merger = ParcelDetailMerger(point_limit=point_limit)

    @property
    def parcel(self) -> Optional[Parcel]:
        return self.merger.parcel

    @property
    def history(self) -> List[StatusHistoryEntry]:
        return self.merger.history

    @property
    def points(self) -> List[TrackingPoint]:
        return self.merger.points

    @property
    def timeline(self) -> List[TimelineEvent]:
        parcel = self.merger.parcel
        return build_timeline(self.merger.history, parcel.status if parcel else None)

    @property
    def route(self) -> List[RoutePoint]:
        return build_route(self.merger.parcel, self.merger.points)

    async def _async_fetch(self) -> Any:
        return await self.api.get_tracking(self.tracking_code)

    def _apply_fetch(self, data: Any) -> None:
        self.merger.reset(data)
        self._last_message = f"Loaded {len(data.history)} status updates"

    def _can_subscribe(self) -> bool:
        return self.merger.parcel is not None

    def _rooms(self) -> list:
        return rooms_for(self.user, self.merger.parcel.id)

    def _register_handlers(self, handle: ConnectionHandle) -> None:
        handle.subscribe(EVENT_PARCEL_STATUS, self._handle_status_payload)
        handle.subscribe(EVENT_PARCEL_TRACKING, self._handle_tracking_payload)

    def _handle_status_payload(self, payload: Any) -> None:
        if self._closed:
            return
        event = self._parse_status_event(payload)
        if event is None:
            return
        try:
            result = self.merger.apply_status_event(event)
        except RefetchRequired:
            # user rooms also carry events of the user's other parcels
            return
        if result is MergeResult.UPDATED:
            self.async_update_listeners()

    def _handle_tracking_payload(self, payload: Any) -> None:
        if self._closed:
            return
        point = self._adapter.to_tracking_point(payload)
        if point is None:
            return
        if self.merger.apply_tracking_point(point):
            self.async_update_listeners()

    async def async_submit_status(
        self, target: ParcelStatus, note: Optional[str] = None
    ) -> Optional[Parcel]:
        """Move this parcel to ``target`` and record it in the history at once.

        Raises:
            RefetchRequired: If the parcel has not been loaded
            IllegalTransition: If ``target`` is not reachable
            MissingRequiredField: If a required note is missing
            CourierApiError: If the server rejected the update
        """
        parcel = self.merger.parcel
        if parcel is None:
            raise RefetchRequired(None, self.tracking_code)
        try:
            updated = await self.api.submit_status(parcel, target, note)
        except CourierApiError as err:
            self._last_error = f"Failed to update {parcel.tracking_code}: {err}"
            self.async_update_listeners()
            raise

        target = coerce_status(target)
        note = note.strip() if note else None
        if self._closed or self.merger.parcel is None:
            return updated
        if updated is None:
            updated = apply_status_update(
                self.merger.parcel, ParcelStatusEvent(parcel.id, target, note=note)
            )
        self.merger.parcel = updated
        self.merger.add_optimistic_entry(target, note)
        self.async_update_listeners()
        return updated
