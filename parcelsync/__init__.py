"""The parcelsync client."""

import logging
from typing import Any, List, Mapping, Optional

import aiohttp

from .app.api import ParcelTrackingAPI
from .app.location import LiveLocationReporter, PositionProvider
from .app.models import SessionUser
from .app.notifications import NotificationStream
from .config import load_config, validate_config
from .const import (
    CONF_ACCESS_TOKEN,
    CONF_API_URL,
    CONF_DROP_PIN_TIMEOUT,
    CONF_LOCATION_MIN_INTERVAL,
    CONF_MAX_RETRIES,
    CONF_NOTIFICATION_LIMIT,
    CONF_NOTIFICATION_PAGE_SIZE,
    CONF_POLL_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_SOCKET_URL,
    CONF_TRACKING_HISTORY_LIMIT,
    SCOPE_ADMIN,
    SCOPE_AGENT,
    SCOPE_CUSTOMER,
)
from .coordinator import (
    ParcelListCoordinator,
    ParcelSyncCoordinator,
    ParcelTrackingCoordinator,
)
from .courier.adapter import CourierAdapter, CourierBackend
from .courier.client import CourierClient
from .courier.realtime import RealtimeConnectionManager, SocketClientLoader
from .exceptions import ParcelSyncError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "CourierSession",
    "async_setup_session",
    "async_unload_session",
]


class CourierSession:
    """Everything one signed-in user shares across views."""

    def __init__(
        self,
        config: dict[str, Any],
        api: ParcelTrackingAPI,
        client: CourierClient,
        manager: RealtimeConnectionManager,
        user: SessionUser,
        http_session: Optional[aiohttp.ClientSession] = None,
        owns_http_session: bool = False,
    ) -> None:
        self.config = config
        self.api = api
        self.client = client
        self.adapter = CourierAdapter()
        self.manager = manager
        self.user = user
        self._http_session = http_session
        self._owns_http_session = owns_http_session
        self.notifications = NotificationStream(
            api,
            self.adapter,
            limit=config[CONF_NOTIFICATION_LIMIT],
            page_size=config[CONF_NOTIFICATION_PAGE_SIZE],
        )
        self._coordinators: List[ParcelSyncCoordinator] = []
        self._reporters: List[LiveLocationReporter] = []
        self.closed = False

    def _track(self, coordinator: ParcelSyncCoordinator) -> ParcelSyncCoordinator:
        self._coordinators = [c for c in self._coordinators if not c.closed]
        self._coordinators.append(coordinator)
        return coordinator

    def parcel_list(self, scope: str, **query: Any) -> ParcelListCoordinator:
        """Create the coordinator of a parcel list; call ``async_start`` on it."""
        return self._track(
            ParcelListCoordinator(
                self.api,
                self.manager,
                self.user,
                scope,
                adapter=self.adapter,
                poll_interval=self.config[CONF_POLL_INTERVAL],
                **query,
            )
        )

    def agent_parcels(self, **query: Any) -> ParcelListCoordinator:
        return self.parcel_list(SCOPE_AGENT, **query)

    def customer_parcels(self, **query: Any) -> ParcelListCoordinator:
        return self.parcel_list(SCOPE_CUSTOMER, **query)

    def admin_parcels(self, **query: Any) -> ParcelListCoordinator:
        return self.parcel_list(SCOPE_ADMIN, **query)

    def parcel_tracking(self, tracking_code: str) -> ParcelTrackingCoordinator:
        """Create the coordinator of a tracking page."""
        return self._track(
            ParcelTrackingCoordinator(
                self.api,
                self.manager,
                self.user,
                tracking_code,
                point_limit=self.config[CONF_TRACKING_HISTORY_LIMIT],
                adapter=self.adapter,
                poll_interval=self.config[CONF_POLL_INTERVAL],
            )
        )

    def location_reporter(
        self, provider: Optional[PositionProvider], parcel_id: Optional[str] = None
    ) -> LiveLocationReporter:
        """Create a reporter sending the agent position for ``parcel_id``."""
        reporter = LiveLocationReporter(
            self.api,
            provider,
            parcel_id=parcel_id,
            min_interval=self.config[CONF_LOCATION_MIN_INTERVAL],
            drop_pin_timeout=self.config[CONF_DROP_PIN_TIMEOUT],
        )
        self._reporters = [r for r in self._reporters if not r.closed]
        self._reporters.append(reporter)
        return reporter

    async def async_close(self) -> None:
        """Stop every view, the notification stream and the connection."""
        if self.closed:
            return
        self.closed = True
        for coordinator in self._coordinators:
            await coordinator.async_stop()
        for reporter in self._reporters:
            await reporter.async_close()
        self._coordinators = []
        self._reporters = []
        await self.notifications.async_stop()
        await self.manager.async_close()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()


async def async_setup_session(
    config: Optional[Mapping[str, Any]] = None,
    http_session: Optional[aiohttp.ClientSession] = None,
    user: Optional[SessionUser] = None,
    loader: Optional[SocketClientLoader] = None,
    start_notifications: bool = True,
) -> CourierSession:
    """Set up a parcelsync session.

    Args:
        config: Settings; missing keys are read from ``PARCELSYNC_*``
            environment variables when omitted entirely
        http_session: Shared aiohttp session, created and owned when None
        user: Session user; resolved through ``/auth/me`` when None
        loader: Realtime client loader, shared between sessions if given
        start_notifications: Load notifications and subscribe to pushes

    Raises:
        InvalidConfig: If the settings are invalid
        CourierApiError: If the user cannot be resolved
    """
    config = load_config() if config is None else validate_config(config)

    owns_http_session = http_session is None
    if http_session is None:
        http_session = aiohttp.ClientSession()

    # Initialize courier layers
    client = CourierClient(
        config[CONF_ACCESS_TOKEN],
        session=http_session,
        base_url=config[CONF_API_URL],
        request_timeout=config[CONF_REQUEST_TIMEOUT],
        max_retries=config[CONF_MAX_RETRIES],
    )
    adapter = CourierAdapter()
    backend = CourierBackend(client, adapter)
    api = ParcelTrackingAPI(backend)

    if user is None:
        try:
            user = await api.get_current_user()
        except ParcelSyncError:
            if owns_http_session:
                await http_session.close()
            raise

    manager = RealtimeConnectionManager(
        config[CONF_SOCKET_URL],
        loader=loader,
        access_token=config[CONF_ACCESS_TOKEN],
    )
    session = CourierSession(
        config,
        api,
        client,
        manager,
        user,
        http_session=http_session,
        owns_http_session=owns_http_session,
    )
    _LOGGER.info(
        "Session set up for %s (%s) against %s", user.id, user.role.value, config[CONF_API_URL]
    )

    if start_notifications:
        await session.notifications.async_start(manager, user)
    return session


async def async_unload_session(session: CourierSession) -> bool:
    """Unload a session."""
    await session.async_close()
    return True
