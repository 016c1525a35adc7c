"""
Test configuration and fixtures.

Provides:
- Parcel and history factories
- A fake Socket.IO module/client pair standing in for python-socketio
- A fake courier backend behind the real ParcelTrackingAPI
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from parcelsync.app.api import ParcelTrackingAPI
from parcelsync.app.models import (
    Address,
    EntrySource,
    NotificationItem,
    PaginationMeta,
    Parcel,
    ParcelStatus,
    ParcelTrackingDetail,
    SessionUser,
    StatusHistoryEntry,
    TrackingPoint,
    UserRole,
)
from parcelsync.courier.realtime import RealtimeConnectionManager, SocketClientLoader

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


# =============================================================================
# Model factories
# =============================================================================

@pytest.fixture
def make_parcel():
    def _make(
        parcel_id: str = "p1",
        tracking_code: str = "CP-0001",
        status: ParcelStatus = ParcelStatus.IN_TRANSIT,
        **kwargs: Any,
    ) -> Parcel:
        kwargs.setdefault("updated_at", at(0))
        return Parcel(id=parcel_id, tracking_code=tracking_code, status=status, **kwargs)

    return _make


@pytest.fixture
def make_entry():
    def _make(
        entry_id: str,
        status: ParcelStatus,
        minutes: float,
        note: Optional[str] = None,
        source: EntrySource = EntrySource.SERVER,
    ) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            id=entry_id, status=status, created_at=at(minutes), note=note, source=source
        )

    return _make


@pytest.fixture
def make_point():
    def _make(
        lat: float, lng: float, minutes: float, parcel_id: str = "p1", point_id: Optional[str] = None
    ) -> TrackingPoint:
        return TrackingPoint(
            lat=lat, lng=lng, created_at=at(minutes), parcel_id=parcel_id, id=point_id
        )

    return _make


@pytest.fixture
def addresses():
    return (
        Address(id="a1", full_address="12 Road 4, Dhaka", lat=23.7806, lng=90.4070),
        Address(id="a2", full_address="7 Lake View, Dhaka", lat=23.7925, lng=90.4078),
    )


@pytest.fixture
def agent_user() -> SessionUser:
    return SessionUser(id="u-agent", role=UserRole.AGENT, name="Rahim")


@pytest.fixture
def customer_user() -> SessionUser:
    return SessionUser(id="u-customer", role=UserRole.CUSTOMER, name="Karim")


# =============================================================================
# Fake realtime client
# =============================================================================

class FakeSocketClient:
    """Records what the manager does with a python-socketio AsyncClient."""

    def __init__(self, fail_connect: bool = False, **options: Any) -> None:
        self.options = options
        self.handlers: dict = {}
        self.emitted: list = []
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.fail_connect = fail_connect
        self.url = None

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_calls += 1
        self.url = url
        self.connect_kwargs = kwargs
        if self.fail_connect:
            raise ConnectionError("refused")
        self.connected = True
        await self.handlers["connect"]()

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def fire(self, event: str, payload: Any) -> None:
        await self.handlers[event](payload)

    async def reconnect(self) -> None:
        """Simulate a dropped transport coming back."""
        self.connected = False
        await self.handlers["disconnect"]("transport close")
        self.emitted.clear()
        self.connected = True
        await self.handlers["connect"]()


class FakeSocketModule:
    """Stands in for the imported ``socketio`` module."""

    def __init__(self) -> None:
        self.clients: list = []
        self.fail_connect = False

    def AsyncClient(self, **options: Any) -> FakeSocketClient:  # pylint: disable=invalid-name
        client = FakeSocketClient(fail_connect=self.fail_connect, **options)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeSocketClient:
        return self.clients[-1]


@pytest.fixture
def socket_module() -> FakeSocketModule:
    return FakeSocketModule()


@pytest.fixture
def manager(socket_module) -> RealtimeConnectionManager:
    loader = SocketClientLoader(importer=lambda name: socket_module)
    return RealtimeConnectionManager("http://courier.test", loader=loader, access_token="tok")


@pytest.fixture
def unavailable_manager() -> RealtimeConnectionManager:
    def _fail(name: str) -> Any:
        raise ImportError(f"No module named {name!r}")

    return RealtimeConnectionManager(
        "http://courier.test", loader=SocketClientLoader(importer=_fail)
    )


# =============================================================================
# Fake courier backend
# =============================================================================

class FakeBackend:
    """In-memory backend behind ParcelTrackingAPI."""

    def __init__(self) -> None:
        self.calls: list = []
        self.parcels: list = []
        self.meta = PaginationMeta(page=1, limit=20)
        self.detail: Optional[ParcelTrackingDetail] = None
        self.user = SessionUser(id="u-agent", role=UserRole.AGENT)
        self.update_result: Optional[Parcel] = None
        self.assign_result: Optional[Parcel] = None
        self.notifications: list = []
        self.notification_meta = PaginationMeta(page=1, limit=50)
        self.mark_result: Optional[NotificationItem] = None
        self.mark_meta = PaginationMeta()
        self.error: Optional[Exception] = None
        self.location_errors: list = []
        self.gate: Optional[asyncio.Event] = None

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def _maybe_fail(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def get_current_user(self):
        self.calls.append(("get_current_user",))
        await self._maybe_fail()
        return self.user

    async def list_parcels(self, scope, params=None):
        self.calls.append(("list_parcels", scope, dict(params or {})))
        await self._maybe_fail()
        return list(self.parcels), self.meta

    async def get_tracking(self, tracking_code):
        self.calls.append(("get_tracking", tracking_code))
        await self._maybe_fail()
        return self.detail

    async def update_status(self, parcel_id, status, note=None):
        self.calls.append(("update_status", parcel_id, status, note))
        if self.error is not None:
            raise self.error
        return self.update_result

    async def send_location(self, fix, parcel_id=None):
        self.calls.append(("send_location", fix, parcel_id))
        if self.location_errors:
            raise self.location_errors.pop(0)

    async def list_notifications(self, page=1, limit=50):
        self.calls.append(("list_notifications", page, limit))
        await self._maybe_fail()
        return list(self.notifications), self.notification_meta

    async def mark_notification(self, notification_id):
        self.calls.append(("mark_notification", notification_id))
        if self.error is not None:
            raise self.error
        return self.mark_result, self.mark_meta

    async def mark_all_notifications(self):
        self.calls.append(("mark_all_notifications",))
        if self.error is not None:
            raise self.error
        return self.mark_meta

    async def assign_agent(self, parcel_id, agent_id):
        self.calls.append(("assign_agent", parcel_id, agent_id))
        if self.error is not None:
            raise self.error
        return self.assign_result

    async def delete_parcel(self, parcel_id):
        self.calls.append(("delete_parcel", parcel_id))
        if self.error is not None:
            raise self.error


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def api(backend) -> ParcelTrackingAPI:
    return ParcelTrackingAPI(backend)

