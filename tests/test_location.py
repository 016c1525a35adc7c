import asyncio

import pytest

from conftest import at
from parcelsync.app.location import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    CallbackPositionProvider,
    LiveLocationReporter,
    PositionError,
)
from parcelsync.app.models import PositionFix
from parcelsync.const import (
    LOCATION_DENIED,
    LOCATION_ERROR,
    LOCATION_IDLE,
    LOCATION_UNSUPPORTED,
    LOCATION_WATCHING,
)
from parcelsync.exceptions import (
    CourierApiError,
    LocationDenied,
    LocationTransientError,
    LocationUnsupported,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def fix(lat: float = 23.78, lng: float = 90.40) -> PositionFix:
    return PositionFix(lat=lat, lng=lng, timestamp=at(0), accuracy=5.0)


async def settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.fixture
def provider() -> CallbackPositionProvider:
    return CallbackPositionProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reporter(api, provider, clock) -> LiveLocationReporter:
    return LiveLocationReporter(
        api, provider, parcel_id="p1", min_interval=5, drop_pin_timeout=0.05, clock=clock
    )


@pytest.mark.asyncio
async def test_watch_transmits_throttled_fixes(reporter, provider, backend, clock):
    handle = reporter.start_watch()
    assert handle.active
    assert reporter.status == LOCATION_WATCHING

    provider.push_fix(fix())
    clock.now = 2
    provider.push_fix(fix(23.79))
    clock.now = 6
    provider.push_fix(fix(23.80))
    await settle()

    sent = [call for call in backend.calls if call[0] == "send_location"]
    assert [call[1].lat for call in sent] == [23.78, 23.80]
    assert all(call[2] == "p1" for call in sent)
    assert reporter.sent_count == 2


@pytest.mark.asyncio
async def test_invalid_fix_is_ignored(reporter, provider, backend):
    reporter.start_watch()
    provider.push_fix(fix(lat=float("nan")))
    await settle()
    assert backend.count("send_location") == 0


@pytest.mark.asyncio
async def test_permission_denied_stops_watch(reporter, provider, backend, clock):
    errors = []
    statuses = []
    reporter.add_listener(statuses.append)
    reporter.start_watch(on_error=errors.append)

    provider.push_error(PositionError(PERMISSION_DENIED, "User denied Geolocation"))
    clock.now = 100
    provider.push_fix(fix())
    await settle()

    assert reporter.status == LOCATION_DENIED
    assert statuses == [LOCATION_WATCHING, LOCATION_DENIED]
    assert isinstance(errors[0], LocationDenied)
    assert not reporter.watching
    assert provider.watch_count == 0
    assert backend.count("send_location") == 0


@pytest.mark.asyncio
async def test_transient_error_keeps_watching(reporter, provider, backend):
    errors = []
    reporter.start_watch(on_error=errors.append)

    provider.push_error(PositionError(POSITION_UNAVAILABLE))
    assert reporter.status == LOCATION_ERROR
    assert isinstance(errors[0], LocationTransientError)
    assert reporter.watching

    provider.push_fix(fix())
    await settle()
    assert reporter.status == LOCATION_WATCHING
    assert backend.count("send_location") == 1


@pytest.mark.asyncio
async def test_failed_transmission_continues_sampling(reporter, provider, backend, clock):
    backend.location_errors = [CourierApiError("Bad gateway", status=502)]
    reporter.start_watch()

    provider.push_fix(fix())
    await settle()
    assert reporter.status == LOCATION_ERROR
    assert isinstance(reporter.last_error, LocationTransientError)

    clock.now = 10
    provider.push_fix(fix(23.80))
    await settle()
    assert reporter.status == LOCATION_WATCHING
    assert reporter.sent_count == 1


@pytest.mark.asyncio
async def test_unsupported_reports_synchronously(api):
    errors = []
    reporter = LiveLocationReporter(api, None)
    handle = reporter.start_watch(on_error=errors.append)

    assert not handle.active
    assert reporter.status == LOCATION_UNSUPPORTED
    assert isinstance(errors[0], LocationUnsupported)
    with pytest.raises(LocationUnsupported):
        await reporter.drop_pin()


@pytest.mark.asyncio
async def test_stop_watch_is_idempotent(reporter, provider):
    handle = reporter.start_watch()
    reporter.stop_watch(handle)
    reporter.stop_watch(handle)
    reporter.stop_watch()
    assert reporter.status == LOCATION_IDLE
    assert provider.watch_count == 0


@pytest.mark.asyncio
async def test_restart_replaces_previous_watch(reporter, provider):
    first = reporter.start_watch()
    second = reporter.start_watch()
    assert not first.active
    assert second.active
    assert provider.watch_count == 1


@pytest.mark.asyncio
async def test_drop_pin_sends_single_fix(reporter, provider, backend):
    task = asyncio.ensure_future(reporter.drop_pin())
    await settle()
    provider.push_fix(fix(23.81))

    result = await task
    assert result.lat == 23.81
    assert backend.calls[-1][0] == "send_location"


@pytest.mark.asyncio
async def test_drop_pin_times_out(reporter, backend):
    with pytest.raises(LocationTransientError):
        await reporter.drop_pin()
    assert backend.count("send_location") == 0


@pytest.mark.asyncio
async def test_drop_pin_denied(reporter, provider):
    task = asyncio.ensure_future(reporter.drop_pin())
    await settle()
    provider.push_error(PositionError(PERMISSION_DENIED))
    with pytest.raises(LocationDenied):
        await task


@pytest.mark.asyncio
async def test_close_waits_for_transmissions(reporter, provider, backend):
    reporter.start_watch()
    provider.push_fix(fix())
    await reporter.async_close()
    assert reporter.sent_count == 1
    assert not reporter.watching
