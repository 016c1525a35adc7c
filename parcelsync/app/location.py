"""Live location reporting for agents.

Position sampling is delegated to a ``PositionProvider``; the reporter
throttles fixes, transmits them through the API layer and keeps a status
indicator (idle, watching, denied, error, unsupported) for the view.
"""

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..const import (
    DEFAULT_DROP_PIN_TIMEOUT,
    DEFAULT_LOCATION_MIN_INTERVAL,
    LOCATION_DENIED,
    LOCATION_ERROR,
    LOCATION_IDLE,
    LOCATION_UNSUPPORTED,
    LOCATION_WATCHING,
)
from ..exceptions import (
    CourierApiError,
    LocationDenied,
    LocationError,
    LocationTransientError,
    LocationUnsupported,
)
from .models import PositionFix, is_valid_coordinate

if TYPE_CHECKING:
    from .api import ParcelTrackingAPI

_LOGGER = logging.getLogger(__name__)

# Error codes as reported by device position APIs
PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3


class PositionError(Exception):
    """A failure reported by a position provider."""

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        super().__init__(message or f"Position error {code}")


@dataclass(frozen=True)
class PositionOptions:
    """Sampling options passed to the provider."""

    high_accuracy: bool = True
    timeout: Optional[float] = None
    maximum_age: float = 0


FixCallback = Callable[[PositionFix], None]
ErrorCallback = Callable[[Exception], None]


class PositionProvider(ABC):
    """Source of device positions."""

    @abstractmethod
    def watch_position(
        self, on_fix: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> int:
        """Start continuous sampling and return a watch id."""

    @abstractmethod
    def clear_watch(self, watch_id: int) -> None:
        """Stop a watch started by ``watch_position``."""

    @abstractmethod
    async def get_current_position(self, options: PositionOptions) -> PositionFix:
        """Return a single fix.

        Raises:
            PositionError: If the position cannot be determined
        """


class CallbackPositionProvider(PositionProvider):
    """Provider fed by the host application.

    A device bridge (companion app webhook, serial GPS reader, test) calls
    ``push_fix`` and ``push_error``; every active watch receives them.
    """

    def __init__(self) -> None:
        self._watches: Dict[int, tuple[FixCallback, ErrorCallback]] = {}
        self._ids = itertools.count(1)
        self._waiters: list["asyncio.Future[PositionFix]"] = []

    @property
    def watch_count(self) -> int:
        return len(self._watches)

    def watch_position(
        self, on_fix: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> int:
        watch_id = next(self._ids)
        self._watches[watch_id] = (on_fix, on_error)
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        self._watches.pop(watch_id, None)

    async def get_current_position(self, options: PositionOptions) -> PositionFix:
        waiter: "asyncio.Future[PositionFix]" = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def push_fix(self, fix: PositionFix) -> None:
        """Deliver a fix to every watch and pending single-shot request."""
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(fix)
        for on_fix, _ in list(self._watches.values()):
            on_fix(fix)

    def push_error(self, error: PositionError) -> None:
        """Deliver an error to every watch and pending single-shot request."""
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(error)
        for _, on_error in list(self._watches.values()):
            on_error(error)


class WatchHandle:
    """Handle of one continuous watch."""

    def __init__(self, watch_id: Optional[int] = None) -> None:
        self.watch_id = watch_id
        self._active = watch_id is not None

    @property
    def active(self) -> bool:
        return self._active

    def _close(self) -> Optional[int]:
        watch_id = self.watch_id if self._active else None
        self._active = False
        return watch_id


class LiveLocationReporter:
    """Sample the agent position and send it to the server."""

    def __init__(
        self,
        api: "ParcelTrackingAPI",
        provider: Optional[PositionProvider],
        parcel_id: Optional[str] = None,
        min_interval: float = DEFAULT_LOCATION_MIN_INTERVAL,
        drop_pin_timeout: float = DEFAULT_DROP_PIN_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the reporter.

        Args:
            api: API layer used to transmit fixes
            provider: Position source, None when the device has none
            parcel_id: Parcel the fixes are reported for, if any
            min_interval: Minimum seconds between two transmitted watch fixes
            drop_pin_timeout: Bound of a single-shot fix in seconds
            clock: Monotonic clock used for throttling
        """
        self._api = api
        self._provider = provider
        self.parcel_id = parcel_id
        self._min_interval = min_interval
        self._drop_pin_timeout = drop_pin_timeout
        self._clock = clock
        self._status = LOCATION_IDLE
        self._last_error: Optional[Exception] = None
        self._last_sent_at: Optional[float] = None
        self._last_fix: Optional[PositionFix] = None
        self._handle: Optional[WatchHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[Callable[[str], None]] = []
        self.sent_count = 0
        self.closed = False

    @property
    def status(self) -> str:
        return self._status

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def last_fix(self) -> Optional[PositionFix]:
        return self._last_fix

    @property
    def watching(self) -> bool:
        return self._handle is not None and self._handle.active

    def add_listener(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call ``listener`` with the new status on every change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_status(self, status: str, error: Optional[Exception] = None) -> None:
        self._last_error = error
        if status == self._status:
            return
        self._status = status
        for listener in list(self._listeners):
            listener(status)

    def start_watch(
        self,
        on_fix: Optional[FixCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> WatchHandle:
        """Begin continuous high-accuracy sampling.

        Without a provider the status becomes ``unsupported``, ``on_error``
        receives LocationUnsupported right away and a stopped handle is
        returned.
        """
        if self._provider is None:
            error = LocationUnsupported("Device has no position capability")
            self._set_status(LOCATION_UNSUPPORTED, error)
            if on_error is not None:
                on_error(error)
            return WatchHandle()

        if self.watching:
            self.stop_watch(self._handle)

        handle = WatchHandle()

        def handle_fix(fix: PositionFix) -> None:
            if not handle.active:
                return
            self._on_fix(fix, on_error)
            if on_fix is not None:
                on_fix(fix)

        def handle_error(error: Exception) -> None:
            if not handle.active:
                return
            self._on_position_error(handle, error, on_error)

        handle.watch_id = self._provider.watch_position(
            handle_fix, handle_error, PositionOptions(high_accuracy=True)
        )
        handle._active = True
        self._handle = handle
        self.closed = False
        self._last_sent_at = None
        self._set_status(LOCATION_WATCHING)
        _LOGGER.debug("Started position watch %s", handle.watch_id)
        return handle

    def stop_watch(self, handle: Optional[WatchHandle] = None) -> None:
        """Stop a watch; calling it again or on a stopped handle does nothing."""
        handle = handle or self._handle
        if handle is None:
            return
        watch_id = handle._close()
        if watch_id is not None and self._provider is not None:
            self._provider.clear_watch(watch_id)
            _LOGGER.debug("Stopped position watch %s", watch_id)
        if handle is self._handle:
            self._handle = None
            if self._status == LOCATION_WATCHING or self._status == LOCATION_ERROR:
                self._set_status(LOCATION_IDLE)

    def _on_fix(self, fix: PositionFix, on_error: Optional[ErrorCallback]) -> None:
        if not is_valid_coordinate(fix.lat, fix.lng):
            _LOGGER.debug("Ignoring fix without coordinates")
            return
        self._last_fix = fix
        now = self._clock()
        if self._last_sent_at is not None and now - self._last_sent_at < self._min_interval:
            return
        self._last_sent_at = now
        self._spawn(self._async_transmit(fix, on_error))

    def _on_position_error(
        self, handle: WatchHandle, error: Exception, on_error: Optional[ErrorCallback]
    ) -> None:
        code = getattr(error, "code", None)
        if code == PERMISSION_DENIED:
            _LOGGER.warning("Location permission denied, stopping watch")
            reported: LocationError = LocationDenied(str(error))
            self._set_status(LOCATION_DENIED, reported)
            self.stop_watch(handle)
        else:
            _LOGGER.warning("Transient location error: %s", error)
            reported = LocationTransientError(str(error))
            self._set_status(LOCATION_ERROR, reported)
        if on_error is not None:
            on_error(reported)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _async_transmit(
        self, fix: PositionFix, on_error: Optional[ErrorCallback] = None
    ) -> bool:
        try:
            await self._api.report_location(fix, self.parcel_id)
        except CourierApiError as err:
            # Keep sampling; the next fix may go through
            _LOGGER.warning("Failed to send location: %s", err)
            error = LocationTransientError(str(err))
            if self.watching:
                self._set_status(LOCATION_ERROR, error)
            if on_error is not None:
                on_error(error)
            return False
        self.sent_count += 1
        if self.watching and self._status == LOCATION_ERROR:
            self._set_status(LOCATION_WATCHING)
        return True

    async def drop_pin(self) -> PositionFix:
        """Send one high-accuracy fix on demand.

        Raises:
            LocationUnsupported: If there is no provider
            LocationDenied: If the user refused access
            LocationTransientError: On timeout, unavailable position or send failure
        """
        if self._provider is None:
            raise LocationUnsupported("Device has no position capability")

        options = PositionOptions(high_accuracy=True, timeout=self._drop_pin_timeout)
        try:
            fix = await asyncio.wait_for(
                self._provider.get_current_position(options), timeout=self._drop_pin_timeout
            )
        except asyncio.TimeoutError as err:
            raise LocationTransientError(
                f"No position within {self._drop_pin_timeout:g} seconds"
            ) from err
        except PositionError as err:
            if err.code == PERMISSION_DENIED:
                raise LocationDenied(str(err)) from err
            raise LocationTransientError(str(err)) from err

        if not is_valid_coordinate(fix.lat, fix.lng):
            raise LocationTransientError("Position has no usable coordinates")

        self._last_fix = fix
        try:
            await self._api.report_location(fix, self.parcel_id)
        except CourierApiError as err:
            raise LocationTransientError(f"Failed to send location: {err}") from err
        self.sent_count += 1
        return fix

    async def async_close(self) -> None:
        """Stop the watch and wait for transmissions still in flight."""
        self.stop_watch()
        self.closed = True
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
