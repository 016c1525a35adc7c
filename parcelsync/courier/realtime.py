"""Realtime channel - shared Socket.IO connection with room re-join on reconnect."""

import asyncio
import importlib
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..app.models import SessionUser, UserRole
from ..const import (
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    ROOM_AGENT,
    ROOM_CUSTOMER,
    ROOM_PARCEL,
    ROOM_USER,
    SOCKET_CLIENT_MODULE,
    SOCKET_PATH,
    SOCKET_TRANSPORTS,
)
from ..exceptions import TransportUnavailable

_LOGGER = logging.getLogger(__name__)

Room = Tuple[str, str]
EventHandler = Callable[[Any], Any]


def rooms_for(user: Optional[SessionUser], parcel_id: Optional[str] = None) -> List[Room]:
    """Return the join commands a view needs.

    Args:
        user: The session user; adds the user room and its role room
        parcel_id: Adds the parcel room when set
    """
    rooms: List[Room] = []
    if parcel_id:
        rooms.append((ROOM_PARCEL, parcel_id))
    if user is not None:
        rooms.append((ROOM_USER, user.id))
        if user.role is UserRole.CUSTOMER:
            rooms.append((ROOM_CUSTOMER, user.id))
        elif user.role is UserRole.AGENT:
            rooms.append((ROOM_AGENT, user.id))
    return rooms


class SocketClientLoader:
    """Load the Socket.IO client library once.

    Concurrent callers share a single pending import. A failed import is
    forgotten so that the next call tries again.
    """

    def __init__(
        self,
        module_name: str = SOCKET_CLIENT_MODULE,
        importer: Callable[[str], Any] = importlib.import_module,
    ) -> None:
        self._module_name = module_name
        self._importer = importer
        self._factory: Optional[Callable[..., Any]] = None
        self._pending: Optional["asyncio.Future[Callable[..., Any]]"] = None

    @property
    def loaded(self) -> bool:
        return self._factory is not None

    async def async_load(self) -> Callable[..., Any]:
        """Return the client factory (``socketio.AsyncClient``).

        Raises:
            TransportUnavailable: Outside an asyncio event loop, or if the
                client library cannot be imported
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as err:
            raise TransportUnavailable("Realtime needs a running asyncio event loop") from err

        if self._factory is not None:
            return self._factory

        if self._pending is None:
            self._pending = loop.create_task(self._async_import())
        pending = self._pending
        try:
            factory = await asyncio.shield(pending)
        except TransportUnavailable:
            if self._pending is pending:
                self._pending = None
            raise
        self._factory = factory
        return factory

    async def _async_import(self) -> Callable[..., Any]:
        loop = asyncio.get_running_loop()
        try:
            module = await loop.run_in_executor(None, self._importer, self._module_name)
        except ImportError as err:
            _LOGGER.error("Failed to load realtime client %s: %s", self._module_name, err)
            raise TransportUnavailable(f"Cannot import {self._module_name}") from err

        factory = getattr(module, "AsyncClient", None)
        if not callable(factory):
            raise TransportUnavailable(f"{self._module_name} has no AsyncClient")
        return factory


class ConnectionHandle:
    """One view's share of the realtime connection.

    Handlers are looked up when an event is dispatched, so subscribing again
    to the same event replaces the handler that runs from then on.
    """

    def __init__(self, manager: "RealtimeConnectionManager", rooms: Iterable[Room]) -> None:
        self._manager = manager
        self._rooms: List[Room] = list(dict.fromkeys(rooms))
        self._handlers: Dict[str, EventHandler] = {}
        self._active = True
        self.joined_generation = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def rooms(self) -> List[Room]:
        return list(self._rooms)

    def handler_for(self, event: str) -> Optional[EventHandler]:
        if not self._active:
            return None
        return self._handlers.get(event)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Route ``event`` to ``handler``; no-op once disconnected."""
        if not self._active:
            return
        self._handlers[event] = handler
        self._manager.register_event(event)

    def unsubscribe(self, event: str) -> None:
        self._handlers.pop(event, None)

    async def emit(self, event: str, payload: Any = None) -> None:
        """Send an event to the server; no-op once disconnected."""
        if not self._active:
            return
        await self._manager.async_emit(event, payload)

    async def join(self, command: str, room_id: str) -> None:
        """Add a room to this handle and join it now if connected."""
        if not self._active:
            return
        room = (command, room_id)
        if room in self._rooms:
            return
        self._rooms.append(room)
        await self._manager.async_emit(command, room_id)

    async def async_disconnect(self) -> None:
        """Drop this handle's listeners and release the connection.

        Safe to call more than once.
        """
        if not self._active:
            return
        self._active = False
        self._handlers.clear()
        await self._manager.async_release(self)


class RealtimeConnectionManager:
    """Reference-counted owner of the single realtime connection of a session."""

    def __init__(
        self,
        base_url: str,
        loader: Optional[SocketClientLoader] = None,
        access_token: Optional[str] = None,
        client_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            base_url: Server origin hosting ``/socket.io``
            loader: Client library loader, one per manager unless shared
            access_token: Sent as Socket.IO auth when set
            client_options: Keyword arguments for the client factory
        """
        self._base_url = base_url.rstrip("/")
        self._loader = loader or SocketClientLoader()
        self._access_token = access_token
        self._client_options = {"reconnection": True, **(client_options or {})}
        self._client: Any = None
        self._handles: List[ConnectionHandle] = []
        self._events: set[str] = set()
        self._registered: set[str] = set()
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def connected(self) -> bool:
        return bool(self._client is not None and getattr(self._client, "connected", False))

    @property
    def subscriber_count(self) -> int:
        return len(self._handles)

    async def async_connect(self, rooms: Iterable[Room] = ()) -> ConnectionHandle:
        """Acquire a handle on the shared connection, opening it if needed.

        Raises:
            TransportUnavailable: If no realtime client can be loaded or connected
        """
        handle = ConnectionHandle(self, rooms)
        self._handles.append(handle)
        try:
            client = await self._async_ensure_client()
        except TransportUnavailable:
            self._handles.remove(handle)
            await handle.async_disconnect()
            raise

        if self.connected and handle.joined_generation != self._generation:
            await self._async_join(client, handle)
        return handle

    async def _async_ensure_client(self) -> Any:
        async with self._lock:
            if self._client is not None:
                return self._client

            factory = await self._loader.async_load()
            client = factory(**self._client_options)
            client.on(EVENT_CONNECT, self._make_connect_handler(client))
            client.on(EVENT_DISCONNECT, self._make_disconnect_handler(client))
            self._client = client
            self._registered = set()
            for event in self._events:
                self._register(client, event)

            try:
                await client.connect(
                    self._base_url,
                    transports=SOCKET_TRANSPORTS,
                    socketio_path=SOCKET_PATH,
                    auth={"token": self._access_token} if self._access_token else None,
                )
            except Exception as err:  # pylint: disable=broad-except
                self._client = None
                self._registered = set()
                _LOGGER.warning("Realtime connection to %s failed: %s", self._base_url, err)
                raise TransportUnavailable(f"Cannot connect to {self._base_url}") from err
            return client

    def register_event(self, event: str) -> None:
        """Make sure ``event`` is dispatched to handles."""
        self._events.add(event)
        if self._client is not None:
            self._register(self._client, event)

    def _register(self, client: Any, event: str) -> None:
        if event in self._registered:
            return
        self._registered.add(event)
        client.on(event, self._make_dispatcher(client, event))

    def _make_dispatcher(self, client: Any, event: str) -> Callable[..., Any]:
        async def dispatch(*args: Any) -> None:
            if client is not self._client:
                return
            await self._async_dispatch(event, args[0] if args else None)

        return dispatch

    def _make_connect_handler(self, client: Any) -> Callable[..., Any]:
        async def on_connect(*_: Any) -> None:
            if client is not self._client:
                return
            self._generation += 1
            _LOGGER.info(
                "Realtime channel connected to %s, joining rooms for %d views",
                self._base_url,
                len(self._handles),
            )
            # Rooms do not survive a transport reconnect
            for handle in list(self._handles):
                await self._async_join(client, handle)

        return on_connect

    def _make_disconnect_handler(self, client: Any) -> Callable[..., Any]:
        async def on_disconnect(*args: Any) -> None:
            if client is self._client:
                _LOGGER.warning("Realtime channel disconnected: %s", args[0] if args else "")

        return on_disconnect

    async def _async_join(self, client: Any, handle: ConnectionHandle) -> None:
        handle.joined_generation = self._generation
        for command, room_id in handle.rooms:
            try:
                await client.emit(command, room_id)
            except Exception as err:  # pylint: disable=broad-except
                _LOGGER.warning("Failed to emit %s %s: %s", command, room_id, err)

    async def _async_dispatch(self, event: str, payload: Any) -> None:
        for handle in list(self._handles):
            handler = handle.handler_for(event)
            if handler is None:
                continue
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pylint: disable=broad-except
                _LOGGER.exception("Handler for %s failed", event)

    async def async_emit(self, event: str, payload: Any = None) -> None:
        """Send an event if the channel is up; dropped otherwise."""
        if not self.connected:
            _LOGGER.debug("Dropping %s, realtime channel not connected", event)
            return
        try:
            await self._client.emit(event, payload)
        except Exception as err:  # pylint: disable=broad-except
            _LOGGER.warning("Failed to emit %s: %s", event, err)

    async def async_release(self, handle: ConnectionHandle) -> None:
        """Release a handle; the last release closes the connection."""
        if handle in self._handles:
            self._handles.remove(handle)
        if self._handles:
            return
        await self._async_close_client()

    async def _async_close_client(self) -> None:
        async with self._lock:
            client = self._client
            self._client = None
            self._registered = set()
            if not self._handles:
                self._events = set()
            if client is None:
                return
            try:
                await client.disconnect()
            except Exception as err:  # pylint: disable=broad-except
                _LOGGER.warning("Error while disconnecting realtime channel: %s", err)
            _LOGGER.info("Realtime channel to %s closed", self._base_url)

    async def async_close(self) -> None:
        """Disconnect every handle and the underlying client."""
        for handle in list(self._handles):
            await handle.async_disconnect()
        await self._async_close_client()
