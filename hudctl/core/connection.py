"""Connection lifecycle: discovery, permission, hotplug, and the active driver."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from hudctl.core.device_match import describe
from hudctl.core.driver import HudDriver
from hudctl.core.errors import (
    ConnectionBusyError,
    ConnectionCancelledError,
    DeviceDetachedError,
    DeviceSelectionError,
    HudctlError,
    NoCompatibleDriverError,
    PermissionDeniedError,
)
from hudctl.core.model import ConnectionState, PeripheralDescriptor
from hudctl.core.registry import DriverRegistry
from hudctl.core.subscription import Subscription
from hudctl.transports.base import PeripheralHost

LOGGER = logging.getLogger(__name__)


class ConnectionObserver:
    """Receives connection events on the manager's event loop.

    Exactly one of `on_connected`, `on_disconnected`, `on_connection_failed`
    fires per connection attempt. `on_devices_changed` follows hotplug
    refreshes and is unrelated to attempts.
    """

    def on_connected(self, driver: HudDriver) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_connection_failed(self, error: HudctlError) -> None:
        pass

    def on_devices_changed(self, descriptors: list[PeripheralDescriptor]) -> None:
        pass


@dataclass(frozen=True)
class _PlatformEvent:
    kind: str
    descriptor: PeripheralDescriptor
    granted: bool = False


class ConnectionManager:
    """Owns the single connection of a hudctl session.

    All state transitions happen on the asyncio loop passed to `start()`.
    Platform notifications may arrive on any thread; they are queued onto
    that loop and handled one at a time. Blocking driver work runs in
    worker threads.
    """

    def __init__(self, host: PeripheralHost, registry: DriverRegistry) -> None:
        self._host = host
        self._registry = registry
        self._state = ConnectionState.IDLE
        self._driver: HudDriver | None = None
        self._descriptor: PeripheralDescriptor | None = None
        self._last_error: HudctlError | None = None
        self._attempt_id = 0
        self._observers: list[ConnectionObserver] = []
        self._available: list[PeripheralDescriptor] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[_PlatformEvent] | None = None
        self._pump: asyncio.Task[None] | None = None
        self._hotplug: Subscription | None = None
        self._attempt_task: asyncio.Task[None] | None = None
        self._teardowns: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def driver(self) -> HudDriver | None:
        return self._driver

    @property
    def descriptor(self) -> PeripheralDescriptor | None:
        return self._descriptor

    @property
    def last_error(self) -> HudctlError | None:
        return self._last_error

    @property
    def available(self) -> list[PeripheralDescriptor]:
        return list(self._available)

    @property
    def is_ready(self) -> bool:
        driver = self._driver
        return driver is not None and driver.is_connected

    def subscribe(self, observer: ConnectionObserver) -> Subscription:
        self._observers.append(observer)

        def _release() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return Subscription(_release)

    async def start(self) -> None:
        if self._pump is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._pump = asyncio.create_task(self._pump_events(), name="hudctl-platform-events")
        self._hotplug = self._host.watch(self.notify_attached, self.notify_detached)
        LOGGER.debug("Connection manager started with %d driver(s)", len(self._registry))

    async def close(self) -> None:
        if self._hotplug is not None:
            self._hotplug.close()
            self._hotplug = None
        await self.disconnect()
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
            self._pump = None
        self._events = None
        self._loop = None
        LOGGER.debug("Connection manager closed")

    async def __aenter__(self) -> ConnectionManager:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def list_available(self) -> list[PeripheralDescriptor]:
        descriptors = await asyncio.to_thread(self._host.enumerate)
        available = [d for d in descriptors if self._registry.accepts(d)]
        self._available = available
        LOGGER.debug("Found %d potential HUD device(s) of %d attached", len(available), len(descriptors))
        return list(available)

    async def request_connection(self, descriptor: PeripheralDescriptor | None) -> None:
        """Start connecting to `descriptor`.

        With platform permission already granted this awaits the whole
        attempt. Otherwise it returns in PERMISSION_PENDING and the outcome
        arrives through the observers.
        """
        if self._events is None:
            raise RuntimeError("ConnectionManager.start() must be awaited first")
        if descriptor is None:
            raise DeviceSelectionError("Please select a valid device")

        await self._drain_events()
        selected = self._find_available(descriptor)
        if selected is None:
            await self.list_available()
            selected = self._find_available(descriptor)
        if selected is None:
            raise DeviceSelectionError(f"Device {descriptor.handle} is not an available HUD device")

        if self._state is ConnectionState.CONNECTED:
            LOGGER.info("Replacing connection to %s", self._descriptor.handle if self._descriptor else "?")
            self._release_current()
            await self._await_teardowns()
        self._check_not_busy()
        if self._state is not ConnectionState.IDLE:
            raise ConnectionBusyError("Another connection was established concurrently")

        attempt = self._next_attempt()
        if self._host.has_permission(selected):
            LOGGER.debug("Already have permission, connecting directly to %s", selected.handle)
            await self._connect(selected, attempt)
            return

        LOGGER.info("Requesting USB permission for device %s", selected.handle)
        self._descriptor = selected
        self._set_state(ConnectionState.PERMISSION_PENDING)
        self._host.request_permission(selected, self.notify_permission)

    async def disconnect(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            self._release_current()
        elif self._state in (ConnectionState.PERMISSION_PENDING, ConnectionState.CONNECTING):
            self._abandon_attempt(ConnectionCancelledError("Connection attempt cancelled"))
        await self._await_teardowns()

    async def settle(self) -> None:
        """Wait for queued notifications and in-flight connect/teardown work."""
        while True:
            await self._drain_events()
            pending = [t for t in (self._attempt_task, *self._teardowns) if t is not None and not t.done()]
            if not pending and (self._events is None or self._events.empty()):
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def notify_permission(self, descriptor: PeripheralDescriptor, granted: bool) -> None:
        self._post(_PlatformEvent("permission", descriptor, granted))

    def notify_attached(self, descriptor: PeripheralDescriptor) -> None:
        self._post(_PlatformEvent("attached", descriptor))

    def notify_detached(self, descriptor: PeripheralDescriptor) -> None:
        self._post(_PlatformEvent("detached", descriptor))

    def _post(self, event: _PlatformEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            LOGGER.warning("Dropping %s notification for %s; manager not running", event.kind, event.descriptor.handle)
            return
        loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: _PlatformEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    async def _drain_events(self) -> None:
        await asyncio.sleep(0)
        if self._events is not None and self._pump is not None:
            await self._events.join()

    async def _pump_events(self) -> None:
        events = self._events
        assert events is not None
        while True:
            event = await events.get()
            try:
                await self._handle(event)
            except Exception:
                LOGGER.exception("Error handling %s notification for %s", event.kind, event.descriptor.handle)
            finally:
                events.task_done()

    async def _handle(self, event: _PlatformEvent) -> None:
        if event.kind == "permission":
            self._on_permission(event.descriptor, event.granted)
        elif event.kind == "attached":
            LOGGER.info("USB device attached: %s", describe(event.descriptor))
            await self._refresh()
        elif event.kind == "detached":
            LOGGER.info("USB device detached: %s", event.descriptor.handle)
            self._on_detached(event.descriptor)
            await self._refresh()

    def _on_permission(self, descriptor: PeripheralDescriptor, granted: bool) -> None:
        if self._state is not ConnectionState.PERMISSION_PENDING or not descriptor.same_device(self._descriptor):
            LOGGER.debug("Ignoring permission result for %s", descriptor.handle)
            return
        if not granted:
            LOGGER.warning("USB permission denied for device %s", descriptor.handle)
            self._fail(self._attempt_id, PermissionDeniedError("USB permission denied"))
            return
        LOGGER.info("USB permission granted for device %s", descriptor.handle)
        target = self._descriptor
        assert target is not None
        self._attempt_task = asyncio.create_task(self._connect(target, self._attempt_id))

    def _on_detached(self, descriptor: PeripheralDescriptor) -> None:
        if not descriptor.same_device(self._descriptor):
            return
        if self._state is ConnectionState.CONNECTED:
            self._release_current()
        elif self._state in (ConnectionState.PERMISSION_PENDING, ConnectionState.CONNECTING):
            self._abandon_attempt(DeviceDetachedError(f"Device {descriptor.handle} detached during connection"))

    async def _refresh(self) -> None:
        try:
            available = await self.list_available()
        except HudctlError as exc:
            LOGGER.warning("Device list refresh failed: %s", exc)
            return
        self._emit("on_devices_changed", available)

    async def _connect(self, descriptor: PeripheralDescriptor, attempt: int) -> None:
        self._descriptor = descriptor
        self._set_state(ConnectionState.CONNECTING)

        candidates = self._registry.compatible(descriptor)
        if not candidates:
            self._fail(attempt, NoCompatibleDriverError("No compatible HUD driver found for device"))
            return

        error: HudctlError | None = None
        for prototype in candidates:
            driver = prototype.spawn()
            LOGGER.debug("Attempting connection with %s driver", driver.name)
            try:
                await asyncio.to_thread(driver.connect, descriptor)
            except HudctlError as exc:
                error = exc
                LOGGER.warning("Failed to connect with %s driver: %s", driver.name, exc)
                if attempt != self._attempt_id:
                    return
                continue

            if attempt != self._attempt_id:
                LOGGER.info("Discarding connection to %s; attempt was abandoned", descriptor.handle)
                self._spawn_teardown(driver)
                return

            self._driver = driver
            self._last_error = None
            self._set_state(ConnectionState.CONNECTED)
            LOGGER.info("Successfully connected to %s", driver.name)
            self._emit("on_connected", driver)
            return

        assert error is not None
        self._fail(attempt, error)

    def _fail(self, attempt: int, error: HudctlError) -> None:
        if attempt != self._attempt_id:
            return
        self._descriptor = None
        self._last_error = error
        self._set_state(ConnectionState.IDLE)
        LOGGER.error("Connection failed: %s", error)
        self._emit("on_connection_failed", error)

    def _abandon_attempt(self, error: HudctlError) -> None:
        attempt = self._attempt_id
        self._fail(attempt, error)
        self._next_attempt()

    def _release_current(self) -> None:
        driver = self._driver
        self._driver = None
        self._descriptor = None
        self._set_state(ConnectionState.IDLE)
        if driver is not None:
            self._spawn_teardown(driver)
        LOGGER.info("Disconnected from HUD device")
        self._emit("on_disconnected")

    def _spawn_teardown(self, driver: HudDriver) -> None:
        task = asyncio.create_task(asyncio.to_thread(driver.disconnect))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def _await_teardowns(self) -> None:
        if self._teardowns:
            await asyncio.gather(*self._teardowns)

    def _check_not_busy(self) -> None:
        if any(not task.done() for task in self._teardowns):
            raise ConnectionBusyError("Previous connection is still shutting down; retry shortly")
        if self._state in (ConnectionState.PERMISSION_PENDING, ConnectionState.CONNECTING):
            raise ConnectionBusyError("A connection attempt is already in progress")

    def _find_available(self, descriptor: PeripheralDescriptor) -> PeripheralDescriptor | None:
        for candidate in self._available:
            if candidate.same_device(descriptor):
                return candidate
        return None

    def _next_attempt(self) -> int:
        self._attempt_id += 1
        return self._attempt_id

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            LOGGER.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state

    def _emit(self, callback: str, *args: object) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, callback)(*args)
            except Exception:
                LOGGER.exception("Observer %r failed in %s", observer, callback)
