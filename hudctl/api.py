"""Stable public API for building tooling on top of hudctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from hudctl.core.connection import ConnectionManager, ConnectionObserver
from hudctl.core.cot import CotData, encode_position, format_for_hud, parse_cot
from hudctl.core.device_match import select_descriptor
from hudctl.core.driver import HudDriver, SerialHudDriver
from hudctl.core.errors import (
    ConnectionBusyError,
    ConnectionCancelledError,
    CotParseError,
    DeviceDetachedError,
    DeviceDiscoveryError,
    DeviceSelectionError,
    HudctlError,
    InterfaceClaimError,
    MessageEncodeError,
    NoCompatibleDriverError,
    NoInterfaceError,
    NoOutboundEndpointError,
    NotConnectedError,
    PermissionDeniedError,
    ProfileLoadError,
    ProfileValidationError,
    TransferError,
    TransportError,
    TransportOpenError,
)
from hudctl.core.model import (
    ConnectionState,
    DriverProfile,
    PeripheralDescriptor,
    Position,
    TelemetryMessage,
    TransferResult,
    UpdateRate,
)
from hudctl.core.profile_loader import load_profiles
from hudctl.core.registry import DriverRegistry
from hudctl.core.streaming import PositionSource, StaticPosition, StatusCallback, StreamingScheduler, StreamStatus
from hudctl.transports.base import PeripheralHost
from hudctl.transports.serial_port import SerialHost

__all__ = [
    "HudctlError",
    "ProfileLoadError",
    "ProfileValidationError",
    "DeviceDiscoveryError",
    "DeviceSelectionError",
    "NoCompatibleDriverError",
    "PermissionDeniedError",
    "ConnectionBusyError",
    "ConnectionCancelledError",
    "DeviceDetachedError",
    "NotConnectedError",
    "MessageEncodeError",
    "CotParseError",
    "TransportError",
    "TransportOpenError",
    "InterfaceClaimError",
    "NoInterfaceError",
    "NoOutboundEndpointError",
    "TransferError",
    "ConnectionState",
    "DriverProfile",
    "PeripheralDescriptor",
    "Position",
    "TelemetryMessage",
    "TransferResult",
    "UpdateRate",
    "CotData",
    "encode_position",
    "parse_cot",
    "format_for_hud",
    "HudDriver",
    "SerialHudDriver",
    "DriverRegistry",
    "ConnectionManager",
    "ConnectionObserver",
    "StreamingScheduler",
    "StreamStatus",
    "StaticPosition",
    "SerialHost",
    "AttachedDevice",
    "HudLink",
    "TEST_POSITION",
]

TEST_POSITION = Position(lat=39.2, lon=-77.0, alt=121.0, heading=270.0, callsign="TEST")


@dataclass(frozen=True)
class AttachedDevice:
    """Diagnostic view of one attached peripheral."""

    descriptor: PeripheralDescriptor
    has_permission: bool
    driver_id: str | None


class _ConnectionWaiter(ConnectionObserver):
    def __init__(self) -> None:
        self.future: asyncio.Future[HudDriver] = asyncio.get_running_loop().create_future()

    def on_connected(self, driver: HudDriver) -> None:
        if not self.future.done():
            self.future.set_result(driver)

    def on_connection_failed(self, error: HudctlError) -> None:
        if not self.future.done():
            self.future.set_exception(error)


class HudLink:
    """Owns one host, driver registry, connection manager and stream.

    Use as an async context manager so hotplug monitoring and the
    connection are released on exit.
    """

    def __init__(
        self,
        *,
        host: PeripheralHost | None = None,
        positions: PositionSource | None = None,
        rate: UpdateRate = UpdateRate.HZ_1,
        strict: bool = False,
        on_status: StatusCallback | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.host = host or SerialHost()
        self.positions = positions or StaticPosition()
        self.registry = DriverRegistry.from_profiles(loaded.enabled(), self.host, strict=strict)
        self.manager = ConnectionManager(self.host, self.registry)
        self.scheduler = StreamingScheduler(self.manager, self.positions, rate=rate, on_status=on_status)

    async def start(self) -> None:
        await self.manager.start()

    async def close(self) -> None:
        self.scheduler.close()
        await self.manager.close()

    async def __aenter__(self) -> HudLink:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def list_available(self) -> list[PeripheralDescriptor]:
        return await self.manager.list_available()

    async def list_attached(self) -> list[AttachedDevice]:
        descriptors = await asyncio.to_thread(self.host.enumerate)
        attached = []
        for descriptor in descriptors:
            driver = self.registry.find_compatible(descriptor)
            attached.append(
                AttachedDevice(
                    descriptor=descriptor,
                    has_permission=self.host.has_permission(descriptor),
                    driver_id=driver.id if driver else None,
                )
            )
        return attached

    async def resolve_device(self, hint: str | None = None) -> PeripheralDescriptor:
        return select_descriptor(await self.list_available(), hint)

    async def connect(self, descriptor: PeripheralDescriptor, *, timeout_s: float = 10.0) -> HudDriver:
        """Connect and wait for the outcome, including any permission grant."""
        waiter = _ConnectionWaiter()
        with self.manager.subscribe(waiter):
            await self.manager.request_connection(descriptor)
            try:
                return await asyncio.wait_for(waiter.future, timeout_s)
            except asyncio.TimeoutError:
                await self.manager.disconnect()
                raise ConnectionCancelledError(
                    f"Timed out after {timeout_s:g}s waiting to connect to {descriptor.handle}"
                ) from None

    async def disconnect(self) -> None:
        self.scheduler.stop()
        await self.manager.disconnect()

    def start_streaming(self) -> None:
        self.scheduler.start()

    def stop_streaming(self) -> None:
        self.scheduler.stop()

    async def send_test_position(self, callsign: str | None = None) -> bool:
        driver = self.manager.driver
        if driver is None or not driver.is_connected:
            raise NotConnectedError("Not connected to HUD device")
        return await asyncio.to_thread(
            driver.send_position,
            TEST_POSITION.lat,
            TEST_POSITION.lon,
            TEST_POSITION.alt,
            TEST_POSITION.heading,
            callsign or TEST_POSITION.callsign,
        )
