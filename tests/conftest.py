from __future__ import annotations

from collections.abc import Callable

import pytest

from hudctl.core.connection import ConnectionManager, ConnectionObserver
from hudctl.core.errors import TransportOpenError
from hudctl.core.model import (
    Direction,
    DriverProfile,
    EndpointDescriptor,
    InterfaceDescriptor,
    MatchMode,
    MatchRules,
    PeripheralDescriptor,
    TransportSpec,
)
from hudctl.core.registry import DriverRegistry
from hudctl.core.subscription import Subscription

BULK_OUT = EndpointDescriptor(address=0x01, direction=Direction.OUT)
BULK_IN = EndpointDescriptor(address=0x81, direction=Direction.IN)


def _descriptor(
    handle: str = "/dev/ttyUSB0",
    vid: int = 0x0403,
    pid: int = 0x6001,
    *,
    device_class: int = 0xFF,
    interfaces: tuple[InterfaceDescriptor, ...] | None = None,
    product: str | None = "Test HUD",
) -> PeripheralDescriptor:
    if interfaces is None:
        interfaces = (InterfaceDescriptor(number=0, interface_class=0xFF, endpoints=(BULK_OUT, BULK_IN)),)
    return PeripheralDescriptor(
        handle=handle,
        vendor_id=vid,
        product_id=pid,
        device_class=device_class,
        interfaces=interfaces,
        product_name=product,
    )


def _profile(
    profile_id: str = "hud",
    *,
    mode: MatchMode = MatchMode.ANY,
    ids: tuple[tuple[int, int], ...] = (),
    timeout_s: float = 1.0,
) -> DriverProfile:
    return DriverProfile(
        id=profile_id,
        name=profile_id.upper(),
        manufacturer="Test",
        match=MatchRules(mode=mode, ids=ids),
        transport=TransportSpec(type="serial", timeout_s=timeout_s),
    )


class FakeHandle:
    def __init__(self, *, claim: bool = True, transfer: int | Callable[[bytes], int] | None = None) -> None:
        self.claim = claim
        self.transfer = transfer
        self.claimed: list[int] = []
        self.writes: list[bytes] = []
        self.timeouts: list[int] = []
        self.closed = False

    def claim_interface(self, interface: InterfaceDescriptor) -> bool:
        self.claimed.append(interface.number)
        return self.claim

    def bulk_transfer(self, endpoint: EndpointDescriptor, data: bytes, timeout_ms: int) -> int:
        self.writes.append(data)
        self.timeouts.append(timeout_ms)
        if self.transfer is None:
            return len(data)
        if callable(self.transfer):
            return self.transfer(data)
        return self.transfer

    def close(self) -> None:
        self.closed = True


class FakeHost:
    def __init__(self, devices: list[PeripheralDescriptor] | None = None, *, granted: set[str] | None = None) -> None:
        self.devices = list(devices or [])
        self.granted = {d.handle for d in self.devices} if granted is None else set(granted)
        self.permission_requests: list[tuple[PeripheralDescriptor, Callable[[PeripheralDescriptor, bool], None]]] = []
        self.handles: list[FakeHandle] = []
        self.open_error: str | None = None
        self.claim = True
        self.transfer: int | Callable[[bytes], int] | None = None
        self.watchers: list[tuple[Callable, Callable]] = []

    def enumerate(self) -> list[PeripheralDescriptor]:
        return list(self.devices)

    def has_permission(self, descriptor: PeripheralDescriptor) -> bool:
        return descriptor.handle in self.granted

    def request_permission(self, descriptor, callback) -> None:
        self.permission_requests.append((descriptor, callback))

    def answer_permission(self, descriptor: PeripheralDescriptor, granted: bool = True) -> None:
        _, callback = self.permission_requests[-1]
        if granted:
            self.granted.add(descriptor.handle)
        callback(descriptor, granted)

    def open(self, descriptor, spec) -> FakeHandle:
        if self.open_error:
            raise TransportOpenError(self.open_error)
        handle = FakeHandle(claim=self.claim, transfer=self.transfer)
        self.handles.append(handle)
        return handle

    def watch(self, on_attached, on_detached) -> Subscription:
        entry = (on_attached, on_detached)
        self.watchers.append(entry)
        return Subscription(lambda: self.watchers.remove(entry))

    def attach(self, descriptor: PeripheralDescriptor) -> None:
        self.devices.append(descriptor)
        for on_attached, _ in list(self.watchers):
            on_attached(descriptor)

    def detach(self, descriptor: PeripheralDescriptor) -> None:
        self.devices = [d for d in self.devices if d.handle != descriptor.handle]
        for _, on_detached in list(self.watchers):
            on_detached(descriptor)


class RecordingObserver(ConnectionObserver):
    def __init__(self) -> None:
        self.events: list[tuple] = []
        self.device_lists: list[list[PeripheralDescriptor]] = []

    def on_connected(self, driver) -> None:
        self.events.append(("connected", driver))

    def on_disconnected(self) -> None:
        self.events.append(("disconnected",))

    def on_connection_failed(self, error) -> None:
        self.events.append(("failed", error))

    def on_devices_changed(self, descriptors) -> None:
        self.device_lists.append(descriptors)

    def kinds(self) -> list[str]:
        return [event[0] for event in self.events]


@pytest.fixture
def make_descriptor():
    return _descriptor


@pytest.fixture
def make_profile():
    return _profile


@pytest.fixture
def fake_host_cls():
    return FakeHost


@pytest.fixture
def build_manager():
    def _build(host: FakeHost, *profiles: DriverProfile, strict: bool = False):
        registry = DriverRegistry.from_profiles(profiles or (_profile(),), host, strict=strict)
        manager = ConnectionManager(host, registry)
        observer = RecordingObserver()
        manager.subscribe(observer)
        return manager, observer

    return _build
