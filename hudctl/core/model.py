"""Core data models used across profiles, drivers, connection, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Direction(str, Enum):
    OUT = "out"
    IN = "in"


@dataclass(frozen=True)
class EndpointDescriptor:
    address: int
    direction: Direction
    transfer_type: str = "bulk"


@dataclass(frozen=True)
class InterfaceDescriptor:
    number: int
    interface_class: int
    interface_subclass: int = 0
    endpoints: tuple[EndpointDescriptor, ...] = ()

    def outbound_endpoint(self) -> EndpointDescriptor | None:
        for endpoint in self.endpoints:
            if endpoint.direction is Direction.OUT:
                return endpoint
        return None


@dataclass(frozen=True)
class PeripheralDescriptor:
    """Snapshot of an attached peripheral taken at enumeration time.

    `handle` is the opaque platform identity (a device node on desktop hosts)
    and is what permission grants and detach notifications are matched on.
    """

    handle: str
    vendor_id: int
    product_id: int
    device_class: int = 0
    device_subclass: int = 0
    interfaces: tuple[InterfaceDescriptor, ...] = ()
    product_name: str | None = None
    manufacturer: str | None = None
    serial_number: str | None = None

    @property
    def interface_count(self) -> int:
        return len(self.interfaces)

    @property
    def usb_id(self) -> str:
        return f"{self.vendor_id:04x}:{self.product_id:04x}"

    @property
    def display_name(self) -> str:
        if self.product_name:
            return self.product_name
        return f"USB Device 0x{self.vendor_id:04X}:0x{self.product_id:04X}"

    def same_device(self, other: PeripheralDescriptor | None) -> bool:
        return other is not None and other.handle == self.handle


class MatchMode(str, Enum):
    EXACT = "exact"
    HEURISTIC = "heuristic"
    ANY = "any"


@dataclass(frozen=True)
class MatchRules:
    mode: MatchMode = MatchMode.HEURISTIC
    ids: tuple[tuple[int, int], ...] = ()
    vendor_ids: tuple[int, ...] = ()
    interface_classes: tuple[int, ...] = ()


@dataclass(frozen=True)
class TransportSpec:
    type: str = "serial"
    baudrate: int = 115200
    timeout_s: float = 1.0
    interface: int = 0


@dataclass(frozen=True)
class DriverProfile:
    id: str
    name: str
    manufacturer: str
    match: MatchRules
    transport: TransportSpec
    enabled: bool = True


@dataclass(frozen=True)
class Position:
    lat: float
    lon: float
    alt: float
    heading: float = 0.0
    callsign: str = ""


@dataclass(frozen=True)
class TelemetryMessage:
    uid: str
    type: str
    how: str
    lat: float
    lon: float
    hae: float
    ce: float
    le: float
    heading: float
    callsign: str
    time: datetime
    stale: datetime

    @property
    def start(self) -> datetime:
        return self.time


@dataclass(frozen=True)
class TransferResult:
    requested: int
    sent: int

    @property
    def partial(self) -> bool:
        return self.sent < self.requested


class ConnectionState(str, Enum):
    IDLE = "idle"
    PERMISSION_PENDING = "permission_pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class UpdateRate(Enum):
    HZ_1 = 1
    HZ_5 = 5
    HZ_10 = 10

    @property
    def period_s(self) -> float:
        return 1.0 / self.value

    @classmethod
    def from_hz(cls, hz: int) -> UpdateRate:
        for rate in cls:
            if rate.value == hz:
                return rate
        allowed = ", ".join(str(rate.value) for rate in cls)
        raise ValueError(f"Unsupported update rate {hz} Hz. Allowed: {allowed}")
