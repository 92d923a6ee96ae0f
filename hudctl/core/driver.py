"""HUD driver implementations."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from hudctl.core.cot import encode_position
from hudctl.core.device_match import supports
from hudctl.core.errors import (
    HudctlError,
    InterfaceClaimError,
    NoInterfaceError,
    NoOutboundEndpointError,
    NotConnectedError,
    PermissionDeniedError,
    TransferError,
    TransportOpenError,
)
from hudctl.core.model import (
    DriverProfile,
    EndpointDescriptor,
    PeripheralDescriptor,
    TransferResult,
)
from hudctl.transports.base import PeripheralHost, TransportHandle

LOGGER = logging.getLogger(__name__)


class HudDriver(ABC):
    """One peripheral family: identification plus a single live connection.

    Instances kept in the registry are prototypes used for `identify`; the
    connection manager binds a fresh instance from `spawn()` per attempt.
    """

    def __init__(self, profile: DriverProfile, host: PeripheralHost, *, strict: bool = False) -> None:
        self.profile = profile
        self._host = host
        self._strict = strict
        self.last_error: str | None = None
        self.last_warning: str | None = None
        self.last_transfer: TransferResult | None = None

    @property
    def id(self) -> str:
        return self.profile.id

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def manufacturer(self) -> str:
        return self.profile.manufacturer

    def spawn(self) -> HudDriver:
        return type(self)(self.profile, self._host, strict=self._strict)

    def identify(self, descriptor: PeripheralDescriptor) -> bool:
        return supports(descriptor, self.profile.match, strict=self._strict, driver_id=self.id)

    @abstractmethod
    def connect(self, descriptor: PeripheralDescriptor) -> None:
        """Claim the peripheral; raise a HudctlError subclass on failure."""

    @abstractmethod
    def disconnect(self) -> None:
        """Release the peripheral. Safe to call repeatedly."""

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def transmit(self, data: bytes) -> TransferResult:
        """Send `data` to the peripheral; raise on hard failure."""

    @property
    @abstractmethod
    def status_string(self) -> str: ...

    def send_cot(self, cot_xml: str) -> bool:
        try:
            result = self.transmit(cot_xml.encode("utf-8"))
        except HudctlError as exc:
            self.last_error = str(exc)
            LOGGER.error("%s send failed: %s", self.name, exc)
            return False
        LOGGER.debug("Sent %d/%d bytes to %s", result.sent, result.requested, self.name)
        return True

    def send_position(self, lat: float, lon: float, alt: float, heading: float, callsign: str | None) -> bool:
        try:
            cot_xml = encode_position(lat, lon, alt, heading, callsign)
        except HudctlError as exc:
            self.last_error = str(exc)
            LOGGER.error("Could not encode position for %s: %s", self.name, exc)
            return False
        return self.send_cot(cot_xml)


class SerialHudDriver(HudDriver):
    """Driver for HUDs that take CoT over a single outbound bulk/serial channel."""

    def __init__(self, profile: DriverProfile, host: PeripheralHost, *, strict: bool = False) -> None:
        super().__init__(profile, host, strict=strict)
        self._lock = threading.RLock()
        self._descriptor: PeripheralDescriptor | None = None
        self._handle: TransportHandle | None = None
        self._endpoint_out: EndpointDescriptor | None = None

    @property
    def descriptor(self) -> PeripheralDescriptor | None:
        return self._descriptor

    @property
    def is_connected(self) -> bool:
        return self._handle is not None and self._endpoint_out is not None

    @property
    def status_string(self) -> str:
        if self.is_connected and self._descriptor is not None:
            return f"Connected to {self._descriptor.display_name}"
        return "Not connected"

    def connect(self, descriptor: PeripheralDescriptor) -> None:
        with self._lock:
            if self.is_connected:
                self.disconnect()
            try:
                self._connect(descriptor)
            except HudctlError as exc:
                self.last_error = str(exc)
                LOGGER.error("%s connect failed: %s", self.name, exc)
                self.disconnect()
                raise
            self.last_error = None
        LOGGER.info("Connected to %s device: %s", self.name, descriptor.handle)

    def _connect(self, descriptor: PeripheralDescriptor) -> None:
        if not self._host.has_permission(descriptor):
            raise PermissionDeniedError(f"No USB permission for device {descriptor.handle}")

        self._descriptor = descriptor
        self._handle = self._host.open(descriptor, self.profile.transport)
        if self._handle is None:
            raise TransportOpenError(f"Failed to open USB device connection {descriptor.handle}")

        if not descriptor.interfaces:
            raise NoInterfaceError("USB device has no interfaces")
        index = self.profile.transport.interface
        if index >= descriptor.interface_count:
            raise NoInterfaceError(
                f"USB device has {descriptor.interface_count} interface(s); profile asks for #{index}"
            )
        interface = descriptor.interfaces[index]

        if not self._handle.claim_interface(interface):
            raise InterfaceClaimError(f"Failed to claim USB interface #{interface.number}")

        endpoint = interface.outbound_endpoint()
        if endpoint is None:
            raise NoOutboundEndpointError("No OUT endpoint found on USB device")
        self._endpoint_out = endpoint

    def disconnect(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
            self._endpoint_out = None
            self._descriptor = None
            if handle is None:
                return
            try:
                handle.close()
            except OSError as exc:
                LOGGER.warning("Error closing %s transport: %s", self.name, exc)
        LOGGER.debug("Disconnected from %s device", self.name)

    def transmit(self, data: bytes) -> TransferResult:
        with self._lock:
            if self._handle is None or self._endpoint_out is None:
                self.last_error = "Not connected to device"
                raise NotConnectedError(self.last_error)

            timeout_ms = int(self.profile.transport.timeout_s * 1000)
            sent = self._handle.bulk_transfer(self._endpoint_out, data, timeout_ms)

        if sent < 0:
            self.last_error = f"Failed to send data to device (transfer returned {sent})"
            raise TransferError(self.last_error)

        result = TransferResult(requested=len(data), sent=sent)
        self.last_transfer = result
        if result.partial:
            self.last_warning = f"Partial send: {sent} of {len(data)} bytes"
            LOGGER.warning("%s: %s", self.name, self.last_warning)
        else:
            self.last_warning = None
        return result
