"""USB serial host implementation using pyserial."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

import serial
from serial.tools import list_ports

from hudctl.core.device_match import (
    CDC_CLASS,
    CDC_DATA_CLASS,
    SERIAL_CONVERTER_VIDS,
    VENDOR_SPECIFIC_CLASS,
)
from hudctl.core.errors import DeviceDiscoveryError, TransportOpenError
from hudctl.core.model import (
    Direction,
    EndpointDescriptor,
    InterfaceDescriptor,
    PeripheralDescriptor,
    TransportSpec,
)
from hudctl.core.subscription import Subscription
from hudctl.transports.base import HotplugCallback, PermissionCallback

LOGGER = logging.getLogger(__name__)

_BULK_OUT = EndpointDescriptor(address=0x01, direction=Direction.OUT)
_BULK_IN = EndpointDescriptor(address=0x81, direction=Direction.IN)


def descriptor_from_port(info: Any) -> PeripheralDescriptor | None:
    """Build a descriptor from a `ListPortInfo`; None for non-USB ports."""
    if info.vid is None or info.pid is None:
        return None

    if info.vid in SERIAL_CONVERTER_VIDS:
        device_class = VENDOR_SPECIFIC_CLASS
        interface_class = VENDOR_SPECIFIC_CLASS
    elif "ACM" in info.device or "usbmodem" in info.device:
        device_class = CDC_CLASS
        interface_class = CDC_DATA_CLASS
    else:
        device_class = 0x00
        interface_class = VENDOR_SPECIFIC_CLASS

    return PeripheralDescriptor(
        handle=info.device,
        vendor_id=info.vid,
        product_id=info.pid,
        device_class=device_class,
        interfaces=(
            InterfaceDescriptor(
                number=0,
                interface_class=interface_class,
                endpoints=(_BULK_OUT, _BULK_IN),
            ),
        ),
        product_name=info.product or None,
        manufacturer=info.manufacturer or None,
        serial_number=info.serial_number or None,
    )


class SerialHandle:
    """Open serial port presented as a single bulk OUT channel."""

    def __init__(self, port: serial.Serial) -> None:
        self._port = port

    def claim_interface(self, interface: InterfaceDescriptor) -> bool:
        if not self._port.is_open:
            return False
        try:
            self._port.reset_output_buffer()
        except serial.SerialException as exc:
            LOGGER.warning("Could not claim interface #%d on %s: %s", interface.number, self._port.port, exc)
            return False
        return True

    def bulk_transfer(self, endpoint: EndpointDescriptor, data: bytes, timeout_ms: int) -> int:
        self._port.write_timeout = timeout_ms / 1000.0
        try:
            written = self._port.write(data)
        except serial.SerialTimeoutException:
            LOGGER.warning("Write to %s timed out after %d ms", self._port.port, timeout_ms)
            return -1
        except serial.SerialException as exc:
            LOGGER.warning("Write to %s failed: %s", self._port.port, exc)
            return -1
        return len(data) if written is None else written

    def close(self) -> None:
        self._port.close()


class SerialHotplugMonitor:
    """Polls the port list and reports added/removed USB ports."""

    DEFAULT_SCAN_INTERVAL = 1.0

    def __init__(
        self,
        host: SerialHost,
        on_attached: HotplugCallback,
        on_detached: HotplugCallback,
        *,
        scan_interval: float = DEFAULT_SCAN_INTERVAL,
    ) -> None:
        self._host = host
        self._on_attached = on_attached
        self._on_detached = on_detached
        self._scan_interval = scan_interval
        self._known: dict[str, PeripheralDescriptor] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._known = {d.handle: d for d in self._safe_enumerate()}
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="hudctl-hotplug", daemon=True)
        self._thread.start()
        LOGGER.debug("Hotplug monitor started (%d device(s))", len(self._known))

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._scan_interval * 2)
        LOGGER.debug("Hotplug monitor stopped")

    def scan_once(self) -> None:
        current = {d.handle: d for d in self._safe_enumerate()}
        for handle in current.keys() - self._known.keys():
            self._on_attached(current[handle])
        for handle in self._known.keys() - current.keys():
            self._on_detached(self._known[handle])
        self._known = current

    def _run(self) -> None:
        while not self._stop.wait(self._scan_interval):
            self.scan_once()

    def _safe_enumerate(self) -> list[PeripheralDescriptor]:
        try:
            return self._host.enumerate()
        except DeviceDiscoveryError as exc:
            LOGGER.error("Error scanning USB ports: %s", exc)
            return list(self._known.values())


class SerialHost:
    """Desktop host: USB serial ports stand in for the platform USB manager."""

    def __init__(self, *, scan_interval: float = SerialHotplugMonitor.DEFAULT_SCAN_INTERVAL) -> None:
        self._scan_interval = scan_interval

    def enumerate(self) -> list[PeripheralDescriptor]:
        try:
            ports = list_ports.comports()
        except OSError as exc:
            raise DeviceDiscoveryError(f"Serial port enumeration failed: {exc}") from exc
        descriptors = []
        for info in ports:
            descriptor = descriptor_from_port(info)
            if descriptor is not None:
                descriptors.append(descriptor)
        return descriptors

    def has_permission(self, descriptor: PeripheralDescriptor) -> bool:
        if os.name == "nt":
            return True
        return os.access(descriptor.handle, os.R_OK | os.W_OK)

    def request_permission(self, descriptor: PeripheralDescriptor, callback: PermissionCallback) -> None:
        # No interactive grant on desktop hosts; report the current access asynchronously.
        def _check() -> None:
            granted = self.has_permission(descriptor)
            if not granted:
                LOGGER.warning(
                    "No read/write access to %s; add your user to the group owning it (often 'dialout')",
                    descriptor.handle,
                )
            callback(descriptor, granted)

        threading.Thread(target=_check, name="hudctl-permission", daemon=True).start()

    def open(self, descriptor: PeripheralDescriptor, spec: TransportSpec) -> SerialHandle:
        try:
            port = serial.Serial(
                descriptor.handle,
                baudrate=spec.baudrate,
                timeout=spec.timeout_s,
                write_timeout=spec.timeout_s,
                exclusive=True,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportOpenError(f"Failed to open USB device connection {descriptor.handle}: {exc}") from exc
        return SerialHandle(port)

    def watch(self, on_attached: HotplugCallback, on_detached: HotplugCallback) -> Subscription:
        monitor = SerialHotplugMonitor(self, on_attached, on_detached, scan_interval=self._scan_interval)
        monitor.start()
        return Subscription(monitor.stop)
