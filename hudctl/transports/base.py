"""Platform and transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from hudctl.core.model import EndpointDescriptor, InterfaceDescriptor, PeripheralDescriptor, TransportSpec
from hudctl.core.subscription import Subscription

PermissionCallback = Callable[[PeripheralDescriptor, bool], None]
HotplugCallback = Callable[[PeripheralDescriptor], None]


class TransportHandle(Protocol):
    def claim_interface(self, interface: InterfaceDescriptor) -> bool:
        """Take exclusive use of `interface`."""

    def bulk_transfer(self, endpoint: EndpointDescriptor, data: bytes, timeout_ms: int) -> int:
        """Blocking write; returns bytes sent or a negative value on failure."""

    def close(self) -> None:
        """Release the handle."""


class PeripheralHost(Protocol):
    def enumerate(self) -> list[PeripheralDescriptor]:
        """Return every currently attached peripheral."""

    def has_permission(self, descriptor: PeripheralDescriptor) -> bool:
        """Report whether the process may open `descriptor` right now."""

    def request_permission(self, descriptor: PeripheralDescriptor, callback: PermissionCallback) -> None:
        """Ask for access; `callback` fires later, possibly on another thread."""

    def open(self, descriptor: PeripheralDescriptor, spec: TransportSpec) -> TransportHandle:
        """Open a transport handle or raise TransportOpenError."""

    def watch(self, on_attached: HotplugCallback, on_detached: HotplugCallback) -> Subscription:
        """Deliver attach/detach notifications until the subscription closes."""
