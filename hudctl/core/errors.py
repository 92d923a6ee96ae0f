"""Domain-specific errors for hudctl."""


class HudctlError(Exception):
    """Base error for hudctl."""


class ProfileValidationError(HudctlError):
    """Raised when a driver profile does not conform to schema or semantics."""


class ProfileLoadError(HudctlError):
    """Raised when loading driver profile sources fails."""


class DeviceDiscoveryError(HudctlError):
    """Raised when peripheral enumeration fails."""


class DeviceSelectionError(HudctlError):
    """Raised when the requested peripheral is not a valid selection."""


class NoCompatibleDriverError(HudctlError):
    """Raised when no registered driver accepts a peripheral."""


class PermissionDeniedError(HudctlError):
    """Raised when the platform refuses access to a peripheral."""


class ConnectionBusyError(HudctlError):
    """Raised when a connection attempt or teardown is still in flight."""


class ConnectionCancelledError(HudctlError):
    """Raised when a pending connection attempt is abandoned."""


class DeviceDetachedError(HudctlError):
    """Raised when a peripheral goes away during a connection attempt."""


class NotConnectedError(HudctlError):
    """Raised when an operation needs an active connection and there is none."""


class MessageEncodeError(HudctlError):
    """Raised when telemetry cannot be encoded."""


class CotParseError(HudctlError):
    """Raised when a CoT document cannot be parsed."""


class TransportError(HudctlError):
    """Base transport error."""


class TransportOpenError(TransportError):
    """Raised when the transport handle cannot be opened."""


class InterfaceClaimError(TransportError):
    """Raised when the peripheral interface cannot be claimed."""


class NoInterfaceError(TransportError):
    """Raised when the peripheral exposes no interfaces."""


class NoOutboundEndpointError(TransportError):
    """Raised when the claimed interface has no OUT endpoint."""


class TransferError(TransportError):
    """Raised when a bulk transfer fails outright."""
