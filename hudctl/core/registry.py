"""Registry of known HUD drivers."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from hudctl.core.driver import HudDriver, SerialHudDriver
from hudctl.core.errors import ProfileValidationError
from hudctl.core.model import DriverProfile, PeripheralDescriptor
from hudctl.transports.base import PeripheralHost

DRIVER_TYPES: dict[str, type[HudDriver]] = {
    "serial": SerialHudDriver,
}
LOGGER = logging.getLogger(__name__)


class DriverRegistry:
    """Ordered driver prototypes; earlier registrations win ties."""

    def __init__(self, drivers: Iterable[HudDriver] = ()) -> None:
        self._drivers: list[HudDriver] = []
        for driver in drivers:
            self.register(driver)

    @classmethod
    def from_profiles(
        cls,
        profiles: Iterable[DriverProfile],
        host: PeripheralHost,
        *,
        strict: bool = False,
    ) -> DriverRegistry:
        registry = cls()
        for profile in profiles:
            if not profile.enabled:
                LOGGER.debug("Skipping disabled driver profile '%s'", profile.id)
                continue
            driver_cls = DRIVER_TYPES.get(profile.transport.type)
            if driver_cls is None:
                raise ProfileValidationError(
                    f"Unsupported transport type '{profile.transport.type}' for profile '{profile.id}'"
                )
            registry.register(driver_cls(profile, host, strict=strict))
        return registry

    @property
    def drivers(self) -> tuple[HudDriver, ...]:
        return tuple(self._drivers)

    def register(self, driver: HudDriver) -> None:
        self._drivers.append(driver)
        LOGGER.debug("Registered driver '%s' (%d total)", driver.id, len(self._drivers))

    def compatible(self, descriptor: PeripheralDescriptor) -> list[HudDriver]:
        return [driver for driver in self._drivers if driver.identify(descriptor)]

    def find_compatible(self, descriptor: PeripheralDescriptor) -> HudDriver | None:
        for driver in self._drivers:
            if driver.identify(descriptor):
                return driver
        return None

    def accepts(self, descriptor: PeripheralDescriptor) -> bool:
        return self.find_compatible(descriptor) is not None

    def __len__(self) -> int:
        return len(self._drivers)
