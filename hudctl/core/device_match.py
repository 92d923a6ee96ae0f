"""Peripheral-to-driver matching logic."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from hudctl.core.errors import DeviceSelectionError
from hudctl.core.model import MatchMode, MatchRules, PeripheralDescriptor

CDC_CLASS = 0x02
CDC_DATA_CLASS = 0x0A
VENDOR_SPECIFIC_CLASS = 0xFF

# FTDI, Silicon Labs, Prolific, QinHeng (CH34x)
SERIAL_CONVERTER_VIDS = (0x0403, 0x10C4, 0x067B, 0x1A86)
DEFAULT_INTERFACE_CLASSES = (CDC_CLASS, CDC_DATA_CLASS, VENDOR_SPECIFIC_CLASS)

LOGGER = logging.getLogger(__name__)


def describe(descriptor: PeripheralDescriptor) -> str:
    classes = ",".join(f"0x{i.interface_class:02X}" for i in descriptor.interfaces) or "-"
    return (
        f"{descriptor.handle} VID=0x{descriptor.vendor_id:04X} PID=0x{descriptor.product_id:04X} "
        f"class=0x{descriptor.device_class:02X}/0x{descriptor.device_subclass:02X} "
        f"interfaces={descriptor.interface_count} ({classes}) "
        f"manufacturer={descriptor.manufacturer or '-'} product={descriptor.product_name or '-'}"
    )


def exact_match(descriptor: PeripheralDescriptor, rules: MatchRules) -> bool:
    return (descriptor.vendor_id, descriptor.product_id) in rules.ids


def heuristic_match(descriptor: PeripheralDescriptor, rules: MatchRules) -> bool:
    vendor_ids = rules.vendor_ids or SERIAL_CONVERTER_VIDS
    if descriptor.vendor_id in vendor_ids:
        return True
    classes = rules.interface_classes or DEFAULT_INTERFACE_CLASSES
    if descriptor.device_class in classes:
        return True
    return any(interface.interface_class in classes for interface in descriptor.interfaces)


def effective_mode(rules: MatchRules, *, strict: bool = False) -> MatchMode:
    if strict and rules.mode is MatchMode.ANY:
        return MatchMode.HEURISTIC
    return rules.mode


def supports(
    descriptor: PeripheralDescriptor,
    rules: MatchRules,
    *,
    strict: bool = False,
    driver_id: str = "?",
) -> bool:
    """Return True when a driver with `rules` should handle `descriptor`.

    Only exact vendor/product hits are silent. Anything accepted on weaker
    evidence is logged with enough detail to pin it in the profile's `ids`.
    """
    if exact_match(descriptor, rules):
        return True

    mode = effective_mode(rules, strict=strict)
    if mode is MatchMode.EXACT:
        return False
    if mode is MatchMode.HEURISTIC and not heuristic_match(descriptor, rules):
        return False

    LOGGER.info(
        "Driver '%s' accepted device by %s match; pin it with ids: ['%s'] (%s)",
        driver_id,
        mode.value,
        descriptor.usb_id,
        describe(descriptor),
    )
    return True


def select_descriptor(
    descriptors: Sequence[PeripheralDescriptor],
    hint: str | None = None,
) -> PeripheralDescriptor:
    if not descriptors:
        raise DeviceSelectionError("No USB devices found. Ensure the HUD is attached.")

    candidates = list(descriptors)
    if hint:
        needle = hint.lower()
        candidates = [
            d
            for d in candidates
            if d.handle.lower() == needle
            or needle in d.handle.lower()
            or needle in d.usb_id
            or needle in d.display_name.lower()
            or needle in (d.manufacturer or "").lower()
        ]
        if not candidates:
            raise DeviceSelectionError(f"No device found matching '{hint}'")

    if len(candidates) > 1:
        desc = ", ".join(f"{d.handle} ({d.display_name})" for d in candidates)
        raise DeviceSelectionError(
            f"Multiple candidate devices found: {desc}. Use --device to choose one."
        )
    return candidates[0]
