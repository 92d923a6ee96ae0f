from __future__ import annotations

from dataclasses import replace

import pytest

from hudctl.core.errors import ProfileValidationError
from hudctl.core.model import MatchMode, TransportSpec
from hudctl.core.registry import DriverRegistry


def test_first_registered_driver_wins(fake_host_cls, make_profile, make_descriptor) -> None:
    device = make_descriptor(vid=0x1234, pid=0x5678)
    registry = DriverRegistry.from_profiles(
        [
            make_profile("pinned", mode=MatchMode.EXACT, ids=((0x1234, 0x5678),)),
            make_profile("fallback", mode=MatchMode.ANY),
        ],
        fake_host_cls(),
    )
    assert len(registry) == 2
    assert registry.find_compatible(device).id == "pinned"
    assert [d.id for d in registry.compatible(device)] == ["pinned", "fallback"]


def test_no_compatible_driver(fake_host_cls, make_profile, make_descriptor) -> None:
    registry = DriverRegistry.from_profiles(
        [make_profile("pinned", mode=MatchMode.EXACT, ids=((0x1234, 0x5678),))],
        fake_host_cls(),
    )
    device = make_descriptor(vid=0x0403, pid=0x6001)
    assert registry.find_compatible(device) is None
    assert not registry.accepts(device)
    assert DriverRegistry().find_compatible(device) is None


def test_strict_registry_demotes_any(fake_host_cls, make_profile, make_descriptor) -> None:
    registry = DriverRegistry.from_profiles([make_profile()], fake_host_cls(), strict=True)
    hid = make_descriptor(vid=0x046D, pid=0xC077, device_class=0x03, interfaces=())
    assert not registry.accepts(hid)
    assert registry.accepts(make_descriptor())


def test_disabled_profiles_are_skipped(fake_host_cls, make_profile) -> None:
    disabled = replace(make_profile("off"), enabled=False)
    registry = DriverRegistry.from_profiles([disabled, make_profile("on")], fake_host_cls())
    assert [d.id for d in registry.drivers] == ["on"]


def test_unknown_transport_type_rejected(fake_host_cls, make_profile) -> None:
    profile = replace(make_profile("ble"), transport=TransportSpec(type="ble"))
    with pytest.raises(ProfileValidationError, match="Unsupported transport type 'ble'"):
        DriverRegistry.from_profiles([profile], fake_host_cls())
