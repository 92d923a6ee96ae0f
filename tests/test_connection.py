from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from hudctl.core.connection import ConnectionManager, ConnectionObserver
from hudctl.core.errors import (
    ConnectionBusyError,
    ConnectionCancelledError,
    DeviceDetachedError,
    DeviceSelectionError,
    InterfaceClaimError,
    NoCompatibleDriverError,
    PermissionDeniedError,
)
from hudctl.core.model import ConnectionState, TransportSpec
from hudctl.core.registry import DriverRegistry

pytestmark = pytest.mark.asyncio


@pytest.fixture
def first(make_descriptor):
    return make_descriptor("/dev/ttyUSB0", product="HUD One")


@pytest.fixture
def second(make_descriptor):
    return make_descriptor("/dev/ttyUSB1", pid=0x6015, product="HUD Two")


async def test_request_before_start_is_rejected(fake_host_cls, build_manager, first) -> None:
    manager, _ = build_manager(fake_host_cls([first]))
    with pytest.raises(RuntimeError):
        await manager.request_connection(first)


async def test_empty_environment_rejects_selection(fake_host_cls, build_manager, first) -> None:
    manager, observer = build_manager(fake_host_cls())
    async with manager:
        assert await manager.list_available() == []
        with pytest.raises(DeviceSelectionError, match="not an available HUD device"):
            await manager.request_connection(first)
        with pytest.raises(DeviceSelectionError, match="Please select a valid device"):
            await manager.request_connection(None)
    assert manager.state is ConnectionState.IDLE
    assert observer.events == []


async def test_direct_connect_with_existing_permission(fake_host_cls, build_manager, first) -> None:
    host = fake_host_cls([first])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_ready
        assert manager.descriptor == first
        assert observer.kinds() == ["connected"]
        assert observer.events[0][1] is manager.driver
        assert host.permission_requests == []

    assert observer.kinds() == ["connected", "disconnected"]
    assert host.handles[0].closed


async def test_permission_grant_for_exact_device_only(fake_host_cls, build_manager, first, second) -> None:
    host = fake_host_cls([first, second], granted=set())
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        assert manager.state is ConnectionState.PERMISSION_PENDING
        assert host.permission_requests[0][0] == first

        host.answer_permission(second, True)
        await manager.settle()
        assert manager.state is ConnectionState.PERMISSION_PENDING
        assert observer.events == []

        host.answer_permission(first, True)
        await manager.settle()
        assert manager.state is ConnectionState.CONNECTED
        assert observer.kinds() == ["connected"]
        assert manager.driver.is_connected


async def test_permission_denied_is_reported(fake_host_cls, build_manager, first) -> None:
    host = fake_host_cls([first], granted=set())
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        host.answer_permission(first, False)
        await manager.settle()

        assert manager.state is ConnectionState.IDLE
        assert observer.kinds() == ["failed"]
        assert isinstance(observer.events[0][1], PermissionDeniedError)
        assert isinstance(manager.last_error, PermissionDeniedError)
        assert host.handles == []


async def test_detach_while_connected_emits_single_disconnect(
    fake_host_cls, build_manager, first
) -> None:
    host = fake_host_cls([first])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        driver = manager.driver

        host.detach(first)
        await manager.settle()

        assert manager.state is ConnectionState.IDLE
        assert manager.driver is None
        assert not driver.is_connected
        assert observer.kinds() == ["connected", "disconnected"]
        assert observer.device_lists[-1] == []

        await manager.disconnect()
    assert observer.kinds() == ["connected", "disconnected"]


async def test_detach_of_other_device_keeps_connection(
    fake_host_cls, build_manager, first, second
) -> None:
    host = fake_host_cls([first, second])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        host.detach(second)
        await manager.settle()

        assert manager.state is ConnectionState.CONNECTED
        assert observer.kinds() == ["connected"]
        assert observer.device_lists[-1] == [first]


async def test_detach_while_permission_pending_fails_attempt(
    fake_host_cls, build_manager, first
) -> None:
    host = fake_host_cls([first], granted=set())
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        host.detach(first)
        await manager.settle()
        assert manager.state is ConnectionState.IDLE
        assert observer.kinds() == ["failed"]
        assert isinstance(observer.events[0][1], DeviceDetachedError)

        host.answer_permission(first, True)
        await manager.settle()
        assert manager.state is ConnectionState.IDLE
        assert observer.kinds() == ["failed"]


async def test_attach_only_refreshes_device_list(fake_host_cls, build_manager, first, second) -> None:
    host = fake_host_cls([first])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        host.granted.add(second.handle)
        host.attach(second)
        await manager.settle()

        assert observer.device_lists == [[first, second]]
        assert manager.available == [first, second]
        assert manager.state is ConnectionState.IDLE
        assert observer.events == []
        assert host.handles == []


async def test_disconnect_when_idle_is_silent(fake_host_cls, build_manager, first) -> None:
    manager, observer = build_manager(fake_host_cls([first]))
    async with manager:
        await manager.disconnect()
        await manager.disconnect()
    assert manager.state is ConnectionState.IDLE
    assert observer.events == []


async def test_disconnect_cancels_pending_permission(fake_host_cls, build_manager, first) -> None:
    host = fake_host_cls([first], granted=set())
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        await manager.disconnect()

        assert manager.state is ConnectionState.IDLE
        assert observer.kinds() == ["failed"]
        assert isinstance(observer.events[0][1], ConnectionCancelledError)

        host.answer_permission(first, True)
        await manager.settle()
        assert manager.state is ConnectionState.IDLE
        assert host.handles == []


async def test_second_request_while_pending_is_busy(fake_host_cls, build_manager, first, second) -> None:
    host = fake_host_cls([first, second], granted=set())
    manager, _ = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        with pytest.raises(ConnectionBusyError, match="already in progress"):
            await manager.request_connection(second)


async def test_new_request_rejected_while_teardown_in_flight(
    fake_host_cls, build_manager, first, second
) -> None:
    host = fake_host_cls([first, second])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        release = threading.Event()
        handle = host.handles[0]

        def _slow_close() -> None:
            release.wait(5)
            handle.closed = True

        handle.close = _slow_close

        host.detach(first)
        with pytest.raises(ConnectionBusyError, match="still shutting down"):
            await manager.request_connection(second)

        release.set()
        await manager.settle()
        assert handle.closed

        await manager.request_connection(second)
        assert manager.state is ConnectionState.CONNECTED
        assert manager.descriptor == second
        assert observer.kinds() == ["connected", "disconnected", "connected"]


async def test_request_while_connected_replaces_connection(
    fake_host_cls, build_manager, first, second
) -> None:
    host = fake_host_cls([first, second])
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        await manager.request_connection(second)

        assert manager.descriptor == second
        assert host.handles[0].closed
        assert not host.handles[1].closed
        assert observer.kinds() == ["connected", "disconnected", "connected"]


async def test_driver_failure_is_reported_once(fake_host_cls, build_manager, first) -> None:
    host = fake_host_cls([first])
    host.claim = False
    manager, observer = build_manager(host)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        assert manager.state is ConnectionState.IDLE
        assert observer.kinds() == ["failed"]
        assert isinstance(observer.events[0][1], InterfaceClaimError)
        assert host.handles[0].closed


async def test_later_driver_used_when_first_fails(
    fake_host_cls, build_manager, make_profile, first
) -> None:
    host = fake_host_cls([first])
    broken = replace(make_profile("broken"), transport=TransportSpec(interface=3))
    manager, observer = build_manager(host, broken, make_profile("working"))
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)

        assert manager.state is ConnectionState.CONNECTED
        assert manager.driver.id == "working"
        assert observer.kinds() == ["connected"]


async def test_no_compatible_driver(fake_host_cls, make_profile, monkeypatch, first) -> None:
    host = fake_host_cls([first])
    registry = DriverRegistry.from_profiles([make_profile()], host)
    manager = ConnectionManager(host, registry)
    errors = []

    class _Observer(ConnectionObserver):
        def on_connection_failed(self, error) -> None:
            errors.append(error)

    manager.subscribe(_Observer())
    async with manager:
        await manager.list_available()
        monkeypatch.setattr(registry, "compatible", lambda descriptor: [])
        await manager.request_connection(first)

    assert len(errors) == 1
    assert isinstance(errors[0], NoCompatibleDriverError)
    assert str(errors[0]) == "No compatible HUD driver found for device"


async def test_failing_observer_does_not_block_others(fake_host_cls, make_profile, first) -> None:
    class _Broken(ConnectionObserver):
        def on_connected(self, driver) -> None:
            raise RuntimeError("boom")

    class _Counting(ConnectionObserver):
        def __init__(self) -> None:
            self.connected = 0

        def on_connected(self, driver) -> None:
            self.connected += 1

    host = fake_host_cls([first])
    manager = ConnectionManager(host, DriverRegistry.from_profiles([make_profile()], host))
    counting = _Counting()
    manager.subscribe(_Broken())
    manager.subscribe(counting)
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
        assert manager.state is ConnectionState.CONNECTED
    assert counting.connected == 1


async def test_subscription_close_stops_events(fake_host_cls, build_manager, first) -> None:
    host = fake_host_cls([first])
    manager, observer = build_manager(host)
    extra = []

    class _Observer(ConnectionObserver):
        def on_connected(self, driver) -> None:
            extra.append(driver)

    subscription = manager.subscribe(_Observer())
    subscription.close()
    subscription.close()
    assert not subscription.active
    async with manager:
        await manager.list_available()
        await manager.request_connection(first)
    assert extra == []
    assert observer.kinds() == ["connected", "disconnected"]
