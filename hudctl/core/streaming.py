"""Live position streaming to the connected HUD."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from hudctl.core.connection import ConnectionManager, ConnectionObserver
from hudctl.core.cot import DEFAULT_CALLSIGN
from hudctl.core.driver import HudDriver
from hudctl.core.errors import NotConnectedError
from hudctl.core.model import Position, UpdateRate
from hudctl.core.subscription import Subscription

LOGGER = logging.getLogger(__name__)

StatusCallback = Callable[["StreamStatus"], None]


class PositionSource(Protocol):
    def current_position(self) -> Position | None:
        """Latest self position, or None when unknown."""


class StaticPosition:
    """Position source holding a single value.

    `update()` replaces the value and notifies subscribers, which lets a
    caller push position changes into a running stream.
    """

    def __init__(self, position: Position | None = None) -> None:
        self._position = position
        self._listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def current_position(self) -> Position | None:
        return self._position

    def update(self, position: Position) -> None:
        self._position = position
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def subscribe(self, callback: Callable[[], None]) -> Subscription:
        with self._lock:
            self._listeners.append(callback)

        def _release() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return Subscription(_release)


@dataclass
class StreamStatus:
    preview: str = "Streaming stopped"
    last_error: str | None = None
    last_warning: str | None = None
    sent: int = 0
    failed: int = 0
    partial: int = 0
    skipped: int = 0


def format_preview(position: Position) -> str:
    return (
        "STREAMING TO HUD:\n"
        f"Callsign: {position.callsign or DEFAULT_CALLSIGN}\n"
        f"Lat: {position.lat:.6f}°\n"
        f"Lon: {position.lon:.6f}°\n"
        f"Alt: {position.alt:.1f} m\n"
        f"Hdg: {position.heading:.1f}°"
    )


class StreamingScheduler(ConnectionObserver):
    """Sends the latest position whenever it changes and on a fallback timer.

    Both triggers go through one queue and one consumer task, so every
    trigger yields at most one transfer and transfers never overlap. There
    is no de-duplication: a burst of position changes is a burst of sends.
    `start()` and `stop()` must be called on the event loop thread;
    `notify_position_changed()` may be called from any thread.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        positions: PositionSource,
        *,
        rate: UpdateRate = UpdateRate.HZ_1,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._manager = manager
        self._positions = positions
        self._rate = rate
        self._on_status = on_status
        self.status = StreamStatus()

        self._enabled = False
        self._generation = 0
        # Guards the generation check that commits a worker to a transfer.
        # Never held across I/O.
        self._send_lock = threading.Lock()
        self._timer_pending = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[str] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._position_subscription: Subscription | None = None
        self._connection_subscription = manager.subscribe(self)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def rate(self) -> UpdateRate:
        return self._rate

    @rate.setter
    def rate(self, rate: UpdateRate) -> None:
        """Change the fallback rate; safe to call from any thread."""
        self._rate = rate
        loop = self._loop
        if self._enabled and loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._restart_timer, self._generation)

    def start(self) -> None:
        if not self._manager.is_ready:
            raise NotConnectedError("Not connected to HUD device")
        if self._enabled:
            return

        self._loop = asyncio.get_running_loop()
        generation = self._next_generation()
        self._enabled = True
        self._timer_pending = False
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(generation), name="hudctl-stream-consumer")
        self._timer = asyncio.create_task(self._tick(generation), name="hudctl-stream-timer")

        subscribe = getattr(self._positions, "subscribe", None)
        if subscribe is not None:
            self._position_subscription = subscribe(self.notify_position_changed)
        LOGGER.info("Started event-driven streaming with %d Hz fallback", self._rate.value)

    def stop(self) -> None:
        """Stop streaming without waiting for a transfer already on the wire.

        No transfer starts after this returns; one already writing finishes
        on its worker thread and its outcome is discarded.
        """
        was_running = self._enabled or self._consumer is not None
        self._enabled = False
        self._next_generation()
        for task in (self._timer, self._consumer):
            if task is not None:
                task.cancel()
        self._timer = None
        self._consumer = None
        self._queue = None
        self._timer_pending = False
        if self._position_subscription is not None:
            self._position_subscription.close()
            self._position_subscription = None
        if was_running:
            self.status.preview = "Streaming stopped"
            LOGGER.info("Stopped streaming")
            self._publish()

    def close(self) -> None:
        self.stop()
        self._connection_subscription.close()

    def notify_position_changed(self) -> None:
        loop = self._loop
        if not self._enabled or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._enqueue, self._generation, "position")

    def on_disconnected(self) -> None:
        if self._enabled:
            LOGGER.info("HUD connection lost; stopping stream")
            self.stop()

    def _enqueue(self, generation: int, source: str) -> None:
        if generation != self._generation or self._queue is None:
            return
        if source == "timer":
            # At most one timer trigger waits in the queue; pushes are never merged.
            if self._timer_pending:
                return
            self._timer_pending = True
        self._queue.put_nowait(source)

    def _restart_timer(self, generation: int) -> None:
        if generation != self._generation or not self._enabled:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.create_task(self._tick(generation), name="hudctl-stream-timer")

    async def _tick(self, generation: int) -> None:
        period = self._rate.period_s
        while generation == self._generation:
            self._enqueue(generation, "timer")
            await asyncio.sleep(period)

    async def _consume(self, generation: int) -> None:
        queue = self._queue
        assert queue is not None
        while generation == self._generation:
            source = await queue.get()
            if source == "timer":
                self._timer_pending = False
            try:
                await self._transmit(generation, source)
            except Exception as exc:
                LOGGER.exception("Unexpected error during %s update", source)
                self._record_failure(str(exc) or type(exc).__name__)

    async def _transmit(self, generation: int, source: str) -> None:
        driver = self._manager.driver
        if driver is None or not driver.is_connected:
            self.status.skipped += 1
            LOGGER.debug("Skipping %s update; HUD connection not ready", source)
            return

        position = self._positions.current_position()
        if position is None:
            self._record_failure("Cannot get self position")
            return

        ok = await asyncio.to_thread(self._send, generation, driver, position)
        if ok is None or generation != self._generation:
            return
        if not ok:
            self._record_failure(driver.last_error or "Failed to send data")
            return

        self.status.sent += 1
        self.status.last_error = None
        transfer = driver.last_transfer
        if transfer is not None and transfer.partial:
            self.status.partial += 1
            self.status.last_warning = driver.last_warning
        else:
            self.status.last_warning = None
        self.status.preview = format_preview(position)
        self._publish()

    def _next_generation(self) -> int:
        with self._send_lock:
            self._generation += 1
            return self._generation

    def _send(self, generation: int, driver: HudDriver, position: Position) -> bool | None:
        with self._send_lock:
            if generation != self._generation:
                return None
        return driver.send_position(
            position.lat,
            position.lon,
            position.alt,
            position.heading,
            position.callsign,
        )

    def _record_failure(self, message: str) -> None:
        self.status.failed += 1
        self.status.last_error = message
        self.status.preview = f"ERROR: {message}"
        LOGGER.error("Failed to send position to HUD: %s", message)
        self._publish()

    def _publish(self) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(self.status)
        except Exception:
            LOGGER.exception("Stream status callback %r failed", self._on_status)
