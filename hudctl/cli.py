"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging

import typer

from hudctl.api import HudLink
from hudctl.core.cot import DEFAULT_CALLSIGN, encode_position
from hudctl.core.errors import HudctlError, TransferError
from hudctl.core.model import MatchMode, Position, UpdateRate
from hudctl.core.streaming import StaticPosition, StatusCallback, StreamStatus, format_preview
from hudctl.transports.serial_port import SerialHost

app = typer.Typer(help="Stream live position telemetry to USB-attached HUD devices")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_link(
    *,
    strict: bool = False,
    positions: StaticPosition | None = None,
    rate: UpdateRate = UpdateRate.HZ_1,
    on_status: StatusCallback | None = None,
) -> HudLink:
    link = HudLink(host=SerialHost(), positions=positions, rate=rate, strict=strict, on_status=on_status)
    for warning in link.load_warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return link


def _parse_rate(hz: int) -> UpdateRate:
    try:
        return UpdateRate.from_hz(hz)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--rate") from None


@app.command("drivers")
def list_drivers() -> None:
    """List driver profiles and how they match devices."""
    try:
        link = _build_link()
        if not link.profiles:
            typer.echo("No driver profiles loaded")
            raise typer.Exit(code=1)

        for profile in link.profiles.values():
            state = "" if profile.enabled else " [disabled]"
            typer.echo(f"{profile.id}: {profile.name} ({profile.manufacturer}){state}")
            ids = ", ".join(f"{vid:04x}:{pid:04x}" for vid, pid in profile.match.ids) or "-"
            typer.echo(f"  match: {profile.match.mode.value} ids={ids}")
            if profile.match.mode is MatchMode.ANY:
                typer.echo("  note: accepts any device; use --strict or pin ids to narrow")
            typer.echo(
                f"  transport: {profile.transport.type} {profile.transport.baudrate} baud, "
                f"timeout {profile.transport.timeout_s:g}s"
            )
    except HudctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    show_all: bool = typer.Option(False, "--all", help="Include devices no driver accepts"),
    strict: bool = typer.Option(False, "--strict", help="Disable accept-any driver matching"),
) -> None:
    """List attached USB devices and the driver that would handle them."""
    try:
        link = _build_link(strict=strict)
        attached = asyncio.run(link.list_attached())
        shown = [a for a in attached if show_all or a.driver_id is not None]
        if not shown:
            typer.echo("No USB devices found")
            return

        for item in shown:
            d = item.descriptor
            matched = item.driver_id or "<no-match>"
            line = f"{d.handle} {d.display_name} [{d.usb_id}] -> {matched}"
            if show_all:
                line += f" permission={'yes' if item.has_permission else 'no'}"
            typer.echo(line)
    except HudctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("encode")
def encode(
    lat: float = typer.Option(..., "--lat", help="Latitude in degrees"),
    lon: float = typer.Option(..., "--lon", help="Longitude in degrees"),
    alt: float = typer.Option(0.0, "--alt", help="Height above ellipsoid in meters"),
    heading: float = typer.Option(0.0, "--heading", help="Heading in degrees"),
    callsign: str = typer.Option(DEFAULT_CALLSIGN, "--callsign"),
) -> None:
    """Print the CoT message that would be sent for a position."""
    try:
        typer.echo(encode_position(lat, lon, alt, heading, callsign))
    except HudctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("test")
def send_test(
    device: str | None = typer.Option(None, "--device", help="Port, USB id or partial name"),
    strict: bool = typer.Option(False, "--strict", help="Disable accept-any driver matching"),
    timeout: float = typer.Option(10.0, "--timeout", help="Seconds to wait for permission/connect"),
    callsign: str | None = typer.Option(None, "--callsign"),
) -> None:
    """Connect to a HUD and send a fixed test position."""

    async def _run() -> str:
        async with _build_link(strict=strict) as link:
            descriptor = await link.resolve_device(device)
            driver = await link.connect(descriptor, timeout_s=timeout)
            if not await link.send_test_position(callsign):
                raise TransferError(driver.last_error or "Failed to send test data")
            return driver.status_string

    try:
        status = asyncio.run(_run())
        typer.echo(status)
        typer.echo("Test data sent successfully")
        typer.echo("TEST DATA SENT:\nLat: 39.2°\nLon: -77.0°\nAlt: 121.0 m\nHdg: 270.0°")
    except HudctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("stream")
def stream(
    lat: float = typer.Option(..., "--lat", help="Latitude in degrees"),
    lon: float = typer.Option(..., "--lon", help="Longitude in degrees"),
    alt: float = typer.Option(0.0, "--alt", help="Height above ellipsoid in meters"),
    heading: float = typer.Option(0.0, "--heading", help="Heading in degrees"),
    callsign: str = typer.Option(DEFAULT_CALLSIGN, "--callsign"),
    device: str | None = typer.Option(None, "--device", help="Port, USB id or partial name"),
    rate: int = typer.Option(1, "--rate", help="Fallback update rate in Hz (1, 5 or 10)"),
    duration: float | None = typer.Option(None, "--duration", help="Stop after this many seconds"),
    strict: bool = typer.Option(False, "--strict", help="Disable accept-any driver matching"),
    timeout: float = typer.Option(10.0, "--timeout", help="Seconds to wait for permission/connect"),
) -> None:
    """Connect to a HUD and stream a position until interrupted."""
    update_rate = _parse_rate(rate)
    position = Position(lat=lat, lon=lon, alt=alt, heading=heading, callsign=callsign)
    last_error: list[str | None] = [None]

    def _on_status(status: StreamStatus) -> None:
        if status.last_error and status.last_error != last_error[0]:
            typer.echo(f"Error: {status.last_error}", err=True)
        if status.last_warning:
            typer.echo(f"Warning: {status.last_warning}", err=True)
        last_error[0] = status.last_error

    async def _run() -> StreamStatus:
        link = _build_link(
            strict=strict,
            positions=StaticPosition(position),
            rate=update_rate,
            on_status=_on_status,
        )
        async with link:
            descriptor = await link.resolve_device(device)
            driver = await link.connect(descriptor, timeout_s=timeout)
            typer.echo(f"{driver.status_string}; streaming at {update_rate.value} Hz fallback")
            typer.echo(format_preview(position))
            link.start_streaming()
            try:
                if duration is not None:
                    await asyncio.sleep(duration)
                else:
                    while link.scheduler.enabled:
                        await asyncio.sleep(0.5)
                    typer.echo("HUD disconnected", err=True)
            finally:
                link.stop_streaming()
            return link.scheduler.status

    try:
        status = asyncio.run(_run())
    except HudctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
        return
    typer.echo(
        f"Sent {status.sent} update(s), {status.failed} failed, "
        f"{status.partial} partial, {status.skipped} skipped"
    )


def run() -> None:
    app()


if __name__ == "__main__":
    run()
