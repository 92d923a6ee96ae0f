"""Stream live position telemetry to USB-attached HUD peripherals."""

__version__ = "0.1.0"
