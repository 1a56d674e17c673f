"""Receivers for parsed telemetry records."""

from __future__ import annotations

import logging
from typing import Protocol

from ..protocol.structures import TelemetryRecord

logger = logging.getLogger("ultrabridge.sink")


class TelemetrySink(Protocol):
    """Consumer of telemetry records; persistence is its own concern."""

    def submit(self, record: TelemetryRecord) -> None: ...


class LoggingTelemetrySink:
    """Default sink: records are only logged."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def submit(self, record: TelemetryRecord) -> None:
        logger.log(
            self.level,
            "Telemetry distance=%.3f angle=%.3f x=%.3f y=%.3f",
            record.distance,
            record.angle_degrees,
            record.x_coord,
            record.y_coord,
        )


__all__ = ["LoggingTelemetrySink", "TelemetrySink"]
