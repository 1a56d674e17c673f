"""Classification of inbound device lines.

``classify`` is pure: besides the line itself its only input is the capture
timestamp, which defaults to the current wall clock.
"""

from __future__ import annotations

import math
import time
from typing import Final

import msgspec

from .commands import FIELD_SEPARATOR, SEPARATOR_MARKER, STATUS_MARKER
from .structures import TelemetryRecord


class Passthrough(msgspec.Struct, frozen=True):
    """A status line forwarded verbatim to subscribers."""

    text: str


class Telemetry(msgspec.Struct, frozen=True):
    record: TelemetryRecord


class Ignored(msgspec.Struct, frozen=True):
    pass


IGNORED: Final[Ignored] = Ignored()

Classification = Passthrough | Telemetry | Ignored


def _parse_finite(text: str) -> float | None:
    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def build_record(distance: float, angle_degrees: float, captured_at: float) -> TelemetryRecord:
    radians = angle_degrees * math.pi / 180.0
    return TelemetryRecord(
        distance=distance,
        angle_degrees=angle_degrees,
        x_coord=distance * math.cos(radians),
        y_coord=distance * math.sin(radians),
        captured_at=captured_at,
    )


def classify(line: str, *, captured_at: float | None = None) -> Classification:
    """Classify a complete inbound line (terminator already stripped)."""
    stripped = line.strip()
    if not stripped:
        return IGNORED
    if SEPARATOR_MARKER in stripped:
        return IGNORED
    if STATUS_MARKER in stripped.upper():
        return Passthrough(text=line)

    fields = stripped.split(FIELD_SEPARATOR)
    if len(fields) != 2:
        return IGNORED

    distance = _parse_finite(fields[0].strip())
    angle = _parse_finite(fields[1].strip())
    if distance is None or angle is None:
        return IGNORED

    timestamp = time.time() if captured_at is None else captured_at
    return Telemetry(record=build_record(distance, angle, timestamp))


__all__ = [
    "Classification",
    "IGNORED",
    "Ignored",
    "Passthrough",
    "Telemetry",
    "build_record",
    "classify",
]
