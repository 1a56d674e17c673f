"""Ultrametre bridge data structures.

Events flowing to subscribers, results returned by controller operations and
the ledger notification payload are all msgspec structs so the gateway can
encode them without an intermediate dict.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import msgspec


class EventKind(StrEnum):
    SERIAL = "serial"
    STATUS = "status"
    SENT = "sent"
    TELEMETRY = "telemetry"


class TelemetryRecord(msgspec.Struct, frozen=True, kw_only=True):
    """A single distance/angle sample with its derived planar coordinates."""

    distance: float
    angle_degrees: float
    x_coord: float
    y_coord: float
    captured_at: float


class BroadcastEvent(msgspec.Struct, frozen=True):
    """Immutable tagged payload delivered to every live subscriber."""

    kind: EventKind
    data: Any

    def encode_data(self) -> bytes:
        return msgspec.json.encode(self.data)


class SerialPayload(msgspec.Struct, frozen=True):
    text: str


class StatusPayload(msgspec.Struct, frozen=True):
    running: bool


class SentPayload(msgspec.Struct, frozen=True):
    command: str
    source: str


class StatusResult(msgspec.Struct, frozen=True):
    running: bool


class ActionResult(msgspec.Struct, frozen=True, omit_defaults=True):
    ok: bool
    error: str | None = None
    signature: str | None = None


class SummaryResult(msgspec.Struct, frozen=True, omit_defaults=True):
    ok: bool
    value: str | None = None
    attempts: int | None = None
    error: str | None = None


class AccountNotification(msgspec.Struct, frozen=True):
    """Payload of a ledger ``accountNotification`` for the watched account."""

    subscription: int
    slot: int | None = None
    lamports: int | None = None
    owner: str | None = None


class SendRequest(msgspec.Struct, frozen=True):
    amount: float


__all__ = [
    "AccountNotification",
    "ActionResult",
    "BroadcastEvent",
    "EventKind",
    "SendRequest",
    "SerialPayload",
    "SentPayload",
    "StatusPayload",
    "StatusResult",
    "SummaryResult",
    "TelemetryRecord",
]
