"""Device wire protocol: single-letter ASCII commands and reply markers."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Final

from ..const import LINE_TERMINATOR

STATUS_MARKER: Final[str] = "TOTAL_DISTANCE"
SEPARATOR_MARKER: Final[str] = "---"
FIELD_SEPARATOR: Final[str] = ","

FETCH_REPLY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"TOTAL_DISTANCE_TRAVELLED:\s*([-+]?\d+(?:\.\d+)?)", re.IGNORECASE
)


class Command(StrEnum):
    QUERY = "D"
    CLEAR = "C"
    TRIGGER = "F"


def encode_command(command: Command) -> bytes:
    """Return the bytes written to the device for ``command``."""
    return command.value.encode("ascii") + LINE_TERMINATOR
