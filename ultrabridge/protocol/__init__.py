"""Protocol helper utilities for the Ultrametre bridge."""

from . import commands, structures, telemetry
from .commands import Command, encode_command
from .telemetry import IGNORED, Ignored, Passthrough, Telemetry, classify

__all__ = [
    "Command",
    "IGNORED",
    "Ignored",
    "Passthrough",
    "Telemetry",
    "classify",
    "commands",
    "encode_command",
    "structures",
    "telemetry",
]
