"""Service layer for the Ultrametre bridge."""

from .broadcast import BroadcastHub, Subscriber
from .matcher import NoResponse, ReplyCancelled, ReplyMatcher, ReplyPending
from .runtime import BridgeController
from .sinks import LoggingTelemetrySink, TelemetrySink

__all__ = [
    "BridgeController",
    "BroadcastHub",
    "LoggingTelemetrySink",
    "NoResponse",
    "ReplyCancelled",
    "ReplyMatcher",
    "ReplyPending",
    "Subscriber",
    "TelemetrySink",
]
