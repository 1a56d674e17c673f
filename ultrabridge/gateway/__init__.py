"""HTTP and server-sent events front end for the Ultrametre bridge."""

from .server import BridgeGateway

__all__ = ["BridgeGateway"]
