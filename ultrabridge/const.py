"""Shared constants for the Ultrametre bridge daemon components."""

from __future__ import annotations

from typing import Final

LINE_TERMINATOR: Final[bytes] = b"\n"
MAX_LINE_BYTES: Final[int] = 512

DEFAULT_SERIAL_PORT: Final[str] = "/dev/ttyACM0"
DEFAULT_SERIAL_BAUD: Final[int] = 9600
DEFAULT_SERIAL_SETTLE_DELAY: Final[float] = 2.0

DEFAULT_HTTP_HOST: Final[str] = "127.0.0.1"
DEFAULT_HTTP_PORT: Final[int] = 3000
HTTP_MAX_BODY_BYTES: Final[int] = 16 * 1024
HTTP_HEADER_TIMEOUT: Final[float] = 10.0

DEFAULT_LEDGER_WS_URL: Final[str] = "wss://api.devnet.solana.com"
DEFAULT_LEDGER_ACCOUNT: Final[str] = "DsjJMaAxPoXARLsCW3uc3ThheAiy4b5ebUB7WzufDKwd"
DEFAULT_LEDGER_COMMITMENT: Final[str] = "processed"
LEDGER_SUBSCRIBE_TIMEOUT: Final[float] = 10.0
LEDGER_UNSUBSCRIBE_TIMEOUT: Final[float] = 2.0
LEDGER_MAX_BACKOFF: Final[float] = 60.0

DEFAULT_RECONNECT_DELAY: Final[int] = 1
DEFAULT_FETCH_TIMEOUT: Final[float] = 1.5
DEFAULT_FETCH_ATTEMPTS: Final[int] = 3
DEFAULT_FETCH_RETRY_DELAY: Final[float] = 0.4

DEFAULT_SUBSCRIBER_QUEUE_LIMIT: Final[int] = 64
DEFAULT_SSE_KEEPALIVE_INTERVAL: Final[float] = 15.0

DEFAULT_METRICS_ENABLED: Final[bool] = True
DEFAULT_AUTOSTART: Final[bool] = False
DEFAULT_DEBUG_LOGGING: Final[bool] = False

DEFAULT_CONFIG_PATH: Final[str] = "/etc/ultrabridge/ultrabridge.toml"
CONFIG_PATH_ENV: Final[str] = "ULTRABRIDGE_CONFIG"
CONFIG_SECTION: Final[str] = "general"

SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 0.5
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0

__all__ = [
    "LINE_TERMINATOR",
    "MAX_LINE_BYTES",
    "DEFAULT_SERIAL_PORT",
    "DEFAULT_SERIAL_BAUD",
    "DEFAULT_SERIAL_SETTLE_DELAY",
    "DEFAULT_HTTP_HOST",
    "DEFAULT_HTTP_PORT",
    "HTTP_MAX_BODY_BYTES",
    "HTTP_HEADER_TIMEOUT",
    "DEFAULT_LEDGER_WS_URL",
    "DEFAULT_LEDGER_ACCOUNT",
    "DEFAULT_LEDGER_COMMITMENT",
    "LEDGER_SUBSCRIBE_TIMEOUT",
    "LEDGER_UNSUBSCRIBE_TIMEOUT",
    "LEDGER_MAX_BACKOFF",
    "DEFAULT_RECONNECT_DELAY",
    "DEFAULT_FETCH_TIMEOUT",
    "DEFAULT_FETCH_ATTEMPTS",
    "DEFAULT_FETCH_RETRY_DELAY",
    "DEFAULT_SUBSCRIBER_QUEUE_LIMIT",
    "DEFAULT_SSE_KEEPALIVE_INTERVAL",
    "DEFAULT_METRICS_ENABLED",
    "DEFAULT_AUTOSTART",
    "DEFAULT_DEBUG_LOGGING",
    "DEFAULT_CONFIG_PATH",
    "CONFIG_PATH_ENV",
    "CONFIG_SECTION",
    "SUPERVISOR_DEFAULT_MIN_BACKOFF",
    "SUPERVISOR_DEFAULT_MAX_BACKOFF",
]
