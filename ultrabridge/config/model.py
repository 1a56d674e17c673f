"""Typed runtime configuration model for the Ultrametre bridge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from ..const import (
    DEFAULT_AUTOSTART,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FETCH_ATTEMPTS,
    DEFAULT_FETCH_RETRY_DELAY,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_LEDGER_ACCOUNT,
    DEFAULT_LEDGER_COMMITMENT,
    DEFAULT_LEDGER_WS_URL,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SERIAL_BAUD,
    DEFAULT_SERIAL_PORT,
    DEFAULT_SERIAL_SETTLE_DELAY,
    DEFAULT_SSE_KEEPALIVE_INTERVAL,
    DEFAULT_SUBSCRIBER_QUEUE_LIMIT,
)

logger = logging.getLogger(__name__)

LEDGER_COMMITMENTS = frozenset({"processed", "confirmed", "finalized"})


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the daemon."""

    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_SERIAL_BAUD
    serial_settle_delay: float = DEFAULT_SERIAL_SETTLE_DELAY
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    ledger_ws_url: str = DEFAULT_LEDGER_WS_URL
    ledger_account: str = DEFAULT_LEDGER_ACCOUNT
    ledger_commitment: str = DEFAULT_LEDGER_COMMITMENT
    reconnect_delay: int = DEFAULT_RECONNECT_DELAY
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS
    fetch_retry_delay: float = DEFAULT_FETCH_RETRY_DELAY
    subscriber_queue_limit: int = DEFAULT_SUBSCRIBER_QUEUE_LIMIT
    sse_keepalive_interval: float = DEFAULT_SSE_KEEPALIVE_INTERVAL
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    autostart: bool = DEFAULT_AUTOSTART
    debug_logging: bool = DEFAULT_DEBUG_LOGGING

    def __post_init__(self) -> None:
        self.serial_port = (self.serial_port or "").strip()
        if not self.serial_port:
            raise ValueError("serial_port must be a non-empty device path")
        self.serial_baud = self._require_positive("serial_baud", int(self.serial_baud))
        self.serial_settle_delay = max(0.0, float(self.serial_settle_delay))

        if not 0 <= self.http_port <= 65535:
            raise ValueError("http_port must be between 0 and 65535")

        self._validate_ledger()

        self.reconnect_delay = self._require_positive(
            "reconnect_delay", int(self.reconnect_delay)
        )
        self.fetch_timeout = self._require_positive_float(
            "fetch_timeout", float(self.fetch_timeout)
        )
        self.fetch_attempts = self._require_positive(
            "fetch_attempts", int(self.fetch_attempts)
        )
        self.fetch_retry_delay = max(0.0, float(self.fetch_retry_delay))
        self.subscriber_queue_limit = self._require_positive(
            "subscriber_queue_limit", int(self.subscriber_queue_limit)
        )
        self.sse_keepalive_interval = self._require_positive_float(
            "sse_keepalive_interval", float(self.sse_keepalive_interval)
        )

        if self.http_host not in {"127.0.0.1", "localhost", "::1"}:
            logger.warning(
                "HTTP gateway bound to %s; bridge endpoints have no "
                "authentication and are reachable from the network.",
                self.http_host,
            )

    def _validate_ledger(self) -> None:
        scheme = urlparse(self.ledger_ws_url).scheme
        if scheme not in {"ws", "wss"}:
            raise ValueError("ledger_ws_url must use the ws:// or wss:// scheme")
        self.ledger_account = (self.ledger_account or "").strip()
        if not self.ledger_account:
            raise ValueError("ledger_account must be configured")
        commitment = self.ledger_commitment.strip().lower()
        if commitment not in LEDGER_COMMITMENTS:
            raise ValueError(
                "ledger_commitment must be one of %s" % ", ".join(sorted(LEDGER_COMMITMENTS))
            )
        self.ledger_commitment = commitment

    @staticmethod
    def _require_positive(name: str, value: int) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def _require_positive_float(name: str, value: float) -> float:
        if value <= 0.0:
            raise ValueError(f"{name} must be a positive number")
        return value


__all__ = ["LEDGER_COMMITMENTS", "RuntimeConfig"]
