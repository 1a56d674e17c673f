"""Marshmallow schema for RuntimeConfig validation."""

from __future__ import annotations

from typing import Any, Dict

from marshmallow import EXCLUDE, Schema, fields, post_load, pre_load, validate

from ..common import parse_bool
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
from .model import LEDGER_COMMITMENTS, RuntimeConfig

_BOOL_KEYS = ("metrics_enabled", "autostart", "debug")


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for the bridge configuration."""

    class Meta:
        unknown = EXCLUDE

    # Serial
    serial_port = fields.Str(load_default=DEFAULT_SERIAL_PORT, validate=validate.Length(min=1))
    serial_baud = fields.Int(load_default=DEFAULT_SERIAL_BAUD, validate=validate.Range(min=300))
    serial_settle_delay = fields.Float(
        load_default=DEFAULT_SERIAL_SETTLE_DELAY, validate=validate.Range(min=0.0)
    )

    # HTTP
    http_host = fields.Str(load_default=DEFAULT_HTTP_HOST, validate=validate.Length(min=1))
    http_port = fields.Int(
        load_default=DEFAULT_HTTP_PORT, validate=validate.Range(min=0, max=65535)
    )

    # Ledger
    ledger_ws_url = fields.Str(
        load_default=DEFAULT_LEDGER_WS_URL,
        validate=validate.Regexp(r"^wss?://", error="ledger_ws_url must use ws:// or wss://"),
    )
    ledger_account = fields.Str(
        load_default=DEFAULT_LEDGER_ACCOUNT, validate=validate.Length(min=1)
    )
    ledger_commitment = fields.Str(
        load_default=DEFAULT_LEDGER_COMMITMENT,
        validate=validate.OneOf(sorted(LEDGER_COMMITMENTS)),
    )
    reconnect_delay = fields.Int(
        load_default=DEFAULT_RECONNECT_DELAY, validate=validate.Range(min=1)
    )

    # Reply matching
    fetch_timeout = fields.Float(
        load_default=DEFAULT_FETCH_TIMEOUT,
        validate=validate.Range(min=0.0, min_inclusive=False),
    )
    fetch_attempts = fields.Int(load_default=DEFAULT_FETCH_ATTEMPTS, validate=validate.Range(min=1))
    fetch_retry_delay = fields.Float(
        load_default=DEFAULT_FETCH_RETRY_DELAY, validate=validate.Range(min=0.0)
    )

    # Subscribers
    subscriber_queue_limit = fields.Int(
        load_default=DEFAULT_SUBSCRIBER_QUEUE_LIMIT, validate=validate.Range(min=1)
    )
    sse_keepalive_interval = fields.Float(
        load_default=DEFAULT_SSE_KEEPALIVE_INTERVAL,
        validate=validate.Range(min=0.0, min_inclusive=False),
    )

    # System
    metrics_enabled = fields.Bool(load_default=DEFAULT_METRICS_ENABLED)
    autostart = fields.Bool(load_default=DEFAULT_AUTOSTART)
    debug_logging = fields.Bool(data_key="debug", load_default=DEFAULT_DEBUG_LOGGING)

    @pre_load
    def normalize_values(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        cleaned = {key: value.strip() if isinstance(value, str) else value for key, value in data.items()}
        for key in _BOOL_KEYS:
            if key in cleaned:
                cleaned[key] = parse_bool(cleaned[key])
        if isinstance(cleaned.get("ledger_commitment"), str):
            cleaned["ledger_commitment"] = cleaned["ledger_commitment"].lower()
        return cleaned

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        return RuntimeConfig(**data)


__all__ = ["RuntimeConfigSchema"]
