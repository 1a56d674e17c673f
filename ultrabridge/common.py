"""Utility helpers shared across the Ultrametre bridge packages."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Final, cast

from .const import (
    CONFIG_PATH_ENV,
    CONFIG_SECTION,
    DEFAULT_AUTOSTART,
    DEFAULT_CONFIG_PATH,
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

_TRUE_STRINGS: Final[frozenset[str]] = frozenset(
    {"1", "yes", "on", "true", "enable", "enabled"}
)


def parse_bool(value: object) -> bool:
    """Parse a boolean value safely from various types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    s = str(value).lower().strip()
    return s in _TRUE_STRINGS


def resolve_config_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def get_file_config(path: Path | None = None) -> dict[str, str]:
    """Read bridge configuration from the TOML file, merged over defaults.

    Only the ``[general]`` table is consulted. Values are stringified so the
    settings loader parses every source the same way.

    Raises:
        FileNotFoundError: when the file does not exist.
        ValueError: when the file is not valid TOML or the table is malformed.
    """
    config_path = path or resolve_config_path()
    with config_path.open("rb") as handle:
        try:
            document = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"Invalid TOML in {config_path}: {exc}") from exc

    section = document.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{CONFIG_SECTION}] in {config_path} must be a table")

    clean_config = get_default_config()
    for key, value in cast(dict[str, Any], section).items():
        if isinstance(value, bool):
            clean_config[key] = "1" if value else "0"
        elif isinstance(value, (list, tuple)):
            items = cast(Iterable[object], value)
            clean_config[key] = " ".join(str(item) for item in items)
        else:
            clean_config[key] = str(value)
    return clean_config


def get_default_config() -> dict[str, str]:
    """Provide default bridge configuration values."""
    return {
        "serial_port": DEFAULT_SERIAL_PORT,
        "serial_baud": str(DEFAULT_SERIAL_BAUD),
        "serial_settle_delay": str(DEFAULT_SERIAL_SETTLE_DELAY),
        "http_host": DEFAULT_HTTP_HOST,
        "http_port": str(DEFAULT_HTTP_PORT),
        "ledger_ws_url": DEFAULT_LEDGER_WS_URL,
        "ledger_account": DEFAULT_LEDGER_ACCOUNT,
        "ledger_commitment": DEFAULT_LEDGER_COMMITMENT,
        "reconnect_delay": str(DEFAULT_RECONNECT_DELAY),
        "fetch_timeout": str(DEFAULT_FETCH_TIMEOUT),
        "fetch_attempts": str(DEFAULT_FETCH_ATTEMPTS),
        "fetch_retry_delay": str(DEFAULT_FETCH_RETRY_DELAY),
        "subscriber_queue_limit": str(DEFAULT_SUBSCRIBER_QUEUE_LIMIT),
        "sse_keepalive_interval": str(DEFAULT_SSE_KEEPALIVE_INTERVAL),
        "metrics_enabled": "1" if DEFAULT_METRICS_ENABLED else "0",
        "autostart": "1" if DEFAULT_AUTOSTART else "0",
        "debug": "0",
    }


__all__: Final[tuple[str, ...]] = (
    "parse_bool",
    "resolve_config_path",
    "get_default_config",
    "get_file_config",
)
