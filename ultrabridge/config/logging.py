"""Logging setup for the Ultrametre bridge daemon.

Every record is written as one JSON object. Serial traffic is logged with the
raw bytes attached as ``extra={"frame": ...}``; the formatter renders any
bytes extra as an object holding its length, its hex dump and its printable
ASCII text, since the rover talks in ASCII lines.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .settings import RuntimeConfig

SYSLOG_SOCKET = Path("/dev/log")
LOG_STREAM_ENV = "ULTRABRIDGE_LOG_STREAM"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

# Third-party loggers kept at WARNING unless debug logging is on.
_CHATTY_LOGGERS = ("websockets", "transitions", "asyncio")


def render_frame(frame: bytes | bytearray) -> dict[str, Any]:
    """Describe a serial frame: ``b"12,90\\r\\n"`` -> hex ``31 32 2C 39 30 0D 0A``."""
    return {
        "len": len(frame),
        "hex": " ".join(f"{b:02X}" for b in frame),
        "text": "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in frame),
    }


def _serialise_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (bytes, bytearray)):
        return render_frame(value)
    return str(value)


class BridgeLogFormatter(logging.Formatter):
    """JSON formatter; logger names lose the ``ultrabridge.`` prefix."""

    PREFIX = "ultrabridge."

    def format(self, record: logging.LogRecord) -> str:
        logger_name = record.name.removeprefix(self.PREFIX)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": logger_name,
            "message": record.getMessage(),
        }

        task_name = getattr(record, "taskName", None)
        if task_name:
            payload["task"] = task_name

        extras = {
            key: _serialise_value(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return msgspec.json.encode(payload).decode("utf-8")


def _build_handler() -> Handler:
    if not os.environ.get(LOG_STREAM_ENV) and SYSLOG_SOCKET.exists():
        handler = SysLogHandler(address=str(SYSLOG_SOCKET), facility=SysLogHandler.LOG_DAEMON)
        handler.ident = "ultrabridge "
        return handler
    return logging.StreamHandler()


def configure_logging(config: RuntimeConfig) -> None:
    """Install the JSON handler on the root logger."""

    level_name = "DEBUG" if config.debug_logging else "INFO"
    quiet_level = level_name if config.debug_logging else "WARNING"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": BridgeLogFormatter},
            },
            "handlers": {
                "ultrabridge": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "json",
                }
            },
            "loggers": {name: {"level": quiet_level} for name in _CHATTY_LOGGERS},
            "root": {
                "level": level_name,
                "handlers": ["ultrabridge"],
            },
        }
    )

    logging.getLogger("ultrabridge").info(
        "Logging configured at level %s (serial %s)", level_name, config.serial_port
    )
