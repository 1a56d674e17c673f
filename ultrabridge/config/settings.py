"""Settings loader for the Ultrametre bridge daemon.

Configuration is loaded from a TOML file (table ``[general]``) with sane
defaults when the file is absent. The file location defaults to
``/etc/ultrabridge/ultrabridge.toml`` and may be overridden through the
``ULTRABRIDGE_CONFIG`` environment variable; no other environment variables
are consulted.
"""

from __future__ import annotations

import logging

from marshmallow import ValidationError

from ..common import get_default_config, get_file_config, resolve_config_path
from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger(__name__)

_config_source = "defaults"


def _load_raw_config() -> dict[str, str]:
    global _config_source
    path = resolve_config_path()
    try:
        raw = get_file_config(path)
    except FileNotFoundError:
        logger.warning("Config file %s not found; using defaults.", path)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load config file %s: %s. Using defaults.", path, exc)
    else:
        _config_source = "file"
        return raw
    _config_source = "defaults"
    return get_default_config()


def get_config_source() -> str:
    """Return where the last loaded configuration came from."""
    return _config_source


def load_runtime_config() -> RuntimeConfig:
    """Load configuration from the config file or defaults.

    Raises:
        ValueError: when a configured value fails validation.
    """

    raw = _load_raw_config()
    try:
        return RuntimeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc.messages}") from exc


__all__ = ["RuntimeConfig", "get_config_source", "load_runtime_config"]
