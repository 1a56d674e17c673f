"""Prometheus exposition of bridge state."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from typing import Any, cast

import msgspec
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import (
    GaugeMetricFamily,
    InfoMetricFamily,
)
from prometheus_client.registry import Collector

logger = logging.getLogger("ultrabridge.metrics")

_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_]")
_INFO_METRIC = "ultrabridge_info"
_GAUGE_DOC = "Ultrabridge auto-generated metric"
_INFO_DOC = "Ultrabridge informational metric"

SnapshotProvider = Callable[[], dict[str, Any]]


class _BridgeStateCollector(Collector):
    """Prometheus collector that projects bridge state snapshots."""

    def __init__(self, snapshot: SnapshotProvider) -> None:
        self._snapshot = snapshot

    def collect(self) -> Iterator[Any]:
        snapshot = self._snapshot()

        info_values: list[tuple[str, str]] = []
        for metric_type, name, value in self._flatten("ultrabridge", snapshot):
            if metric_type == "gauge":
                metric = GaugeMetricFamily(_sanitize_metric_name(name), _GAUGE_DOC)
                metric.add_metric((), value)
                yield metric
            else:
                info_values.append((name, value))
        if info_values:
            info_metric = InfoMetricFamily(_INFO_METRIC, _INFO_DOC, labels=("key",))
            for key, value in info_values:
                info_metric.add_metric((key,), {"value": value})
            yield info_metric

    def _flatten(self, prefix: str, value: Any) -> Iterator[tuple[str, str, Any]]:
        if isinstance(value, msgspec.Struct):
            yield from self._flatten(prefix, msgspec.structs.asdict(value))
            return
        if isinstance(value, dict):
            typed_dict = cast(dict[Any, Any], value)
            for raw_key, sub_value in typed_dict.items():
                key = raw_key if isinstance(raw_key, str) else str(raw_key)
                next_prefix = f"{prefix}_{key}" if prefix else key
                yield from self._flatten(next_prefix, sub_value)
            return
        if isinstance(value, bool):
            yield ("gauge", prefix, 1.0 if value else 0.0)
            return
        if isinstance(value, (int, float)):
            yield ("gauge", prefix, float(value))
            return
        if value is None:
            yield ("info", prefix, "null")
            return
        yield ("info", prefix, str(value))


class BridgeMetrics:
    """Owns a private registry rendering bridge snapshots in text format."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, snapshot: SnapshotProvider) -> None:
        self._registry = CollectorRegistry()
        self._registry.register(_BridgeStateCollector(snapshot))

    def render(self) -> bytes:
        return generate_latest(self._registry)


def _sanitize_metric_name(name: str) -> str:
    cleaned = _SANITIZE_RE.sub("_", name.lower())
    cleaned = cleaned.strip("_") or "ultrabridge_metric"
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


__all__ = ["BridgeMetrics"]
