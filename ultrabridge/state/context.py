"""Runtime state container for the Ultrametre bridge."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import msgspec

from ..config.settings import RuntimeConfig

if TYPE_CHECKING:
    from ..ledger.watch import AccountWatch
    from ..transport.serial import SerialChannel


def _supervisor_stats_factory() -> dict[str, SupervisorStats]:
    return {}


class SupervisorStats(msgspec.Struct):
    """Task supervisor statistics."""

    restarts: int = 0
    last_failure_unix: float = 0.0
    last_exception: str | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class BridgeCounters(msgspec.Struct):
    lines_received: int = 0
    telemetry_records: int = 0
    passthrough_lines: int = 0
    ignored_lines: int = 0
    actions_sent: int = 0
    write_errors: int = 0
    fetch_requests: int = 0
    fetch_failures: int = 0
    ledger_notifications: int = 0
    sink_errors: int = 0
    channel_losses: int = 0

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class BridgeState(msgspec.Struct):
    """Mutable state owned by one bridge controller; never persisted."""

    running: bool = False
    channel: SerialChannel | None = None
    watch: AccountWatch | None = None
    serial_port: str = ""
    ledger_account: str = ""
    config_source: str = "defaults"
    started_unix: float = 0.0
    last_error: str | None = None
    counters: BridgeCounters = msgspec.field(default_factory=BridgeCounters)
    supervisor_stats: dict[str, SupervisorStats] = msgspec.field(
        default_factory=_supervisor_stats_factory
    )

    def mark_running(self) -> None:
        self.running = True
        self.started_unix = time.time()
        self.last_error = None

    def mark_stopped(self, error: str | None = None) -> None:
        self.running = False
        self.started_unix = 0.0
        if error is not None:
            self.last_error = error

    def record_supervisor_failure(
        self,
        name: str,
        *,
        backoff: float,
        exc: BaseException,
        fatal: bool = False,
    ) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            stats = SupervisorStats()
            self.supervisor_stats[name] = stats
        stats.restarts += 1
        stats.last_failure_unix = time.time()
        stats.last_exception = f"{exc.__class__.__name__}: {exc}"
        stats.backoff_seconds = backoff
        stats.fatal = fatal

    def mark_supervisor_healthy(self, name: str) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            return
        stats.backoff_seconds = 0.0
        stats.fatal = False

    def build_metrics_snapshot(
        self,
        *,
        subscribers: int = 0,
        events_broadcast: int = 0,
        delivery_failures: int = 0,
    ) -> dict[str, Any]:
        uptime = time.time() - self.started_unix if self.running and self.started_unix else 0.0
        watch_state = self.watch.fsm_state if self.watch is not None else "absent"
        return {
            "running": self.running,
            "uptime_seconds": uptime,
            "serial_port": self.serial_port,
            "serial_open": bool(self.channel is not None and self.channel.is_open),
            "ledger_account": self.ledger_account,
            "ledger_watch_state": watch_state,
            "config_source": self.config_source,
            "last_error": self.last_error,
            "subscribers": subscribers,
            "events_broadcast": events_broadcast,
            "delivery_failures": delivery_failures,
            "counters": self.counters.as_dict(),
            "supervisors": {
                name: stats.as_dict() for name, stats in self.supervisor_stats.items()
            },
        }


def create_bridge_state(config: RuntimeConfig, *, config_source: str = "defaults") -> BridgeState:
    return BridgeState(
        serial_port=config.serial_port,
        ledger_account=config.ledger_account,
        config_source=config_source,
    )


__all__ = [
    "BridgeCounters",
    "BridgeState",
    "SupervisorStats",
    "create_bridge_state",
]
