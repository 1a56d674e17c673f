#!/usr/bin/env python3
"""Async orchestrator for the Ultrametre bridge daemon.

The daemon serves the HTTP gateway under a restart supervisor and owns the
bridge controller. The bridge itself is started on demand through the
gateway, or at boot when ``autostart`` is configured; shutdown always stops
it so the serial port and ledger subscription are released.

Architecture:
    main() -> BridgeDaemon -> TaskGroup
        ├── http-gateway (BridgeGateway, supervised)
        └── autostart (optional, one shot)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import NoReturn

import msgspec
import tenacity

# uvloop is mandatory; fail at import time when it is missing.
import uvloop

from .config.logging import configure_logging
from .config.settings import RuntimeConfig, get_config_source, load_runtime_config
from .const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
)
from .gateway.server import BridgeGateway
from .metrics import BridgeMetrics
from .services.runtime import BridgeController
from .state.context import BridgeState, create_bridge_state

logger = logging.getLogger("ultrabridge")


class SupervisedTaskSpec(msgspec.Struct):
    """Specification for a supervised async task."""

    name: str
    factory: Callable[[], Awaitable[None]]
    fatal_exceptions: tuple[type[BaseException], ...] = ()
    max_restarts: int | None = None
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


class BridgeDaemon:
    """Main orchestrator for the bridge daemon.

    Attributes:
        config: Runtime configuration loaded from the config file.
        state: Bridge state shared by the controller, gateway and metrics.
        controller: Lifecycle controller for the serial bridge.
        gateway: HTTP front end.
    """

    def __init__(self, config: RuntimeConfig, *, controller: BridgeController | None = None):
        self.config = config
        self.state: BridgeState = (
            controller.state
            if controller is not None
            else create_bridge_state(config, config_source=get_config_source())
        )
        self.controller = controller or BridgeController(config, state=self.state)
        metrics = BridgeMetrics(self.controller.build_metrics_snapshot) if config.metrics_enabled else None
        self.gateway = BridgeGateway(config, self.controller, metrics=metrics)

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        return [
            SupervisedTaskSpec(
                name="http-gateway",
                factory=self.gateway.run,
                fatal_exceptions=(PermissionError,),
            ),
        ]

    async def _autostart(self) -> None:
        result = await self.controller.start()
        if result.ok:
            logger.info("Bridge autostarted on %s.", self.config.serial_port)
        else:
            logger.error("Bridge autostart failed: %s", result.error)

    async def _supervise_task(self, spec: SupervisedTaskSpec) -> None:
        """Run ``spec.factory``, restarting it with exponential backoff.

        A clean return ends supervision. Exceptions listed in
        ``spec.fatal_exceptions`` (a privileged port, say) are not retried.
        """
        log = logging.getLogger("ultrabridge.supervisor")

        def _retryable(exc: BaseException) -> bool:
            return isinstance(exc, Exception) and not isinstance(exc, spec.fatal_exceptions)

        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=spec.min_backoff, max=spec.max_backoff),
            retry=tenacity.retry_if_exception(_retryable),
            stop=(
                tenacity.stop_after_attempt(spec.max_restarts + 1)
                if spec.max_restarts is not None
                else tenacity.stop_never
            ),
            before_sleep=self._restart_hook(spec.name, log),
            reraise=True,
        )

        try:
            async for attempt in retryer:
                with attempt:
                    await spec.factory()
        except asyncio.CancelledError:
            log.debug("%s supervisor cancelled", spec.name)
            raise
        except Exception as exc:
            log.critical("%s stopped for good: %s", spec.name, exc)
            self.state.record_supervisor_failure(spec.name, backoff=0.0, exc=exc, fatal=True)
            raise

        log.warning("%s exited cleanly; supervisor exiting", spec.name)
        self.state.mark_supervisor_healthy(spec.name)

    def _restart_hook(
        self, name: str, log: logging.Logger
    ) -> Callable[[tenacity.RetryCallState], None]:
        """Build the ``before_sleep`` hook recording each restart."""

        def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            log.error("%s failed (%s); restarting in %.1fs", name, exc, delay)
            if exc is not None:
                self.state.record_supervisor_failure(name, backoff=delay, exc=exc)

        return _before_sleep

    async def run(self) -> None:
        """Main async entry point."""
        supervised_tasks = self._setup_supervision()

        try:
            async with asyncio.TaskGroup() as task_group:
                for spec in supervised_tasks:
                    task_group.create_task(self._supervise_task(spec))
                if self.config.autostart:
                    task_group.create_task(self._autostart())
        except* asyncio.CancelledError:
            logger.info("Main task cancelled; shutting down.")
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            await self.controller.aclose()
            logger.info("Ultrametre bridge daemon stopped.")


def main() -> NoReturn:  # pragma: no cover (Entry point wrapper)
    config = load_runtime_config()
    configure_logging(config)

    logger.info(
        "Starting Ultrametre bridge daemon. Serial: %s@%d HTTP: %s:%d Ledger: %s",
        config.serial_port,
        config.serial_baud,
        config.http_host,
        config.http_port,
        config.ledger_ws_url,
    )

    try:
        daemon = BridgeDaemon(config)
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except RuntimeError as exc:
        logger.critical("Startup aborted due to runtime error: %s", exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
