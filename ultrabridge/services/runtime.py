"""Lifecycle controller orchestrating the serial channel, ledger watch and hub."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Final

from transitions import Machine

from ..config.settings import RuntimeConfig
from ..ledger.watch import AccountWatch, ChangeCallback
from ..protocol.commands import FETCH_REPLY_PATTERN, Command, encode_command
from ..protocol.structures import (
    AccountNotification,
    ActionResult,
    BroadcastEvent,
    EventKind,
    SentPayload,
    SerialPayload,
    StatusPayload,
    StatusResult,
    SummaryResult,
)
from ..protocol.telemetry import Passthrough, Telemetry, classify
from ..state.context import BridgeState, create_bridge_state
from ..transport.serial import ChannelOpenError, ChannelWriteError, SerialChannel
from .broadcast import BroadcastHub, EventSink, Subscriber
from .matcher import NoResponse, ReplyCancelled, ReplyMatcher, ReplyPending
from .sinks import LoggingTelemetrySink, TelemetrySink

logger = logging.getLogger("ultrabridge.service")

PORT_CLOSED_ERROR: Final[str] = "Port closed"
NO_RESPONSE_ERROR: Final[str] = "No response from device"
REQUEST_PENDING_ERROR: Final[str] = "Request already in progress"
PAYMENT_UNAVAILABLE_ERROR: Final[str] = "Payment collaborator not configured"

ChannelFactory = Callable[[RuntimeConfig], SerialChannel]
WatchFactory = Callable[[RuntimeConfig, ChangeCallback], AccountWatch]
PaymentCollaborator = Callable[[float], Awaitable[str]]


def _default_channel_factory(config: RuntimeConfig) -> SerialChannel:
    return SerialChannel(config.serial_port, config.serial_baud)


def _default_watch_factory(config: RuntimeConfig, on_change: ChangeCallback) -> AccountWatch:
    return AccountWatch(config, on_change)


class BridgeController:
    """State machine owning one bridge instance.

    ``start`` and ``stop`` are serialised by a lock. Line handling, ledger
    callbacks and channel loss run synchronously on the event loop, so the
    shared state they touch is never observed half-updated.
    """

    STATE_STOPPED = "stopped"
    STATE_STARTING = "starting"
    STATE_RUNNING = "running"
    STATE_STOPPING = "stopping"

    if TYPE_CHECKING:
        fsm_state: str

        def trigger(self, trigger_name: str, *args: Any, **kwargs: Any) -> bool: ...

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        state: BridgeState | None = None,
        hub: BroadcastHub | None = None,
        channel_factory: ChannelFactory | None = None,
        watch_factory: WatchFactory | None = None,
        sink: TelemetrySink | None = None,
        matcher: ReplyMatcher | None = None,
        payment: PaymentCollaborator | None = None,
    ) -> None:
        self.config = config
        self.state = state or create_bridge_state(config)
        self.hub = hub or BroadcastHub(config.subscriber_queue_limit)
        self.matcher = matcher or ReplyMatcher()
        self.sink: TelemetrySink = sink or LoggingTelemetrySink()
        self._channel_factory = channel_factory or _default_channel_factory
        self._watch_factory = watch_factory or _default_watch_factory
        self._payment = payment
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()

        self.machine = Machine(
            model=self,
            states=[
                self.STATE_STOPPED,
                self.STATE_STARTING,
                self.STATE_RUNNING,
                self.STATE_STOPPING,
            ],
            initial=self.STATE_STOPPED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            auto_transitions=False,
        )
        self.machine.add_transition("begin_start", self.STATE_STOPPED, self.STATE_STARTING)
        self.machine.add_transition("finish_start", self.STATE_STARTING, self.STATE_RUNNING)
        self.machine.add_transition("abort_start", self.STATE_STARTING, self.STATE_STOPPED)
        self.machine.add_transition("begin_stop", self.STATE_RUNNING, self.STATE_STOPPING)
        self.machine.add_transition("finish_stop", self.STATE_STOPPING, self.STATE_STOPPED)
        self.machine.add_transition("channel_lost", self.STATE_RUNNING, self.STATE_STOPPED)

    @property
    def running(self) -> bool:
        return self.state.running

    # --- Lifecycle ---

    async def start(self) -> ActionResult:
        async with self._lock:
            if self.fsm_state == self.STATE_RUNNING:
                return ActionResult(ok=True)

            self.trigger("begin_start")
            channel = self._channel_factory(self.config)
            try:
                await channel.open()
            except ChannelOpenError as exc:
                self.state.mark_stopped(exc.reason)
                self.trigger("abort_start")
                return ActionResult(ok=False, error=exc.reason)
            except asyncio.CancelledError:
                self.trigger("abort_start")
                raise

            # Lines are classified while settling but nothing is written yet.
            channel.add_listener(self._on_line)
            try:
                if self.config.serial_settle_delay > 0:
                    await asyncio.sleep(self.config.serial_settle_delay)
            except asyncio.CancelledError:
                self._discard_channel(channel)
                self.trigger("abort_start")
                raise

            if not channel.is_open:
                self._discard_channel(channel)
                self.state.mark_stopped(PORT_CLOSED_ERROR)
                self.trigger("abort_start")
                logger.warning("Serial port closed while settling; start aborted.")
                return ActionResult(ok=False, error=PORT_CLOSED_ERROR)

            self.state.channel = channel
            self.matcher.attach(channel)
            channel.add_close_listener(self._on_channel_closed)
            watch = self._watch_factory(self.config, self._on_ledger_change)
            self.state.watch = watch
            await watch.start()

            self.state.mark_running()
            self.trigger("finish_start")
            self._broadcast_status()
            logger.info("Bridge running on %s.", self.config.serial_port)
            return ActionResult(ok=True)

    async def stop(self) -> ActionResult:
        async with self._lock:
            if self.fsm_state != self.STATE_RUNNING:
                return ActionResult(ok=True)

            self.trigger("begin_stop")
            watch, self.state.watch = self.state.watch, None
            await self._teardown_watch(watch)
            self._release_channel()
            self.state.mark_stopped()
            self.trigger("finish_stop")
            self._broadcast_status()
            logger.info("Bridge stopped.")
            return ActionResult(ok=True)

    async def aclose(self) -> None:
        """Stop the bridge and wait for background teardown to finish."""
        await self.stop()
        if self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)

    def get_status(self) -> StatusResult:
        return StatusResult(running=self.state.running)

    def build_metrics_snapshot(self) -> dict[str, Any]:
        return self.state.build_metrics_snapshot(
            subscribers=self.hub.subscriber_count,
            events_broadcast=self.hub.events_broadcast,
            delivery_failures=self.hub.delivery_failures,
        )

    # --- Actions ---

    def trigger_action(self, source: str = "api") -> ActionResult:
        result = self._write_command(Command.TRIGGER)
        if not result.ok:
            return result
        self.state.counters.actions_sent += 1
        self.hub.broadcast(
            BroadcastEvent(EventKind.SENT, SentPayload(command=Command.TRIGGER.value, source=source))
        )
        return result

    def clear_device_state(self) -> ActionResult:
        return self._write_command(Command.CLEAR)

    async def fetch_telemetry_summary(self) -> SummaryResult:
        channel = self.state.channel
        if channel is None or not channel.is_open:
            return SummaryResult(ok=False, error=PORT_CLOSED_ERROR)

        self.state.counters.fetch_requests += 1
        try:
            reply = await self.matcher.request(
                encode_command(Command.QUERY),
                FETCH_REPLY_PATTERN,
                per_attempt_timeout=self.config.fetch_timeout,
                max_attempts=self.config.fetch_attempts,
                inter_attempt_delay=self.config.fetch_retry_delay,
            )
        except ReplyPending:
            return SummaryResult(ok=False, error=REQUEST_PENDING_ERROR)
        except NoResponse as exc:
            self.state.counters.fetch_failures += 1
            return SummaryResult(ok=False, error=NO_RESPONSE_ERROR, attempts=exc.attempts)
        except (ReplyCancelled, ChannelWriteError):
            self.state.counters.fetch_failures += 1
            return SummaryResult(ok=False, error=PORT_CLOSED_ERROR)
        return SummaryResult(ok=True, value=reply.value, attempts=reply.attempts)

    async def send_payment(self, amount: float) -> ActionResult:
        """Run the payment collaborator, then trigger the device."""
        if self._payment is None:
            return ActionResult(ok=False, error=PAYMENT_UNAVAILABLE_ERROR)
        if not math.isfinite(amount) or amount <= 0:
            return ActionResult(ok=False, error="amount must be a positive number")
        try:
            signature = await self._payment(amount)
        except (OSError, RuntimeError, ValueError) as exc:
            logger.warning("Payment of %s failed: %s", amount, exc)
            return ActionResult(ok=False, error=str(exc) or exc.__class__.__name__)

        triggered = self.trigger_action(source="payment")
        if not triggered.ok:
            logger.warning("Payment %s confirmed but trigger failed: %s", signature, triggered.error)
        return ActionResult(ok=True, signature=signature)

    # --- Subscribers ---

    def subscribe(self, sink: EventSink | None = None) -> Subscriber:
        return self.hub.subscribe(sink)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self.hub.unsubscribe(subscriber)

    # --- Callbacks ---

    def _on_line(self, line: str) -> None:
        counters = self.state.counters
        counters.lines_received += 1
        result = classify(line)
        if isinstance(result, Passthrough):
            counters.passthrough_lines += 1
            self.hub.broadcast(BroadcastEvent(EventKind.SERIAL, SerialPayload(text=result.text)))
        elif isinstance(result, Telemetry):
            counters.telemetry_records += 1
            try:
                self.sink.submit(result.record)
            except Exception:
                counters.sink_errors += 1
                logger.exception("Telemetry sink rejected record")
            self.hub.broadcast(BroadcastEvent(EventKind.TELEMETRY, result.record))
        else:
            counters.ignored_lines += 1

    def _on_ledger_change(self, notification: AccountNotification) -> None:
        self.state.counters.ledger_notifications += 1
        result = self.trigger_action(source="ledger")
        if not result.ok:
            logger.warning(
                "Ledger change at slot %s not forwarded: %s", notification.slot, result.error
            )

    def _on_channel_closed(self, exc: Exception | None) -> None:
        if self.fsm_state != self.STATE_RUNNING:
            return
        logger.warning("Serial channel lost while running: %s", exc)
        self.state.counters.channel_losses += 1
        self._release_channel()
        watch, self.state.watch = self.state.watch, None
        self.state.mark_stopped(str(exc) if exc else PORT_CLOSED_ERROR)
        self.trigger("channel_lost")
        self._broadcast_status()
        if watch is not None:
            task = asyncio.get_running_loop().create_task(
                self._teardown_watch(watch), name="ledger-watch-teardown"
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    # --- Helpers ---

    def _write_command(self, command: Command) -> ActionResult:
        channel = self.state.channel
        if channel is None or not channel.is_open:
            return ActionResult(ok=False, error=PORT_CLOSED_ERROR)
        try:
            channel.write(encode_command(command))
        except ChannelWriteError as exc:
            self.state.counters.write_errors += 1
            return ActionResult(ok=False, error=str(exc))
        return ActionResult(ok=True)

    def _release_channel(self) -> None:
        self.matcher.detach()
        channel, self.state.channel = self.state.channel, None
        if channel is not None:
            self._discard_channel(channel)

    def _discard_channel(self, channel: SerialChannel) -> None:
        channel.remove_close_listener(self._on_channel_closed)
        channel.remove_listener(self._on_line)
        channel.close()

    async def _teardown_watch(self, watch: AccountWatch | None) -> None:
        if watch is None:
            return
        try:
            await watch.stop()
        except Exception:
            logger.exception("Ledger watch teardown failed")

    def _broadcast_status(self) -> None:
        self.hub.broadcast(BroadcastEvent(EventKind.STATUS, StatusPayload(running=self.state.running)))


__all__ = [
    "BridgeController",
    "ChannelFactory",
    "NO_RESPONSE_ERROR",
    "PAYMENT_UNAVAILABLE_ERROR",
    "PORT_CLOSED_ERROR",
    "PaymentCollaborator",
    "REQUEST_PENDING_ERROR",
    "WatchFactory",
]
