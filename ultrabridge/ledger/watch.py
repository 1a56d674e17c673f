"""Ledger account watch over the Solana JSON-RPC websocket API."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import msgspec
import tenacity
import websockets
from websockets.exceptions import WebSocketException
from transitions import Machine

from ..config.settings import RuntimeConfig
from ..const import LEDGER_MAX_BACKOFF, LEDGER_SUBSCRIBE_TIMEOUT, LEDGER_UNSUBSCRIBE_TIMEOUT
from ..protocol.structures import AccountNotification

logger = logging.getLogger("ultrabridge.ledger")

ChangeCallback = Callable[[AccountNotification], None]
ConnectFactory = Callable[..., Any]


class LedgerWatchError(RuntimeError):
    """The RPC endpoint rejected the subscription or sent garbage."""


class _RpcRequest(msgspec.Struct):
    id: int
    method: str
    params: list[Any]
    jsonrpc: str = "2.0"


class _RpcMessage(msgspec.Struct):
    jsonrpc: str = "2.0"
    id: int | None = None
    result: Any = None
    error: Any = None
    method: str | None = None
    params: Any = None


class _NotificationContext(msgspec.Struct):
    slot: int | None = None


class _AccountValue(msgspec.Struct):
    lamports: int | None = None
    owner: str | None = None


class _NotificationResult(msgspec.Struct):
    context: _NotificationContext = msgspec.field(default_factory=_NotificationContext)
    value: _AccountValue | None = None


class _NotificationParams(msgspec.Struct):
    subscription: int
    result: _NotificationResult = msgspec.field(default_factory=_NotificationResult)


_rpc_decoder = msgspec.json.Decoder(_RpcMessage)


def _log_retry_attempt(retry_state: tenacity.RetryCallState) -> None:
    logger.warning(
        "Ledger watch disconnected (attempt %d, next wait %.2fs): %s",
        retry_state.attempt_number,
        retry_state.next_action.sleep if retry_state.next_action else 0,
        retry_state.outcome.exception() if retry_state.outcome else None,
    )


def parse_notification(params: Any, subscription_id: int) -> AccountNotification | None:
    """Convert ``accountNotification`` params; ``None`` when not ours."""
    try:
        parsed = msgspec.convert(params, _NotificationParams)
    except msgspec.ValidationError as exc:
        logger.warning("Malformed account notification: %s", exc)
        return None
    if parsed.subscription != subscription_id:
        return None
    value = parsed.result.value
    return AccountNotification(
        subscription=parsed.subscription,
        slot=parsed.result.context.slot,
        lamports=value.lamports if value is not None else None,
        owner=value.owner if value is not None else None,
    )


class AccountWatch:
    """Subscription to change notifications for one fixed ledger account."""

    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_SUBSCRIBING = "subscribing"
    STATE_READY = "ready"

    if TYPE_CHECKING:
        fsm_state: str

        def trigger(self, trigger_name: str, *args: Any, **kwargs: Any) -> bool: ...

    def __init__(
        self,
        config: RuntimeConfig,
        on_change: ChangeCallback,
        *,
        connect: ConnectFactory | None = None,
    ) -> None:
        self.config = config
        self.on_change = on_change
        self._connect = connect or websockets.connect
        self._task: asyncio.Task[None] | None = None
        self._ws: Any = None
        self._ids = itertools.count(1)
        self.subscription_id: int | None = None
        self.notifications = 0
        self.stopped = False
        self.ready_event = asyncio.Event()

        self.machine = Machine(
            model=self,
            states=[
                self.STATE_DISCONNECTED,
                self.STATE_CONNECTING,
                self.STATE_SUBSCRIBING,
                self.STATE_READY,
            ],
            initial=self.STATE_DISCONNECTED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            auto_transitions=False,
        )
        self.machine.add_transition("connect", "*", self.STATE_CONNECTING)
        self.machine.add_transition("connected", self.STATE_CONNECTING, self.STATE_SUBSCRIBING)
        self.machine.add_transition("subscribed", self.STATE_SUBSCRIBING, self.STATE_READY)
        self.machine.add_transition("disconnect", "*", self.STATE_DISCONNECTED)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None or self.stopped:
            return
        self._task = asyncio.create_task(self.run(), name="ledger-watch")

    async def stop(self) -> None:
        """Tear the watch down. Later calls are no-ops."""
        if self.stopped:
            return
        self.stopped = True
        task, self._task = self._task, None
        if task is None:
            return

        await self._unsubscribe()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await task
            except (OSError, WebSocketException, LedgerWatchError) as exc:
                logger.warning("Ledger watch ended with error: %s", exc)
        self.trigger("disconnect")
        logger.info("Ledger watch for %s stopped.", self.config.ledger_account)

    async def run(self) -> None:
        """Keep a subscription alive, reconnecting with exponential backoff."""
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(
                multiplier=self.config.reconnect_delay, max=LEDGER_MAX_BACKOFF
            ),
            retry=tenacity.retry_if_exception_type(
                (
                    OSError,
                    asyncio.TimeoutError,
                    WebSocketException,
                    LedgerWatchError,
                )
            ),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    try:
                        await self._session()
                    finally:
                        self._ws = None
                        self.subscription_id = None
                        self.ready_event.clear()
                        self.trigger("disconnect")
        except asyncio.CancelledError:
            logger.debug("Ledger watch task cancelled.")
            raise

    async def _session(self) -> None:
        self.trigger("connect")
        logger.info("Connecting to ledger RPC %s...", self.config.ledger_ws_url)
        async with self._connect(self.config.ledger_ws_url) as ws:
            self._ws = ws
            self.trigger("connected")
            request_id = next(self._ids)
            await ws.send(
                msgspec.json.encode(
                    _RpcRequest(
                        id=request_id,
                        method="accountSubscribe",
                        params=[
                            self.config.ledger_account,
                            {"encoding": "base64", "commitment": self.config.ledger_commitment},
                        ],
                    )
                ).decode("utf-8")
            )
            self.subscription_id = await asyncio.wait_for(
                self._await_subscription(ws, request_id), LEDGER_SUBSCRIBE_TIMEOUT
            )
            self.trigger("subscribed")
            self.ready_event.set()
            logger.info(
                "Watching ledger account %s (subscription %d).",
                self.config.ledger_account,
                self.subscription_id,
            )

            async for raw in ws:
                message = self._decode(raw)
                if message is None or message.method != "accountNotification":
                    continue
                self._handle_notification(message.params)

        raise ConnectionError("Ledger websocket closed by peer")

    async def _await_subscription(self, ws: Any, request_id: int) -> int:
        async for raw in ws:
            message = self._decode(raw)
            if message is None or message.id != request_id:
                continue
            if message.error is not None:
                raise LedgerWatchError(f"accountSubscribe rejected: {message.error}")
            if not isinstance(message.result, int) or isinstance(message.result, bool):
                raise LedgerWatchError(f"Unexpected subscription id: {message.result!r}")
            return message.result
        raise ConnectionError("Ledger websocket closed before subscription")

    def _decode(self, raw: str | bytes) -> _RpcMessage | None:
        try:
            return _rpc_decoder.decode(raw)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            logger.warning("Discarding malformed ledger message: %s", exc)
            return None

    def _handle_notification(self, params: Any) -> None:
        subscription_id = self.subscription_id
        if subscription_id is None:
            return
        notification = parse_notification(params, subscription_id)
        if notification is None:
            return
        self.notifications += 1
        logger.info("Ledger account changed (slot %s).", notification.slot)
        try:
            self.on_change(notification)
        except Exception:
            logger.exception("Ledger change callback failed")

    async def _unsubscribe(self) -> None:
        ws = self._ws
        subscription_id = self.subscription_id
        if ws is None or subscription_id is None:
            return
        request = _RpcRequest(
            id=next(self._ids), method="accountUnsubscribe", params=[subscription_id]
        )
        try:
            await asyncio.wait_for(
                ws.send(msgspec.json.encode(request).decode("utf-8")),
                LEDGER_UNSUBSCRIBE_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("accountUnsubscribe failed: %s", exc)


__all__ = ["AccountWatch", "LedgerWatchError", "parse_notification"]
