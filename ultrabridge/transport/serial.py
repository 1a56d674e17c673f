"""Serial transport for the Ultrametre bridge using pyserial-asyncio-fast.

The device speaks newline-terminated ASCII. ``DeviceLineProtocol`` accumulates
inbound chunks until a terminator and hands complete lines to the owning
``SerialChannel``, which fans them out to registered listeners. Chunk
boundaries are never treated as line boundaries.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, cast

# pyserial-asyncio-fast is mandatory; fail at import time when it is missing.
import serial_asyncio_fast  # type: ignore
from transitions import Machine

from ..const import LINE_TERMINATOR, MAX_LINE_BYTES

logger = logging.getLogger("ultrabridge.serial")

LineListener = Callable[[str], None]
CloseListener = Callable[[Exception | None], None]
ConnectionFactory = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.BaseProtocol]]]


class ChannelError(OSError):
    """Base class for serial channel failures."""


class ChannelOpenError(ChannelError):
    """Raised when the port is unavailable or the channel is already open."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ChannelWriteError(ChannelError):
    """Raised when a write is attempted on a closed channel or rejected."""


class DeviceLineProtocol(asyncio.Protocol):
    """AsyncIO protocol splitting the device byte stream into text lines."""

    def __init__(self, channel: SerialChannel, loop: asyncio.AbstractEventLoop) -> None:
        self.channel = channel
        self.loop = loop
        self.transport: asyncio.Transport | None = None
        self.connected_future: asyncio.Future[None] = loop.create_future()
        self._buffer = bytearray()
        self._discarding = False

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.Transport, transport)
        logger.info("Serial transport established.")
        if not self.connected_future.done():
            self.connected_future.set_result(None)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("Serial connection lost: %s", exc)
        else:
            logger.info("Serial connection closed.")
        self.transport = None
        if not self.connected_future.done():
            self.connected_future.set_exception(exc or ConnectionError("Closed"))
        self.channel._handle_connection_lost(self, exc)

    def data_received(self, data: bytes) -> None:
        logger.debug("Frame from device", extra={"frame": data, "port": self.channel.port})
        start = 0
        while True:
            end = data.find(LINE_TERMINATOR, start)
            if end < 0:
                self._accumulate(data[start:])
                return
            self._accumulate(data[start:end])
            self._flush_line()
            start = end + len(LINE_TERMINATOR)

    def _accumulate(self, fragment: bytes) -> None:
        if self._discarding or not fragment:
            return
        self._buffer.extend(fragment)
        if len(self._buffer) > MAX_LINE_BYTES:
            logger.warning("Serial line too long (>%d bytes), discarding.", MAX_LINE_BYTES)
            self._buffer.clear()
            self._discarding = True

    def _flush_line(self) -> None:
        if self._discarding:
            self._discarding = False
            self._buffer.clear()
            return
        raw = bytes(self._buffer)
        self._buffer.clear()
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        self.channel._dispatch_line(raw.decode("ascii", errors="replace"))


class SerialChannel:
    """The single serial connection to the device, with an explicit FSM."""

    STATE_CLOSED = "closed"
    STATE_OPENING = "opening"
    STATE_OPEN = "open"
    STATE_CLOSING = "closing"

    if TYPE_CHECKING:
        fsm_state: str

        def trigger(self, trigger_name: str, *args: Any, **kwargs: Any) -> bool: ...

    def __init__(
        self,
        port: str,
        baudrate: int,
        *,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self._connection_factory: ConnectionFactory = (
            connection_factory or serial_asyncio_fast.create_serial_connection
        )
        self._transport: asyncio.Transport | None = None
        self._protocol: DeviceLineProtocol | None = None
        self._listeners: list[LineListener] = []
        self._close_listeners: list[CloseListener] = []
        self._close_notified = True

        self.machine = Machine(
            model=self,
            states=[
                self.STATE_CLOSED,
                self.STATE_OPENING,
                self.STATE_OPEN,
                self.STATE_CLOSING,
            ],
            initial=self.STATE_CLOSED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            auto_transitions=False,
        )
        self.machine.add_transition("begin_open", self.STATE_CLOSED, self.STATE_OPENING)
        self.machine.add_transition("opened", self.STATE_OPENING, self.STATE_OPEN)
        self.machine.add_transition("open_failed", self.STATE_OPENING, self.STATE_CLOSED)
        self.machine.add_transition("begin_close", self.STATE_OPEN, self.STATE_CLOSING)
        self.machine.add_transition(
            "closed", [self.STATE_OPEN, self.STATE_CLOSING], self.STATE_CLOSED
        )

    @property
    def is_open(self) -> bool:
        return (
            self.fsm_state == self.STATE_OPEN
            and self._transport is not None
            and not self._transport.is_closing()
        )

    async def open(self) -> None:
        """Open the port. Raises ``ChannelOpenError``; never retries."""
        if self.fsm_state != self.STATE_CLOSED:
            raise ChannelOpenError(f"Serial channel {self.port} is already {self.fsm_state}")

        self.trigger("begin_open")
        loop = asyncio.get_running_loop()
        protocol_factory = functools.partial(DeviceLineProtocol, self, loop)
        logger.info("Opening %s at %d baud...", self.port, self.baudrate)
        try:
            transport, proto = await self._connection_factory(
                loop, protocol_factory, self.port, baudrate=self.baudrate
            )
            protocol = cast(DeviceLineProtocol, proto)
            await protocol.connected_future
        except (OSError, ValueError, ConnectionError) as exc:
            self.trigger("open_failed")
            logger.error("Failed to open %s: %s", self.port, exc)
            raise ChannelOpenError(str(exc) or exc.__class__.__name__) from exc
        except asyncio.CancelledError:
            self.trigger("open_failed")
            raise

        self._transport = cast(asyncio.Transport, transport)
        self._protocol = protocol
        self._close_notified = False
        self.trigger("opened")

    def write(self, data: bytes) -> None:
        if not self.is_open or self._transport is None:
            raise ChannelWriteError("Port closed")
        try:
            self._transport.write(data)
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("Serial write failed: %s", exc)
            raise ChannelWriteError(str(exc)) from exc
        logger.debug("Frame to device", extra={"frame": data, "port": self.port})

    def close(self) -> None:
        """Close the port. Safe to call when already closed."""
        if self.fsm_state != self.STATE_OPEN:
            return
        self.trigger("begin_close")
        transport = self._transport
        if transport is not None and not transport.is_closing():
            transport.close()
        self._finalize(None)

    def add_listener(self, listener: LineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LineListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def add_close_listener(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    def remove_close_listener(self, listener: CloseListener) -> None:
        try:
            self._close_listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _dispatch_line(self, line: str) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(line)
            except Exception:
                logger.exception("Serial line listener %r failed", listener)

    def _handle_connection_lost(
        self, protocol: DeviceLineProtocol, exc: Exception | None
    ) -> None:
        # A late notification from a previous connection must not close a new one.
        if protocol is not self._protocol:
            return
        self._finalize(exc)

    def _finalize(self, exc: Exception | None) -> None:
        self._transport = None
        self._protocol = None
        self.trigger("closed")
        if self._close_notified:
            return
        self._close_notified = True
        for listener in tuple(self._close_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Serial close listener %r failed", listener)


__all__ = [
    "ChannelError",
    "ChannelOpenError",
    "ChannelWriteError",
    "DeviceLineProtocol",
    "SerialChannel",
]
