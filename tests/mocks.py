"""Shared fakes for Ultrametre bridge tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import msgspec


class FakeSerialTransport(asyncio.Transport):
    """In-memory stand-in for the pyserial-asyncio-fast transport."""

    def __init__(self, device: FakeSerialDevice, protocol: asyncio.Protocol) -> None:
        super().__init__()
        self._device = device
        self._protocol = protocol
        self._closing = False
        self.written: list[bytes] = []

    def write(self, data: bytes) -> None:
        if self._device.write_error is not None:
            raise self._device.write_error
        self.written.append(bytes(data))
        self._device.written.append(bytes(data))
        if self._device.responder is not None:
            reply = self._device.responder(bytes(data))
            if reply:
                asyncio.get_running_loop().call_soon(self._protocol.data_received, reply)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        asyncio.get_running_loop().call_soon(self._protocol.connection_lost, None)

    def lose(self, exc: Exception | None = None) -> None:
        self._closing = True
        self._protocol.connection_lost(exc or OSError("device unplugged"))


class FakeSerialDevice:
    """Connection factory producing fake transports for ``SerialChannel``."""

    def __init__(self) -> None:
        self.opens = 0
        self.open_error: Exception | None = None
        self.write_error: Exception | None = None
        self.responder: Callable[[bytes], bytes | None] | None = None
        self.written: list[bytes] = []
        self.transport: FakeSerialTransport | None = None
        self.protocol: Any = None

    async def __call__(
        self,
        loop: asyncio.AbstractEventLoop,
        protocol_factory: Callable[[], asyncio.Protocol],
        url: str,
        baudrate: int = 9600,
    ) -> tuple[FakeSerialTransport, asyncio.Protocol]:
        if self.open_error is not None:
            raise self.open_error
        self.opens += 1
        protocol = protocol_factory()
        transport = FakeSerialTransport(self, protocol)
        protocol.connection_made(transport)
        self.transport = transport
        self.protocol = protocol
        return transport, protocol

    def feed(self, data: bytes) -> None:
        assert self.protocol is not None
        self.protocol.data_received(data)

    def unplug(self) -> None:
        assert self.transport is not None
        self.transport.lose()


class FakeWebSocket:
    """Async context manager and iterator mimicking a websockets client."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False
        self.subscription_id = 42
        self.auto_confirm = True

    async def __aenter__(self) -> FakeWebSocket:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.closed = True

    async def send(self, message: str) -> None:
        payload = msgspec.json.decode(message)
        self.sent.append(payload)
        if self.auto_confirm and payload.get("method") == "accountSubscribe":
            self.push({"jsonrpc": "2.0", "result": self.subscription_id, "id": payload["id"]})

    def push(self, payload: dict[str, Any]) -> None:
        self.incoming.put_nowait(msgspec.json.encode(payload).decode("utf-8"))

    def notify(self, subscription: int | None = None, *, slot: int = 100, lamports: int = 5000) -> None:
        self.push(
            {
                "jsonrpc": "2.0",
                "method": "accountNotification",
                "params": {
                    "result": {
                        "context": {"slot": slot},
                        "value": {
                            "lamports": lamports,
                            "owner": "11111111111111111111111111111111",
                            "data": ["", "base64"],
                            "executable": False,
                        },
                    },
                    "subscription": self.subscription_id if subscription is None else subscription,
                },
            }
        )

    def hang_up(self) -> None:
        self.incoming.put_nowait(None)

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnect:
    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []

    def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]

