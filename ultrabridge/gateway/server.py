"""Minimal HTTP/1.1 gateway exposing the bridge controller.

Each connection serves a single request (``Connection: close``), except the
event stream which stays open until the client disconnects or the gateway
stops.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, cast

import msgspec

from ..config.settings import RuntimeConfig
from ..const import HTTP_HEADER_TIMEOUT, HTTP_MAX_BODY_BYTES
from ..metrics import BridgeMetrics
from ..protocol.structures import ActionResult, SendRequest
from ..services.broadcast import Subscriber
from ..services.runtime import PORT_CLOSED_ERROR, BridgeController
from .sse import format_sse_comment, format_sse_event

logger = logging.getLogger("ultrabridge.gateway")

_JSON_CONTENT_TYPE = "application/json"
_PHRASES = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    500: "Internal Server Error",
}


class HttpError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class HttpRequest(msgspec.Struct):
    method: str
    path: str
    headers: dict[str, str]
    body: bytes = b""


Handler = Callable[[HttpRequest], Awaitable[tuple[int, Any]]]


async def read_request(reader: asyncio.StreamReader) -> HttpRequest | None:
    """Parse one request; ``None`` when the peer closed before sending."""
    request_line = await reader.readline()
    if not request_line:
        return None
    parts = request_line.decode("ascii", errors="ignore").split()
    if len(parts) < 2:
        raise HttpError(400, "Malformed request line")
    method, target = parts[0].upper(), parts[1]

    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if not line or line in {b"\r\n", b"\n"}:
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if not sep:
            raise HttpError(400, "Malformed header")
        headers[name.strip().lower()] = value.strip()

    body = b""
    length_header = headers.get("content-length")
    if length_header:
        try:
            length = int(length_header)
        except ValueError:
            raise HttpError(400, "Invalid Content-Length") from None
        if length < 0:
            raise HttpError(400, "Invalid Content-Length")
        if length > HTTP_MAX_BODY_BYTES:
            raise HttpError(413, "Request body too large")
        body = await reader.readexactly(length)

    path = target.split("?", 1)[0] or "/"
    return HttpRequest(method=method, path=path, headers=headers, body=body)


class BridgeGateway:
    """HTTP front end translating requests into controller operations."""

    def __init__(
        self,
        config: RuntimeConfig,
        controller: BridgeController,
        *,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self._config = config
        self._controller = controller
        self._metrics = metrics
        self._host = config.http_host
        self._port = config.http_port
        self._server: asyncio.AbstractServer | None = None
        self._resolved_port: int | None = None
        self._streams: set[Subscriber] = set()
        self._routes: dict[str, dict[str, Handler]] = {
            "/bridge/status": {"GET": self._handle_status},
            "/bridge/start": {"POST": self._handle_start},
            "/bridge/stop": {"POST": self._handle_stop},
            "/bridge/fetch-data": {"POST": self._handle_fetch},
            "/bridge/clear": {"POST": self._handle_clear},
            "/bridge/trigger": {"POST": self._handle_trigger},
            "/bridge/send": {"POST": self._handle_send},
        }
        if metrics is not None:
            self._routes["/metrics"] = {"GET": self._handle_metrics}

    @property
    def port(self) -> int:
        return self._resolved_port or self._port

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._handle_client,
            host=self._host,
            port=self._port,
        )
        sockets = self._server.sockets or []
        if sockets:
            sockname = sockets[0].getsockname()
            if isinstance(sockname, tuple):
                typed_sockname = cast(tuple[object, ...], sockname)
                if len(typed_sockname) >= 2 and isinstance(typed_sockname[1], int):
                    self._resolved_port = typed_sockname[1]
        logger.info(
            "HTTP gateway listening",
            extra={"host": self._host, "port": self.port},
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        # Open event streams would keep wait_closed() pending forever.
        for subscriber in tuple(self._streams):
            self._controller.unsubscribe(subscriber)
        await self._server.wait_closed()
        self._server = None
        logger.info("HTTP gateway stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                request = await asyncio.wait_for(read_request(reader), HTTP_HEADER_TIMEOUT)
            except HttpError as exc:
                await self._write_json(writer, exc.status, ActionResult(ok=False, error=exc.message))
                return
            except asyncio.TimeoutError:
                await self._write_json(writer, 408, ActionResult(ok=False, error="Request timeout"))
                return
            except asyncio.IncompleteReadError:
                await self._write_json(writer, 400, ActionResult(ok=False, error="Truncated body"))
                return
            if request is None:
                return

            if request.path == "/bridge/events":
                if request.method != "GET":
                    await self._write_json(
                        writer, 405, ActionResult(ok=False, error="Method not allowed")
                    )
                    return
                await self._stream_events(reader, writer)
                return

            methods = self._routes.get(request.path)
            if methods is None:
                await self._write_json(writer, 404, ActionResult(ok=False, error="Not found"))
                return
            handler = methods.get(request.method)
            if handler is None:
                await self._write_json(
                    writer, 405, ActionResult(ok=False, error="Method not allowed")
                )
                return

            status, payload = await handler(request)
            if isinstance(payload, bytes):
                assert self._metrics is not None
                await self._write_response(
                    writer, status, payload, content_type=self._metrics.content_type
                )
            else:
                await self._write_json(writer, status, payload)
        except asyncio.CancelledError:
            raise
        except (OSError, ValueError) as e:
            logger.warning("HTTP client request error: %s", e)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (OSError, ValueError, RuntimeError):
                logger.debug("Error closing HTTP client connection", exc_info=True)

    # --- Route handlers ---

    async def _handle_status(self, request: HttpRequest) -> tuple[int, Any]:
        return 200, self._controller.get_status()

    async def _handle_start(self, request: HttpRequest) -> tuple[int, Any]:
        return 200, await self._controller.start()

    async def _handle_stop(self, request: HttpRequest) -> tuple[int, Any]:
        return 200, await self._controller.stop()

    async def _handle_fetch(self, request: HttpRequest) -> tuple[int, Any]:
        result = await self._controller.fetch_telemetry_summary()
        if not result.ok and result.error == PORT_CLOSED_ERROR:
            return 400, result
        return 200, result

    async def _handle_clear(self, request: HttpRequest) -> tuple[int, Any]:
        result = self._controller.clear_device_state()
        return (200 if result.ok else 400), result

    async def _handle_trigger(self, request: HttpRequest) -> tuple[int, Any]:
        result = self._controller.trigger_action(source="api")
        return (200 if result.ok else 400), result

    async def _handle_send(self, request: HttpRequest) -> tuple[int, Any]:
        try:
            payload = msgspec.json.decode(request.body or b"{}", type=SendRequest)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            return 400, ActionResult(ok=False, error=f"Invalid request body: {exc}")
        result = await self._controller.send_payment(payload.amount)
        return (200 if result.ok else 400), result

    async def _handle_metrics(self, request: HttpRequest) -> tuple[int, Any]:
        assert self._metrics is not None
        return 200, self._metrics.render()

    # --- Event stream ---

    async def _stream_events(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: text/event-stream\r\n"
            b"Cache-Control: no-cache\r\n"
            b"Connection: keep-alive\r\n"
            b"X-Accel-Buffering: no\r\n\r\n"
        )
        subscriber = self._controller.subscribe()
        self._streams.add(subscriber)
        logger.info("Event stream opened (subscriber %d).", subscriber.id)

        disconnected = asyncio.ensure_future(reader.read())
        next_event: asyncio.Future[Any] | None = None
        try:
            writer.write(format_sse_comment("connected").encode("utf-8"))
            await writer.drain()
            while True:
                if next_event is None:
                    next_event = asyncio.ensure_future(subscriber.get())
                done, _ = await asyncio.wait(
                    {next_event, disconnected},
                    timeout=self._config.sse_keepalive_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if disconnected in done:
                    break
                if next_event not in done:
                    writer.write(format_sse_comment("keepalive").encode("utf-8"))
                    await writer.drain()
                    continue
                event = next_event.result()
                next_event = None
                if event is None:
                    break
                writer.write(
                    format_sse_event(event.encode_data(), event=event.kind.value).encode("utf-8")
                )
                await writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.debug("Event stream for subscriber %d ended: %s", subscriber.id, exc)
        finally:
            disconnected.cancel()
            if next_event is not None:
                next_event.cancel()
            self._streams.discard(subscriber)
            self._controller.unsubscribe(subscriber)
            logger.info("Event stream closed (subscriber %d).", subscriber.id)

    # --- Response helpers ---

    async def _write_json(self, writer: asyncio.StreamWriter, status: int, payload: Any) -> None:
        await self._write_response(
            writer, status, msgspec.json.encode(payload), content_type=_JSON_CONTENT_TYPE
        )

    async def _write_response(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        body: bytes,
        *,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        status_line = f"HTTP/1.1 {status} {_PHRASES.get(status, 'Error')}\r\n"
        headers = (
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n\r\n"
        )
        writer.write(status_line.encode("ascii") + headers.encode("ascii") + body)
        await writer.drain()


__all__ = ["BridgeGateway", "HttpError", "HttpRequest", "read_request"]
