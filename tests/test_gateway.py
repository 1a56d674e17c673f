"""End-to-end tests for the HTTP gateway over a real loopback socket."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import msgspec
import pytest
import pytest_asyncio

from tests.mocks import FakeSerialDevice
from ultrabridge.gateway.server import BridgeGateway, HttpError, read_request
from ultrabridge.gateway.sse import format_sse_comment, format_sse_event
from ultrabridge.metrics import BridgeMetrics
from ultrabridge.services.runtime import BridgeController


async def _http(
    port: int, method: str, path: str, body: bytes | None = None
) -> tuple[int, dict[str, str], bytes]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    head = f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n"
    if body is not None:
        head += f"Content-Type: application/json\r\nContent-Length: {len(body)}\r\n"
    writer.write(head.encode("ascii") + b"\r\n" + (body or b""))
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), 2.0)
    writer.close()
    await writer.wait_closed()

    header_block, _, payload = raw.partition(b"\r\n\r\n")
    lines = header_block.decode("latin-1").split("\r\n")
    status = int(lines[0].split()[1])
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return status, headers, payload


@pytest_asyncio.fixture
async def gateway(controller: BridgeController) -> AsyncIterator[BridgeGateway]:
    server = BridgeGateway(
        controller.config,
        controller,
        metrics=BridgeMetrics(controller.build_metrics_snapshot),
    )
    await server.start()
    try:
        yield server
    finally:
        await server.stop()
        await controller.aclose()


@pytest.mark.asyncio
async def test_status_reports_stopped(gateway: BridgeGateway) -> None:
    status, headers, body = await _http(gateway.port, "GET", "/bridge/status")

    assert status == 200
    assert headers["content-type"] == "application/json"
    assert msgspec.json.decode(body) == {"running": False}


@pytest.mark.asyncio
async def test_start_then_status(gateway: BridgeGateway, serial_device: FakeSerialDevice) -> None:
    status, _, body = await _http(gateway.port, "POST", "/bridge/start")
    assert status == 200
    assert msgspec.json.decode(body) == {"ok": True}

    _, _, body = await _http(gateway.port, "GET", "/bridge/status")
    assert msgspec.json.decode(body) == {"running": True}
    assert serial_device.opens == 1


@pytest.mark.asyncio
async def test_unknown_route_and_wrong_method(gateway: BridgeGateway) -> None:
    status, _, _ = await _http(gateway.port, "GET", "/nope")
    assert status == 404

    status, _, body = await _http(gateway.port, "GET", "/bridge/trigger")
    assert status == 405
    assert msgspec.json.decode(body)["ok"] is False


@pytest.mark.asyncio
async def test_actions_rejected_when_port_closed(
    gateway: BridgeGateway, serial_device: FakeSerialDevice
) -> None:
    for path in ("/bridge/clear", "/bridge/trigger", "/bridge/fetch-data"):
        status, _, body = await _http(gateway.port, "POST", path)
        assert status == 400
        assert msgspec.json.decode(body) == {"ok": False, "error": "Port closed"}
    assert serial_device.written == []


@pytest.mark.asyncio
async def test_fetch_data_returns_summary(
    gateway: BridgeGateway, serial_device: FakeSerialDevice
) -> None:
    serial_device.responder = (
        lambda data: b"TOTAL_DISTANCE_TRAVELLED: 88.25\n" if data == b"D\n" else None
    )
    await _http(gateway.port, "POST", "/bridge/start")

    status, _, body = await _http(gateway.port, "POST", "/bridge/fetch-data")

    assert status == 200
    assert msgspec.json.decode(body) == {"ok": True, "value": "88.25", "attempts": 1}


@pytest.mark.asyncio
async def test_send_rejects_bad_body(gateway: BridgeGateway) -> None:
    status, _, body = await _http(gateway.port, "POST", "/bridge/send", b'{"amount": "lots"}')

    assert status == 400
    assert "Invalid request body" in msgspec.json.decode(body)["error"]


@pytest.mark.asyncio
async def test_send_without_collaborator(gateway: BridgeGateway) -> None:
    status, _, body = await _http(gateway.port, "POST", "/bridge/send", b'{"amount": 0.5}')

    assert status == 400
    assert msgspec.json.decode(body) == {
        "ok": False,
        "error": "Payment collaborator not configured",
    }


@pytest.mark.asyncio
async def test_metrics_endpoint(gateway: BridgeGateway) -> None:
    status, headers, body = await _http(gateway.port, "GET", "/metrics")

    assert status == 200
    assert headers["content-type"].startswith("text/plain")
    assert b"ultrabridge_running 0.0" in body


@pytest.mark.asyncio
async def test_event_stream_delivers_events(
    gateway: BridgeGateway, controller: BridgeController, serial_device: FakeSerialDevice
) -> None:
    reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
    writer.write(b"GET /bridge/events HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()

    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 1.0)
    assert b"200 OK" in head
    assert b"text/event-stream" in head
    assert await asyncio.wait_for(reader.readuntil(b"\n\n"), 1.0) == b": connected\n\n"
    assert gateway.active_streams == 1

    await controller.start()
    serial_device.feed(b"TOTAL_DISTANCE: 3\n")

    frames = []
    while len(frames) < 2:
        frame = await asyncio.wait_for(reader.readuntil(b"\n\n"), 1.0)
        if not frame.startswith(b":"):
            frames.append(frame)
    assert frames[0] == b'event: status\ndata: {"running":true}\n\n'
    assert frames[1] == b'event: serial\ndata: {"text":"TOTAL_DISTANCE: 3"}\n\n'

    writer.close()
    await writer.wait_closed()
    for _ in range(100):
        if gateway.active_streams == 0:
            break
        await asyncio.sleep(0.01)
    assert gateway.active_streams == 0
    assert controller.hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_event_stream_sends_keepalive(gateway: BridgeGateway) -> None:
    reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
    writer.write(b"GET /bridge/events HTTP/1.1\r\n\r\n")
    await writer.drain()
    await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 1.0)
    await asyncio.wait_for(reader.readuntil(b"\n\n"), 1.0)

    frame = await asyncio.wait_for(reader.readuntil(b"\n\n"), 1.0)

    assert frame == b": keepalive\n\n"
    writer.close()
    await writer.wait_closed()


@pytest.mark.asyncio
async def test_gateway_stop_ends_open_streams(
    controller: BridgeController,
) -> None:
    server = BridgeGateway(controller.config, controller)
    await server.start()
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    writer.write(b"GET /bridge/events HTTP/1.1\r\n\r\n")
    await writer.drain()
    await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 1.0)

    await asyncio.wait_for(server.stop(), 2.0)

    assert controller.hub.subscriber_count == 0
    writer.close()


@pytest.mark.asyncio
async def test_read_request_rejects_oversized_body() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"POST /bridge/send HTTP/1.1\r\nContent-Length: 999999\r\n\r\n")
    reader.feed_eof()

    with pytest.raises(HttpError) as excinfo:
        await read_request(reader)

    assert excinfo.value.status == 413


@pytest.mark.asyncio
async def test_read_request_strips_query_string() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"get /bridge/status?verbose=1 HTTP/1.1\r\nX-Test: yes\r\n\r\n")

    request = await read_request(reader)

    assert request is not None
    assert request.method == "GET"
    assert request.path == "/bridge/status"
    assert request.headers == {"x-test": "yes"}


def test_sse_framing() -> None:
    assert format_sse_event({"a": 1}, event="status") == 'event: status\ndata: {"a":1}\n\n'
    assert format_sse_event("one\ntwo", id="7") == "id: 7\ndata: one\ndata: two\n\n"
    assert format_sse_comment("keepalive") == ": keepalive\n\n"
