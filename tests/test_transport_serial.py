"""Tests for the serial channel and its line framing."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from ultrabridge.const import MAX_LINE_BYTES
from ultrabridge.transport.serial import (
    ChannelOpenError,
    ChannelWriteError,
    SerialChannel,
)

from tests.mocks import FakeSerialDevice


@pytest.mark.asyncio
async def test_open_write_close(channel: SerialChannel, serial_device: FakeSerialDevice) -> None:
    await channel.open()
    assert channel.is_open
    assert channel.fsm_state == SerialChannel.STATE_OPEN

    channel.write(b"D\n")
    assert serial_device.written == [b"D\n"]

    channel.close()
    channel.close()
    assert not channel.is_open
    assert channel.fsm_state == SerialChannel.STATE_CLOSED


@pytest.mark.asyncio
async def test_open_failure_is_reported_not_retried(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    serial_device.open_error = OSError(2, "could not open port /dev/ttyACM0")

    with pytest.raises(ChannelOpenError) as excinfo:
        await channel.open()

    assert "could not open port" in excinfo.value.reason
    assert channel.fsm_state == SerialChannel.STATE_CLOSED
    assert serial_device.opens == 0


@pytest.mark.asyncio
async def test_second_open_is_rejected(channel: SerialChannel, serial_device: FakeSerialDevice) -> None:
    await channel.open()

    with pytest.raises(ChannelOpenError):
        await channel.open()
    assert serial_device.opens == 1


@pytest.mark.asyncio
async def test_write_when_closed_raises(channel: SerialChannel) -> None:
    with pytest.raises(ChannelWriteError):
        channel.write(b"F\n")


@pytest.mark.asyncio
async def test_transport_write_failure_is_wrapped(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    serial_device.write_error = OSError("I/O error")

    with pytest.raises(ChannelWriteError):
        channel.write(b"F\n")


@pytest.mark.asyncio
async def test_chunks_are_reassembled_into_lines(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    lines: list[str] = []
    channel.add_listener(lines.append)

    serial_device.feed(b"12.5,")
    assert lines == []
    serial_device.feed(b"90\r\nTOTAL_DIST")
    serial_device.feed(b"ANCE: 7\n\n")

    assert lines == ["12.5,90", "TOTAL_DISTANCE: 7", ""]


@pytest.mark.asyncio
async def test_overlong_line_is_discarded(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    lines: list[str] = []
    channel.add_listener(lines.append)

    serial_device.feed(b"x" * (MAX_LINE_BYTES + 10))
    serial_device.feed(b"yyy\nok\n")

    assert lines == ["ok"]


@pytest.mark.asyncio
async def test_failing_listener_is_isolated(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    broken = MagicMock(side_effect=RuntimeError("boom"))
    lines: list[str] = []
    channel.add_listener(broken)
    channel.add_listener(lines.append)

    serial_device.feed(b"hello\n")

    broken.assert_called_once_with("hello")
    assert lines == ["hello"]


@pytest.mark.asyncio
async def test_remove_listener_stops_delivery(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    lines: list[str] = []
    channel.add_listener(lines.append)
    channel.remove_listener(lines.append)
    channel.remove_listener(lines.append)

    serial_device.feed(b"hello\n")

    assert lines == []
    assert channel.listener_count == 0


@pytest.mark.asyncio
async def test_close_listener_fires_once_on_local_close(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    closed = MagicMock()
    channel.add_close_listener(closed)

    channel.close()
    await asyncio.sleep(0)
    channel.close()

    closed.assert_called_once_with(None)


@pytest.mark.asyncio
async def test_close_listener_fires_on_device_loss(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    closed = MagicMock()
    channel.add_close_listener(closed)

    serial_device.unplug()

    closed.assert_called_once()
    assert isinstance(closed.call_args[0][0], OSError)
    assert not channel.is_open


@pytest.mark.asyncio
async def test_reopen_after_close(channel: SerialChannel, serial_device: FakeSerialDevice) -> None:
    await channel.open()
    channel.close()
    await channel.open()

    assert channel.is_open
    assert serial_device.opens == 2
