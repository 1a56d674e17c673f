"""Tests for request/reply correlation."""

from __future__ import annotations

import asyncio
import time

import pytest

from tests.mocks import FakeSerialDevice
from ultrabridge.protocol.commands import FETCH_REPLY_PATTERN, Command, encode_command
from ultrabridge.services.matcher import (
    NoResponse,
    ReplyCancelled,
    ReplyMatcher,
    ReplyPending,
)
from ultrabridge.transport.serial import ChannelWriteError, SerialChannel

QUERY = encode_command(Command.QUERY)


async def _request(matcher: ReplyMatcher, attempts: int = 3, timeout: float = 0.05):
    return await matcher.request(
        QUERY,
        FETCH_REPLY_PATTERN,
        per_attempt_timeout=timeout,
        max_attempts=attempts,
        inter_attempt_delay=0.02,
    )


@pytest.mark.asyncio
async def test_reply_on_first_attempt(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    serial_device.responder = lambda data: b"TOTAL_DISTANCE_TRAVELLED: 42.5\r\n"
    await channel.open()
    matcher = ReplyMatcher(channel)

    result = await _request(matcher)

    assert result.value == "42.5"
    assert result.attempts == 1
    assert serial_device.written == [QUERY]
    assert channel.listener_count == 0
    assert matcher.pending is None
    assert not matcher.busy


@pytest.mark.asyncio
async def test_unrelated_lines_do_not_match(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    replies = iter([b"12,30\nnoise\n", b"TOTAL_DISTANCE_TRAVELLED: 3\n"])
    serial_device.responder = lambda data: next(replies)
    await channel.open()

    result = await _request(ReplyMatcher(channel))

    assert result.value == "3"
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_no_response_after_all_attempts(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    matcher = ReplyMatcher(channel)
    started = time.monotonic()

    with pytest.raises(NoResponse) as excinfo:
        await _request(matcher)

    assert excinfo.value.attempts == 3
    assert serial_device.written == [QUERY, QUERY, QUERY]
    # Three 50ms attempts with two 20ms delays in between.
    elapsed = time.monotonic() - started
    assert 0.15 <= elapsed < 0.5
    assert channel.listener_count == 0
    assert not matcher.busy


@pytest.mark.asyncio
async def test_late_reply_does_not_leak_into_next_request(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    matcher = ReplyMatcher(channel)
    with pytest.raises(NoResponse):
        await _request(matcher, attempts=1)

    serial_device.feed(b"TOTAL_DISTANCE_TRAVELLED: 1\n")
    serial_device.responder = lambda data: b"TOTAL_DISTANCE_TRAVELLED: 2\n"

    result = await _request(matcher, attempts=1)
    assert result.value == "2"


@pytest.mark.asyncio
async def test_write_failure_still_waits_out_attempts(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    serial_device.write_error = OSError("I/O error")

    with pytest.raises(NoResponse) as excinfo:
        await _request(ReplyMatcher(channel), attempts=2)

    assert excinfo.value.attempts == 2


@pytest.mark.asyncio
async def test_concurrent_request_is_rejected(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    matcher = ReplyMatcher(channel)
    first = asyncio.create_task(_request(matcher, timeout=1.0))
    await asyncio.sleep(0)

    with pytest.raises(ReplyPending):
        await _request(matcher)

    serial_device.feed(b"TOTAL_DISTANCE_TRAVELLED: 9\n")
    result = await first
    assert result.value == "9"
    assert serial_device.written == [QUERY]


@pytest.mark.asyncio
async def test_cancel_fails_pending_request(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    matcher = ReplyMatcher(channel)
    task = asyncio.create_task(_request(matcher, timeout=1.0))
    await asyncio.sleep(0.01)

    matcher.cancel()

    with pytest.raises(ReplyCancelled):
        await task
    assert channel.listener_count == 0
    assert not matcher.busy


@pytest.mark.asyncio
async def test_cancel_during_retry_delay_frees_slot_at_once(
    channel: SerialChannel, serial_device: FakeSerialDevice
) -> None:
    await channel.open()
    matcher = ReplyMatcher(channel)
    task = asyncio.create_task(
        matcher.request(
            QUERY,
            FETCH_REPLY_PATTERN,
            per_attempt_timeout=0.02,
            max_attempts=3,
            inter_attempt_delay=5.0,
        )
    )
    await asyncio.sleep(0.1)
    started = time.monotonic()

    matcher.cancel()

    assert not matcher.busy
    serial_device.responder = lambda data: b"TOTAL_DISTANCE_TRAVELLED: 7\n"
    assert (await _request(matcher)).value == "7"
    with pytest.raises(ReplyCancelled):
        await asyncio.wait_for(task, 0.5)
    assert time.monotonic() - started < 0.5
    assert channel.listener_count == 0
    assert not matcher.busy


@pytest.mark.asyncio
async def test_request_without_channel_raises() -> None:
    with pytest.raises(ChannelWriteError):
        await _request(ReplyMatcher())
