"""Pytest configuration for Ultrametre bridge tests."""

from __future__ import annotations

import pytest

from tests.mocks import FakeConnect, FakeSerialDevice
from ultrabridge.config.settings import RuntimeConfig
from ultrabridge.ledger.watch import AccountWatch
from ultrabridge.services.runtime import BridgeController
from ultrabridge.transport.serial import SerialChannel


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        serial_port="/dev/ttyACM0",
        serial_baud=9600,
        serial_settle_delay=0.0,
        http_host="127.0.0.1",
        http_port=0,
        fetch_timeout=0.05,
        fetch_attempts=3,
        fetch_retry_delay=0.02,
        subscriber_queue_limit=8,
        sse_keepalive_interval=0.05,
    )


@pytest.fixture
def serial_device() -> FakeSerialDevice:
    return FakeSerialDevice()


@pytest.fixture
def fake_connect() -> FakeConnect:
    return FakeConnect()


@pytest.fixture
def channel(serial_device: FakeSerialDevice) -> SerialChannel:
    return SerialChannel("/dev/ttyACM0", 9600, connection_factory=serial_device)


@pytest.fixture
def controller(
    runtime_config: RuntimeConfig,
    serial_device: FakeSerialDevice,
    fake_connect: FakeConnect,
) -> BridgeController:
    return BridgeController(
        runtime_config,
        channel_factory=lambda config: SerialChannel(
            config.serial_port, config.serial_baud, connection_factory=serial_device
        ),
        watch_factory=lambda config, on_change: AccountWatch(
            config, on_change, connect=fake_connect
        ),
    )
