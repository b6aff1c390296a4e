"""Shared test fixtures for browser relay tests."""

import pytest
import pytest_asyncio

from browser_relay.channel import ConnectionManager, InboundDialer, RequestCorrelator
from browser_relay.config import RelayConfig
from tests.fakes import FakeChannel


@pytest.fixture
def relay_config(tmp_path):
    """Relay configuration with short timeouts and a temp screenshot dir."""
    return RelayConfig(
        correlator={"default_timeout": 1.0, "screenshot_timeout": 1.0},
        connection={"reconnect_base_delay": 0.01, "reconnect_max_delay": 0.05},
        screenshots={"directory": tmp_path / "screenshots"},
    )


@pytest_asyncio.fixture
async def connected_manager():
    """A ConnectionManager connected to a FakeChannel."""
    dialer = InboundDialer()
    channel = FakeChannel()
    await dialer.offer(channel)
    manager = ConnectionManager(dialer, liveness_timeout=30.0)
    await manager.connect()
    yield manager, channel
    await manager.close("test teardown")


@pytest_asyncio.fixture
async def correlator(connected_manager):
    manager, channel = connected_manager
    yield RequestCorrelator(manager, default_timeout=1.0), channel
