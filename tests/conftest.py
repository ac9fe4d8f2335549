"""
Shared fixtures for TestKit host tests.

Every fixture runs without hardware: links sit on a SimulatedTransport
driven by a TestKitSimulator, and all delays are zero.
"""

import pytest

from testkit.communication.device_simulator import SimulatedTransport, TestKitSimulator
from testkit.communication.framed_link import FramedLink, LinkConfig
from testkit.controllers.device_session import DeviceSession, SessionConfig


FAST_LINK = LinkConfig(write_delay=0)

FAST_SESSION = SessionConfig(
    default_timeout=0.2,
    default_retries=0,
    ping_timeout=0.2,
    ping_retries=0,
    blink_error_period=0.02,
)


@pytest.fixture
def simulator():
    """Fixture simulator with CRC enabled."""
    return TestKitSimulator()


@pytest.fixture
def transport(simulator):
    """Transport answering through the simulator."""
    return SimulatedTransport(simulator)


@pytest.fixture
async def link(transport):
    """Open link to the simulator."""
    link = FramedLink("SIM0", FAST_LINK, transport)
    await link.open()
    yield link
    await link.close()


@pytest.fixture
async def session(link):
    """Started session over the simulated link."""
    session = DeviceSession(link, FAST_SESSION)
    await session.start()
    yield session
    await session.close()
