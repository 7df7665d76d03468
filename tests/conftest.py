import asyncio

import pytest
from pytest_socket import disable_socket

from pipeline.shutdown import Shutdown
from sources.base import Device, EnergyReading


def pytest_runtest_setup():
    """
    Runs before every test.
    We disable network access. Every attempt to connect
    (HTTP, DNS, etc) will immediately raise a SocketBlockedError.
    """
    disable_socket(allow_unix_socket=True)


class FakeSource:
    """PowerSource stand-in returning a fixed reading, or raising `error`"""

    def __init__(self, address, watts=None, error_code=0, error=None, delay=0.0, connect_error=None):
        self.device = Device(address=address, username="user@example.com", password="secret")
        self.watts = watts
        self.error_code = error_code
        self.error = error
        self.delay = delay
        self.connect_error = connect_error
        self.calls = 0
        self.connected = False
        self.closed = False

    @property
    def address(self):
        return self.device.address

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def fetch_power(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return EnergyReading(error_code=self.error_code, power_watts=self.watts)

    async def close(self):
        self.closed = True


class FakeSink:
    """MetricsSink stand-in; pops one outcome per send (None = success)"""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.attempts = []
        self.batches = []

    async def send(self, batch):
        self.attempts.append(list(batch))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        self.batches.append(list(batch))


@pytest.fixture
def shutdown():
    return Shutdown()


@pytest.fixture
def intake():
    return asyncio.Queue()
