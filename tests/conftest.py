"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import time

import pytest
from hypothesis import settings

from ossuary.backends.inmemory import InMemoryAdapter
from ossuary.core.queue import Queue

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class FakeClock:
    """Manually advanced time source for adapters."""

    def __init__(self, start: float | None = None) -> None:
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter(clock: FakeClock) -> InMemoryAdapter:
    return InMemoryAdapter(clock=clock)


@pytest.fixture
async def queue(adapter: InMemoryAdapter) -> Queue:
    q = Queue("queueTest", adapter, {"poll_interval": 0})
    await q.ensure_queue()
    return q
