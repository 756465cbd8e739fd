"""
Shared fixtures for the read-through cache tests.
"""

import threading
import time
from typing import Any, Callable, Optional

import pytest

from readthrough.cache import InMemoryBackend, ReadThroughCache
from readthrough.config import CacheSettings


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingLoader:
    """
    Loader that records how often it ran.

    With a gate it blocks until the gate is set, which keeps a load in
    flight for as long as a test needs.
    """

    def __init__(
        self,
        value: Any = None,
        gate: Optional[threading.Event] = None,
        error: Optional[BaseException] = None,
        factory: Optional[Callable[[int], Any]] = None,
    ):
        self.value = value
        self.gate = gate
        self.error = error
        self.factory = factory
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self) -> Any:
        with self._lock:
            self.calls += 1
            call_number = self.calls
        if self.gate is not None:
            assert self.gate.wait(5), "gate was never opened"
        if self.error is not None:
            raise self.error
        if self.factory is not None:
            return self.factory(call_number)
        return self.value


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until it holds or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return CacheSettings()


@pytest.fixture
def backend(clock):
    return InMemoryBackend(clock=clock)


@pytest.fixture
def cache(backend, settings):
    cache = ReadThroughCache(backend, settings)
    yield cache
    cache.close()
