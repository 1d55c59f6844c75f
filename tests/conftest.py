import os
import sys
import asyncio
import inspect
from datetime import datetime, timezone

import pytest

# Ensure project root is on sys.path so `import starlight` works in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from starlight.bussystem.mock import MockBussystem
from starlight.cache.query_cache import QueryCache
from starlight.search.query_client import QueryClient


def pytest_pyfunc_call(pyfuncitem):
    """Allow running async tests without pytest-asyncio.

    If the test function is a coroutine, run it in a fresh event loop.
    """
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        funcargs = pyfuncitem.funcargs
        sig = inspect.signature(testfunction)
        # Filter only the parameters that the test function expects
        allowed = {name: funcargs[name] for name in sig.parameters.keys() if name in funcargs}
        asyncio.run(testfunction(**allowed))
        return True
    return None


class FakeClock:
    """Monotonic-style clock tests can move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


MOCK_NOW = datetime(2024, 5, 20, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_api():
    return MockBussystem(now=lambda: MOCK_NOW)


@pytest.fixture
def cache(clock):
    return QueryCache(clock=clock)


@pytest.fixture
def query_client(mock_api, cache):
    return QueryClient(mock_api, cache, lang="en", currency="EUR")
