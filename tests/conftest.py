"""
Shared test fixtures.

Provides:
- A controllable clock for claim / reclaim timing
- A temp-file SQLite job store
- A recording fake broker
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from errors import BrokerError
from storage import Storage


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeBroker:
    """Records calls and concurrency; rejects signals listed in `reject`."""

    def __init__(self, reject=None, delay=0.0):
        self.reject = reject or {}
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.high_water = 0
        self._lock = threading.Lock()

    def execute(self, signal, job_id):
        with self._lock:
            self.calls.append((job_id, signal))
            self.in_flight += 1
            self.high_water = max(self.high_water, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            symbol = signal.get("symbol") if isinstance(signal, dict) else None
            if symbol in self.reject:
                raise BrokerError(self.reject[symbol])
            return {"orderId": f"order-{job_id}", "fillPrice": 100.0}
        finally:
            with self._lock:
                self.in_flight -= 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def db(db_path, clock):
    store = Storage(db_path, clock=clock)
    yield store
    store.close()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def make_broker():
    return FakeBroker
