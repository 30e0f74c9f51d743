"""
Safe Autonomy Test Configuration
Provides shared fixtures for the test suite.
"""
import os
import sys
from datetime import datetime, timezone

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.safe_autonomy.audit import AuditTrail
from src.core.safe_autonomy.event_bus import EventBus


class ManualClock:
    """Clock that only moves when told to. Callable for wall time or datetime."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide an isolated temporary data directory for a test."""
    data_dir = tmp_path / "safe_autonomy_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def env_override(monkeypatch):
    """Factory fixture to set env vars scoped to a single test.

    Usage:
        def test_something(env_override):
            env_override(SAFE_AUTONOMY_CONFIG="/tmp/x.yaml")
    """
    def _set(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key, value)
    return _set


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def audit(bus):
    trail = AuditTrail()
    trail.attach(bus)
    return trail


@pytest.fixture
def events(bus):
    """List that collects every event published on the bus."""
    received = []
    bus.subscribe_all(received.append)
    return received
