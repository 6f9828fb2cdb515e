"""
Shared fixtures for the plotdrive test suite.

Driver and session tests run against :class:`plotdrive.device.MockEBB`, an
in-memory EiBotBoard, so no hardware is needed.  Timeouts in the test
configuration are short, keeping fault scenarios fast.
"""
import time

import pytest

from plotdrive.config import LinkSettings, MachineConfig, SessionSettings
from plotdrive.device import EBBDriver, MockEBB
from plotdrive.planner import MotionPlanner


@pytest.fixture
def config():
    """Machine configuration with test-friendly link deadlines."""
    return MachineConfig(
        link=LinkSettings(
            port="mock",
            read_timeout_s=0.01,
            connect_timeout_s=0.3,
            connect_retries=1,
            connect_backoff_s=0.01,
            command_timeout_s=0.3,
            command_retries=2,
            motion_timeout_margin_s=0.3,
        ),
        session=SessionSettings(timeslice_ms=30, idle_timeout_s=2.0),
    )


@pytest.fixture
def planner(config):
    return MotionPlanner(config)


@pytest.fixture
def mock_ebb():
    return MockEBB()


@pytest.fixture
def driver(config, mock_ebb):
    """A driver connected to the mock board; disconnected after the test."""
    drv = EBBDriver(config, link_factory=mock_ebb.open)
    drv.connect()
    yield drv
    drv.disconnect()


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""

    def _wait(predicate, timeout=2.0, interval=0.005):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
