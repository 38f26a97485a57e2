"""Pytest configuration and shared fixtures."""

import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from sidecar_heartbeat.config.settings import SidecarSettings


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, now: float = 0.0):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def socket_dir():
    """Short temporary directory; AF_UNIX paths are limited to ~100 bytes."""
    d = tempfile.mkdtemp(prefix="hb_")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir) -> Path:
    return socket_dir / "test_heartbeat.sock"


@pytest.fixture
def test_settings(socket_dir) -> SidecarSettings:
    """Fast settings with no signal handlers, HTTP trigger or parent watcher."""
    return SidecarSettings(
        service_name="test-sidecar",
        app_name="Test App",
        heartbeat={
            "interval_ms": 100,
            "timeout_ms": 300,
            "socket_dir": str(socket_dir),
            "accept_timeout_ms": 50,
        },
        shutdown={"grace_delay_ms": 20, "signals": []},
        http={"enabled": False},
        supervisor={"watch_parent": False},
    )
