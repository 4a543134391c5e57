"""Pytest configuration and shared fixtures for camstream tests.

Everything here runs without capture hardware: camera work goes through
the digital twin driver and network work through loopback sockets.
"""

from __future__ import annotations

import io
import threading
from collections.abc import Iterator

import pytest

from camstream.drivers.cameras import DigitalTwinCameraDriver, DigitalTwinConfig
from camstream.drivers.config import reset_factory
from camstream.observability import configure_logging, reset_logging
from camstream.utils.image import CV2ImageCodec


class FakeClock:
    """Clock whose ``sleep`` advances time instantly.

    Records every sleep so retry and backoff behaviour can be asserted
    without waiting.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _fresh_global_config() -> Iterator[None]:
    """Forget the global StreamConfig before and after each test."""
    reset_factory()
    yield
    reset_factory()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Deterministic clock for supervisor, throttle and scheduler tests."""
    return FakeClock()


@pytest.fixture
def twin_config() -> DigitalTwinConfig:
    """Twin behaviour with a short readout delay.

    A few milliseconds per capture keeps continuous sessions from
    spinning a core while still producing frames much faster than the
    throttle interval.
    """
    return DigitalTwinConfig(capture_delay_s=0.005)


@pytest.fixture
def twin_driver(twin_config: DigitalTwinConfig) -> DigitalTwinCameraDriver:
    """Back (id 0) and front (id 1) simulated devices."""
    return DigitalTwinCameraDriver(twin_config)


@pytest.fixture
def codec() -> CV2ImageCodec:
    return CV2ImageCodec()


@pytest.fixture
def log_stream() -> Iterator[io.StringIO]:
    """Route camstream logs to a buffer as JSON lines at DEBUG.

    The camstream root logger does not propagate, so caplog never sees
    these records; tests read the buffer instead.
    """
    buffer = io.StringIO()
    configure_logging(level="DEBUG", json_format=True, stream=buffer, force=True)
    yield buffer
    reset_logging()
