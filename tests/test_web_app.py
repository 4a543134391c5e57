"""Tests for the dashboard API.

Uses FastAPI's TestClient against a StreamService on twin cameras. Start
requests reach a loopback collector, so no hardware or remote host is
needed.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from camstream.devices import ServiceStopped, TerminalFailure
from camstream.drivers.cameras import DigitalTwinCameraDriver, DigitalTwinConfig
from camstream.drivers.config import StreamConfig
from camstream.service import ServiceState, StreamService
from camstream.transport.collector import Collector, Listener, ReceiveKind
from camstream.web.app import create_app
from tests.helpers import wait_until


@pytest.fixture
def collector(tmp_path) -> Iterator[Collector]:
    collector = Collector(
        [
            Listener(0, ReceiveKind.FRAMES, "back"),
            Listener(0, ReceiveKind.FRAMES, "front"),
        ],
        bind="127.0.0.1",
        receive_dir=tmp_path / "received",
    )
    collector.start()
    yield collector
    collector.stop()


@pytest.fixture
def service(collector, tmp_path) -> Iterator[StreamService]:
    back, front = collector.ports
    service = StreamService(
        StreamConfig(
            back_port=back,
            front_port=front,
            frame_interval_s=0.02,
            restart_on_failure=False,
            cache_dir=tmp_path / "cache",
            twin=DigitalTwinConfig(capture_delay_s=0.005),
        )
    )
    yield service
    service.stop()


@pytest.fixture
def client(service) -> TestClient:
    return TestClient(create_app(service))


# =============================================================================
# Status and events
# =============================================================================


class TestStatus:
    """Tests for GET /api/status."""

    def test_stopped(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "stopped"
        assert data["mode"] == "stream"
        assert data["host"] is None
        assert data["active_streams"] == 0
        assert data["streams"] == {}

    def test_running(self, client, service):
        service.start("127.0.0.1")
        data = client.get("/api/status").json()
        assert data["state"] == "running"
        assert set(data["streams"]) == {"back", "front"}
        assert data["streams"]["back"]["facing"] == "back"


class TestEvents:
    """Tests for GET /api/events."""

    def test_empty(self, client):
        assert client.get("/api/events").json() == {"count": 0, "events": []}

    def test_limit_and_kind(self, client, service):
        for reason in ("a", "b", "c"):
            service.events.publish(ServiceStopped(reason=reason))
        service.events.publish(TerminalFailure(facing="back", attempts=3, error="x"))

        data = client.get("/api/events", params={"limit": 2}).json()
        assert data["count"] == 2
        assert [e["kind"] for e in data["events"]] == [
            "ServiceStopped",
            "TerminalFailure",
        ]

        data = client.get("/api/events", params={"kind": "ServiceStopped"}).json()
        assert [e["reason"] for e in data["events"]] == ["a", "b", "c"]

    def test_limit_validated(self, client):
        assert client.get("/api/events", params={"limit": 0}).status_code == 422


# =============================================================================
# Start / stop
# =============================================================================


class TestStartStop:
    """Tests for POST /api/start and POST /api/stop."""

    def test_start_and_stop(self, client, service, collector):
        """Verifies an operator start/stop round trip over HTTP.

        Arrangement:
        1. Stopped service with no configured host.

        Action:
        POST /api/start with the collector address, then POST /api/stop.

        Assertion Strategy:
        - Start answers 200 with the host and the service streams.
        - Stop answers 200, reports "stopped" and releases every device.
        """
        response = client.post(
            "/api/start", json={"host": "127.0.0.1", "restart_on_failure": False}
        )
        assert response.status_code == 200
        assert response.json() == {"started": True, "host": "127.0.0.1"}
        assert service.is_running
        assert wait_until(
            lambda: any(collector.receiver.receive_dir.glob("back_*.jpg"))
        )

        response = client.post("/api/stop")
        assert response.status_code == 200
        assert response.json() == {"stopped": True, "state": "stopped"}
        assert service.driver.open_instances == 0

    def test_stop_when_stopped(self, client):
        assert client.post("/api/stop").json() == {
            "stopped": False,
            "state": "stopped",
        }

    @pytest.mark.parametrize("body", [{}, {"host": "not-an-ip"}])
    def test_invalid_host(self, client, service, body):
        response = client.post("/api/start", json=body)
        assert response.status_code == 400
        assert service.state is ServiceState.STOPPED

    def test_already_running(self, client):
        assert client.post("/api/start", json={"host": "127.0.0.1"}).status_code == 200
        response = client.post("/api/start", json={"host": "127.0.0.1"})
        assert response.status_code == 409

    def test_devices_unavailable(self, tmp_path):
        service = StreamService(
            StreamConfig(cache_dir=tmp_path),
            driver=DigitalTwinCameraDriver(cameras={}),
        )
        client = TestClient(create_app(service))
        response = client.post("/api/start", json={"host": "127.0.0.1"})
        assert response.status_code == 503
        assert "No camera" in response.json()["detail"]
