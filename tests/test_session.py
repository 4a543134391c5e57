"""Tests for the capture session state machine against the digital twin."""

from __future__ import annotations

import threading

import pytest

from camstream.devices import (
    CallbackQueue,
    CaptureMode,
    CaptureSession,
    DeviceLifecycleGuard,
    DeviceStream,
    Frame,
    FrameThrottle,
    FrameTransform,
    SessionHooks,
    SessionState,
)
from camstream.drivers.cameras import (
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    Facing,
    Size,
)
from camstream.errors import (
    DeviceDisconnectedError,
    DevicePermissionError,
    FrameHandlerError,
    LifecycleTimeoutError,
    SessionConfigurationError,
    TransportError,
)
from camstream.observability import StreamStats
from tests.helpers import wait_until


class HookRecorder:
    """SessionHooks wired to thread-safe lists and events."""

    def __init__(self, frame_limit: int | None = None) -> None:
        self.frames: list[Frame] = []
        self.completed = threading.Event()
        self.failed = threading.Event()
        self.closed = threading.Event()
        self.errors: list[Exception] = []
        self.closed_count = 0
        self.frame_limit = frame_limit
        self.enough_frames = threading.Event()

    def on_frame(self, frame: Frame) -> None:
        self.frames.append(frame)
        if self.frame_limit is not None and len(self.frames) >= self.frame_limit:
            self.enough_frames.set()

    def on_complete(self, session: CaptureSession) -> None:
        self.completed.set()

    def on_failure(self, session: CaptureSession, error: Exception) -> None:
        self.errors.append(error)
        self.failed.set()

    def on_closed(self, session: CaptureSession) -> None:
        self.closed_count += 1
        self.closed.set()

    def hooks(self) -> SessionHooks:
        return SessionHooks(
            on_frame=self.on_frame,
            on_complete=self.on_complete,
            on_failure=self.on_failure,
            on_closed=self.on_closed,
        )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def callbacks():
    queue = CallbackQueue("back")
    queue.start()
    yield queue
    queue.stop(timeout=2)


@pytest.fixture
def guard():
    return DeviceLifecycleGuard(timeout=0.5)


@pytest.fixture
def stream():
    return DeviceStream(Facing.BACK, camera_id=0, target_size=Size(640, 480))


@pytest.fixture
def make_session(stream, twin_driver, guard, callbacks):
    """Factory building a session over the shared stream, driver and queue."""

    def make(**kwargs) -> CaptureSession:
        kwargs.setdefault("driver", twin_driver)
        driver = kwargs.pop("driver")
        return CaptureSession(stream, driver, guard, callbacks, **kwargs)

    return make


# =============================================================================
# Continuous mode
# =============================================================================


class TestContinuousSession:
    """Tests for repeat-capture streaming sessions."""

    def test_streams_until_teardown(self, make_session, twin_driver):
        """Verifies the full CLOSED -> STREAMING -> CLOSED cycle.

        Arrangement:
        1. Twin driver with a 5 ms readout delay.
        2. Session with no throttle so every frame is delivered.

        Action:
        Opens, waits for five frames, tears down.

        Assertion Strategy:
        - State reaches STREAMING and the output size is recorded.
        - Frames arrive from the BACK device with increasing timestamps.
        - After teardown the state is CLOSED, the device is released
          and on_closed fired exactly once.

        Testing Principle:
        Every device opened by a session is released by it, whatever
        path the session takes to CLOSED.
        """
        recorder = HookRecorder(frame_limit=5)
        session = make_session(hooks=recorder.hooks())

        session.open()
        assert recorder.enough_frames.wait(5)
        assert session.state is SessionState.STREAMING
        assert session.stream.output_size == Size(640, 480)

        session.teardown()
        assert session.wait_closed(5)
        assert session.state is SessionState.CLOSED
        assert twin_driver.open_instances == 0
        assert recorder.closed_count == 1
        assert not recorder.failed.is_set()

        timestamps = [f.captured_at for f in recorder.frames]
        assert timestamps == sorted(timestamps)
        assert all(f.facing is Facing.BACK for f in recorder.frames)

    def test_teardown_is_idempotent(self, make_session, twin_driver):
        recorder = HookRecorder(frame_limit=1)
        session = make_session(hooks=recorder.hooks())
        session.open()
        assert recorder.enough_frames.wait(5)

        session.teardown()
        session.teardown()
        assert session.wait_closed(5)
        session.teardown()
        assert recorder.closed_count == 1
        assert twin_driver.open_instances == 0

    def test_teardown_before_open_completes(self, make_session, twin_driver):
        session = make_session()
        session.open()
        session.teardown()
        assert session.wait_closed(5)
        assert session.state is SessionState.CLOSED
        assert twin_driver.open_instances == 0

    def test_throttle_drops_are_counted(self, make_session):
        stats = StreamStats()
        recorder = HookRecorder()
        session = make_session(
            hooks=recorder.hooks(), throttle=FrameThrottle(60.0), stats=stats
        )
        session.open()
        assert wait_until(lambda: stats.get_summary("back").dropped_frames >= 3)
        session.teardown()
        session.wait_closed(5)
        assert len(recorder.frames) == 1
        assert session.stream.last_frame_sent_at is not None

    def test_transform_applied(self, make_session, codec):
        recorder = HookRecorder(frame_limit=1)
        session = make_session(hooks=recorder.hooks(), transform=FrameTransform(codec))
        session.open()
        assert recorder.enough_frames.wait(5)
        session.teardown()
        session.wait_closed(5)

        img = codec.decode_jpeg(recorder.frames[0].payload)
        assert img.shape[:2] == (640, 480)

    def test_undecodable_frames_pass_through(
        self, stream, guard, callbacks, codec
    ):
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(capture_delay_s=0.005, undecodable=True)
        )
        stats = StreamStats()
        recorder = HookRecorder(frame_limit=2)
        session = CaptureSession(
            stream,
            driver,
            guard,
            callbacks,
            transform=FrameTransform(codec),
            hooks=recorder.hooks(),
            stats=stats,
        )
        session.open()
        assert recorder.enough_frames.wait(5)
        session.teardown()
        session.wait_closed(5)

        assert recorder.frames[0].passthrough is True
        assert recorder.frames[0].payload.startswith(b"TWIN-NOT-A-JPEG")
        assert stats.get_summary("back").passthrough_frames >= 2

    def test_disconnect_fails_and_releases(self, stream, guard, callbacks):
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(capture_delay_s=0, disconnect_after=3)
        )
        recorder = HookRecorder()
        session = CaptureSession(
            stream, driver, guard, callbacks, hooks=recorder.hooks()
        )
        session.open()
        assert recorder.failed.wait(5)
        assert session.wait_closed(5)

        assert isinstance(recorder.errors[0], DeviceDisconnectedError)
        assert isinstance(session.last_error, DeviceDisconnectedError)
        assert len(recorder.frames) == 3
        assert session.state is SessionState.CLOSED
        assert driver.open_instances == 0

    def test_send_failure_fails_session(self, make_session, twin_driver):
        failures = HookRecorder()

        def send(frame: Frame) -> None:
            raise TransportError("peer reset")

        hooks = failures.hooks()
        hooks.on_frame = send
        session = make_session(hooks=hooks)
        session.open()
        assert failures.failed.wait(5)
        assert session.wait_closed(5)
        assert isinstance(failures.errors[0], TransportError)
        assert session.frames_delivered == 0
        assert twin_driver.open_instances == 0

    def test_unexpected_handler_error_fails_session(self, make_session, twin_driver):
        """A non-stream exception from on_frame still tears the session down."""
        failures = HookRecorder()

        def consume(frame: Frame) -> None:
            raise ValueError("bad frame consumer")

        hooks = failures.hooks()
        hooks.on_frame = consume
        session = make_session(hooks=hooks)
        session.open()
        assert failures.failed.wait(5)
        assert session.wait_closed(5)
        assert isinstance(failures.errors[0], FrameHandlerError)
        assert "bad frame consumer" in str(failures.errors[0])
        assert session.state is SessionState.CLOSED
        assert twin_driver.open_instances == 0

    def test_open_error(self, stream, guard, callbacks):
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(open_error=DevicePermissionError("denied"))
        )
        recorder = HookRecorder()
        session = CaptureSession(
            stream, driver, guard, callbacks, hooks=recorder.hooks()
        )
        session.open()
        assert recorder.failed.wait(5)
        assert isinstance(recorder.errors[0], DevicePermissionError)
        assert session.state is SessionState.CLOSED
        assert driver.open_count == 0

    def test_configure_error_releases_device(self, stream, guard, callbacks):
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(configure_error=SessionConfigurationError("no"))
        )
        recorder = HookRecorder()
        session = CaptureSession(
            stream, driver, guard, callbacks, hooks=recorder.hooks()
        )
        session.open()
        assert recorder.failed.wait(5)
        assert session.wait_closed(5)
        assert driver.open_count == 1
        assert driver.open_instances == 0

    def test_permit_timeout_prevents_open(self, make_session, guard, twin_driver):
        """A held permit makes the open fail without touching the device."""
        recorder = HookRecorder()
        session = make_session(hooks=recorder.hooks())
        release = threading.Event()
        acquired = threading.Event()

        def holder() -> None:
            with guard.hold("open", Facing.FRONT):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(5)
        try:
            session.open()
            assert recorder.failed.wait(5)
        finally:
            release.set()
            thread.join(5)

        assert isinstance(recorder.errors[0], LifecycleTimeoutError)
        assert twin_driver.open_count == 0

    def test_teardown_releases_device_after_close_timeout(
        self, make_session, guard, twin_driver
    ):
        """Verifies a device stuck by a close timeout is released later.

        Arrangement:
        1. Streaming session on the twin.
        2. Another thread holds the lifecycle permit.

        Action:
        teardown() while the permit is held, then teardown() again after
        it is released.

        Assertion Strategy:
        - The first teardown fails with LifecycleTimeoutError and leaves
          the device open.
        - The second teardown closes it and settles CLOSED.

        Testing Principle:
        Stopping the service must never leave a camera open because an
        earlier close could not get the permit.
        """
        recorder = HookRecorder(frame_limit=1)
        session = make_session(hooks=recorder.hooks())
        session.open()
        assert recorder.enough_frames.wait(5)

        release = threading.Event()
        acquired = threading.Event()

        def holder() -> None:
            with guard.hold("open", Facing.FRONT):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(5)
        try:
            session.teardown()
            assert recorder.failed.wait(5)
        finally:
            release.set()
            thread.join(5)

        assert isinstance(recorder.errors[0], LifecycleTimeoutError)
        assert session.state is SessionState.FAILED
        assert twin_driver.open_instances == 1

        session.teardown()
        assert wait_until(lambda: twin_driver.open_instances == 0)
        assert wait_until(lambda: session.state is SessionState.CLOSED)
        assert recorder.closed_count == 1

    def test_reopen_after_close(self, make_session, twin_driver):
        recorder = HookRecorder(frame_limit=1)
        session = make_session(hooks=recorder.hooks())
        for _ in range(2):
            recorder.enough_frames.clear()
            recorder.frames.clear()
            session.open()
            assert recorder.enough_frames.wait(5)
            session.teardown()
            assert session.wait_closed(5)
        assert twin_driver.open_count == 2
        assert twin_driver.open_instances == 0

    def test_open_while_active(self, make_session):
        recorder = HookRecorder(frame_limit=1)
        session = make_session(hooks=recorder.hooks())
        session.open()
        try:
            with pytest.raises(RuntimeError, match="Cannot open"):
                session.open()
        finally:
            session.teardown()
            session.wait_closed(5)

    def test_open_with_stopped_queue(self, stream, twin_driver, guard):
        queue = CallbackQueue("never-started")
        session = CaptureSession(stream, twin_driver, guard, queue)
        with pytest.raises(RuntimeError, match="not running"):
            session.open()
        assert session.state is SessionState.CLOSED


# =============================================================================
# Burst and record modes
# =============================================================================


class TestBurstSession:
    """Tests for single-capture sessions."""

    def test_one_frame_then_complete(self, make_session, twin_driver):
        recorder = HookRecorder()
        session = make_session(
            mode=CaptureMode.BURST, hooks=recorder.hooks(), throttle=FrameThrottle(60)
        )
        session.open()
        assert recorder.completed.wait(5)
        assert session.wait_closed(5)

        assert len(recorder.frames) == 1
        assert session.frames_delivered == 1
        assert session.state is SessionState.CLOSED
        assert recorder.closed_count == 1
        assert twin_driver.open_instances == 0

    def test_open_error_ends_failed(self, stream, guard, callbacks):
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(open_error=DeviceDisconnectedError("gone"))
        )
        recorder = HookRecorder()
        session = CaptureSession(
            stream,
            driver,
            guard,
            callbacks,
            mode=CaptureMode.BURST,
            hooks=recorder.hooks(),
        )
        session.open()
        assert recorder.failed.wait(5)
        assert session.wait_closed(5)
        assert session.state is SessionState.FAILED
        assert not recorder.completed.is_set()


class TestRecordSession:
    """Tests for fixed-duration recording sessions."""

    def test_records_for_duration(self, make_session, twin_driver):
        recorder = HookRecorder()
        session = make_session(
            mode=CaptureMode.RECORD,
            throttle=FrameThrottle(1 / 30),
            record_duration_s=0.2,
            hooks=recorder.hooks(),
        )
        session.open()
        assert recorder.completed.wait(5)
        assert session.wait_closed(5)
        assert 1 <= len(recorder.frames) <= 10
        assert twin_driver.open_instances == 0

    def test_needs_duration(self, make_session):
        with pytest.raises(ValueError, match="record_duration_s"):
            make_session(mode=CaptureMode.RECORD)
