"""Capture session: per-device open -> configure -> capture -> close.

The session is a state machine driven entirely from the device's
CallbackQueue:

    CLOSED --open()--> OPENING --opened--> CONFIGURING --configured-->
    STREAMING | RECORDING --teardown()--> CLOSING --> CLOSED

A driver error in any non-terminal state goes straight through CLOSING.
Continuous sessions end in CLOSED and report the error through
``on_failure`` so the owner can stop the stream; burst and record
sessions end in FAILED so the scheduler can move on.

Capture modes:
    CONTINUOUS: repeat-capture until teardown. Frames pass the throttle
        and the transform before ``on_frame``.
    BURST: exactly one capture, delivered without throttling, then an
        immediate teardown and ``on_complete``.
    RECORD: repeat-capture for a fixed duration (throttled to the clip
        frame rate), then teardown and ``on_complete``.

Opening and closing the device always happen under the shared
DeviceLifecycleGuard.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from camstream.devices.frames import Frame, FrameThrottle, FrameTransform
from camstream.devices.stream import Clock, DeviceStream, SessionState, SystemClock
from camstream.drivers.cameras import select_output_size
from camstream.errors import (
    FrameHandlerError,
    LifecycleTimeoutError,
    StreamError,
)
from camstream.observability import LogContext, get_logger

if TYPE_CHECKING:
    from camstream.devices.lifecycle import DeviceLifecycleGuard
    from camstream.devices.worker import CallbackQueue
    from camstream.drivers.cameras import CameraDriver, CameraInstance
    from camstream.observability import StreamStats

logger = get_logger(__name__)

__all__ = ["CaptureMode", "CaptureSession", "SessionHooks"]


class CaptureMode(Enum):
    """How many frames a session captures before closing."""

    CONTINUOUS = "continuous"
    BURST = "burst"
    RECORD = "record"


@dataclass(slots=True)
class SessionHooks:
    """Callbacks invoked on the device's callback queue.

    Attributes:
        on_frame: Receives every forwarded frame. Raising a StreamError
            (e.g. TransportError from a send) fails the session.
        on_complete: A burst or record session captured what it was asked
            for and closed normally.
        on_failure: The session stopped because of an error.
        on_closed: The session reached CLOSED or FAILED, for any reason.
    """

    on_frame: Callable[[Frame], None] | None = None
    on_complete: Callable[[CaptureSession], None] | None = None
    on_failure: Callable[[CaptureSession, StreamError], None] | None = None
    on_closed: Callable[[CaptureSession], None] | None = None


class CaptureSession:
    """State machine for one device's capture session.

    ``open()`` and ``teardown()`` may be called from any thread; all
    other work happens on the device's callback queue.

    Example:
        session = CaptureSession(
            stream, driver, guard, callbacks,
            throttle=FrameThrottle(0.105),
            transform=FrameTransform(CV2ImageCodec()),
            hooks=SessionHooks(on_frame=connection_sender),
        )
        session.open()        # returns immediately
        ...
        session.teardown()    # idempotent
        session.wait_closed(1.5)
    """

    def __init__(
        self,
        stream: DeviceStream,
        driver: CameraDriver,
        guard: DeviceLifecycleGuard,
        callbacks: CallbackQueue,
        *,
        mode: CaptureMode = CaptureMode.CONTINUOUS,
        throttle: FrameThrottle | None = None,
        transform: FrameTransform | None = None,
        hooks: SessionHooks | None = None,
        clock: Clock | None = None,
        stats: StreamStats | None = None,
        record_duration_s: float | None = None,
    ) -> None:
        """Create a closed session.

        Args:
            stream: Device identity and shared state.
            driver: Driver used to open the device.
            guard: Shared lifecycle permit for open/close.
            callbacks: The device's callback queue.
            mode: CONTINUOUS, BURST or RECORD.
            throttle: Frame gate for CONTINUOUS and RECORD. None forwards
                every frame.
            transform: Orientation transform. None forwards raw payloads.
            hooks: Completion callbacks.
            clock: Time source (default: SystemClock).
            stats: Counters for dropped and pass-through frames.
            record_duration_s: Required for RECORD mode.

        Raises:
            ValueError: RECORD mode without a positive duration.
        """
        if mode is CaptureMode.RECORD and not record_duration_s:
            raise ValueError("RECORD mode needs a positive record_duration_s")
        self.stream = stream
        self.mode = mode
        self._driver = driver
        self._guard = guard
        self._callbacks = callbacks
        self._throttle = throttle
        self._transform = transform
        self._hooks = hooks or SessionHooks()
        self._clock = clock or SystemClock()
        self._stats = stats
        self._record_duration_s = record_duration_s

        self._instance: CameraInstance | None = None
        self._lock = threading.Lock()
        self._teardown_requested = False
        self._started_at: float | None = None
        self._frames_delivered = 0
        self._closed_event = threading.Event()
        self._closed_event.set()
        self.last_error: StreamError | None = None

    def __repr__(self) -> str:
        return (
            f"CaptureSession(facing={self.stream.facing.value}, "
            f"mode={self.mode.value}, state={self.state.value})"
        )

    @property
    def state(self) -> SessionState:
        return self.stream.state

    @property
    def frames_delivered(self) -> int:
        return self._frames_delivered

    # ------------------------------------------------------------------
    # Public API (any thread)
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start opening the device asynchronously.

        Completion is reported through the hooks, not the return value.

        Raises:
            RuntimeError: The session is not CLOSED/FAILED, or the callback
                queue does not accept work.
        """
        with self._lock:
            if not self.stream.state.is_terminal:
                raise RuntimeError(
                    f"Cannot open {self.stream.facing.value} session "
                    f"in state {self.stream.state.value}"
                )
            self._teardown_requested = False
            self._frames_delivered = 0
            self.last_error = None
            self._closed_event.clear()
            self.stream.transition(SessionState.OPENING)

        if not self._callbacks.post(self._on_open_requested):
            self.stream.transition(SessionState.CLOSED)
            self._closed_event.set()
            raise RuntimeError(
                f"Callback queue {self._callbacks.name} is not running"
            )
        logger.debug(
            "Session opening", facing=self.stream.facing.value, mode=self.mode.value
        )

    def teardown(self) -> None:
        """Close the session. Idempotent and safe from any thread.

        In-flight capture or send work finishes first; the device is
        released under the lifecycle permit.
        """
        with self._lock:
            # A FAILED session may still hold a device it could not release
            unreleased = self.stream.state.is_terminal and self._instance is not None
            if not unreleased and (
                self.stream.state.is_terminal or self._teardown_requested
            ):
                return
            self._teardown_requested = True

        if self._callbacks.is_current():
            self._close()
        elif not self._callbacks.post(self._close):
            # Queue already stopping: release from this thread
            self._close()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the session reaches CLOSED or FAILED."""
        return self._closed_event.wait(timeout)

    # ------------------------------------------------------------------
    # Callback queue steps
    # ------------------------------------------------------------------

    def _on_open_requested(self) -> None:
        if self._teardown_requested:
            self._close()
            return
        facing = self.stream.facing
        try:
            with self._guard.hold("open", facing):
                instance = self._driver.open(self.stream.camera_id)
        except StreamError as exc:
            self._fail(exc)
            return
        self._instance = instance
        logger.info(
            "Camera opened", facing=facing.value, camera_id=self.stream.camera_id
        )

        if self._teardown_requested:
            self._close()
            return
        self.stream.transition(SessionState.CONFIGURING)
        self._callbacks.post(self._on_opened)

    def _on_opened(self) -> None:
        if self._teardown_requested or self._instance is None:
            self._close()
            return
        descriptor = self._instance.get_info()
        size = select_output_size(descriptor.supported_sizes, self.stream.target_size)
        try:
            actual = self._instance.configure(size)
        except StreamError as exc:
            self._fail(exc)
            return
        self.stream.output_size = actual

        active = (
            SessionState.RECORDING
            if self.mode is CaptureMode.RECORD
            else SessionState.STREAMING
        )
        self.stream.transition(active)
        self._started_at = self._clock.monotonic()
        logger.info(
            "Capture session configured",
            facing=self.stream.facing.value,
            mode=self.mode.value,
            size=str(actual),
        )
        self._callbacks.post(self._capture_next)

    def _capture_next(self) -> None:
        if self._teardown_requested or not self.stream.state.is_active:
            return
        assert self._instance is not None
        try:
            payload = self._instance.capture()
        except StreamError as exc:
            self._fail(exc)
            return
        now = self._clock.monotonic()
        frame = Frame(payload=payload, facing=self.stream.facing, captured_at=now)

        if self.mode is CaptureMode.BURST:
            if self._deliver(frame):
                self._complete()
            return

        if self.mode is CaptureMode.RECORD:
            assert self._started_at is not None and self._record_duration_s
            if now - self._started_at >= self._record_duration_s:
                self._complete()
                return

        if self._throttle is None or self._throttle.admit(now):
            self.stream.last_frame_sent_at = now
            if not self._deliver(frame):
                return
        elif self._stats is not None:
            self._stats.record_drop(self.stream.facing.value)

        self._callbacks.post(self._capture_next)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deliver(self, frame: Frame) -> bool:
        if self._transform is not None:
            frame = self._transform.apply(frame)
            if frame.passthrough and self._stats is not None:
                self._stats.record_passthrough(frame.facing.value)
        if self._hooks.on_frame is None:
            self._frames_delivered += 1
            return True
        try:
            self._hooks.on_frame(frame)
        except StreamError as exc:
            self._fail(exc)
            return False
        except Exception as exc:
            logger.exception(
                "Frame handler raised", facing=frame.facing.value, mode=self.mode.value
            )
            self._fail(FrameHandlerError(f"{type(exc).__name__}: {exc}"))
            return False
        self._frames_delivered += 1
        return True

    def _complete(self) -> None:
        with self._lock:
            self._teardown_requested = True
        if self._close() and self._hooks.on_complete is not None:
            self._hooks.on_complete(self)

    def _fail(self, error: StreamError) -> None:
        self.last_error = error
        with LogContext(facing=self.stream.facing.value, mode=self.mode.value):
            if self._teardown_requested:
                logger.debug("Error during teardown", error=str(error))
            else:
                logger.warning(
                    "Capture session failed",
                    error_type=type(error).__name__,
                    error=str(error),
                    reason=getattr(error, "reason", None),
                    state=self.stream.state.value,
                )
        with self._lock:
            self._teardown_requested = True
        final = (
            SessionState.CLOSED
            if self.mode is CaptureMode.CONTINUOUS
            else SessionState.FAILED
        )
        # A permit timeout in _close reports its own failure
        if self._close(final) and self._hooks.on_failure is not None:
            self._hooks.on_failure(self, error)

    def _close(self, final_state: SessionState = SessionState.CLOSED) -> bool:
        """Release the device and settle in ``final_state``.

        Returns:
            False if the device could not be released because the
            lifecycle permit timed out (the session is then FAILED).
        """
        if self.stream.state.is_terminal and self._instance is None:
            self._closed_event.set()
            return True
        self.stream.transition(SessionState.CLOSING)

        instance = self._instance
        if instance is not None:
            try:
                with self._guard.hold("close", self.stream.facing):
                    instance.close()
            except LifecycleTimeoutError as exc:
                # The device stays referenced: it was never released.
                self.last_error = exc
                self.stream.transition(SessionState.FAILED)
                self._closed_event.set()
                if self._hooks.on_failure is not None:
                    self._hooks.on_failure(self, exc)
                return False
            self._instance = None

        self.stream.transition(final_state)
        self._closed_event.set()
        logger.info(
            "Capture session closed",
            facing=self.stream.facing.value,
            state=final_state.value,
            frames=self._frames_delivered,
        )
        if self._hooks.on_closed is not None:
            self._hooks.on_closed(self)
        return True
