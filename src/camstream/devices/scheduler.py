"""Periodic burst capture: photos and clips.

A PeriodicScheduler fires at a fixed rate on its own timer thread. Each
firing asks a controller for one capture-encode-send cycle. Controllers
hold a BusyGuard: a firing that arrives while a cycle is still capturing
is discarded, never queued, so at most one cycle is in flight.

The busy period ends when the capture session closes. Sending the
resulting file runs on a separate transfer thread and does not block the
next cycle.

Example:
    photos = BurstPhotoController(registry, driver, guard, store, transfers)
    scheduler = PeriodicScheduler(1.0, photos.trigger, name="photo")
    scheduler.start()
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from camstream.devices.events import (
    EventChannel,
    TransferCompleted,
    TransferFailed,
)
from camstream.devices.frames import Frame, FrameThrottle, FrameTransform
from camstream.devices.session import CaptureMode, CaptureSession, SessionHooks
from camstream.devices.stream import Clock, SystemClock
from camstream.errors import StreamError
from camstream.observability import get_logger
from camstream.transport import TransferVariant

if TYPE_CHECKING:
    from camstream.data.clips import ClipStore, ClipWriter
    from camstream.devices.lifecycle import DeviceLifecycleGuard
    from camstream.devices.registry import StreamRegistry
    from camstream.devices.supervisor import ConnectionSupervisor
    from camstream.drivers.cameras import CameraDriver, Facing
    from camstream.observability import StreamStats

logger = get_logger(__name__)

__all__ = [
    "BurstPhotoController",
    "BusyGuard",
    "ClipController",
    "FileTransfer",
    "PeriodicScheduler",
]


class BusyGuard:
    """Non-blocking "already busy" flag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy = False
        self.discarded = 0

    @property
    def busy(self) -> bool:
        return self._busy

    def try_begin(self) -> bool:
        """Mark busy; False (and count a discard) if already busy."""
        with self._lock:
            if self._busy:
                self.discarded += 1
                return False
            self._busy = True
            return True

    def end(self) -> None:
        with self._lock:
            self._busy = False


class PeriodicScheduler:
    """Fixed-rate timer thread calling ``action`` every ``period`` seconds.

    Ticks missed because ``action`` overran are skipped, not replayed.
    Exceptions from ``action`` are logged and the timer keeps running.
    """

    def __init__(
        self,
        period: float,
        action: Callable[[], object],
        *,
        name: str = "scheduler",
        initial_delay: float = 0.0,
        clock: Clock | None = None,
    ) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        self.period = period
        self.name = name
        self.fires = 0
        self._action = action
        self._initial_delay = initial_delay
        self._clock = clock or SystemClock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"timer-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info("Scheduler started", scheduler=self.name, period_s=self.period)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def fire(self) -> None:
        """Run one tick now, on the calling thread."""
        self.fires += 1
        try:
            self._action()
        except Exception:
            logger.exception("Scheduled action failed", scheduler=self.name)

    def _run(self) -> None:
        next_at = self._clock.monotonic() + self._initial_delay
        while not self._stop.wait(max(0.0, next_at - self._clock.monotonic())):
            self.fire()
            next_at += self.period
            now = self._clock.monotonic()
            if next_at < now:
                skipped = int((now - next_at) // self.period) + 1
                next_at += skipped * self.period
                logger.debug("Scheduler ticks skipped", scheduler=self.name, n=skipped)


class FileTransfer:
    """Sends captured files to the collector on short-lived threads.

    The local file is deleted only after a confirmed send. A failed
    transfer keeps the file and is not retried; the store purges it at
    shutdown.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        store: ClipStore,
        events: EventChannel,
        host: str,
    ) -> None:
        self._supervisor = supervisor
        self._store = store
        self._events = events
        self.host = host
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def submit(
        self, path: Path, variant: TransferVariant, port: int, facing: Facing
    ) -> threading.Thread:
        """Start sending ``path`` in the background."""
        thread = threading.Thread(
            target=self.send,
            args=(path, variant, port, facing),
            name=f"transfer-{path.name}",
            daemon=True,
        )
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def send(
        self, path: Path, variant: TransferVariant, port: int, facing: Facing
    ) -> bool:
        """Send synchronously. Returns True when the file was delivered."""
        try:
            conn = self._supervisor.establish(variant.value, self.host, port)
            try:
                size = conn.send_file(path, variant)
            finally:
                conn.close()
        except StreamError as e:
            logger.warning(
                "Transfer failed, file kept",
                name=path.name,
                variant=variant.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._events.publish(
                TransferFailed(facing=facing.value, name=path.name, error=str(e))
            )
            return False

        self._store.delete(path)
        self._events.publish(
            TransferCompleted(facing=facing.value, name=path.name, size_bytes=size)
        )
        return True

    def join(self, timeout: float | None = None) -> None:
        """Wait for in-flight transfers (each up to ``timeout``)."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)


class _BurstController:
    """Shared trigger/busy plumbing of the photo and clip controllers."""

    kind = "burst"

    def __init__(
        self,
        registry: StreamRegistry,
        driver: CameraDriver,
        guard: DeviceLifecycleGuard,
        transfers: FileTransfer,
        *,
        clock: Clock | None = None,
        stats: StreamStats | None = None,
    ) -> None:
        self._registry = registry
        self._driver = driver
        self._guard = guard
        self._transfers = transfers
        self._clock = clock or SystemClock()
        self._stats = stats
        self.busy = BusyGuard()
        self.cycles_started = 0

    def trigger(self) -> bool:
        """Start a cycle unless one is in flight.

        Returns:
            True if a cycle started, False if the trigger was discarded.
        """
        if not self.busy.try_begin():
            logger.debug("Capture in progress, trigger ignored", kind=self.kind)
            return False
        try:
            started = self._start_cycle()
        except Exception:
            self.busy.end()
            raise
        if not started:
            self.busy.end()
            return False
        self.cycles_started += 1
        return True

    def _start_cycle(self) -> bool:
        raise NotImplementedError

    def _new_session(
        self, facing: Facing, mode: CaptureMode, **kwargs: object
    ) -> CaptureSession | None:
        entry = self._registry.get(facing)
        if entry is None or not entry.stream.state.is_terminal:
            logger.warning(
                "Device not ready for burst capture",
                facing=facing.value,
                state=entry.stream.state.value if entry else None,
            )
            return None
        session = CaptureSession(
            entry.stream,
            self._driver,
            self._guard,
            entry.callbacks,
            mode=mode,
            clock=self._clock,
            stats=self._stats,
            **kwargs,  # type: ignore[arg-type]
        )
        entry.session = session
        return session

    def _on_closed(self, session: CaptureSession) -> None:
        self.busy.end()

    def _on_failed(self, session: CaptureSession, error: StreamError) -> None:
        # on_closed is skipped when the device could not be released
        self.busy.end()


class BurstPhotoController(_BurstController):
    """One still per trigger, round-robin over the enabled devices."""

    kind = "photo"

    def __init__(
        self,
        registry: StreamRegistry,
        driver: CameraDriver,
        guard: DeviceLifecycleGuard,
        store: ClipStore,
        transfers: FileTransfer,
        transform: FrameTransform,
        photo_port: int,
        *,
        clock: Clock | None = None,
        stats: StreamStats | None = None,
    ) -> None:
        super().__init__(
            registry, driver, guard, transfers, clock=clock, stats=stats
        )
        self._store = store
        self._transform = transform
        self._photo_port = photo_port
        self._index = 0

    def _start_cycle(self) -> bool:
        facings = self._registry.facings()
        if not facings:
            return False
        facing = facings[self._index % len(facings)]
        self._index += 1

        session = self._new_session(
            facing,
            CaptureMode.BURST,
            transform=self._transform,
            hooks=SessionHooks(
                on_frame=self._on_photo,
                on_failure=self._on_failed,
                on_closed=self._on_closed,
            ),
        )
        if session is None:
            return False
        session.open()
        return True

    def _on_photo(self, frame: Frame) -> None:
        try:
            path = self._store.save_photo(frame.payload, frame.facing)
        except OSError:
            logger.exception("Could not save photo", facing=frame.facing.value)
            return
        self._transfers.submit(
            path, TransferVariant.PHOTO, self._photo_port, frame.facing
        )


class ClipController(_BurstController):
    """Records one clip per trigger from the first enabled device."""

    kind = "clip"

    def __init__(
        self,
        registry: StreamRegistry,
        driver: CameraDriver,
        guard: DeviceLifecycleGuard,
        store: ClipStore,
        transfers: FileTransfer,
        clip_port: int,
        *,
        duration_s: float,
        fps: int,
        clock: Clock | None = None,
        stats: StreamStats | None = None,
    ) -> None:
        super().__init__(
            registry, driver, guard, transfers, clock=clock, stats=stats
        )
        self._store = store
        self._clip_port = clip_port
        self.duration_s = duration_s
        self.fps = fps

    def _start_cycle(self) -> bool:
        facings = self._registry.facings()
        if not facings:
            return False
        facing = facings[0]
        writer = self._store.open_clip(facing, self.fps)

        session = self._new_session(
            facing,
            CaptureMode.RECORD,
            throttle=FrameThrottle(1.0 / self.fps),
            record_duration_s=self.duration_s,
            hooks=SessionHooks(
                on_frame=lambda frame: writer.write(frame.payload),
                on_complete=lambda s: self._on_recorded(writer, facing),
                on_failure=lambda s, error: self._on_clip_failed(writer, s, error),
                on_closed=self._on_closed,
            ),
        )
        if session is None:
            writer.discard()
            return False
        session.open()
        return True

    def _on_clip_failed(
        self, writer: ClipWriter, session: CaptureSession, error: StreamError
    ) -> None:
        writer.discard()
        self._on_failed(session, error)

    def _on_recorded(self, writer: ClipWriter, facing: Facing) -> None:
        clip = writer.close()
        if clip is None:
            logger.warning("Clip has no frames, nothing to send", facing=facing.value)
            return
        logger.info(
            "Clip recorded",
            name=clip.path.name,
            size_bytes=clip.size_bytes,
            frames=clip.frame_count,
        )
        self._transfers.submit(clip.path, TransferVariant.CLIP, self._clip_port, facing)
