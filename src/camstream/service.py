"""Stream service: top-level wiring of devices, transport and scheduling.

One StreamService instance owns everything that lives between start and
stop: the device registry, callback queues, the lifecycle guard, the
connection supervisor and (in burst modes) the periodic scheduler.

Modes:
    STREAM  one persistent connection per device, frames sent with the
            length-prefixed protocol
    PHOTO   one still per period, round-robin, sent with variant A
    CLIP    one clip per period from the first device, sent with variant B

The service tracks how many device streams are alive and stops itself
when the count reaches zero. If that happens because of a transient
failure and ``restart_on_failure`` is set, an automatic restart is
scheduled after the backoff; restarts count against the same retry
bound as connection attempts.

Also hosts the optional dashboard thread (uvicorn) used by the CLI.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

import uvicorn

from camstream.data.clips import ClipStore
from camstream.devices import (
    BurstPhotoController,
    CallbackQueue,
    CaptureMode,
    CaptureSession,
    ClipController,
    ConnectionSupervisor,
    DeviceLifecycleGuard,
    DeviceStream,
    EventChannel,
    FileTransfer,
    Frame,
    FrameThrottle,
    FrameTransform,
    PeriodicScheduler,
    RetryPolicy,
    ServiceStarted,
    ServiceStopped,
    SessionHooks,
    StreamEntry,
    StreamFailed,
    StreamRegistry,
    SystemClock,
    TerminalFailure,
)
from camstream.drivers.cameras import find_camera
from camstream.drivers.config import DriverFactory, StreamConfig
from camstream.errors import DeviceNotFoundError, StreamError, TransportError
from camstream.observability import StreamStats, get_logger
from camstream.transport import Connection, validate_host

if TYPE_CHECKING:
    from camstream.devices import Clock
    from camstream.drivers.cameras import CameraDriver, Size
    from camstream.transport import SocketFactory
    from camstream.utils.image import ImageCodec

logger = get_logger(__name__)

__all__ = [
    "DashboardState",
    "RESTART_KEY",
    "ServiceMode",
    "ServiceState",
    "StreamService",
    "start_dashboard",
    "stop_dashboard",
]

#: Retry-state key under which automatic restarts are counted.
RESTART_KEY = "service"


class ServiceMode(Enum):
    """What the service captures and how it sends it."""

    STREAM = "stream"
    PHOTO = "photo"
    CLIP = "clip"


class ServiceState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class StreamService:
    """Start/stop surface for the operator.

    Example:
        service = StreamService(StreamConfig(host="192.168.1.20"))
        service.events.subscribe(show_dialog, TerminalFailure)
        service.start()
        ...
        service.stop()
    """

    def __init__(
        self,
        config: StreamConfig | None = None,
        *,
        mode: ServiceMode = ServiceMode.STREAM,
        driver: CameraDriver | None = None,
        events: EventChannel | None = None,
        stats: StreamStats | None = None,
        store: ClipStore | None = None,
        codec: ImageCodec | None = None,
        clock: Clock | None = None,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        """Create a stopped service.

        Args:
            config: Settings (default: StreamConfig()).
            mode: STREAM, PHOTO or CLIP.
            driver: Camera driver (default: built by DriverFactory).
            events: Event channel shared with the operator surface.
            stats: Send statistics.
            store: Cache for burst photos and clips.
            codec: Image codec for transforms (default: CV2ImageCodec).
            clock: Time source for sessions, throttles and retry sleeps.
            socket_factory: Passed to every Connection (tests).
        """
        self.config = config or StreamConfig()
        self.mode = mode
        self.driver = driver or DriverFactory(self.config).create_camera_driver()
        self.events = events or EventChannel()
        self.stats = stats or StreamStats()
        self.store = store or ClipStore(self.config.cache_dir)
        self.registry = StreamRegistry()
        self._codec = codec
        self._clock = clock or SystemClock()
        self._socket_factory = socket_factory

        self.supervisor = ConnectionSupervisor(
            RetryPolicy(
                self.config.max_attempts,
                self.config.backoff_s,
                self.config.backoff_increment_s,
            ),
            self.events,
            self._new_connection,
            clock=self._clock,
            stats=self.stats,
        )

        self._lock = threading.RLock()
        self._state = ServiceState.STOPPED
        self._generation = 0
        self._host: str | None = None
        self.last_host: str | None = self.config.host
        self.restart_on_failure = self.config.restart_on_failure
        self._restart_timer: threading.Timer | None = None
        self._restart_pending_reset = False
        self._guard: DeviceLifecycleGuard | None = None
        self._scheduler: PeriodicScheduler | None = None
        self._controller: BurstPhotoController | ClipController | None = None
        self._transfers: FileTransfer | None = None
        self._unsubscribe: list[Any] = []

    def __repr__(self) -> str:
        return f"StreamService(mode={self.mode.value}, state={self._state.value})"

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServiceState.RUNNING

    @property
    def active_stream_count(self) -> int:
        return self.registry.active_count

    @property
    def restart_scheduled(self) -> bool:
        timer = self._restart_timer
        return timer is not None and timer.is_alive()

    @property
    def codec(self) -> ImageCodec:
        if self._codec is None:
            from camstream.utils.image import CV2ImageCodec

            self._codec = CV2ImageCodec()
        return self._codec

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    def start(
        self,
        host: str | None = None,
        *,
        manual_start: bool = True,
        restart_on_failure: bool | None = None,
    ) -> bool:
        """Start capturing and sending.

        Args:
            host: Collector IP. A manual start falls back to the configured
                host, an automatic restart to the last host used.
            manual_start: True for an operator start, False for an
                automatic restart.
            restart_on_failure: Override the configured restart policy.

        Returns:
            False if the service was already running (nothing changes).

        Raises:
            InvalidTargetError: No host, or not an IP address.
            DeviceNotFoundError: None of the enabled devices exists.
        """
        with self._lock:
            if self._state is not ServiceState.STOPPED:
                logger.warning("Service already running", state=self._state.value)
                return False

            if host is None:
                host = self.config.host if manual_start else self.last_host
            try:
                host = validate_host(host)
            except StreamError as e:
                self._publish_failure(None, e)
                raise
            if restart_on_failure is not None:
                self.restart_on_failure = restart_on_failure
            if manual_start:
                self._cancel_restart()
                self.supervisor.reset()
            else:
                self._restart_pending_reset = True

            try:
                self._build_streams()
            except StreamError as e:
                self._teardown_streams(0.0)
                self._publish_failure(None, e)
                raise

            self._host = self.last_host = host
            self._generation += 1
            self._state = ServiceState.RUNNING
            generation = self._generation

            logger.info(
                "Service starting",
                mode=self.mode.value,
                host=host,
                manual_start=manual_start,
                restart_on_failure=self.restart_on_failure,
                devices=[f.value for f in self.registry.facings()],
            )
            self.events.publish(
                ServiceStarted(
                    host=host, mode=self.mode.value, manual_start=manual_start
                )
            )

            if self.mode is ServiceMode.STREAM:
                self._start_streaming(host, generation)
            else:
                self._start_burst(host)
        return True

    def stop(self, reason: str = "operator") -> bool:
        """Stop everything and release the devices.

        Waits at most ``shutdown_timeout_s`` for sessions and callback
        queues. An operator stop also cancels a pending automatic restart.

        Returns:
            False if the service was not running.
        """
        if reason == "operator":
            self._cancel_restart()
        return self._stop(reason, restart_delay=None)

    def _stop(self, reason: str, restart_delay: float | None) -> bool:
        with self._lock:
            if self._state is not ServiceState.RUNNING:
                return False
            self._state = ServiceState.STOPPING
            self._generation += 1

        logger.info("Service stopping", reason=reason)
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        if self._scheduler is not None:
            self._scheduler.stop(timeout=self.config.shutdown_timeout_s)
            self._scheduler = None

        self._teardown_streams(self.config.shutdown_timeout_s)

        if self._transfers is not None:
            self._transfers.join(timeout=self.config.shutdown_timeout_s)
            self._transfers = None
        self._controller = None
        self.store.cleanup()

        with self._lock:
            self._state = ServiceState.STOPPED
            self._guard = None
            if restart_delay is not None:
                self._restart_timer = threading.Timer(restart_delay, self._auto_restart)
                self._restart_timer.daemon = True
                self._restart_timer.start()

        logger.info(
            "Service stopped", reason=reason, restart_in_s=restart_delay
        )
        self.events.publish(
            ServiceStopped(reason=reason, restart_scheduled=restart_delay is not None)
        )
        return True

    def status(self) -> dict[str, Any]:
        """Snapshot for the dashboard and CLI."""
        restart = self.supervisor.retry_state(RESTART_KEY)
        return {
            "state": self._state.value,
            "mode": self.mode.value,
            "host": self._host,
            "last_host": self.last_host,
            "restart_on_failure": self.restart_on_failure,
            "restart_scheduled": self.restart_scheduled,
            "restart_attempts": restart.attempt_count,
            "active_streams": self.registry.active_count,
            "streams": self.registry.snapshot(),
            "stats": self.stats.to_dict(),
        }

    # -------------------------------------------------------------------------
    # Setup and teardown
    # -------------------------------------------------------------------------

    def _target_size(self) -> Size:
        if self.mode is ServiceMode.PHOTO:
            return self.config.burst_size
        if self.mode is ServiceMode.CLIP:
            return self.config.clip_size
        return self.config.target_size

    def _build_streams(self) -> None:
        self._guard = DeviceLifecycleGuard(self.config.guard_timeout_s)
        for facing in self.config.enabled_facings:
            descriptor = find_camera(self.driver, facing)
            if descriptor is None:
                logger.warning("No camera for facing", facing=facing.value)
                continue
            callbacks = CallbackQueue(facing.value)
            callbacks.start()
            stream = DeviceStream(facing, descriptor.camera_id, self._target_size())
            self.registry.add(StreamEntry(stream=stream, callbacks=callbacks))
        if not len(self.registry):
            raise DeviceNotFoundError(
                "No camera found for "
                + ", ".join(f.value for f in self.config.enabled_facings)
            )

    def _teardown_streams(self, timeout: float) -> None:
        entries = self.registry.clear()
        for entry in entries:
            entry.active = False
            if entry.session is not None:
                entry.session.teardown()

        deadline = self._clock.monotonic() + timeout
        for entry in entries:
            remaining = max(0.0, deadline - self._clock.monotonic())
            if entry.session is not None and not entry.session.wait_closed(remaining):
                logger.warning(
                    "Session did not close in time", facing=entry.stream.facing.value
                )
            if entry.connection is not None:
                entry.connection.close()
            entry.callbacks.stop(max(0.0, deadline - self._clock.monotonic()))

    def _new_connection(self, host: str, port: int, label: str) -> Connection:
        return Connection(
            host,
            port,
            connect_timeout=self.config.connect_timeout_s,
            io_timeout=self.config.io_timeout_s,
            label=label,
            stats=self.stats,
            socket_factory=self._socket_factory,
        )

    # -------------------------------------------------------------------------
    # Continuous streaming
    # -------------------------------------------------------------------------

    def _start_streaming(self, host: str, generation: int) -> None:
        for entry in self.registry.entries():
            facing = entry.stream.facing
            self.registry.activate(facing)
            self.supervisor.connect_async(
                facing.value,
                host,
                self.config.port_for(facing),
                on_connected=partial(self._on_connected, entry, generation),
                on_error=partial(self._on_stream_error, entry, generation),
            )

    def _on_connected(
        self, entry: StreamEntry, generation: int, conn: Connection
    ) -> None:
        if generation != self._generation:
            conn.close()
            return
        entry.connection = conn
        session = CaptureSession(
            entry.stream,
            self.driver,
            self._guard,  # type: ignore[arg-type]
            entry.callbacks,
            mode=CaptureMode.CONTINUOUS,
            throttle=FrameThrottle(self.config.frame_interval_s),
            transform=FrameTransform(self.codec, self.config.jpeg_quality),
            hooks=SessionHooks(
                on_frame=partial(self._send_frame, entry),
                on_failure=partial(self._on_session_failure, entry, generation),
            ),
            clock=self._clock,
            stats=self.stats,
        )
        entry.session = session
        try:
            session.open()
        except RuntimeError as e:
            # A stop may have raced past the generation check above
            conn.close()
            self._on_stream_error(entry, generation, TransportError(str(e)))

    def _send_frame(self, entry: StreamEntry, frame: Frame) -> None:
        conn = entry.connection
        if conn is None:
            raise TransportError("Stream has no connection")
        conn.send_frame(frame.payload)
        if self._restart_pending_reset:
            self._restart_pending_reset = False
            self.supervisor.reset(RESTART_KEY)
            logger.info("Stream recovered after restart", facing=frame.facing.value)

    def _on_session_failure(
        self,
        entry: StreamEntry,
        generation: int,
        session: CaptureSession,
        error: StreamError,
    ) -> None:
        self._on_stream_error(entry, generation, error)

    def _on_stream_error(
        self, entry: StreamEntry, generation: int, error: StreamError
    ) -> None:
        if generation != self._generation:
            return
        facing = entry.stream.facing
        self._publish_failure(facing.value, error)
        if entry.connection is not None:
            entry.connection.close()
        if entry.session is not None:
            entry.session.teardown()

        remaining = self.registry.deactivate(facing)
        if remaining is None:
            return
        logger.info("Device stream stopped", facing=facing.value, remaining=remaining)
        if remaining == 0:
            threading.Thread(
                target=self._stop_after_failure,
                args=(error,),
                name="service-self-stop",
                daemon=True,
            ).start()

    def _stop_after_failure(self, error: StreamError) -> None:
        restart_delay = None
        if self.restart_on_failure and error.retryable:
            if not self.supervisor.record_failure(RESTART_KEY, error):
                restart_delay = self.supervisor.retry_state(RESTART_KEY).next_delay()
        self._stop("all streams stopped", restart_delay=restart_delay)

    def _auto_restart(self) -> None:
        try:
            self.start(manual_start=False)
        except StreamError as e:
            logger.error("Automatic restart failed", error=str(e))
            self.events.publish(ServiceStopped(reason="restart failed"))

    def _cancel_restart(self) -> None:
        timer = self._restart_timer
        self._restart_timer = None
        if timer is not None:
            timer.cancel()

    def _publish_failure(self, facing: str | None, error: StreamError) -> None:
        self.events.publish(
            StreamFailed(
                facing=facing,
                error_type=type(error).__name__,
                error=str(error),
                fatal=not error.retryable,
            )
        )

    # -------------------------------------------------------------------------
    # Burst modes
    # -------------------------------------------------------------------------

    def _start_burst(self, host: str) -> None:
        for facing in self.registry.facings():
            self.registry.activate(facing)
        self._transfers = FileTransfer(self.supervisor, self.store, self.events, host)
        self._unsubscribe.append(
            self.events.subscribe(self._on_terminal_failure, TerminalFailure)
        )
        guard = self._guard
        assert guard is not None

        if self.mode is ServiceMode.PHOTO:
            self._controller = BurstPhotoController(
                self.registry,
                self.driver,
                guard,
                self.store,
                self._transfers,
                FrameTransform.for_photos(self.codec, self.config.jpeg_quality),
                self.config.photo_port,
                clock=self._clock,
                stats=self.stats,
            )
            period = self.config.photo_period_s
        else:
            self._controller = ClipController(
                self.registry,
                self.driver,
                guard,
                self.store,
                self._transfers,
                self.config.clip_port,
                duration_s=self.config.clip_duration_s,
                fps=self.config.clip_fps,
                clock=self._clock,
                stats=self.stats,
            )
            period = self.config.clip_period_s

        self._scheduler = PeriodicScheduler(
            period, self._controller.trigger, name=self.mode.value, clock=self._clock
        )
        self._scheduler.start()

    def _on_terminal_failure(self, event: TerminalFailure) -> None:
        if event.facing == RESTART_KEY or not self.is_running:
            return
        logger.error(
            "Transfers cannot reach the collector, stopping", kind=event.facing
        )
        for facing in self.registry.facings():
            self.registry.deactivate(facing)
        threading.Thread(
            target=self._stop,
            args=("retries exhausted", None),
            name="service-self-stop",
            daemon=True,
        ).start()


# =============================================================================
# Dashboard thread
# =============================================================================


@dataclass
class DashboardState:
    """Background thread and uvicorn server of the dashboard."""

    thread: threading.Thread | None = field(default=None)
    server: uvicorn.Server | None = field(default=None)


_dashboard = DashboardState()


def _run_dashboard(
    service: StreamService, host: str, port: int, log_level: str = "warning"
) -> None:
    """Run uvicorn with the dashboard app; blocks until shutdown."""
    from camstream.web.app import create_app

    try:
        config = uvicorn.Config(
            create_app(service), host=host, port=port, log_level=log_level
        )
        _dashboard.server = uvicorn.Server(config)
        _dashboard.server.run()
    except OSError as e:
        logger.error("Dashboard failed to start", error=str(e), host=host, port=port)
    except Exception:
        logger.exception("Unexpected error in dashboard server")


def start_dashboard(
    service: StreamService,
    host: str = "127.0.0.1",
    port: int = 8080,
    log_level: str = "warning",
) -> None:
    """Start the dashboard in a daemon thread. No-op if already running."""
    if _dashboard.thread is not None and _dashboard.thread.is_alive():
        logger.warning("Dashboard already running")
        return

    _dashboard.thread = threading.Thread(
        target=_run_dashboard,
        args=(service, host, port, log_level),
        daemon=True,
        name=f"camstream-dashboard-{host}:{port}",
    )
    _dashboard.thread.start()
    logger.info("Dashboard started", url=f"http://{host}:{port}")


def stop_dashboard() -> None:
    """Ask the dashboard server to exit. Safe when it is not running."""
    if _dashboard.server is not None:
        logger.info("Stopping dashboard server")
        _dashboard.server.should_exit = True
        _dashboard.server = None
