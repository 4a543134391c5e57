"""Stream configuration and driver factory.

Holds every tunable of the pipeline in one dataclass and switches between
real cameras (OpenCV) and digital twin drivers.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from camstream.drivers.cameras import (
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    Facing,
    OpenCVCameraDriver,
    Size,
)

# =============================================================================
# Constants
# =============================================================================

#: Collector ports. Photos share the back stream port and clips the front
#: stream port.
DEFAULT_BACK_PORT = 12345
DEFAULT_FRONT_PORT = 12346
DEFAULT_PHOTO_PORT = DEFAULT_BACK_PORT
DEFAULT_CLIP_PORT = DEFAULT_FRONT_PORT

DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_IO_TIMEOUT_S = 10.0

#: Minimum interval between forwarded frames (~9.5 fps cap).
DEFAULT_FRAME_INTERVAL_S = 0.105
DEFAULT_JPEG_QUALITY = 75
DEFAULT_TARGET_SIZE = Size(640, 480)

DEFAULT_BURST_SIZE = Size(1920, 1080)
DEFAULT_PHOTO_PERIOD_S = 1.0

DEFAULT_CLIP_SIZE = Size(1280, 720)
DEFAULT_CLIP_DURATION_S = 15.0
DEFAULT_CLIP_GAP_S = 2.0
DEFAULT_CLIP_FPS = 30

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_S = 2.0
DEFAULT_GUARD_TIMEOUT_S = 2.5

#: Upper bound on waiting for teardown at service stop.
DEFAULT_SHUTDOWN_TIMEOUT_S = 1.5


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # OpenCV capture devices
    DIGITAL_TWIN = "digital_twin"  # Simulated devices


def _default_cache_dir() -> Path:
    """Directory for photos and clips waiting to be sent."""
    return Path(tempfile.gettempdir()) / "camstream"


def _default_device_indices() -> dict[Facing, int]:
    return {Facing.BACK: 0, Facing.FRONT: 1}


@dataclass
class StreamConfig:
    """Configuration for drivers, transport and scheduling.

    Attributes:
        mode: HARDWARE for OpenCV cameras, DIGITAL_TWIN for simulation.
        host: Collector IP address. None until the operator supplies one.
        back_port: Port of the back-facing frame stream.
        front_port: Port of the front-facing frame stream.
        photo_port: Port for burst photo transfers (filename + bytes).
        clip_port: Port for burst clip transfers (filename + size + bytes).
        connect_timeout_s: Socket connect timeout.
        io_timeout_s: Socket read/write timeout after connecting.
        frame_interval_s: Minimum spacing of forwarded frames per device.
        jpeg_quality: Re-encode quality for transformed frames.
        target_size: Requested streaming resolution.
        burst_size: Requested still resolution in photo mode.
        photo_period_s: Photo scheduler period.
        clip_size: Requested clip resolution.
        clip_duration_s: Length of one clip.
        clip_gap_s: Pause between clips; the clip scheduler fires every
            clip_duration_s + clip_gap_s.
        clip_fps: Clip frame rate.
        max_attempts: Connection attempts before terminal failure.
        backoff_s: Wait before the first retry.
        backoff_increment_s: Added to the wait on every further retry.
        guard_timeout_s: Device lifecycle permit acquisition timeout.
        shutdown_timeout_s: Longest wait for teardown at stop.
        restart_on_failure: Restart automatically after every stream died.
        enabled_facings: Devices to use.
        cache_dir: Local directory for photos and clips before transfer.
        device_indices: OpenCV index per facing (hardware mode).
        twin: Digital twin behaviour (digital twin mode).
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN
    host: str | None = None

    # Transport
    back_port: int = DEFAULT_BACK_PORT
    front_port: int = DEFAULT_FRONT_PORT
    photo_port: int = DEFAULT_PHOTO_PORT
    clip_port: int = DEFAULT_CLIP_PORT
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    io_timeout_s: float = DEFAULT_IO_TIMEOUT_S

    # Continuous streaming
    frame_interval_s: float = DEFAULT_FRAME_INTERVAL_S
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    target_size: Size = DEFAULT_TARGET_SIZE

    # Burst photo
    burst_size: Size = DEFAULT_BURST_SIZE
    photo_period_s: float = DEFAULT_PHOTO_PERIOD_S

    # Burst clip
    clip_size: Size = DEFAULT_CLIP_SIZE
    clip_duration_s: float = DEFAULT_CLIP_DURATION_S
    clip_gap_s: float = DEFAULT_CLIP_GAP_S
    clip_fps: int = DEFAULT_CLIP_FPS

    # Retry and lifecycle
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_s: float = DEFAULT_BACKOFF_S
    backoff_increment_s: float = 0.0
    guard_timeout_s: float = DEFAULT_GUARD_TIMEOUT_S
    shutdown_timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S
    restart_on_failure: bool = True

    enabled_facings: tuple[Facing, ...] = (Facing.BACK, Facing.FRONT)
    cache_dir: Path = field(default_factory=_default_cache_dir)

    device_indices: dict[Facing, int] = field(default_factory=_default_device_indices)
    twin: DigitalTwinConfig = field(default_factory=DigitalTwinConfig)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.frame_interval_s < 0:
            raise ValueError("frame_interval_s must not be negative")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be 1-100, got {self.jpeg_quality}")
        if not self.enabled_facings:
            raise ValueError("at least one facing must be enabled")

    def port_for(self, facing: Facing) -> int:
        """Frame stream port of ``facing``."""
        return self.back_port if facing is Facing.BACK else self.front_port

    @property
    def clip_period_s(self) -> float:
        return self.clip_duration_s + self.clip_gap_s

    def with_overrides(self, **overrides: Any) -> StreamConfig:
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


class DriverFactory:
    """Creates the camera driver for the configured mode.

    Thread Safety:
        Not thread-safe. Configure once at startup before the service
        spawns callback queues.
    """

    def __init__(self, config: StreamConfig | None = None) -> None:
        self.config = config or StreamConfig()

    def create_camera_driver(self) -> CameraDriver:
        """Return an OpenCV driver in HARDWARE mode, a twin otherwise.

        Example:
            >>> factory = DriverFactory(StreamConfig(mode=DriverMode.DIGITAL_TWIN))
            >>> factory.create_camera_driver()
            DigitalTwinCameraDriver(cameras=[0, 1])
        """
        if self.config.mode == DriverMode.HARDWARE:
            return OpenCVCameraDriver(
                self.config.device_indices, jpeg_quality=self.config.jpeg_quality
            )
        return DigitalTwinCameraDriver(self.config.twin)


# =============================================================================
# Global Singletons
# =============================================================================
# Not thread-safe: configure once at startup before starting streams.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the global factory, creating a digital twin one on first use."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def get_config() -> StreamConfig:
    """Return the configuration of the global factory."""
    return get_factory().config


def configure(config: StreamConfig) -> None:
    """Replace the global factory with one built from ``config``."""
    global _factory
    _factory = DriverFactory(config)


def use_hardware() -> None:
    """Switch the global factory to OpenCV cameras, keeping other settings."""
    configure(replace(get_config(), mode=DriverMode.HARDWARE))


def use_digital_twin() -> None:
    """Switch the global factory to simulated cameras, keeping other settings."""
    configure(replace(get_config(), mode=DriverMode.DIGITAL_TWIN))


def reset_factory() -> None:
    """Forget the global factory (for tests)."""
    global _factory
    _factory = None
