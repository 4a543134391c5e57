"""Digital Twin Camera Driver - simulated capture devices for testing.

Produces synthetic JPEG frames from two simulated devices (back and
front facing) behind the same CameraDriver protocol as the OpenCV driver.
Supports fault injection so the session, supervisor and service can be
exercised without hardware:

- ``open_error``: exception raised by ``open()``
- ``configure_error``: exception raised by ``configure()``
- ``disconnect_after``: frames delivered before ``capture()`` raises
  DeviceDisconnectedError
- ``undecodable``: emit bytes that are not a valid JPEG

Synthetic frames carry an asymmetric marker (a bright block in the
top-left corner) so rotation and mirroring are observable in tests.

Example:
    from camstream.drivers.cameras.twin import DigitalTwinCameraDriver

    driver = DigitalTwinCameraDriver()
    camera = driver.open(0)          # back-facing twin
    camera.configure(Size(640, 480))
    jpeg = camera.capture()
    camera.close()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, final

import cv2
import numpy as np

from camstream.drivers.cameras.types import CameraDescriptor, Facing, Size
from camstream.errors import (
    DeviceDisconnectedError,
    DeviceNotFoundError,
    SessionConfigurationError,
    StreamError,
)
from camstream.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_TWIN_CAMERAS",
    "DEFAULT_TWIN_SIZES",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraInstance",
    "DigitalTwinConfig",
]

# =============================================================================
# Constants
# =============================================================================

_DEFAULT_JPEG_QUALITY = 90
_MARKER_FRACTION = 4  # marker block is 1/4 of width and height
_GRID_SPACING = 40

DEFAULT_TWIN_SIZES: tuple[Size, ...] = (
    Size(320, 240),
    Size(640, 480),
    Size(1280, 720),
    Size(1920, 1080),
)

DEFAULT_TWIN_CAMERAS: Mapping[int, CameraDescriptor] = MappingProxyType(
    {
        0: CameraDescriptor(
            camera_id=0,
            facing=Facing.BACK,
            name="Twin Back Camera",
            supported_sizes=DEFAULT_TWIN_SIZES,
        ),
        1: CameraDescriptor(
            camera_id=1,
            facing=Facing.FRONT,
            name="Twin Front Camera",
            supported_sizes=DEFAULT_TWIN_SIZES,
        ),
    }
)


@dataclass
class DigitalTwinConfig:
    """Behaviour of simulated devices.

    Attributes:
        capture_delay_s: Sleep inside ``capture()`` to simulate sensor
            readout (default ~30 fps); 0 delivers frames as fast as the
            caller asks.
        jpeg_quality: Quality used for synthetic frames.
        open_error: Raised from ``open()`` when set.
        configure_error: Raised from ``configure()`` when set.
        disconnect_after: Frames delivered per opened instance before
            ``capture()`` raises DeviceDisconnectedError. None never fails.
        undecodable: Return non-JPEG bytes from ``capture()``.
    """

    capture_delay_s: float = 1 / 30
    jpeg_quality: int = _DEFAULT_JPEG_QUALITY
    open_error: StreamError | None = None
    configure_error: StreamError | None = None
    disconnect_after: int | None = None
    undecodable: bool = False


class DigitalTwinCameraDriver:
    """Driver for simulated back/front capture devices.

    Keeps counters of opens and closes so tests can assert that every
    opened device was released.
    """

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Mapping[int, CameraDescriptor] | None = None,
    ) -> None:
        """Create the driver.

        Args:
            config: Simulation behaviour and fault injection.
            cameras: Devices to expose, keyed by camera_id. Defaults to one
                back-facing (0) and one front-facing (1) twin.
        """
        self.config = config or DigitalTwinConfig()
        self._cameras: dict[int, CameraDescriptor] = dict(
            cameras if cameras is not None else DEFAULT_TWIN_CAMERAS
        )
        self._lock = threading.Lock()
        self.open_count = 0
        self.close_count = 0
        logger.info(
            "Digital twin camera driver initialized", cameras=len(self._cameras)
        )

    def __repr__(self) -> str:
        return f"DigitalTwinCameraDriver(cameras={sorted(self._cameras)})"

    def get_connected_cameras(self) -> dict[int, CameraDescriptor]:
        return self._cameras.copy()

    def open(self, camera_id: int) -> DigitalTwinCameraInstance:
        """Open a simulated device.

        Raises:
            DeviceNotFoundError: Unknown camera_id.
            StreamError: ``config.open_error`` when injected.
        """
        descriptor = self._cameras.get(camera_id)
        if descriptor is None:
            raise DeviceNotFoundError(f"Camera {camera_id} not found")
        if self.config.open_error is not None:
            logger.warning(
                "Injected open failure",
                camera_id=camera_id,
                error=type(self.config.open_error).__name__,
            )
            raise self.config.open_error
        with self._lock:
            self.open_count += 1
        logger.debug("Opening simulated camera", camera_id=camera_id)
        return DigitalTwinCameraInstance(descriptor, self.config, self._on_closed)

    def _on_closed(self) -> None:
        with self._lock:
            self.close_count += 1

    @property
    def open_instances(self) -> int:
        """Instances opened and not yet closed."""
        with self._lock:
            return self.open_count - self.close_count


@final
class DigitalTwinCameraInstance:
    """An opened simulated device producing synthetic JPEG frames."""

    __slots__ = (
        "_descriptor",
        "_config",
        "_on_closed",
        "_size",
        "_frame_index",
        "_closed",
    )

    def __init__(
        self,
        descriptor: CameraDescriptor,
        config: DigitalTwinConfig,
        on_closed: Callable[[], None] | None = None,
    ) -> None:
        self._descriptor = descriptor
        self._config = config
        self._on_closed = on_closed
        self._size: Size | None = None
        self._frame_index = 0
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraInstance(id={self._descriptor.camera_id}, "
            f"facing={self._descriptor.facing.value}, size={self._size})"
        )

    def get_info(self) -> CameraDescriptor:
        return self._descriptor

    def configure(self, size: Size) -> Size:
        """Set the output size.

        Raises:
            SessionConfigurationError: Unsupported size, or injected error.
        """
        if self._config.configure_error is not None:
            raise self._config.configure_error
        supported = self._descriptor.supported_sizes
        if supported and size not in supported:
            raise SessionConfigurationError(
                f"Size {size} not supported by {self._descriptor.name}"
            )
        self._size = size
        return size

    def capture(self) -> bytes:
        """Produce the next frame.

        Returns:
            JPEG bytes (or garbage when ``undecodable`` is set).

        Raises:
            DeviceDisconnectedError: Instance closed, or the injected
                ``disconnect_after`` count is spent.
            SessionConfigurationError: ``configure()`` was never called.
        """
        if self._closed:
            raise DeviceDisconnectedError("Camera instance is closed")
        if self._size is None:
            raise SessionConfigurationError("capture() before configure()")
        limit = self._config.disconnect_after
        if limit is not None and self._frame_index >= limit:
            raise DeviceDisconnectedError(
                f"Simulated disconnect after {limit} frames"
            )
        if self._config.capture_delay_s > 0:
            time.sleep(self._config.capture_delay_s)

        self._frame_index += 1
        if self._config.undecodable:
            return b"TWIN-NOT-A-JPEG-" + self._frame_index.to_bytes(4, "big")
        return self._render_frame()

    def _render_frame(self) -> bytes:
        assert self._size is not None
        width, height = self._size.width, self._size.height

        img: NDArray[Any] = np.zeros((height, width, 3), dtype=np.uint8)
        img[::_GRID_SPACING, :] = (50, 50, 50)
        img[:, ::_GRID_SPACING] = (50, 50, 50)

        # Orientation marker: solid white block in the top-left corner
        img[: height // _MARKER_FRACTION, : width // _MARKER_FRACTION] = 255

        cv2.putText(
            img,
            f"{self._descriptor.facing.value.upper()} #{self._frame_index}",
            (width // 3, height // 2),
            cv2.FONT_HERSHEY_SIMPLEX,
            max(0.4, width / 800),
            (0, 255, 0),
            1,
        )

        ok, jpeg = cv2.imencode(
            ".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, self._config.jpeg_quality]
        )
        if not ok:
            raise SessionConfigurationError("Synthetic frame encoding failed")
        return jpeg.tobytes()

    def close(self) -> None:
        """Release the simulated device. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._on_closed is not None:
            self._on_closed()
