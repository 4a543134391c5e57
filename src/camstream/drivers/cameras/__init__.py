"""Camera driver module.

Protocols:
    CameraDriver: device discovery and opening
    CameraInstance: output configuration, capture and release

Implementations:
    OpenCVCameraDriver/OpenCVCameraInstance: real cameras via cv2.VideoCapture
    DigitalTwinCameraDriver/DigitalTwinCameraInstance: simulated devices

Drivers are synchronous. The capture session supplies the asynchrony by
running every driver call on the device's callback queue.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from camstream.drivers.cameras.opencv import (
    COMMON_SIZES,
    OpenCVCameraDriver,
    OpenCVCameraInstance,
)
from camstream.drivers.cameras.twin import (
    DEFAULT_TWIN_CAMERAS,
    DEFAULT_TWIN_SIZES,
    DigitalTwinCameraDriver,
    DigitalTwinCameraInstance,
    DigitalTwinConfig,
)
from camstream.drivers.cameras.types import (
    CameraDescriptor,
    Facing,
    Size,
    select_output_size,
)


@runtime_checkable
class CameraInstance(Protocol):  # pragma: no cover
    """An opened capture device.

    Implemented by OpenCVCameraInstance and DigitalTwinCameraInstance.
    """

    def get_info(self) -> CameraDescriptor:
        """Return the descriptor the device was opened from."""
        ...

    def configure(self, size: Size) -> Size:
        """Configure the output size and return the size actually applied.

        Raises:
            SessionConfigurationError: The device rejected the configuration.
            DeviceCharacteristicsError: The device cannot report its output.
        """
        ...

    def capture(self) -> bytes:
        """Capture one frame and return it JPEG encoded.

        Raises:
            DeviceDisconnectedError: The device is gone or closed.
        """
        ...

    def close(self) -> None:
        """Release the device. Must be idempotent."""
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Discovers and opens capture devices."""

    def get_connected_cameras(self) -> dict[int, CameraDescriptor]:
        """Return descriptors keyed by camera_id."""
        ...

    def open(self, camera_id: int) -> CameraInstance:
        """Open a device.

        Raises:
            DeviceNotFoundError: No device with that id.
            DevicePermissionError: Access to the device was denied.
            CameraAccessError: The device reported an error code.
        """
        ...


def find_camera(driver: CameraDriver, facing: Facing) -> CameraDescriptor | None:
    """Return the first device with the given facing, or None."""
    cameras = driver.get_connected_cameras()
    for camera_id in sorted(cameras):
        descriptor = cameras[camera_id]
        if descriptor.facing is facing:
            return descriptor
    return None


__all__ = [
    # Protocols
    "CameraDriver",
    "CameraInstance",
    # Types
    "CameraDescriptor",
    "Facing",
    "Size",
    "find_camera",
    "select_output_size",
    # OpenCV
    "COMMON_SIZES",
    "OpenCVCameraDriver",
    "OpenCVCameraInstance",
    # Digital twin
    "DEFAULT_TWIN_CAMERAS",
    "DEFAULT_TWIN_SIZES",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraInstance",
    "DigitalTwinConfig",
]
