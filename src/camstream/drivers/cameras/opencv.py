"""OpenCV capture driver for real cameras.

Maps each facing to a ``cv2.VideoCapture`` device index. Frames are read
as BGR arrays and JPEG encoded at the configured quality, so the rest of
the pipeline sees the same encoded payloads the digital twin produces.

Example:
    driver = OpenCVCameraDriver({Facing.BACK: 0, Facing.FRONT: 1})
    camera = driver.open(0)
    camera.configure(Size(640, 480))
    jpeg = camera.capture()
    camera.close()
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import cv2

from camstream.drivers.cameras.types import CameraDescriptor, Facing, Size
from camstream.errors import (
    CameraAccessError,
    CameraErrorCode,
    DeviceCharacteristicsError,
    DeviceDisconnectedError,
    DeviceNotFoundError,
    SessionConfigurationError,
)
from camstream.observability import get_logger

logger = get_logger(__name__)

__all__ = ["COMMON_SIZES", "OpenCVCameraDriver", "OpenCVCameraInstance"]

#: Sizes offered for every device. UVC devices rarely report their modes
#: through OpenCV, so the session picks from this list and the device
#: clamps to its nearest native mode.
COMMON_SIZES: tuple[Size, ...] = (
    Size(320, 240),
    Size(640, 480),
    Size(1280, 720),
    Size(1920, 1080),
)

DEFAULT_DEVICE_INDICES: Mapping[Facing, int] = {Facing.BACK: 0, Facing.FRONT: 1}

VideoCaptureFactory = Callable[[int], Any]


class OpenCVCameraDriver:
    """CameraDriver backed by ``cv2.VideoCapture``.

    camera_id equals the OpenCV device index.
    """

    def __init__(
        self,
        device_indices: Mapping[Facing, int] | None = None,
        jpeg_quality: int = 90,
        capture_factory: VideoCaptureFactory | None = None,
    ) -> None:
        """Create the driver.

        Args:
            device_indices: OpenCV index for each facing.
            jpeg_quality: Quality used to encode captured frames.
            capture_factory: Callable returning a VideoCapture-like object
                for an index. Defaults to ``cv2.VideoCapture``.
        """
        indices = dict(device_indices or DEFAULT_DEVICE_INDICES)
        self._cameras = {
            index: CameraDescriptor(
                camera_id=index,
                facing=facing,
                name=f"/dev/video{index}",
                supported_sizes=COMMON_SIZES,
            )
            for facing, index in indices.items()
        }
        self._jpeg_quality = jpeg_quality
        self._capture_factory = capture_factory or cv2.VideoCapture

    def __repr__(self) -> str:
        mapping = {d.facing.value: i for i, d in self._cameras.items()}
        return f"OpenCVCameraDriver({mapping})"

    def get_connected_cameras(self) -> dict[int, CameraDescriptor]:
        return self._cameras.copy()

    def open(self, camera_id: int) -> OpenCVCameraInstance:
        """Open the device at ``camera_id``.

        Raises:
            DeviceNotFoundError: Index not configured.
            CameraAccessError: OpenCV could not open the device (code
                ``device``; busy and missing devices look the same).
        """
        descriptor = self._cameras.get(camera_id)
        if descriptor is None:
            raise DeviceNotFoundError(f"No camera configured at index {camera_id}")
        capture = self._capture_factory(camera_id)
        if not capture.isOpened():
            capture.release()
            raise CameraAccessError(
                CameraErrorCode.DEVICE, f"Could not open camera index {camera_id}"
            )
        logger.info(
            "Opened camera",
            camera_id=camera_id,
            facing=descriptor.facing.value,
        )
        return OpenCVCameraInstance(descriptor, capture, self._jpeg_quality)


class OpenCVCameraInstance:
    """An opened ``cv2.VideoCapture`` device."""

    def __init__(
        self, descriptor: CameraDescriptor, capture: Any, jpeg_quality: int
    ) -> None:
        self._descriptor = descriptor
        self._capture = capture
        self._jpeg_quality = jpeg_quality
        self._closed = False

    def get_info(self) -> CameraDescriptor:
        return self._descriptor

    def configure(self, size: Size) -> Size:
        """Request ``size`` and return what the device actually delivers.

        Raises:
            DeviceCharacteristicsError: The device reports no frame size.
            SessionConfigurationError: The device is no longer open.
        """
        if self._closed or not self._capture.isOpened():
            raise SessionConfigurationError("Camera closed before configuration")
        self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, size.width)
        self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, size.height)
        actual = Size(
            int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        if actual.width <= 0 or actual.height <= 0:
            raise DeviceCharacteristicsError(
                f"Camera {self._descriptor.camera_id} reported no frame size"
            )
        if actual != size:
            logger.info(
                "Camera clamped output size", requested=str(size), actual=str(actual)
            )
        return actual

    def capture(self) -> bytes:
        """Read one frame and return it JPEG encoded.

        Raises:
            DeviceDisconnectedError: The read failed (device unplugged or
                instance closed).
        """
        if self._closed:
            raise DeviceDisconnectedError("Camera instance is closed")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise DeviceDisconnectedError(
                f"Camera {self._descriptor.camera_id} stopped delivering frames"
            )
        ok, jpeg = cv2.imencode(
            ".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self._jpeg_quality]
        )
        if not ok:
            raise DeviceDisconnectedError("Frame encoding failed")
        return jpeg.tobytes()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._capture.release()
