"""Image codec abstractions for dependency injection.

The frame transform, the clip writer and the digital twin all need JPEG
decode/encode plus a few geometric operations. They depend on the
ImageCodec protocol so tests can substitute a fake codec; CV2ImageCodec is
the real implementation.

Architecture:
    ImageCodec (Protocol) <- CV2ImageCodec (OpenCV)
                          <- fake codecs in tests

cv2 is imported when CV2ImageCodec is instantiated, not at module import.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CV2ImageCodec",
    "FLIP_HORIZONTAL",
    "FLIP_VERTICAL",
    "FlipAxis",
    "ImageCodec",
]

#: Flip codes as understood by cv2.flip.
FlipAxis = int
FLIP_VERTICAL: FlipAxis = 0  # mirror top/bottom (around the x axis)
FLIP_HORIZONTAL: FlipAxis = 1  # mirror left/right (around the y axis)


@runtime_checkable
class ImageCodec(Protocol):  # pragma: no cover
    """JPEG codec plus the geometric operations used on frames."""

    def decode_jpeg(self, data: bytes) -> NDArray[Any] | None:
        """Decode JPEG bytes to a BGR array, or None if undecodable."""
        ...

    def encode_jpeg(self, img: NDArray[Any], quality: int = 75) -> bytes:
        """Encode a BGR or grayscale array as JPEG.

        Raises:
            ValueError: If quality is outside 1-100 or encoding fails.
        """
        ...

    def rotate(self, img: NDArray[Any], degrees: int) -> NDArray[Any]:
        """Rotate clockwise by a multiple of 90 degrees."""
        ...

    def flip(self, img: NDArray[Any], axis: FlipAxis) -> NDArray[Any]:
        """Mirror the image around the given axis."""
        ...

    def resize(self, img: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        """Scale to exactly ``width`` x ``height``."""
        ...


class CV2ImageCodec:
    """OpenCV-backed ImageCodec.

    Thread Safety:
        Stateless apart from the module reference; one instance can be
        shared by every callback queue.

    Example:
        >>> codec = CV2ImageCodec()
        >>> img = codec.decode_jpeg(jpeg_bytes)
        >>> rotated = codec.rotate(img, 90)
        >>> codec.encode_jpeg(rotated, quality=75)[:2]
        b'\\xff\\xd8'
    """

    def __init__(self) -> None:
        """Import cv2.

        Raises:
            ImportError: If opencv-python(-headless) is not installed.
        """
        import cv2

        self._cv2 = cv2
        self._rotations = {
            90: cv2.ROTATE_90_CLOCKWISE,
            180: cv2.ROTATE_180,
            270: cv2.ROTATE_90_COUNTERCLOCKWISE,
        }

    def decode_jpeg(self, data: bytes) -> NDArray[Any] | None:
        import numpy as np

        if not data:
            return None
        buffer = np.frombuffer(data, dtype=np.uint8)
        # cv2.imdecode returns None for corrupt input rather than raising
        return self._cv2.imdecode(buffer, self._cv2.IMREAD_COLOR)

    def encode_jpeg(self, img: NDArray[Any], quality: int = 75) -> bytes:
        if not 1 <= quality <= 100:
            raise ValueError(f"quality must be 1-100, got {quality}")
        success, data = self._cv2.imencode(
            ".jpg", img, [self._cv2.IMWRITE_JPEG_QUALITY, quality]
        )
        if not success:
            raise ValueError(
                f"JPEG encoding failed for image shape={img.shape}, dtype={img.dtype}"
            )
        return data.tobytes()

    def rotate(self, img: NDArray[Any], degrees: int) -> NDArray[Any]:
        """Rotate clockwise by 0, 90, 180 or 270 degrees.

        Raises:
            ValueError: For any other angle.
        """
        degrees %= 360
        if degrees == 0:
            return img
        code = self._rotations.get(degrees)
        if code is None:
            raise ValueError(f"rotation must be a multiple of 90, got {degrees}")
        return self._cv2.rotate(img, code)

    def flip(self, img: NDArray[Any], axis: FlipAxis) -> NDArray[Any]:
        return self._cv2.flip(img, axis)

    def resize(self, img: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        if img.shape[1] == width and img.shape[0] == height:
            return img
        return self._cv2.resize(img, (width, height))
