"""Frames, per-device throttling and orientation transform.

Data flow for every captured frame:

    capture -> FrameThrottle.admit() -> FrameTransform.apply() -> transport

Both steps preserve capture order. Throttle state belongs to one device
stream and is never shared.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType

from camstream.drivers.cameras import Facing
from camstream.observability import get_logger
from camstream.utils.image import FLIP_VERTICAL, FlipAxis, ImageCodec

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_ROTATIONS",
    "Frame",
    "FrameThrottle",
    "FrameTransform",
    "PHOTO_ROTATIONS",
]

#: Continuous streaming: every device rotated 90 degrees clockwise.
DEFAULT_ROTATIONS: Mapping[Facing, int] = MappingProxyType(
    {Facing.BACK: 90, Facing.FRONT: 90}
)

#: Burst stills: JPEG orientation 270 for the front sensor, 90 for the back.
PHOTO_ROTATIONS: Mapping[Facing, int] = MappingProxyType(
    {Facing.BACK: 90, Facing.FRONT: 270}
)


@dataclass(frozen=True, slots=True)
class Frame:
    """One encoded image on its way to the transport.

    Attributes:
        payload: Encoded image bytes.
        facing: Device the frame came from.
        captured_at: Monotonic capture timestamp.
        passthrough: True when the transform could not decode the frame
            and forwarded the original bytes.
    """

    payload: bytes
    facing: Facing
    captured_at: float
    passthrough: bool = False

    @property
    def size(self) -> int:
        return len(self.payload)


class FrameThrottle:
    """Minimum-interval gate for one device stream.

    A frame at time ``t`` is forwarded when no frame has been forwarded
    yet or ``t - last_sent >= interval``; otherwise it is dropped and
    ``last_sent`` is left untouched.

    Example:
        >>> throttle = FrameThrottle(0.105)
        >>> throttle.admit(10.000)
        True
        >>> throttle.admit(10.050)
        False
        >>> throttle.admit(10.105)
        True
    """

    __slots__ = ("interval", "last_sent", "dropped")

    def __init__(self, interval: float) -> None:
        if interval < 0:
            raise ValueError(f"interval must not be negative, got {interval}")
        self.interval = interval
        self.last_sent: float | None = None
        self.dropped = 0

    def admit(self, t: float) -> bool:
        """Decide whether the frame captured at ``t`` is forwarded."""
        if self.last_sent is not None and t - self.last_sent < self.interval:
            self.dropped += 1
            return False
        self.last_sent = t
        return True

    def reset(self) -> None:
        self.last_sent = None


class FrameTransform:
    """Rotate and mirror a frame according to the device facing.

    Decoding failures never block the pipeline: the original bytes are
    forwarded unchanged and the frame is marked ``passthrough``.
    """

    def __init__(
        self,
        codec: ImageCodec,
        quality: int = 75,
        rotations: Mapping[Facing, int] = DEFAULT_ROTATIONS,
        mirror: Mapping[Facing, FlipAxis] | None = None,
    ) -> None:
        """Create a transform.

        Args:
            codec: JPEG codec and geometry operations.
            quality: JPEG quality of the re-encoded frame.
            rotations: Clockwise rotation in degrees per facing.
            mirror: Flip axis per facing applied after rotation. Defaults
                to a vertical mirror for FRONT only; pass ``{}`` to disable.
        """
        if not 1 <= quality <= 100:
            raise ValueError(f"quality must be 1-100, got {quality}")
        self._codec = codec
        self._quality = quality
        self._rotations = dict(rotations)
        self._mirror = (
            dict(mirror) if mirror is not None else {Facing.FRONT: FLIP_VERTICAL}
        )

    @classmethod
    def for_photos(cls, codec: ImageCodec, quality: int = 75) -> FrameTransform:
        """Transform used for burst stills (orientation only, no mirror)."""
        return cls(codec, quality, rotations=PHOTO_ROTATIONS, mirror={})

    def apply(self, frame: Frame) -> Frame:
        """Return the transformed frame, or the original marked passthrough."""
        img = self._codec.decode_jpeg(frame.payload)
        if img is None:
            logger.debug(
                "Frame not decodable, forwarding unchanged",
                facing=frame.facing.value,
                size_bytes=frame.size,
            )
            return replace(frame, passthrough=True)

        img = self._codec.rotate(img, self._rotations.get(frame.facing, 0))
        axis = self._mirror.get(frame.facing)
        if axis is not None:
            img = self._codec.flip(img, axis)

        try:
            payload = self._codec.encode_jpeg(img, self._quality)
        except ValueError:
            logger.warning(
                "Re-encode failed, forwarding original",
                facing=frame.facing.value,
                exc_info=True,
            )
            return replace(frame, passthrough=True)
        return replace(frame, payload=payload, passthrough=False)
